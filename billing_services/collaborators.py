"""
Collaborator interfaces (``billing_services.collaborators``).

Responsibility:
    Narrow protocols for everything the billing engine consumes but does not
    implement: contact lookup, product lookup, the payment gateway and
    e-mail/PDF delivery.  The host application supplies adapters; tests
    supply in-memory fakes.

Architecture position:
    Services -- interface definitions only, no I/O.  Module services accept
    these protocols through constructor injection.

Failure modes:
    - Adapters may raise any exception; the billing services translate
      gateway and mailer failures into ``ExternalServiceError`` or a
      ``DeliveryResult`` carrying the error text.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol, Sequence, runtime_checkable
from uuid import UUID


@dataclass(frozen=True)
class Contact:
    """Customer record as returned by the host CRM."""
    id: UUID
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: Any = None  # string or mapping; normalised by the engine


@dataclass(frozen=True)
class Product:
    """Catalog product used to prefill a line item."""
    id: UUID
    name: str
    price: Decimal
    description: str = ""
    tax_rate: Decimal = Decimal("0")


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a gateway charge."""
    success: bool
    external_transaction_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of an e-mail delivery."""
    email_sent: bool
    email_error: str | None = None


@runtime_checkable
class ContactDirectory(Protocol):
    def get_contact(self, organization_id: UUID, contact_id: UUID) -> Contact | None: ...


@runtime_checkable
class ProductCatalog(Protocol):
    def get_product(self, organization_id: UUID, product_id: UUID) -> Product | None: ...


@runtime_checkable
class PaymentGateway(Protocol):
    def charge(self, invoice: Any) -> ChargeResult: ...

    def create_payment_link(self, invoice: Any) -> str: ...


@runtime_checkable
class DocumentMailer(Protocol):
    def send(
        self,
        document: Any,
        subject: str,
        message: str,
        cc_emails: Sequence[str] = (),
    ) -> DeliveryResult: ...
