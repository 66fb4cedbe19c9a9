"""
billing_services -- collaborator interfaces and background orchestration.

Responsibility:
    Defines the protocols the engine consumes (contacts, products, payment
    gateway, mailer) and the background jobs that drive recurring
    generation, estimate expiry and payment reminders.

Architecture position:
    Services -- above ``billing_modules``.

    Dependency direction:
        billing_services/ -> billing_modules/  (allowed)
        billing_modules/  -> billing_services.collaborators (interfaces only)
        billing_kernel/   -> billing_services/ (FORBIDDEN)

    Only the collaborator interfaces are re-exported here; import
    ``billing_services.invoice_jobs`` and ``billing_services.scheduler``
    directly.
"""

from billing_services.collaborators import (
    ChargeResult,
    Contact,
    ContactDirectory,
    DeliveryResult,
    DocumentMailer,
    PaymentGateway,
    Product,
    ProductCatalog,
)

__all__ = [
    "ChargeResult",
    "Contact",
    "ContactDirectory",
    "DeliveryResult",
    "DocumentMailer",
    "PaymentGateway",
    "Product",
    "ProductCatalog",
]
