"""
Pytest fixtures for the billing engine test suite.

Provides:
- A fresh in-memory SQLite database per test (tables + immutability listeners)
- Structured JSON logging and a ``captured_logs`` fixture
- A DeterministicClock and default BillingSettings
- In-memory fakes for the collaborator protocols
- Service fixtures wired to the fakes

SQLite runs on a single shared connection (StaticPool), so tests use one
session at a time and let each service call commit before opening another.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest

from billing_config import BillingSettings, reset_active_settings
from billing_kernel.db.engine import get_session_factory, init_engine_from_url, reset_engine
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_modules._orm_registry import create_all_tables
from billing_modules.estimates.service import EstimateService
from billing_modules.invoicing.models import CustomerSnapshot, LineItem
from billing_modules.invoicing.service import InvoiceService
from billing_modules.recurring.service import RecurringService
from billing_services.collaborators import ChargeResult, Contact, DeliveryResult, Product


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    reset_active_settings()
    yield
    reset_active_settings()


@pytest.fixture
def captured_logs():
    """
    Capture billing logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, invoice_service):
            invoice_service.send(...)
            logs = captured_logs()
            assert any(r["message"] == "invoice_sent" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory database with every billing table."""
    eng = init_engine_from_url("sqlite://")
    create_all_tables()
    yield eng
    reset_engine()


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


# =============================================================================
# Clock, settings, ids
# =============================================================================


@pytest.fixture
def clock():
    """Noon UTC on 2024-01-15."""
    return DeterministicClock(datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return BillingSettings()


@pytest.fixture
def org_id() -> UUID:
    return uuid4()


# =============================================================================
# Collaborator fakes
# =============================================================================


class FakeContactDirectory:
    def __init__(self):
        self.contacts: dict[UUID, Contact] = {}

    def add(self, **fields) -> Contact:
        contact = Contact(id=fields.pop("id", None) or uuid4(), **fields)
        self.contacts[contact.id] = contact
        return contact

    def get_contact(self, organization_id, contact_id):
        return self.contacts.get(contact_id)


class FakeProductCatalog:
    def __init__(self):
        self.products: dict[UUID, Product] = {}

    def add(self, **fields) -> Product:
        product = Product(id=fields.pop("id", None) or uuid4(), **fields)
        self.products[product.id] = product
        return product

    def get_product(self, organization_id, product_id):
        return self.products.get(product_id)


class FakePaymentGateway:
    def __init__(self):
        self.charged: list[UUID] = []
        self.decline_with: str | None = None
        self.raise_with: Exception | None = None

    def charge(self, invoice):
        if self.raise_with is not None:
            raise self.raise_with
        if self.decline_with is not None:
            return ChargeResult(success=False, error=self.decline_with)
        self.charged.append(invoice.id)
        return ChargeResult(success=True, external_transaction_id=f"ch_{len(self.charged)}")

    def create_payment_link(self, invoice):
        return f"https://pay.example.com/{invoice.id}?amount={invoice.amount_due}"


class FakeMailer:
    def __init__(self):
        self.sent: list[tuple] = []
        self.raise_with: Exception | None = None

    def send(self, document, subject, message, cc_emails=()):
        if self.raise_with is not None:
            raise self.raise_with
        self.sent.append((document, subject, message, tuple(cc_emails)))
        return DeliveryResult(email_sent=True)


@pytest.fixture
def contacts():
    return FakeContactDirectory()


@pytest.fixture
def products():
    return FakeProductCatalog()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def mailer():
    return FakeMailer()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def invoice_service(session, clock, settings, contacts, products, gateway, mailer):
    return InvoiceService(
        session,
        clock=clock,
        settings=settings,
        contacts=contacts,
        products=products,
        gateway=gateway,
        mailer=mailer,
    )


@pytest.fixture
def recurring_service(session, clock, settings, contacts, mailer):
    return RecurringService(
        session, clock=clock, settings=settings, contacts=contacts, mailer=mailer
    )


@pytest.fixture
def estimate_service(session, clock, settings, contacts, mailer):
    return EstimateService(
        session, clock=clock, settings=settings, contacts=contacts, mailer=mailer
    )


# =============================================================================
# Document data
# =============================================================================


@pytest.fixture
def customer() -> CustomerSnapshot:
    return CustomerSnapshot(name="Ada Lovelace", email="ada@example.com")


@pytest.fixture
def consulting_items() -> list[LineItem]:
    """Two named items (100.00 + 50.00) and one blank row."""
    return [
        LineItem(name="Consulting", quantity=2, unit_price=Decimal("50.00")),
        LineItem(name="Setup fee", quantity=1, unit_price=Decimal("50.00")),
        LineItem(name="  ", quantity=3, unit_price=Decimal("999.00")),
    ]


@pytest.fixture
def jan_31() -> date:
    return date(2024, 1, 31)
