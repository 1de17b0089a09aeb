"""
Shared fixtures: an app on in-memory SQLite, a controllable clock for the
outbox processor, and an invoice factory.
"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from propertyops import create_app
from propertyops.config import TestingConfig
from propertyops.models import db, Invoice, InvoiceLine, VatCode


class FakeClock:
    """Callable clock the processor reads instead of the wall clock."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def app():
    """Create Flask application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def clock(app):
    clock = FakeClock(datetime(2025, 3, 1, 9, 0, 0))
    app.extensions["outbox_processor"].clock = clock
    return clock


@pytest.fixture
def processor(app, clock):
    return app.extensions["outbox_processor"]


@pytest.fixture
def export_service(app):
    return app.extensions["billing_export_service"]


def make_invoice(customer_name="Acme AS", reference1="PO-4471", reference2="Fjordhotel Q1",
                 line_count=2, currency="NOK"):
    """Insert an invoice with `line_count` room lines at 1000.00 + 25% VAT each."""
    invoice = Invoice(
        customer_name=customer_name,
        reference1=reference1,
        reference2=reference2,
        currency=currency,
        status="DRAFT",
    )
    db.session.add(invoice)
    db.session.flush()

    subtotal = Decimal("0")
    vat_total = Decimal("0")
    for index in range(line_count):
        unit_price = Decimal("1000.00")
        vat_amount = Decimal("250.00")
        db.session.add(InvoiceLine(
            invoice_id=invoice.id,
            source_type="ROOM",
            description=f"Room night {index + 1}",
            quantity=1,
            unit_price=unit_price,
            vat_code=VatCode.VAT_25,
            vat_amount=vat_amount,
            line_total=unit_price + vat_amount,
            created_at=datetime(2025, 2, 1, 12, 0, index),
        ))
        subtotal += unit_price
        vat_total += vat_amount

    invoice.subtotal = subtotal
    invoice.vat_total = vat_total
    invoice.total = subtotal + vat_total
    db.session.commit()
    return invoice


@pytest.fixture
def invoice_factory(app):
    return make_invoice


@pytest.fixture
def run_ticks(processor, clock):
    """Run `count` processor passes, moving the clock past any backoff between them."""
    def _run(count, step=timedelta(hours=2)):
        results = []
        for _ in range(count):
            results.append(processor.run_once())
            clock.advance(seconds=step.total_seconds())
        return results
    return _run
