import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from app.models.service_request import Payment, Quote, ServiceRequest
from app.utils.pdf_gen import build_payment_receipt


def _fixtures(refunded=False):
    service_request = ServiceRequest(
        id=uuid.uuid4(),
        customer_id=uuid.uuid4(),
        customer_name="Asha Patel",
        address="12 Farm Road, Pune",
        service_center="Maharashtra",
        serial_number="EN-10023",
        product_type="Energizer Product",
        purchase_date=date(2024, 5, 1),
        fault_description="No pulse",
        status="Completed",
    )
    quote = Quote(
        id=uuid.uuid4(),
        service_request_id=service_request.id,
        items=[{"description": "Replace transformer", "cost": 1200, "currency": "INR"}],
        total_cost=Decimal("1200"),
        currency="INR",
        is_approved=True,
    )
    payment = Payment(
        id=uuid.uuid4(),
        service_request_id=service_request.id,
        customer_id=service_request.customer_id,
        provider="stripe",
        receipt="receipt_test_1",
        amount=Decimal("1200"),
        currency="INR",
        status="refunded" if refunded else "captured",
        method="card",
        captured_at=datetime(2026, 1, 5, 10, 30, tzinfo=timezone.utc),
        created_at=datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc),
    )
    if refunded:
        payment.refund_amount = Decimal("200")
    return payment, service_request, quote


def test_receipt_is_a_pdf():
    payment, service_request, quote = _fixtures()
    pdf = build_payment_receipt(payment, service_request, quote)
    assert pdf.startswith(b"%PDF")
    assert len(pdf) > 1000


def test_receipt_without_quote_and_with_refund():
    payment, service_request, _ = _fixtures(refunded=True)
    pdf = build_payment_receipt(payment, service_request, None)
    assert pdf.startswith(b"%PDF")
