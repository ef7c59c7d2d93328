"""
Tests for recurring jobs: expire_pending_payments.

Covers:
  - Pending payments older than the expiry window become cancelled
  - Fresh pending payments stay pending
  - Captured payments are not affected
  - Running the job twice is a no-op the second time
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.models.service_request import Base, Payment, ServiceRequest
from app.services.recurring_jobs import expire_pending_payments, start_payment_expiry_worker


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def _payment(db, *, age_minutes: int, status: str = "pending") -> uuid.UUID:
    service_request = ServiceRequest(
        customer_id=uuid.uuid4(),
        customer_name="Test Client",
        address="1 Test Lane",
        service_center="Gujarat",
        serial_number=f"EN-{uuid.uuid4().hex[:6]}",
        product_type="Energizer Product",
        purchase_date=date(2024, 1, 1),
        fault_description="Dead",
    )
    db.add(service_request)
    db.flush()
    payment = Payment(
        service_request_id=service_request.id,
        customer_id=service_request.customer_id,
        receipt=f"receipt_{uuid.uuid4().hex[:8]}",
        amount=Decimal("100"),
        currency="INR",
        status=status,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
    )
    db.add(payment)
    db.commit()
    return payment.id


def test_expire_stale_pending_payment(db, monkeypatch):
    monkeypatch.setenv("PENDING_PAYMENT_EXPIRY_MINUTES", "60")
    get_settings.cache_clear()

    stale_id = _payment(db, age_minutes=90)
    fresh_id = _payment(db, age_minutes=5)

    count = expire_pending_payments(db)
    db.commit()

    assert count == 1
    stale = db.get(Payment, stale_id)
    assert stale.status == "cancelled"
    assert stale.failure_reason == "Checkout expired"
    assert db.get(Payment, fresh_id).status == "pending"


def test_captured_payments_are_not_touched(db):
    captured_id = _payment(db, age_minutes=600, status="captured")

    assert expire_pending_payments(db) == 0
    assert db.get(Payment, captured_id).status == "captured"


def test_expiry_is_idempotent(db):
    _payment(db, age_minutes=600)

    assert expire_pending_payments(db) == 1
    db.commit()
    assert expire_pending_payments(db) == 0


@pytest.mark.asyncio
async def test_worker_task_can_be_cancelled(monkeypatch):
    monkeypatch.setenv("ENABLE_RECURRING_JOBS", "false")
    get_settings.cache_clear()

    task = start_payment_expiry_worker(interval_seconds=1)
    assert not task.done()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert task.cancelled()
