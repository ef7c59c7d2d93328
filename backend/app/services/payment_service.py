"""Stripe checkout, webhook reconciliation, refunds and payment statistics."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import stripe
from fastapi import HTTPException
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser
from app.core.config import get_settings
from app.models.service_request import Payment, ServiceRequest
from app.schemas.payment import PaymentStatus
from app.schemas.service_request import AuditEntryType
from app.schemas.support import NotificationType
from app.services.notification_service import notify_customer
from app.services.request_service import current_quote, money, parse_id
from app.services.transition_service import (
    ENTITY_PAYMENT,
    ENTITY_SERVICE_REQUEST,
    Actor,
    as_utc,
    record_event,
)

logger = logging.getLogger(__name__)

STAFF_PAYMENT_ROLES = {"admin", "service"}


def _to_minor_units(amount: Decimal) -> int:
    return int((amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) * 100).to_integral_value())


def _configure_stripe() -> None:
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise HTTPException(503, "Payments are not configured")
    stripe.api_key = settings.stripe_secret_key


def payment_to_out(payment: Payment) -> dict[str, Any]:
    return {
        "id": str(payment.id),
        "service_request_id": str(payment.service_request_id),
        "quote_id": str(payment.quote_id) if payment.quote_id else None,
        "customer_id": str(payment.customer_id),
        "provider": payment.provider,
        "provider_order_id": payment.provider_order_id,
        "provider_payment_id": payment.provider_payment_id,
        "receipt": payment.receipt,
        "amount": money(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "method": payment.method,
        "failure_reason": payment.failure_reason,
        "refund_amount": money(payment.refund_amount),
        "refund_reason": payment.refund_reason,
        "created_at": as_utc(payment.created_at),
        "captured_at": as_utc(payment.captured_at),
    }


def get_payment_or_404(db: Session, payment_id: str) -> Payment:
    payment = db.get(Payment, parse_id(payment_id, "Payment"))
    if not payment:
        raise HTTPException(404, "Payment not found")
    return payment


def ensure_payment_access(payment: Payment, user: CurrentUser) -> None:
    if user.role in STAFF_PAYMENT_ROLES:
        return
    if str(payment.customer_id) == str(user.id):
        return
    raise HTTPException(403, "Forbidden")


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


def create_checkout(
    db: Session,
    service_request: ServiceRequest,
    actor: Actor,
    *,
    customer_email: Optional[str] = None,
) -> tuple[Payment, bool]:
    """Open (or reuse) a Stripe Checkout session for the approved quote.

    Returns ``(payment, reused)``. A pending payment for the same quote is
    returned as-is instead of opening a second session.
    """
    quote = current_quote(service_request)
    if quote is None or quote.is_approved is not True:
        raise HTTPException(400, "An approved quote is required before payment")
    if service_request.payment_completed:
        raise HTTPException(409, "Payment already completed")

    existing = (
        db.query(Payment)
        .filter(
            Payment.service_request_id == service_request.id,
            Payment.quote_id == quote.id,
            Payment.status == PaymentStatus.PENDING.value,
        )
        .order_by(Payment.created_at.desc())
        .first()
    )
    if existing is not None and existing.checkout_url:
        return existing, True

    _configure_stripe()
    settings = get_settings()

    amount = Decimal(str(quote.total_cost)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    unit_amount = _to_minor_units(amount)
    if unit_amount <= 0:
        raise HTTPException(400, "Quote total must be greater than zero")

    now = datetime.now(timezone.utc)
    payment = existing or Payment(
        service_request_id=service_request.id,
        quote_id=quote.id,
        customer_id=service_request.customer_id,
        provider="stripe",
        receipt=f"receipt_{str(service_request.id)[:8]}_{int(now.timestamp())}",
        amount=amount,
        currency=quote.currency,
        status=PaymentStatus.PENDING.value,
    )
    if existing is None:
        db.add(payment)
        db.flush()

    base_url = settings.public_app_url.rstrip("/")
    metadata = {
        "payment_id": str(payment.id),
        "service_request_id": str(service_request.id),
        "receipt": payment.receipt,
    }
    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            success_url=f"{base_url}/requests/{service_request.id}?payment=success",
            cancel_url=f"{base_url}/requests/{service_request.id}?payment=cancel",
            customer_email=customer_email,
            client_reference_id=str(payment.id),
            line_items=[
                {
                    "price_data": {
                        "currency": quote.currency.lower(),
                        "unit_amount": unit_amount,
                        "product_data": {"name": f"Repair of {service_request.product_type} {service_request.serial_number}"},
                    },
                    "quantity": 1,
                }
            ],
            payment_intent_data={"metadata": metadata},
            metadata=metadata,
            idempotency_key=f"checkout-{payment.id}",
        )
    except stripe.StripeError as exc:
        logger.warning("Stripe checkout failed for request_id=%s: %s", service_request.id, exc)
        raise HTTPException(502, "Payment gateway error") from exc

    payment.provider_order_id = session.id
    payment.checkout_url = session.url

    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action="PAYMENT_CREATED",
        actor=actor,
        message=f"Payment initiated: {payment.currency} {amount:.2f}",
        entry_type=AuditEntryType.PAYMENT,
        new_value={"payment_id": str(payment.id), "amount": float(amount), "currency": payment.currency},
    )
    return payment, False


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def _find_payment(db: Session, data_object: dict[str, Any]) -> Optional[Payment]:
    metadata = data_object.get("metadata") or {}
    payment_id = metadata.get("payment_id")
    if payment_id:
        try:
            payment = db.get(Payment, parse_id(payment_id, "Payment"))
        except HTTPException:
            payment = None
        if payment is not None:
            return payment
    object_id = data_object.get("id")
    if not object_id:
        return None
    return (
        db.query(Payment)
        .filter(
            Payment.provider == "stripe",
            (Payment.provider_order_id == object_id) | (Payment.provider_payment_id == object_id),
        )
        .first()
    )


def _mark_captured(db: Session, payment: Payment, data_object: dict[str, Any], actor: Actor) -> None:
    if payment.status == PaymentStatus.CAPTURED.value:
        return
    payment.status = PaymentStatus.CAPTURED.value
    payment.provider_payment_id = data_object.get("payment_intent") or payment.provider_payment_id
    method_types = data_object.get("payment_method_types") or []
    payment.method = method_types[0] if method_types else "card"
    payment.captured_at = datetime.now(timezone.utc)
    payment.raw_payload = {"id": data_object.get("id"), "amount_total": data_object.get("amount_total")}

    service_request = db.get(ServiceRequest, payment.service_request_id)
    if service_request is not None:
        service_request.payment_completed = True
        record_event(
            db,
            entity_type=ENTITY_SERVICE_REQUEST,
            entity_id=str(service_request.id),
            action="PAYMENT_CAPTURED",
            actor=actor,
            message=f"Payment received: {payment.currency} {money(payment.amount):.2f}",
            entry_type=AuditEntryType.PAYMENT,
            new_value={"payment_id": str(payment.id), "status": payment.status},
        )
    notify_customer(
        db,
        customer_id=str(payment.customer_id),
        type=NotificationType.PAYMENT,
        title="Payment successful",
        message=f"We received your payment of {payment.currency} {money(payment.amount):.2f}.",
        service_request_id=str(payment.service_request_id),
        payment_id=str(payment.id),
    )


def handle_stripe_event(db: Session, event: dict[str, Any], actor: Actor) -> Optional[str]:
    """Apply a verified Stripe event. Returns the resulting payment status, if any."""
    event_type = event.get("type")
    data_object = (event.get("data") or {}).get("object") or {}

    if event_type not in {
        "checkout.session.completed",
        "checkout.session.expired",
        "payment_intent.payment_failed",
    }:
        return None

    payment = _find_payment(db, data_object)
    if payment is None:
        logger.warning("Stripe event %s for unknown payment object=%s", event_type, data_object.get("id"))
        return None

    if event_type == "checkout.session.completed":
        if data_object.get("payment_status") not in (None, "paid"):
            return payment.status
        _mark_captured(db, payment, data_object, actor)
    elif event_type == "checkout.session.expired":
        if payment.status == PaymentStatus.PENDING.value:
            payment.status = PaymentStatus.CANCELLED.value
    elif event_type == "payment_intent.payment_failed":
        if payment.status in {PaymentStatus.PENDING.value, PaymentStatus.FAILED.value}:
            error = data_object.get("last_payment_error") or {}
            payment.status = PaymentStatus.FAILED.value
            payment.provider_payment_id = data_object.get("id") or payment.provider_payment_id
            payment.failure_reason = error.get("message") or "Payment failed"
            record_event(
                db,
                entity_type=ENTITY_PAYMENT,
                entity_id=str(payment.id),
                action="PAYMENT_FAILED",
                actor=actor,
                message="Payment failed",
                entry_type=AuditEntryType.PAYMENT,
                extra={"details": payment.failure_reason},
            )
            notify_customer(
                db,
                customer_id=str(payment.customer_id),
                type=NotificationType.PAYMENT,
                title="Payment failed",
                message=payment.failure_reason,
                service_request_id=str(payment.service_request_id),
                payment_id=str(payment.id),
            )
    return payment.status


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


def refund_payment(
    db: Session,
    payment: Payment,
    actor: Actor,
    *,
    amount: Optional[float] = None,
    reason: Optional[str] = None,
) -> Payment:
    if payment.status != PaymentStatus.CAPTURED.value:
        raise HTTPException(409, f"Only captured payments can be refunded (status: {payment.status})")
    if not payment.provider_payment_id:
        raise HTTPException(400, "Payment has no provider reference")

    refund_amount = Decimal(str(amount)) if amount is not None else Decimal(str(payment.amount))
    if refund_amount > Decimal(str(payment.amount)):
        raise HTTPException(400, "Refund exceeds the captured amount")

    _configure_stripe()
    try:
        refund = stripe.Refund.create(
            payment_intent=payment.provider_payment_id,
            amount=_to_minor_units(refund_amount),
            metadata={"payment_id": str(payment.id), "reason": reason or ""},
            idempotency_key=f"refund-{payment.id}",
        )
    except stripe.StripeError as exc:
        logger.warning("Stripe refund failed for payment_id=%s: %s", payment.id, exc)
        raise HTTPException(502, "Payment gateway error") from exc

    payment.status = PaymentStatus.REFUNDED.value
    payment.refund_amount = refund_amount
    payment.refund_reason = reason
    payment.provider_refund_id = refund.id
    if refund_amount >= Decimal(str(payment.amount)):
        service_request = db.get(ServiceRequest, payment.service_request_id)
        if service_request is not None:
            service_request.payment_completed = False

    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(payment.service_request_id),
        action="PAYMENT_REFUNDED",
        actor=actor,
        message=f"Payment refunded: {payment.currency} {refund_amount:.2f}",
        entry_type=AuditEntryType.PAYMENT,
        new_value={"payment_id": str(payment.id), "refund_amount": float(refund_amount)},
        extra={"details": reason},
    )
    notify_customer(
        db,
        customer_id=str(payment.customer_id),
        type=NotificationType.PAYMENT,
        title="Refund issued",
        message=f"A refund of {payment.currency} {refund_amount:.2f} has been issued.",
        service_request_id=str(payment.service_request_id),
        payment_id=str(payment.id),
    )
    return payment


# ---------------------------------------------------------------------------
# Listing and statistics
# ---------------------------------------------------------------------------


def list_payments(
    db: Session,
    user: CurrentUser,
    *,
    status: Optional[PaymentStatus] = None,
    service_request_id: Optional[str] = None,
    limit: int = 100,
) -> list[Payment]:
    query = db.query(Payment)
    if user.role not in STAFF_PAYMENT_ROLES:
        query = query.filter(Payment.customer_id == user.id)
    if status is not None:
        query = query.filter(Payment.status == status.value)
    if service_request_id:
        query = query.filter(Payment.service_request_id == parse_id(service_request_id, "Service request"))
    return query.order_by(Payment.created_at.desc()).limit(limit).all()


def _window_totals(db: Session, since: datetime) -> tuple[int, float]:
    captured_amount = case((Payment.status == PaymentStatus.CAPTURED.value, Payment.amount), else_=0)
    count, amount = (
        db.query(func.count(Payment.id), func.coalesce(func.sum(captured_amount), 0))
        .filter(Payment.created_at >= since)
        .one()
    )
    return int(count or 0), float(amount or 0)


def payment_stats(db: Session, *, now: Optional[datetime] = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    by_status = dict(db.query(Payment.status, func.count(Payment.id)).group_by(Payment.status).all())
    total = sum(by_status.values())
    captured_total = (
        db.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.status == PaymentStatus.CAPTURED.value)
        .scalar()
    )
    successful = int(by_status.get(PaymentStatus.CAPTURED.value, 0))

    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)
    today_count, today_amount = _window_totals(db, start_of_day)
    month_count, month_amount = _window_totals(db, start_of_month)

    return {
        "total_payments": total,
        "total_amount_captured": float(captured_total or 0),
        "successful_payments": successful,
        "pending_payments": int(by_status.get(PaymentStatus.PENDING.value, 0)),
        "failed_payments": int(by_status.get(PaymentStatus.FAILED.value, 0)),
        "refunded_payments": int(by_status.get(PaymentStatus.REFUNDED.value, 0)),
        "today_payments": today_count,
        "today_amount": today_amount,
        "monthly_payments": month_count,
        "monthly_amount": month_amount,
        "success_rate": round(successful * 100 / total, 1) if total else 0.0,
    }


def expire_stale_payments(db: Session, *, older_than: timedelta) -> int:
    cutoff = datetime.now(timezone.utc) - older_than
    stale = (
        db.query(Payment)
        .filter(Payment.status == PaymentStatus.PENDING.value, Payment.created_at < cutoff)
        .all()
    )
    for payment in stale:
        payment.status = PaymentStatus.CANCELLED.value
        payment.failure_reason = "Checkout expired"
    return len(stale)
