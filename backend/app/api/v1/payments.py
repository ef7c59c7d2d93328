import json
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user, require_roles
from app.core.config import get_settings
from app.core.dependencies import get_db
from app.core.feature_flags import ensure_payments_enabled
from app.models.service_request import ServiceRequest
from app.schemas.payment import (
    CheckoutCreate,
    CheckoutOut,
    PaymentListResponse,
    PaymentOut,
    PaymentStatsOut,
    PaymentStatus,
    RefundRequest,
)
from app.services import payment_service
from app.services.request_service import current_quote, get_visible_request
from app.services.transition_service import (
    ENTITY_SYSTEM,
    STRIPE_ACTOR,
    SYSTEM_ENTITY_ID,
    Actor,
    actor_from_request,
    create_audit_log,
)
from app.utils.pdf_gen import build_payment_receipt
from app.utils.rate_limit import get_client_ip, get_user_agent

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payments/checkout", response_model=CheckoutOut, status_code=201)
async def create_checkout(
    payload: CheckoutCreate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_payments_enabled()
    service_request = get_visible_request(db, payload.service_request_id, current_user)
    if not current_user.is_staff and str(service_request.customer_id) != str(current_user.id):
        raise HTTPException(403, "Forbidden")

    try:
        payment, reused = payment_service.create_checkout(
            db,
            service_request,
            actor_from_request(request, current_user),
            customer_email=current_user.email if current_user.role == "customer" else None,
        )
    except HTTPException:
        db.rollback()
        raise
    db.commit()
    db.refresh(payment)
    return CheckoutOut(
        payment_id=str(payment.id),
        checkout_url=payment.checkout_url,
        provider_order_id=payment.provider_order_id,
        amount=float(payment.amount),
        currency=payment.currency,
        receipt=payment.receipt,
        reused=reused,
    )


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    settings = get_settings()
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not settings.stripe_webhook_secret:
        if not settings.allow_insecure_webhooks:
            raise HTTPException(503, "Payments are not configured")
    else:
        try:
            stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
        except ValueError as exc:
            raise HTTPException(400, "Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            create_audit_log(
                db,
                entity_type=ENTITY_SYSTEM,
                entity_id=SYSTEM_ENTITY_ID,
                action="STRIPE_SIGNATURE_INVALID",
                old_value=None,
                new_value=None,
                actor_type=STRIPE_ACTOR.role,
                actor_id=None,
                ip_address=get_client_ip(request),
                user_agent=get_user_agent(request),
                metadata={"path": request.url.path},
            )
            db.commit()
            raise HTTPException(400, "Invalid signature") from exc

    # Handle the verified body as plain JSON.
    try:
        event = json.loads(payload or b"{}")
    except ValueError as exc:
        raise HTTPException(400, "Invalid payload") from exc
    if not isinstance(event, dict):
        raise HTTPException(400, "Invalid payload")

    actor = Actor(
        role=STRIPE_ACTOR.role,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    status = payment_service.handle_stripe_event(db, event, actor)
    db.commit()
    logger.info("Stripe event %s processed status=%s", event.get("type"), status)
    return {"received": True}


@router.get("/payments", response_model=PaymentListResponse)
async def list_payments(
    status: Optional[PaymentStatus] = None,
    service_request_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items = payment_service.list_payments(
        db, current_user, status=status, service_request_id=service_request_id, limit=limit
    )
    return PaymentListResponse(
        items=[PaymentOut(**payment_service.payment_to_out(item)) for item in items],
        total=len(items),
    )


@router.get("/payments/stats", response_model=PaymentStatsOut)
async def get_payment_stats(
    current_user: CurrentUser = Depends(require_roles("admin", "service")),
    db: Session = Depends(get_db),
):
    return PaymentStatsOut(**payment_service.payment_stats(db))


@router.get("/payments/{payment_id}", response_model=PaymentOut)
async def get_payment(
    payment_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payment = payment_service.get_payment_or_404(db, payment_id)
    payment_service.ensure_payment_access(payment, current_user)
    return PaymentOut(**payment_service.payment_to_out(payment))


@router.post("/payments/{payment_id}/refund", response_model=PaymentOut)
async def refund_payment(
    payment_id: str,
    payload: RefundRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("admin")),
    db: Session = Depends(get_db),
):
    ensure_payments_enabled()
    payment = payment_service.get_payment_or_404(db, payment_id)
    actor = actor_from_request(request, current_user)
    try:
        payment_service.refund_payment(db, payment, actor, amount=payload.amount, reason=payload.reason)
    except HTTPException as exc:
        db.rollback()
        if exc.status_code == 502:
            create_audit_log(
                db,
                entity_type="payment",
                entity_id=str(payment.id),
                action="PAYMENT_REFUND_FAILED",
                old_value=None,
                new_value=None,
                actor_type=actor.role,
                actor_id=actor.id,
                actor_email=actor.email,
                ip_address=actor.ip_address,
                user_agent=actor.user_agent,
                metadata={"amount": payload.amount},
            )
            db.commit()
        raise
    db.commit()
    db.refresh(payment)
    return PaymentOut(**payment_service.payment_to_out(payment))


@router.get("/payments/{payment_id}/receipt")
async def download_receipt(
    payment_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payment = payment_service.get_payment_or_404(db, payment_id)
    payment_service.ensure_payment_access(payment, current_user)
    if payment.status not in {PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value}:
        raise HTTPException(409, "Receipts are only available for completed payments")
    service_request = db.get(ServiceRequest, payment.service_request_id)
    if service_request is None:
        raise HTTPException(404, "Service request not found")

    pdf_bytes = build_payment_receipt(payment, service_request, current_quote(service_request))
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{payment.receipt}.pdf"'},
    )
