"""Service request operations: intake, status updates, quotes, EPR steps,
complaints and feedback.

Every mutating function only stages changes on the session; the caller commits
once, so a quote and the status move it triggers land in the same transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException
from sqlalchemy import String, cast, func, or_
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser
from app.core.config import get_settings
from app.core.image_processing import process_photo
from app.core.storage import upload_request_photo
from app.models.service_request import Complaint, Feedback, Quote, ServiceRequest
from app.schemas.service_request import (
    AuditEntryType,
    Currency,
    EPRStatus,
    EPRStatusUpdate,
    QuoteCreate,
    ServiceRequestCreate,
    Status,
)
from app.schemas.support import ComplaintCreate, FeedbackCreate, NotificationType
from app.services.notification_service import notify_customer, notify_status_change
from app.services.transition_service import (
    ENTITY_COMPLAINT,
    ENTITY_SERVICE_REQUEST,
    MAIN_TRANSITIONS,
    QUOTE_DECISION_TRANSITIONS,
    Actor,
    apply_epr_transition,
    apply_transition,
    as_utc,
    can_transition,
    epr_status_for_quote_decision,
    list_audit_entries,
    list_epr_timeline,
    record_event,
)

logger = logging.getLogger(__name__)

# EPR works on units that have at least reached diagnosis.
EPR_VISIBLE_STATUSES = [status.value for status in Status if status != Status.RECEIVED]
COMPLAINT_ELIGIBLE_STATUSES = {Status.COMPLETED.value, Status.CANCELLED.value}
INTAKE_ROLES = {"customer", "cpr", "service", "admin", "channel_partner", "system_integrator"}
QUOTE_ROLES = {"service", "admin", "epr"}
ALL_REQUESTS_ROLES = {"admin", "service", "cpr"}
QR_CODE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=150x150&data=PaymentFor{request_id}Amount{total}"


def parse_id(value: str, label: str = "Record") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise HTTPException(404, f"{label} not found")


def money(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


def get_request_or_404(db: Session, request_id: str) -> ServiceRequest:
    service_request = db.get(ServiceRequest, parse_id(request_id, "Service request"))
    if not service_request:
        raise HTTPException(404, "Service request not found")
    return service_request


def can_view_request(service_request: ServiceRequest, user: CurrentUser) -> bool:
    if user.role in ALL_REQUESTS_ROLES:
        return True
    if user.role == "epr":
        return service_request.status in EPR_VISIBLE_STATUSES
    return str(service_request.customer_id) == str(user.id)


def ensure_request_access(service_request: ServiceRequest, user: CurrentUser) -> None:
    if not can_view_request(service_request, user):
        raise HTTPException(403, "Forbidden")


def get_visible_request(db: Session, request_id: str, user: CurrentUser) -> ServiceRequest:
    service_request = get_request_or_404(db, request_id)
    ensure_request_access(service_request, user)
    return service_request


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def current_quote(service_request: ServiceRequest) -> Optional[Quote]:
    return service_request.quotes[-1] if service_request.quotes else None


def quote_to_out(quote: Optional[Quote]) -> Optional[dict[str, Any]]:
    if quote is None:
        return None
    return {
        "id": str(quote.id),
        "items": quote.items or [],
        "total_cost": money(quote.total_cost),
        "currency": quote.currency,
        "is_approved": quote.is_approved,
        "payment_qr_code_url": quote.payment_qr_code_url,
        "created_by": quote.created_by,
        "decided_at": as_utc(quote.decided_at),
        "created_at": as_utc(quote.created_at),
    }


def request_to_out(service_request: ServiceRequest) -> dict[str, Any]:
    return {
        "id": str(service_request.id),
        "customer_id": str(service_request.customer_id),
        "customer_name": service_request.customer_name,
        "customer_phone": service_request.customer_phone,
        "address": service_request.address,
        "service_center": service_request.service_center,
        "serial_number": service_request.serial_number,
        "product_type": service_request.product_type,
        "product_details": service_request.product_details,
        "purchase_date": service_request.purchase_date,
        "fault_description": service_request.fault_description,
        "image_urls": service_request.image_urls or [],
        "geolocation": service_request.geolocation,
        "is_warranty_claim": bool(service_request.is_warranty_claim),
        "status": service_request.status,
        "assigned_technician": service_request.assigned_technician,
        "assigned_to": str(service_request.assigned_to) if service_request.assigned_to else None,
        "notes": service_request.notes,
        "current_epr_status": service_request.current_epr_status,
        "epr_cost_estimation": money(service_request.epr_cost_estimation),
        "epr_cost_estimation_currency": service_request.epr_cost_estimation_currency,
        "payment_required": bool(service_request.payment_required),
        "payment_completed": bool(service_request.payment_completed),
        "quote": quote_to_out(current_quote(service_request)),
        "created_at": as_utc(service_request.created_at),
        "updated_at": as_utc(service_request.updated_at),
    }


def request_detail(db: Session, service_request: ServiceRequest) -> dict[str, Any]:
    out = request_to_out(service_request)
    entity_id = str(service_request.id)
    out["audit_log"] = list_audit_entries(db, ENTITY_SERVICE_REQUEST, entity_id)
    out["epr_timeline"] = list_epr_timeline(db, ENTITY_SERVICE_REQUEST, entity_id)
    return out


# ---------------------------------------------------------------------------
# Intake and listing
# ---------------------------------------------------------------------------


def create_service_request(
    db: Session,
    payload: ServiceRequestCreate,
    user: CurrentUser,
    actor: Actor,
) -> ServiceRequest:
    if user.role not in INTAKE_ROLES:
        raise HTTPException(403, "Forbidden")

    customer_id = user.id
    if payload.customer_id and payload.customer_id != user.id:
        if user.role not in ALL_REQUESTS_ROLES:
            raise HTTPException(403, "Only staff can file requests for another customer")
        customer_id = str(parse_id(payload.customer_id, "Customer"))

    service_request = ServiceRequest(
        customer_id=customer_id,
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
        address=payload.address,
        service_center=payload.service_center,
        serial_number=payload.serial_number,
        product_type=payload.product_type.value,
        product_details={
            "model": payload.product_model,
            "serial_number": payload.serial_number,
            "purchase_date": payload.purchase_date.isoformat(),
            "warranty_status": "In Warranty" if payload.is_warranty_claim else "Out of Warranty",
        },
        purchase_date=payload.purchase_date,
        fault_description=payload.fault_description,
        image_urls=[],
        geolocation=payload.geolocation,
        is_warranty_claim=payload.is_warranty_claim,
        status=Status.RECEIVED.value,
    )
    db.add(service_request)
    db.flush()

    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action="REQUEST_CREATED",
        actor=actor,
        message="Request created",
        entry_type=AuditEntryType.STATUS_CHANGE,
        new_value={"status": Status.RECEIVED.value},
        extra={"customer_phone": payload.customer_phone},
    )
    logger.info("Service request created id=%s product=%s", service_request.id, service_request.product_type)
    return service_request


def _search_filter(term: str):
    like = f"%{term.lower()}%"
    return or_(
        func.lower(ServiceRequest.serial_number).like(like),
        func.lower(ServiceRequest.customer_name).like(like),
        func.lower(cast(ServiceRequest.id, String)).like(like),
    )


def visible_requests_query(db: Session, user: CurrentUser):
    query = db.query(ServiceRequest)
    if user.role in ALL_REQUESTS_ROLES:
        return query
    if user.role == "epr":
        return query.filter(ServiceRequest.status.in_(EPR_VISIBLE_STATUSES))
    return query.filter(ServiceRequest.customer_id == user.id)


def list_service_requests(
    db: Session,
    user: CurrentUser,
    *,
    search: Optional[str] = None,
    status: Optional[Status] = None,
    product_type: Optional[str] = None,
    epr_status: Optional[EPRStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ServiceRequest], int]:
    query = visible_requests_query(db, user)
    if search and search.strip():
        query = query.filter(_search_filter(search.strip()))
    if status is not None:
        query = query.filter(ServiceRequest.status == status.value)
    if product_type:
        query = query.filter(ServiceRequest.product_type == product_type)
    if epr_status is not None:
        query = query.filter(ServiceRequest.current_epr_status == epr_status.value)

    total = query.count()
    items = (
        query.order_by(ServiceRequest.created_at.desc(), ServiceRequest.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total


# ---------------------------------------------------------------------------
# Photos and assignment
# ---------------------------------------------------------------------------


@dataclass
class PhotoUpload:
    filename: Optional[str]
    content: bytes
    content_type: Optional[str]


def add_request_photos(
    db: Session,
    service_request: ServiceRequest,
    photos: list[PhotoUpload],
    actor: Actor,
) -> list[str]:
    settings = get_settings()
    existing = list(service_request.image_urls or [])
    if not photos:
        raise HTTPException(400, "No photos uploaded")
    if len(existing) + len(photos) > settings.max_request_images:
        raise HTTPException(400, f"A request can have at most {settings.max_request_images} photos")

    # Validate everything before uploading anything.
    processed = [
        process_photo(
            photo.content,
            filename=photo.filename,
            content_type=photo.content_type,
            max_bytes=settings.max_image_bytes,
        )
        for photo in photos
    ]

    urls = []
    for photo, result in zip(photos, processed):
        uploaded = upload_request_photo(
            request_id=str(service_request.id),
            filename=photo.filename,
            content=result.original_bytes,
            content_type=result.content_type,
            thumbnail_bytes=result.thumbnail_bytes,
        )
        urls.append(uploaded.url)

    service_request.image_urls = existing + urls
    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action="PHOTOS_ADDED",
        actor=actor,
        message=f"{len(urls)} photo(s) added",
        extra={"count": len(urls)},
    )
    return urls


def update_assignment(
    db: Session,
    service_request: ServiceRequest,
    *,
    assigned_technician: Optional[str],
    assigned_to: Optional[str],
    notes: Optional[str],
    actor: Actor,
) -> None:
    old = {
        "assigned_technician": service_request.assigned_technician,
        "assigned_to": str(service_request.assigned_to) if service_request.assigned_to else None,
    }
    if assigned_technician is not None:
        service_request.assigned_technician = assigned_technician.strip() or None
    if assigned_to is not None:
        service_request.assigned_to = parse_id(assigned_to, "Assignee") if assigned_to else None
    if notes is not None:
        service_request.notes = notes
    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action="ASSIGNMENT_UPDATED",
        actor=actor,
        message="Assignment updated",
        old_value=old,
        new_value={
            "assigned_technician": service_request.assigned_technician,
            "assigned_to": str(service_request.assigned_to) if service_request.assigned_to else None,
        },
    )


# ---------------------------------------------------------------------------
# Status, EPR and quotes
# ---------------------------------------------------------------------------


def update_request_status(
    db: Session,
    service_request: ServiceRequest,
    new_status: Status,
    actor: Actor,
    note: Optional[str] = None,
) -> bool:
    pending = current_quote(service_request)
    current = Status(service_request.status)
    skips_quote = (
        current == Status.AWAITING_APPROVAL
        and new_status not in {Status.AWAITING_APPROVAL, Status.CANCELLED}
        and pending is not None
        and pending.is_approved is None
    )
    if skips_quote and can_transition(MAIN_TRANSITIONS, current, new_status, actor.role):
        raise HTTPException(409, "The current quote is still awaiting a decision")
    changed = apply_transition(db, service_request=service_request, new_status=new_status, actor=actor, note=note)
    if changed:
        notify_status_change(db, service_request)
    return changed


def update_epr_status(
    db: Session,
    service_request: ServiceRequest,
    payload: EPRStatusUpdate,
    actor: Actor,
) -> bool:
    previous_status = service_request.status
    changed = apply_epr_transition(
        db,
        service_request=service_request,
        new_epr_status=payload.epr_status,
        actor=actor,
        details=payload.details,
        cost_estimation=payload.cost_estimation,
        currency=payload.cost_estimation_currency,
        approval_decision=payload.approval_decision,
    )
    if not changed:
        return False
    notify_customer(
        db,
        customer_id=str(service_request.customer_id),
        type=NotificationType.EPR,
        title="Cost estimation update",
        message=f"EPR status: {payload.epr_status.value}",
        service_request_id=str(service_request.id),
    )
    if service_request.status != previous_status:
        notify_status_change(db, service_request)
    return True


def mark_awaiting_approval(db: Session, service_request: ServiceRequest, actor: Actor) -> bool:
    changed = apply_transition(
        db,
        service_request=service_request,
        new_status=Status.AWAITING_APPROVAL,
        actor=actor,
    )
    if service_request.current_epr_status == EPRStatus.COST_ESTIMATION_PREPARATION.value:
        changed = (
            apply_epr_transition(
                db,
                service_request=service_request,
                new_epr_status=EPRStatus.AWAITING_APPROVAL,
                actor=actor,
                details="Sent to customer for approval",
            )
            or changed
        )
    if changed:
        notify_status_change(db, service_request)
    return changed


def add_quote_to_request(
    db: Session,
    service_request: ServiceRequest,
    payload: QuoteCreate,
    actor: Actor,
) -> Quote:
    if actor.role not in QUOTE_ROLES:
        raise HTTPException(403, "Forbidden")
    pending = current_quote(service_request)
    if pending is not None and pending.is_approved is None:
        raise HTTPException(409, "The current quote is still awaiting a decision")

    total = sum((Decimal(str(item.cost)) for item in payload.items), Decimal("0"))
    estimate_currency = Currency(service_request.epr_cost_estimation_currency or Currency.INR.value)
    currency = payload.resolved_currency(estimate_currency).value

    apply_transition(
        db,
        service_request=service_request,
        new_status=Status.AWAITING_APPROVAL,
        actor=actor,
        metadata={"reason": "quote_generated"},
    )
    if service_request.current_epr_status == EPRStatus.COST_ESTIMATION_PREPARATION.value:
        apply_epr_transition(
            db,
            service_request=service_request,
            new_epr_status=EPRStatus.AWAITING_APPROVAL,
            actor=actor,
            details="Quote sent to customer",
        )

    quote = Quote(
        service_request_id=service_request.id,
        items=payload.stored_items(currency),
        total_cost=total,
        currency=currency,
        is_approved=None,
        payment_qr_code_url=QR_CODE_URL.format(request_id=service_request.id, total=total),
        created_by=actor.label,
    )
    service_request.quotes.append(quote)
    service_request.payment_required = total > 0

    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action="QUOTE_CREATED",
        actor=actor,
        message=f"Quote generated: {currency} {total:.2f}",
        entry_type=AuditEntryType.QUOTE_GENERATED,
        new_value={"total_cost": float(total), "currency": currency},
    )
    notify_customer(
        db,
        customer_id=str(service_request.customer_id),
        type=NotificationType.QUOTE,
        title="New quote available",
        message=f"A quote of {currency} {total:.2f} is waiting for your approval.",
        service_request_id=str(service_request.id),
    )
    return quote


def decide_quote(
    db: Session,
    service_request: ServiceRequest,
    approved: bool,
    actor: Actor,
) -> Quote:
    if actor.role not in {"customer", "service", "admin"}:
        raise HTTPException(403, "Forbidden")
    quote = current_quote(service_request)
    if quote is None:
        raise HTTPException(404, "Quote not found")
    # is_approved only ever leaves null once.
    if quote.is_approved is not None:
        raise HTTPException(409, "Quote has already been decided")
    if service_request.status != Status.AWAITING_APPROVAL.value:
        raise HTTPException(409, "Request is not awaiting approval")

    decision = "approved" if approved else "declined"
    quote.is_approved = approved
    quote.decided_at = datetime.now(timezone.utc)
    quote.decided_by = actor.id

    apply_transition(
        db,
        service_request=service_request,
        new_status=Status.REPAIR_IN_PROGRESS if approved else Status.CANCELLED,
        actor=actor,
        metadata={"quote_decision": decision},
        table=QUOTE_DECISION_TRANSITIONS,
    )
    if service_request.current_epr_status == EPRStatus.AWAITING_APPROVAL.value:
        apply_epr_transition(
            db,
            service_request=service_request,
            new_epr_status=epr_status_for_quote_decision(approved),
            actor=actor,
            details=f"Customer {decision} the quote",
            approval_decision=decision,
        )
    if not approved:
        service_request.payment_required = False

    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action="QUOTE_DECISION",
        actor=actor,
        message=f"Quote {decision}",
        entry_type=AuditEntryType.QUOTE_DECISION,
        old_value={"is_approved": None},
        new_value={"is_approved": approved},
        extra={"quote_decision": decision, "quote_id": str(quote.id)},
    )
    notify_status_change(db, service_request)
    return quote


# ---------------------------------------------------------------------------
# Complaints and feedback
# ---------------------------------------------------------------------------


def complaint_to_out(complaint: Complaint) -> dict[str, Any]:
    service_request = complaint.service_request
    return {
        "id": str(complaint.id),
        "request_id": str(complaint.request_id),
        "customer_id": str(complaint.customer_id),
        "customer_name": complaint.customer_name,
        "complaint_details": complaint.complaint_details,
        "is_resolved": bool(complaint.is_resolved),
        "resolved_at": as_utc(complaint.resolved_at),
        "created_at": as_utc(complaint.created_at),
        "serial_number": service_request.serial_number if service_request else None,
        "product_type": service_request.product_type if service_request else None,
        "request_status": service_request.status if service_request else None,
    }


def create_complaint(db: Session, payload: ComplaintCreate, user: CurrentUser, actor: Actor) -> Complaint:
    service_request = get_request_or_404(db, payload.request_id)
    if str(service_request.customer_id) != str(user.id):
        raise HTTPException(403, "Complaints can only be raised on your own requests")
    if service_request.status not in COMPLAINT_ELIGIBLE_STATUSES:
        raise HTTPException(400, "Complaints can only be raised on completed or cancelled requests")

    complaint = Complaint(
        request_id=service_request.id,
        customer_id=user.id,
        customer_name=user.full_name or service_request.customer_name,
        complaint_details=payload.complaint_details,
        is_resolved=False,
    )
    complaint.service_request = service_request
    db.add(complaint)
    db.flush()

    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action="COMPLAINT_CREATED",
        actor=actor,
        message="Complaint submitted",
        entry_type=AuditEntryType.COMPLAINT,
        extra={"complaint_id": str(complaint.id)},
    )
    return complaint


def list_complaints(db: Session, user: CurrentUser, *, resolved: Optional[bool] = None) -> list[Complaint]:
    query = db.query(Complaint)
    if user.role not in ALL_REQUESTS_ROLES | {"epr"}:
        query = query.filter(Complaint.customer_id == user.id)
    if resolved is not None:
        query = query.filter(Complaint.is_resolved.is_(resolved))
    return query.order_by(Complaint.created_at.desc()).all()


def set_complaint_resolved(db: Session, complaint_id: str, resolved: bool, actor: Actor) -> Complaint:
    complaint = db.get(Complaint, parse_id(complaint_id, "Complaint"))
    if not complaint:
        raise HTTPException(404, "Complaint not found")
    if bool(complaint.is_resolved) == resolved:
        return complaint
    complaint.is_resolved = resolved
    complaint.resolved_at = datetime.now(timezone.utc) if resolved else None
    record_event(
        db,
        entity_type=ENTITY_COMPLAINT,
        entity_id=str(complaint.id),
        action="COMPLAINT_RESOLVED" if resolved else "COMPLAINT_REOPENED",
        actor=actor,
        message="Complaint resolved" if resolved else "Complaint reopened",
        entry_type=AuditEntryType.COMPLAINT,
        old_value={"is_resolved": not resolved},
        new_value={"is_resolved": resolved},
    )
    notify_customer(
        db,
        customer_id=str(complaint.customer_id),
        type=NotificationType.COMPLAINT,
        title="Complaint update",
        message="Your complaint has been resolved." if resolved else "Your complaint has been reopened.",
        service_request_id=str(complaint.request_id),
    )
    return complaint


def feedback_to_out(feedback: Feedback) -> dict[str, Any]:
    return {
        "id": str(feedback.id),
        "service_request_id": str(feedback.service_request_id),
        "customer_id": str(feedback.customer_id),
        "rating": feedback.rating,
        "comment": feedback.comment,
        "created_at": as_utc(feedback.created_at),
    }


def create_feedback(db: Session, payload: FeedbackCreate, user: CurrentUser, actor: Actor) -> Feedback:
    service_request = get_request_or_404(db, payload.service_request_id)
    if str(service_request.customer_id) != str(user.id):
        raise HTTPException(403, "Feedback can only be left on your own requests")
    if service_request.status != Status.COMPLETED.value:
        raise HTTPException(400, "Feedback can only be left on completed requests")
    existing = db.query(Feedback).filter(Feedback.service_request_id == service_request.id).first()
    if existing is not None:
        raise HTTPException(409, "Feedback already submitted for this request")

    feedback = Feedback(
        service_request_id=service_request.id,
        customer_id=user.id,
        rating=payload.rating,
        comment=(payload.comment or "").strip() or None,
    )
    db.add(feedback)
    db.flush()
    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action="FEEDBACK_SUBMITTED",
        actor=actor,
        message=f"Feedback submitted ({payload.rating}/5)",
        extra={"rating": payload.rating},
    )
    return feedback


def list_feedback(db: Session, *, limit: int = 100) -> list[Feedback]:
    return db.query(Feedback).order_by(Feedback.created_at.desc()).limit(limit).all()
