from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.core.auth import BULK_REQUESTER_ROLES, CurrentUser
from app.models.service_request import BulkEquipmentItem, BulkServiceRequest, Quote
from app.schemas.bulk_request import BulkItemUpdate, BulkRequestCreate, BulkStatus
from app.schemas.service_request import AuditEntryType, Currency, EPRStatus, EPRStatusUpdate, QuoteCreate
from app.services.request_service import QR_CODE_URL, money, parse_id, quote_to_out
from app.services.transition_service import (
    BULK_ORDER,
    ENTITY_BULK_REQUEST,
    EPR_TRANSITIONS,
    Actor,
    apply_bulk_epr_transition,
    apply_bulk_transition,
    as_utc,
    bulk_status_for_quote_decision,
    list_audit_entries,
    list_epr_timeline,
    record_event,
)

logger = logging.getLogger(__name__)

CREATE_ROLES = set(BULK_REQUESTER_ROLES) | {"admin"}
OPERATOR_ROLES = {"admin", "service", "epr"}
# A quote is decided by moving under_review to approved, so later statuses take no new quote.
QUOTABLE_STATUSES = {BulkStatus.PENDING.value, BulkStatus.UNDER_REVIEW.value}

PROGRESS_LABELS = {
    BulkStatus.PENDING: "Pending",
    BulkStatus.UNDER_REVIEW: "Under Review",
    BulkStatus.APPROVED: "Approved",
    BulkStatus.IN_PROGRESS: "In Progress",
    BulkStatus.COMPLETED: "Completed",
}


def get_bulk_or_404(db: Session, bulk_id: str) -> BulkServiceRequest:
    bulk_request = db.get(BulkServiceRequest, parse_id(bulk_id, "Bulk request"))
    if not bulk_request:
        raise HTTPException(404, "Bulk request not found")
    return bulk_request


def ensure_bulk_access(bulk_request: BulkServiceRequest, user: CurrentUser) -> None:
    if user.role in OPERATOR_ROLES:
        return
    if str(bulk_request.requester_id) == str(user.id):
        return
    raise HTTPException(403, "Forbidden")


def get_visible_bulk(db: Session, bulk_id: str, user: CurrentUser) -> BulkServiceRequest:
    bulk_request = get_bulk_or_404(db, bulk_id)
    ensure_bulk_access(bulk_request, user)
    return bulk_request


def bulk_progress(status: str) -> dict[str, Any]:
    """Step list for the progress bar; cancelled requests show no current step."""
    cancelled = status == BulkStatus.CANCELLED.value
    position = -1
    if not cancelled:
        position = [step.value for step in BULK_ORDER].index(status)
    steps = [
        {
            "status": step.value,
            "label": PROGRESS_LABELS[step],
            "completed": index <= position,
            "current": index == position,
        }
        for index, step in enumerate(BULK_ORDER)
    ]
    percent = 0 if cancelled else round((position + 1) * 100 / len(BULK_ORDER))
    return {"steps": steps, "percent": percent, "cancelled": cancelled}


def item_to_out(item: BulkEquipmentItem) -> dict[str, Any]:
    return {
        "id": str(item.id),
        "equipment_type": item.equipment_type,
        "equipment_model": item.equipment_model,
        "serial_number": item.serial_number,
        "quantity": item.quantity,
        "unit_price": money(item.unit_price),
        "total_price": money(item.total_price),
        "issue_description": item.issue_description,
        "issue_category": item.issue_category,
        "severity": item.severity,
        "item_status": item.item_status,
        "epr_status": item.epr_status,
        "epr_cost_estimation": money(item.epr_cost_estimation),
        "epr_cost_estimation_currency": item.epr_cost_estimation_currency,
    }


def bulk_to_out(bulk_request: BulkServiceRequest) -> dict[str, Any]:
    return {
        "id": str(bulk_request.id),
        "requester_id": str(bulk_request.requester_id),
        "requester_role": bulk_request.requester_role,
        "requester_name": bulk_request.requester_name,
        "company_name": bulk_request.company_name,
        "contact_phone": bulk_request.contact_phone,
        "contact_email": bulk_request.contact_email,
        "priority": bulk_request.priority,
        "status": bulk_request.status,
        "epr_status": bulk_request.epr_status,
        "epr_cost_estimation": money(bulk_request.epr_cost_estimation),
        "epr_cost_estimation_currency": bulk_request.epr_cost_estimation_currency,
        "estimated_total_value": money(bulk_request.estimated_total_value) or 0.0,
        "total_equipment_count": sum(item.quantity for item in bulk_request.items),
        "notes": bulk_request.notes,
        "equipment_items": [item_to_out(item) for item in bulk_request.items],
        "quote": quote_to_out(bulk_request.quotes[-1] if bulk_request.quotes else None),
        "created_at": as_utc(bulk_request.created_at),
        "updated_at": as_utc(bulk_request.updated_at),
    }


def bulk_detail(db: Session, bulk_request: BulkServiceRequest) -> dict[str, Any]:
    out = bulk_to_out(bulk_request)
    out["progress"] = bulk_progress(bulk_request.status)
    out["audit_log"] = list_audit_entries(db, ENTITY_BULK_REQUEST, str(bulk_request.id))
    out["epr_timeline"] = list_epr_timeline(db, ENTITY_BULK_REQUEST, str(bulk_request.id))
    return out


def _recalculate_totals(bulk_request: BulkServiceRequest) -> None:
    bulk_request.estimated_total_value = sum(
        (Decimal(str(item.total_price or 0)) for item in bulk_request.items),
        Decimal("0"),
    )


def create_bulk_request(
    db: Session,
    payload: BulkRequestCreate,
    user: CurrentUser,
    actor: Actor,
) -> BulkServiceRequest:
    if user.role not in CREATE_ROLES:
        raise HTTPException(403, "Only channel partners and system integrators can submit bulk requests")

    bulk_request = BulkServiceRequest(
        requester_id=user.id,
        requester_role=user.role,
        requester_name=payload.requester_name.strip(),
        company_name=payload.company_name.strip(),
        contact_phone=payload.contact_phone,
        contact_email=payload.contact_email or user.email,
        priority=payload.priority.value,
        status=BulkStatus.PENDING.value,
        notes=payload.notes,
    )
    for position, item in enumerate(payload.equipment_items):
        unit_price = Decimal(str(item.unit_price))
        bulk_request.items.append(
            BulkEquipmentItem(
                position=position,
                equipment_type=item.equipment_type,
                equipment_model=item.equipment_model,
                serial_number=item.serial_number,
                quantity=item.quantity,
                unit_price=unit_price,
                total_price=unit_price * item.quantity,
                issue_description=item.issue_description,
                issue_category=item.issue_category,
                severity=item.severity.value,
                item_status="pending",
            )
        )
    _recalculate_totals(bulk_request)
    db.add(bulk_request)
    db.flush()

    record_event(
        db,
        entity_type=ENTITY_BULK_REQUEST,
        entity_id=str(bulk_request.id),
        action="REQUEST_CREATED",
        actor=actor,
        message="Bulk request created",
        entry_type=AuditEntryType.STATUS_CHANGE,
        new_value={"status": BulkStatus.PENDING.value, "items": len(bulk_request.items)},
    )
    return bulk_request


def list_bulk_requests(
    db: Session,
    user: CurrentUser,
    *,
    status: Optional[BulkStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[BulkServiceRequest], int]:
    query = db.query(BulkServiceRequest)
    if user.role not in OPERATOR_ROLES:
        query = query.filter(BulkServiceRequest.requester_id == user.id)
    if status is not None:
        query = query.filter(BulkServiceRequest.status == status.value)
    total = query.count()
    items = query.order_by(BulkServiceRequest.created_at.desc()).offset(offset).limit(limit).all()
    return items, total


def _ensure_requester_or_staff(bulk_request: BulkServiceRequest, actor: Actor) -> None:
    if actor.role in BULK_REQUESTER_ROLES and str(bulk_request.requester_id) != str(actor.id):
        raise HTTPException(403, "Forbidden")


def update_bulk_status(
    db: Session,
    bulk_request: BulkServiceRequest,
    new_status: BulkStatus,
    actor: Actor,
    note: Optional[str] = None,
) -> bool:
    _ensure_requester_or_staff(bulk_request, actor)
    return apply_bulk_transition(db, bulk_request=bulk_request, new_status=new_status, actor=actor, note=note)


def update_bulk_epr_status(
    db: Session,
    bulk_request: BulkServiceRequest,
    payload: EPRStatusUpdate,
    actor: Actor,
) -> bool:
    return apply_bulk_epr_transition(
        db,
        bulk_request=bulk_request,
        new_epr_status=payload.epr_status,
        actor=actor,
        details=payload.details,
        cost_estimation=payload.cost_estimation,
        currency=payload.cost_estimation_currency,
        approval_decision=payload.approval_decision,
    )


def update_bulk_item(
    db: Session,
    bulk_request: BulkServiceRequest,
    item_id: str,
    payload: BulkItemUpdate,
    actor: Actor,
) -> BulkEquipmentItem:
    if actor.role not in OPERATOR_ROLES:
        raise HTTPException(403, "Forbidden")
    item_uuid = parse_id(item_id, "Equipment item")
    item = next((it for it in bulk_request.items if it.id == item_uuid), None)
    if item is None:
        raise HTTPException(404, "Equipment item not found")

    old = {"item_status": item.item_status, "epr_status": item.epr_status}
    if payload.epr_status is not None:
        current = item.epr_status or None
        if payload.epr_status.value != current:
            current_status = EPRStatus(current) if current else None
            if (current_status, payload.epr_status) not in EPR_TRANSITIONS:
                raise HTTPException(
                    400,
                    f"Invalid EPR status transition: {current or 'none'} -> {payload.epr_status.value}",
                )
            item.epr_status = payload.epr_status.value
    if payload.item_status is not None:
        item.item_status = payload.item_status.value
    if payload.epr_cost_estimation is not None:
        item.epr_cost_estimation = Decimal(str(payload.epr_cost_estimation))
        currency = payload.epr_cost_estimation_currency
        item.epr_cost_estimation_currency = currency.value if currency else "INR"
    bulk_request.updated_at = datetime.now(timezone.utc)

    record_event(
        db,
        entity_type=ENTITY_BULK_REQUEST,
        entity_id=str(bulk_request.id),
        action="BULK_ITEM_UPDATED",
        actor=actor,
        message=f"Item {item.equipment_type} updated",
        entry_type=AuditEntryType.EPR_ACTION if payload.epr_status else AuditEntryType.GENERAL,
        old_value=old,
        new_value={"item_status": item.item_status, "epr_status": item.epr_status},
        extra={
            "item_id": str(item.id),
            "cost_estimation": payload.epr_cost_estimation,
            "cost_estimation_currency": item.epr_cost_estimation_currency if payload.epr_cost_estimation else None,
        },
    )
    return item


def default_quote_currency(bulk_request: BulkServiceRequest) -> Currency:
    for item in bulk_request.items:
        if item.epr_cost_estimation_currency:
            return Currency(item.epr_cost_estimation_currency)
    return Currency.INR


def add_quote_to_bulk_request(
    db: Session,
    bulk_request: BulkServiceRequest,
    payload: QuoteCreate,
    actor: Actor,
) -> Quote:
    if actor.role not in OPERATOR_ROLES:
        raise HTTPException(403, "Forbidden")
    if bulk_request.status not in QUOTABLE_STATUSES:
        raise HTTPException(409, f"Cannot quote a bulk request that is {bulk_request.status}")
    latest = bulk_request.quotes[-1] if bulk_request.quotes else None
    if latest is not None and latest.is_approved is None:
        raise HTTPException(409, "The current quote is still awaiting a decision")

    total = sum((Decimal(str(item.cost)) for item in payload.items), Decimal("0"))
    currency = payload.resolved_currency(default_quote_currency(bulk_request)).value

    quote = Quote(
        bulk_request_id=bulk_request.id,
        items=payload.stored_items(currency),
        total_cost=total,
        currency=currency,
        is_approved=None,
        payment_qr_code_url=QR_CODE_URL.format(request_id=bulk_request.id, total=total),
        created_by=actor.label,
    )
    if bulk_request.status == BulkStatus.PENDING.value:
        apply_bulk_transition(db, bulk_request=bulk_request, new_status=BulkStatus.UNDER_REVIEW, actor=actor)
    bulk_request.quotes.append(quote)
    record_event(
        db,
        entity_type=ENTITY_BULK_REQUEST,
        entity_id=str(bulk_request.id),
        action="QUOTE_CREATED",
        actor=actor,
        message=f"Quote generated: {currency} {total:.2f}",
        entry_type=AuditEntryType.QUOTE_GENERATED,
        new_value={"total_cost": float(total), "currency": currency},
    )
    return quote


def decide_bulk_quote(
    db: Session,
    bulk_request: BulkServiceRequest,
    approved: bool,
    actor: Actor,
) -> Quote:
    _ensure_requester_or_staff(bulk_request, actor)
    quote = bulk_request.quotes[-1] if bulk_request.quotes else None
    if quote is None:
        raise HTTPException(404, "Quote not found")
    if quote.is_approved is not None:
        raise HTTPException(409, "Quote has already been decided")

    decision = "approved" if approved else "declined"
    quote.is_approved = approved
    quote.decided_at = datetime.now(timezone.utc)
    quote.decided_by = actor.id

    apply_bulk_transition(
        db,
        bulk_request=bulk_request,
        new_status=bulk_status_for_quote_decision(approved),
        actor=actor,
        metadata={"quote_decision": decision},
    )
    record_event(
        db,
        entity_type=ENTITY_BULK_REQUEST,
        entity_id=str(bulk_request.id),
        action="QUOTE_DECISION",
        actor=actor,
        message=f"Quote {decision}",
        entry_type=AuditEntryType.QUOTE_DECISION,
        old_value={"is_approved": None},
        new_value={"is_approved": approved},
        extra={"quote_decision": decision, "quote_id": str(quote.id)},
    )
    return quote
