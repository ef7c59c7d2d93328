"""Status workflows for service requests, EPR cost estimation and bulk requests.

Three independent state machines live here, each expressed as a transition
table keyed by ``(current, requested)`` whose value is the set of roles that
may perform the move:

* ``MAIN_TRANSITIONS`` for ``ServiceRequest.status``;
* ``EPR_TRANSITIONS`` for the cost-estimation sub-workflow (shared by single
  and bulk requests);
* ``BULK_TRANSITIONS`` for ``BulkServiceRequest.status``.

Leaving Awaiting Approval for the repair or for cancellation goes through
``QUOTE_DECISION_TRANSITIONS`` only, so it always carries a quote decision.

A move that is not in the table is rejected with 400, a move that is in the
table but not for the caller's role is rejected with 403. Requesting the
current status is a no-op. Every accepted move appends an audit log row.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException, Request
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser
from app.core.config import get_settings
from app.models.service_request import AuditLog, BulkServiceRequest, ServiceRequest
from app.schemas.bulk_request import BulkStatus
from app.schemas.service_request import AuditEntryType, Currency, EPRStatus, Status
from app.utils.alerting import alert_tracker
from app.utils.rate_limit import get_client_ip, get_user_agent

logger = logging.getLogger(__name__)

ENTITY_SERVICE_REQUEST = "service_request"
ENTITY_BULK_REQUEST = "bulk_request"
ENTITY_PAYMENT = "payment"
ENTITY_COMPLAINT = "complaint"
ENTITY_SYSTEM = "system"
SYSTEM_ENTITY_ID = "00000000-0000-0000-0000-000000000000"

ACTION_STATUS_CHANGE = "STATUS_CHANGE"
ACTION_EPR_STATUS_CHANGE = "EPR_STATUS_CHANGE"

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "customer_phone",
    "contact_phone",
    "email",
    "contact_email",
    "address",
}


@dataclass(frozen=True)
class Actor:
    role: str
    id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def label(self) -> str:
        return self.email or self.role


SYSTEM_ACTOR = Actor(role="system")
STRIPE_ACTOR = Actor(role="system_stripe")


def actor_from_request(request: Request, user: CurrentUser) -> Actor:
    return Actor(
        role=user.role,
        id=user.id,
        email=user.email,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )


# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------

STAFF = frozenset({"admin", "service"})
BULK_REQUESTERS = frozenset({"channel_partner", "system_integrator"})

MAIN_ORDER = [
    Status.RECEIVED,
    Status.DIAGNOSIS,
    Status.AWAITING_APPROVAL,
    Status.REPAIR_IN_PROGRESS,
    Status.QUALITY_CHECK,
    Status.DISPATCHED,
    Status.COMPLETED,
]
MAIN_CANCELLABLE = {
    Status.RECEIVED,
    Status.DIAGNOSIS,
    Status.AWAITING_APPROVAL,
    Status.REPAIR_IN_PROGRESS,
    Status.QUALITY_CHECK,
}
# Main moves the EPR team makes: issuing a quote after diagnosis and reporting a finished repair.
EPR_DRIVEN_MOVES = {
    (Status.DIAGNOSIS, Status.AWAITING_APPROVAL),
    (Status.REPAIR_IN_PROGRESS, Status.QUALITY_CHECK),
}
QUOTE_DECIDERS = STAFF | {"customer"}


def _build_main_transitions() -> dict[tuple[Status, Status], frozenset[str]]:
    table: dict[tuple[Status, Status], frozenset[str]] = {}
    for index, current in enumerate(MAIN_ORDER):
        for target in MAIN_ORDER[index + 1 :]:
            roles = set(STAFF)
            if current == Status.RECEIVED and target == Status.DIAGNOSIS:
                roles.add("cpr")
            if (current, target) in EPR_DRIVEN_MOVES:
                roles.add("epr")
            table[(current, target)] = frozenset(roles)
        if current in MAIN_CANCELLABLE:
            table[(current, Status.CANCELLED)] = frozenset(STAFF)
    return table


MAIN_TRANSITIONS = _build_main_transitions()

# Moves made by deciding the pending quote; never reachable through a plain status update.
QUOTE_DECISION_TRANSITIONS: dict[tuple[Status, Status], frozenset[str]] = {
    (Status.AWAITING_APPROVAL, Status.REPAIR_IN_PROGRESS): QUOTE_DECIDERS,
    (Status.AWAITING_APPROVAL, Status.CANCELLED): QUOTE_DECIDERS,
}

# Ordering behind the advisory selector check. Declined sits between Approved
# and the repair steps here, so it is not a transition table.
EPR_WORKFLOW = [
    EPRStatus.COST_ESTIMATION_PREPARATION,
    EPRStatus.AWAITING_APPROVAL,
    EPRStatus.APPROVED,
    EPRStatus.DECLINED,
    EPRStatus.REPAIR_IN_PROGRESS,
    EPRStatus.REPAIR_COMPLETED,
    EPRStatus.RETURN_TO_CUSTOMER,
]

_EPR_TEAM = frozenset({"epr", "admin"})
_EPR_DECIDERS = _EPR_TEAM | STAFF | BULK_REQUESTERS | {"customer"}

EPR_TRANSITIONS: dict[tuple[Optional[EPRStatus], EPRStatus], frozenset[str]] = {
    (None, EPRStatus.COST_ESTIMATION_PREPARATION): _EPR_TEAM,
    (EPRStatus.COST_ESTIMATION_PREPARATION, EPRStatus.AWAITING_APPROVAL): _EPR_TEAM | STAFF,
    (EPRStatus.COST_ESTIMATION_PREPARATION, EPRStatus.DECLINED): _EPR_TEAM,
    (EPRStatus.AWAITING_APPROVAL, EPRStatus.APPROVED): _EPR_DECIDERS,
    (EPRStatus.AWAITING_APPROVAL, EPRStatus.DECLINED): _EPR_DECIDERS,
    (EPRStatus.APPROVED, EPRStatus.REPAIR_IN_PROGRESS): _EPR_TEAM,
    (EPRStatus.REPAIR_IN_PROGRESS, EPRStatus.REPAIR_COMPLETED): _EPR_TEAM,
    (EPRStatus.REPAIR_COMPLETED, EPRStatus.RETURN_TO_CUSTOMER): _EPR_TEAM,
}

BULK_ORDER = [
    BulkStatus.PENDING,
    BulkStatus.UNDER_REVIEW,
    BulkStatus.APPROVED,
    BulkStatus.IN_PROGRESS,
    BulkStatus.COMPLETED,
]

_BULK_OPERATORS = STAFF | {"epr"}

BULK_TRANSITIONS: dict[tuple[BulkStatus, BulkStatus], frozenset[str]] = {
    (BulkStatus.PENDING, BulkStatus.UNDER_REVIEW): _BULK_OPERATORS,
    (BulkStatus.UNDER_REVIEW, BulkStatus.APPROVED): STAFF | BULK_REQUESTERS,
    (BulkStatus.APPROVED, BulkStatus.IN_PROGRESS): _BULK_OPERATORS,
    (BulkStatus.IN_PROGRESS, BulkStatus.COMPLETED): _BULK_OPERATORS,
    (BulkStatus.PENDING, BulkStatus.CANCELLED): STAFF | BULK_REQUESTERS,
    (BulkStatus.UNDER_REVIEW, BulkStatus.CANCELLED): STAFF | BULK_REQUESTERS,
    (BulkStatus.APPROVED, BulkStatus.CANCELLED): STAFF | BULK_REQUESTERS,
    (BulkStatus.IN_PROGRESS, BulkStatus.CANCELLED): STAFF,
}


def _check(table: dict, current, target, role: str, label: str) -> None:
    roles = table.get((current, target))
    if roles is None:
        current_label = current.value if current is not None else "none"
        raise HTTPException(400, f"Invalid {label} transition: {current_label} -> {target.value}")
    if role not in roles:
        raise HTTPException(403, "Forbidden")


def can_transition(table: dict, current, target, role: str) -> bool:
    roles = table.get((current, target))
    return roles is not None and role in roles


def allowed_targets(table: dict, current, role: str) -> list:
    return [target for (src, target), roles in table.items() if src == current and role in roles]


def can_update_epr_status(current: Optional[EPRStatus], target: EPRStatus) -> bool:
    """Legacy advisory check used to grey out options in status selectors.

    Allows staying put and any forward jump in ``EPR_WORKFLOW``; with no current
    status only cost estimation preparation is offered. Writes never rely on it.
    """
    if current is None:
        return target == EPRStatus.COST_ESTIMATION_PREPARATION
    return EPR_WORKFLOW.index(target) >= EPR_WORKFLOW.index(current)


def request_status_for_epr(epr_status: EPRStatus) -> Optional[Status]:
    """Main request status implied by reaching an EPR step, or None if it has no effect."""
    # Approval and decline reach the main status only through the quote decision.
    if epr_status == EPRStatus.REPAIR_COMPLETED:
        return Status.QUALITY_CHECK
    return None


def epr_status_for_quote_decision(approved: bool) -> EPRStatus:
    return EPRStatus.APPROVED if approved else EPRStatus.DECLINED


def bulk_status_for_quote_decision(approved: bool) -> BulkStatus:
    return BulkStatus.APPROVED if approved else BulkStatus.CANCELLED


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _latest_timestamp(db: Session, entity_type: str, entity_id: str) -> Optional[datetime]:
    pending = [
        as_utc(obj.timestamp)
        for obj in db.new
        if isinstance(obj, AuditLog)
        and obj.entity_type == entity_type
        and str(obj.entity_id) == str(entity_id)
        and obj.timestamp is not None
    ]
    stored = as_utc(
        db.query(func.max(AuditLog.timestamp))
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .scalar()
    )
    candidates = [ts for ts in [*pending, stored] if ts is not None]
    return max(candidates) if candidates else None


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
    actor_email: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> AuditLog:
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    # Entries of one entity never go back in time, even if the wall clock does.
    timestamp = _now()
    latest = _latest_timestamp(db, entity_type, entity_id)
    if latest is not None and latest > timestamp:
        timestamp = latest

    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_email=actor_email,
        ip_address=ip_address,
        user_agent=user_agent,
        audit_meta=metadata,
        timestamp=timestamp,
    )
    db.add(log)
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)
    return log


def record_event(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: Actor,
    message: str,
    entry_type: AuditEntryType = AuditEntryType.GENERAL,
    old_value: Optional[dict[str, Any]] = None,
    new_value: Optional[dict[str, Any]] = None,
    extra: Optional[dict[str, Any]] = None,
) -> AuditLog:
    metadata = {"message": message, "entry_type": entry_type.value}
    if extra:
        metadata.update({key: value for key, value in extra.items() if value is not None})
    return create_audit_log(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor.role,
        actor_id=actor.id,
        actor_email=actor.email,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        metadata=metadata,
    )


def _log_user(log: AuditLog) -> str:
    return log.actor_email or log.actor_type


def list_audit_entries(db: Session, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    logs = (
        db.query(AuditLog)
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
        .all()
    )
    entries = []
    for log in logs:
        meta = dict(log.audit_meta or {})
        entries.append(
            {
                "timestamp": as_utc(log.timestamp),
                "user": _log_user(log),
                "action": meta.pop("message", None) or log.action,
                "details": meta.pop("details", None),
                "type": meta.pop("entry_type", AuditEntryType.GENERAL.value),
                "epr_status": meta.pop("epr_status", None),
                "cost_estimation": meta.pop("cost_estimation", None),
                "cost_estimation_currency": meta.pop("cost_estimation_currency", None),
                "approval_decision": meta.pop("approval_decision", None),
                "quote_decision": meta.pop("quote_decision", None),
                "metadata": meta or None,
            }
        )
    return entries


def list_epr_timeline(db: Session, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    logs = (
        db.query(AuditLog)
        .filter(
            AuditLog.entity_type == entity_type,
            AuditLog.entity_id == entity_id,
            AuditLog.action == ACTION_EPR_STATUS_CHANGE,
        )
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
        .all()
    )
    timeline = []
    for log in logs:
        meta = log.audit_meta or {}
        timeline.append(
            {
                "timestamp": as_utc(log.timestamp),
                "user": _log_user(log),
                "status": (log.new_value or {}).get("epr_status"),
                "details": meta.get("details"),
                "cost_estimation": meta.get("cost_estimation"),
                "cost_estimation_currency": meta.get("cost_estimation_currency"),
                "approval_decision": meta.get("approval_decision"),
            }
        )
    return timeline


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def apply_transition(
    db: Session,
    *,
    service_request: ServiceRequest,
    new_status: Status,
    actor: Actor,
    note: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    table: Optional[dict] = None,
) -> bool:
    current = Status(service_request.status)

    if new_status == current:
        return False

    _check(table or MAIN_TRANSITIONS, current, new_status, actor.role, "status")

    service_request.status = new_status.value
    service_request.updated_at = _now()

    record_event(
        db,
        entity_type=ENTITY_SERVICE_REQUEST,
        entity_id=str(service_request.id),
        action=ACTION_STATUS_CHANGE,
        actor=actor,
        message=f"Status changed to {new_status.value}",
        entry_type=AuditEntryType.STATUS_CHANGE,
        old_value={"status": current.value},
        new_value={"status": new_status.value},
        extra={"details": note, **(metadata or {})},
    )
    return True


def _propagate_from_epr(
    db: Session,
    service_request: ServiceRequest,
    epr_status: EPRStatus,
    actor: Actor,
) -> Optional[Status]:
    target = request_status_for_epr(epr_status)
    if target is None:
        return None
    current = Status(service_request.status)
    if current == target:
        return None
    if not can_transition(MAIN_TRANSITIONS, current, target, actor.role):
        logger.warning(
            "Skipping status propagation request_id=%s epr_status=%s current=%s target=%s role=%s",
            service_request.id,
            epr_status.value,
            current.value,
            target.value,
            actor.role,
        )
        return None
    apply_transition(
        db,
        service_request=service_request,
        new_status=target,
        actor=actor,
        metadata={"propagated_from_epr": epr_status.value},
    )
    return target


def _validate_decision(new_status: EPRStatus, approval_decision: Optional[str]) -> Optional[str]:
    if new_status not in {EPRStatus.APPROVED, EPRStatus.DECLINED}:
        if approval_decision is not None:
            raise HTTPException(400, "approval_decision only applies to Approved or Declined")
        return None
    expected = "approved" if new_status == EPRStatus.APPROVED else "declined"
    if approval_decision is not None and approval_decision != expected:
        raise HTTPException(400, f"approval_decision must be '{expected}' for {new_status.value}")
    return expected


def _apply_epr_fields(
    db: Session,
    *,
    target,
    entity_type: str,
    status_attr: str,
    new_status: EPRStatus,
    actor: Actor,
    details: Optional[str],
    cost_estimation: Optional[float],
    currency: Optional[Currency],
    approval_decision: Optional[str],
) -> bool:
    raw = getattr(target, status_attr)
    current = EPRStatus(raw) if raw else None

    if new_status == current:
        return False

    _check(EPR_TRANSITIONS, current, new_status, actor.role, "EPR status")
    decision = _validate_decision(new_status, approval_decision)

    setattr(target, status_attr, new_status.value)
    if cost_estimation is not None:
        target.epr_cost_estimation = Decimal(str(cost_estimation))
        target.epr_cost_estimation_currency = (currency or Currency.INR).value
    target.updated_at = _now()

    record_event(
        db,
        entity_type=entity_type,
        entity_id=str(target.id),
        action=ACTION_EPR_STATUS_CHANGE,
        actor=actor,
        message=f"EPR status updated to {new_status.value}",
        entry_type=AuditEntryType.EPR_ACTION,
        old_value={"epr_status": current.value if current else None},
        new_value={"epr_status": new_status.value},
        extra={
            "details": details,
            "epr_status": new_status.value,
            "previous_status": current.value if current else None,
            "cost_estimation": cost_estimation,
            "cost_estimation_currency": (currency or Currency.INR).value if cost_estimation is not None else None,
            "approval_decision": decision,
        },
    )
    return True


def apply_epr_transition(
    db: Session,
    *,
    service_request: ServiceRequest,
    new_epr_status: EPRStatus,
    actor: Actor,
    details: Optional[str] = None,
    cost_estimation: Optional[float] = None,
    currency: Optional[Currency] = None,
    approval_decision: Optional[str] = None,
    propagate: bool = True,
) -> bool:
    changed = _apply_epr_fields(
        db,
        target=service_request,
        entity_type=ENTITY_SERVICE_REQUEST,
        status_attr="current_epr_status",
        new_status=new_epr_status,
        actor=actor,
        details=details,
        cost_estimation=cost_estimation,
        currency=currency,
        approval_decision=approval_decision,
    )
    if changed and propagate:
        _propagate_from_epr(db, service_request, new_epr_status, actor)
    return changed


def apply_bulk_transition(
    db: Session,
    *,
    bulk_request: BulkServiceRequest,
    new_status: BulkStatus,
    actor: Actor,
    note: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> bool:
    current = BulkStatus(bulk_request.status)

    if new_status == current:
        return False

    _check(BULK_TRANSITIONS, current, new_status, actor.role, "bulk status")

    bulk_request.status = new_status.value
    bulk_request.updated_at = _now()

    record_event(
        db,
        entity_type=ENTITY_BULK_REQUEST,
        entity_id=str(bulk_request.id),
        action=ACTION_STATUS_CHANGE,
        actor=actor,
        message=f"Status changed to {new_status.value}",
        entry_type=AuditEntryType.STATUS_CHANGE,
        old_value={"status": current.value},
        new_value={"status": new_status.value},
        extra={"details": note, **(metadata or {})},
    )
    return True


def apply_bulk_epr_transition(
    db: Session,
    *,
    bulk_request: BulkServiceRequest,
    new_epr_status: EPRStatus,
    actor: Actor,
    details: Optional[str] = None,
    cost_estimation: Optional[float] = None,
    currency: Optional[Currency] = None,
    approval_decision: Optional[str] = None,
) -> bool:
    # EPR steps never move the bulk status; operators advance it on their own.
    return _apply_epr_fields(
        db,
        target=bulk_request,
        entity_type=ENTITY_BULK_REQUEST,
        status_attr="epr_status",
        new_status=new_epr_status,
        actor=actor,
        details=details,
        cost_estimation=cost_estimation,
        currency=currency,
        approval_decision=approval_decision,
    )
