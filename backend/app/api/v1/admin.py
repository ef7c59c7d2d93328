import base64
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import and_, desc, or_, select
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, require_roles
from app.core.dependencies import get_db
from app.models.service_request import AuditLog
from app.schemas.service_request import AuditLogListResponse, AuditLogOut, Status
from app.services import dashboard_read_models
from app.services.transition_service import as_utc

router = APIRouter()


def _encode_audit_cursor(ts: datetime, log_id: str) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    payload = f"{ts.isoformat()}|{log_id}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def _decode_audit_cursor(value: str) -> tuple[datetime, uuid.UUID]:
    try:
        raw = base64.urlsafe_b64decode(value.encode("utf-8")).decode("utf-8")
        ts_raw, id_raw = raw.split("|", 1)
        parsed = datetime.fromisoformat(ts_raw)
        log_id = uuid.UUID(id_raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise HTTPException(400, "Invalid cursor") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed, log_id


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(400, f"Invalid {label}") from exc


def _audit_to_out(log: AuditLog) -> AuditLogOut:
    return AuditLogOut(
        id=str(log.id),
        entity_type=log.entity_type,
        entity_id=str(log.entity_id),
        action=log.action,
        old_value=log.old_value,
        new_value=log.new_value,
        actor_type=log.actor_type,
        actor_id=str(log.actor_id) if log.actor_id else None,
        actor_email=log.actor_email,
        ip_address=str(log.ip_address) if log.ip_address else None,
        user_agent=log.user_agent,
        metadata=log.audit_meta,
        timestamp=as_utc(log.timestamp),
    )


def _filtered_audit_stmt(
    *,
    entity_type: Optional[str],
    entity_id: Optional[str],
    action: Optional[str],
    actor_type: Optional[str],
    actor_id: Optional[str],
    from_ts: Optional[datetime],
    to_ts: Optional[datetime],
):
    stmt = select(AuditLog)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == _parse_uuid(entity_id, "entity_id"))
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if actor_type:
        stmt = stmt.where(AuditLog.actor_type == actor_type)
    if actor_id:
        stmt = stmt.where(AuditLog.actor_id == _parse_uuid(actor_id, "actor_id"))

    if from_ts and to_ts and from_ts > to_ts:
        raise HTTPException(400, "from_ts must be <= to_ts")
    if from_ts:
        stmt = stmt.where(AuditLog.timestamp >= from_ts)
    if to_ts:
        stmt = stmt.where(AuditLog.timestamp <= to_ts)
    return stmt


@router.get("/admin/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_type: Optional[str] = None,
    actor_id: Optional[str] = None,
    from_ts: Optional[datetime] = None,
    to_ts: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = None,
    current_user: CurrentUser = Depends(require_roles("admin")),
    db: Session = Depends(get_db),
):
    stmt = _filtered_audit_stmt(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_type=actor_type,
        actor_id=actor_id,
        from_ts=from_ts,
        to_ts=to_ts,
    )

    if cursor:
        cursor_ts, cursor_id = _decode_audit_cursor(cursor)
        stmt = stmt.where(
            or_(
                AuditLog.timestamp < cursor_ts,
                and_(AuditLog.timestamp == cursor_ts, AuditLog.id < cursor_id),
            )
        )

    stmt = stmt.order_by(desc(AuditLog.timestamp), desc(AuditLog.id)).limit(limit + 1)
    rows = db.execute(stmt).scalars().all()

    has_more = len(rows) > limit
    rows = rows[:limit]

    next_cursor = None
    if has_more and rows:
        last = rows[-1]
        if last.timestamp:
            next_cursor = _encode_audit_cursor(last.timestamp, str(last.id))

    return AuditLogListResponse(
        items=[_audit_to_out(log) for log in rows],
        next_cursor=next_cursor,
        has_more=has_more,
    )


def _csv_response(generator, filename: str) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/admin/export/requests.csv")
async def export_requests(
    status: Optional[Status] = None,
    current_user: CurrentUser = Depends(require_roles("admin")),
    db: Session = Depends(get_db),
):
    rows = dashboard_read_models.request_export_rows(db, status=status)
    return _csv_response(
        dashboard_read_models.stream_csv(dashboard_read_models.REQUEST_EXPORT_HEADER, rows),
        "service_requests.csv",
    )


@router.get("/admin/export/payments.csv")
async def export_payments(
    current_user: CurrentUser = Depends(require_roles("admin")),
    db: Session = Depends(get_db),
):
    rows = dashboard_read_models.payment_export_rows(db)
    return _csv_response(
        dashboard_read_models.stream_csv(dashboard_read_models.PAYMENT_EXPORT_HEADER, rows),
        "payments.csv",
    )


@router.get("/admin/export/audit-logs.csv")
async def export_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_type: Optional[str] = None,
    actor_id: Optional[str] = None,
    from_ts: Optional[datetime] = None,
    to_ts: Optional[datetime] = None,
    limit: int = Query(10000, ge=1, le=100000),
    current_user: CurrentUser = Depends(require_roles("admin")),
    db: Session = Depends(get_db),
):
    stmt = _filtered_audit_stmt(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_type=actor_type,
        actor_id=actor_id,
        from_ts=from_ts,
        to_ts=to_ts,
    )
    stmt = stmt.order_by(desc(AuditLog.timestamp), desc(AuditLog.id)).limit(limit)
    rows = [dashboard_read_models.audit_export_row(log) for log in db.execute(stmt).scalars().all()]
    return _csv_response(
        dashboard_read_models.stream_csv(dashboard_read_models.AUDIT_EXPORT_HEADER, rows),
        "audit_logs.csv",
    )
