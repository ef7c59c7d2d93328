"""Dashboard read models and CSV exports.

Counts and rates are computed with aggregate queries; only the request lists a
dashboard actually shows are loaded as rows.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser
from app.core.config import Settings
from app.models.service_request import (
    AuditLog,
    BulkEquipmentItem,
    BulkServiceRequest,
    Complaint,
    Feedback,
    Payment,
    Quote,
    ServiceRequest,
)
from app.schemas.service_request import EPRStatus, Status
from app.services.bulk_request_service import bulk_to_out
from app.services.notification_service import list_notifications
from app.services.payment_service import payment_stats
from app.services.request_service import (
    COMPLAINT_ELIGIBLE_STATUSES,
    complaint_to_out,
    current_quote,
    list_complaints,
    request_to_out,
    visible_requests_query,
)

IN_PROGRESS_STATUSES = [
    Status.DIAGNOSIS.value,
    Status.AWAITING_APPROVAL.value,
    Status.REPAIR_IN_PROGRESS.value,
    Status.QUALITY_CHECK.value,
]
EPR_DONE_STATUSES = [EPRStatus.REPAIR_COMPLETED.value, EPRStatus.RETURN_TO_CUSTOMER.value]
DASHBOARD_LIST_LIMIT = 200


def _rate(part: int, whole: int) -> float:
    return round(part * 100 / whole, 1) if whole else 0.0


def _grouped_counts(db: Session, column, query=None) -> dict[str, int]:
    base = query if query is not None else db.query(ServiceRequest)
    rows = base.with_entities(column, func.count()).group_by(column).all()
    return {str(key): int(count) for key, count in rows if key is not None}


def counts_by_status(db: Session, query=None) -> dict[str, int]:
    counts = {status.value: 0 for status in Status}
    counts.update(_grouped_counts(db, ServiceRequest.status, query))
    return counts


def counts_by_product(db: Session, query=None) -> dict[str, int]:
    return _grouped_counts(db, ServiceRequest.product_type, query)


def average_rating(db: Session) -> str:
    avg = db.query(func.avg(Feedback.rating)).scalar()
    if avg is None:
        return "N/A"
    return str(Decimal(str(avg)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def admin_kpis(db: Session) -> dict[str, Any]:
    by_status = counts_by_status(db)
    total = sum(by_status.values())
    completed = by_status.get(Status.COMPLETED.value, 0)
    return {
        "total": total,
        "in_progress": sum(by_status.get(status, 0) for status in IN_PROGRESS_STATUSES),
        "completed": completed,
        "avg_rating": average_rating(db),
        "completion_rate": _rate(completed, total),
    }


def epr_completion_rate(db: Session) -> float:
    with_epr = db.query(func.count(ServiceRequest.id)).filter(ServiceRequest.current_epr_status.isnot(None)).scalar()
    done = (
        db.query(func.count(ServiceRequest.id))
        .filter(ServiceRequest.current_epr_status.in_(EPR_DONE_STATUSES))
        .scalar()
    )
    return _rate(int(done or 0), int(with_epr or 0))


def quote_approval_rate(db: Session) -> float:
    decided = (
        db.query(Quote.is_approved, func.count(Quote.id))
        .filter(Quote.service_request_id.isnot(None), Quote.is_approved.isnot(None))
        .group_by(Quote.is_approved)
        .all()
    )
    counts = {bool(key): int(count) for key, count in decided}
    return _rate(counts.get(True, 0), sum(counts.values()))


def build_admin_dashboard(db: Session, *, settings: Settings) -> dict[str, Any]:
    open_complaints = db.query(func.count(Complaint.id)).filter(Complaint.is_resolved.is_(False)).scalar()
    return {
        "kpis": admin_kpis(db),
        "by_status": counts_by_status(db),
        "by_product": counts_by_product(db),
        "payment_stats": payment_stats(db),
        "feedback_count": int(db.query(func.count(Feedback.id)).scalar() or 0),
        "open_complaints": int(open_complaints or 0),
        "refresh_seconds": settings.dashboard_refresh_seconds,
    }


def _recent(query) -> list[ServiceRequest]:
    return (
        query.order_by(ServiceRequest.created_at.desc(), ServiceRequest.id.desc())
        .limit(DASHBOARD_LIST_LIMIT)
        .all()
    )


def build_epr_dashboard(db: Session, user: CurrentUser, *, settings: Settings) -> dict[str, Any]:
    requests = _recent(visible_requests_query(db, user))
    approved, declined, pending = [], [], []
    for service_request in requests:
        quote = current_quote(service_request)
        if quote is not None and quote.is_approved is True:
            approved.append(service_request)
        elif quote is not None and quote.is_approved is False:
            declined.append(service_request)
        if service_request.current_epr_status == EPRStatus.COST_ESTIMATION_PREPARATION.value:
            pending.append(service_request)
    return {
        "requests": [request_to_out(item) for item in requests],
        "pending_estimation": [request_to_out(item) for item in pending],
        "approved_quotes": [request_to_out(item) for item in approved],
        "declined_quotes": [request_to_out(item) for item in declined],
        "epr_completion_rate": epr_completion_rate(db),
        "quote_approval_rate": quote_approval_rate(db),
        "refresh_seconds": settings.dashboard_refresh_seconds,
    }


def build_customer_dashboard(db: Session, user: CurrentUser, *, settings: Settings) -> dict[str, Any]:
    requests = _recent(db.query(ServiceRequest).filter(ServiceRequest.customer_id == user.id))
    _, unread = list_notifications(db, user.id, limit=1)
    return {
        "requests": [request_to_out(item) for item in requests],
        "complaint_eligible": [
            request_to_out(item) for item in requests if item.status in COMPLAINT_ELIGIBLE_STATUSES
        ],
        "complaints": [complaint_to_out(item) for item in list_complaints(db, user)],
        "unread_notifications": unread,
        "refresh_seconds": settings.dashboard_refresh_seconds,
    }


def build_partner_dashboard(db: Session, user: CurrentUser, *, settings: Settings) -> dict[str, Any]:
    bulk_query = db.query(BulkServiceRequest).filter(BulkServiceRequest.requester_id == user.id)
    bulk_requests = bulk_query.order_by(BulkServiceRequest.created_at.desc()).limit(DASHBOARD_LIST_LIMIT).all()
    status_rows = (
        bulk_query.with_entities(BulkServiceRequest.status, func.count(BulkServiceRequest.id))
        .group_by(BulkServiceRequest.status)
        .all()
    )
    total_equipment = (
        db.query(func.coalesce(func.sum(BulkEquipmentItem.quantity), 0))
        .join(BulkServiceRequest, BulkEquipmentItem.bulk_request_id == BulkServiceRequest.id)
        .filter(BulkServiceRequest.requester_id == user.id)
        .scalar()
    )
    requests = _recent(db.query(ServiceRequest).filter(ServiceRequest.customer_id == user.id))
    return {
        "bulk_requests": [bulk_to_out(item) for item in bulk_requests],
        "bulk_status_counts": {str(key): int(count) for key, count in status_rows},
        "requests": [request_to_out(item) for item in requests],
        "total_equipment": int(total_equipment or 0),
        "refresh_seconds": settings.dashboard_refresh_seconds,
    }


def build_service_dashboard(db: Session, user: CurrentUser, *, settings: Settings) -> dict[str, Any]:
    requests = _recent(visible_requests_query(db, user))
    return {
        "requests": [request_to_out(item) for item in requests],
        "by_status": counts_by_status(db),
        "open_complaints": [complaint_to_out(item) for item in list_complaints(db, user, resolved=False)],
        "refresh_seconds": settings.dashboard_refresh_seconds,
    }


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------


def _ts_to_iso(value: Optional[datetime]) -> str:
    if not value:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _json_field(value) -> str:
    if value is None:
        return ""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def stream_csv(header: list[str], rows: Iterable[list[Any]]) -> Iterator[str]:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    yield buffer.getvalue()
    buffer.seek(0)
    buffer.truncate(0)
    for row in rows:
        writer.writerow(row)
        yield buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)


REQUEST_EXPORT_HEADER = [
    "id",
    "created_at",
    "customer_name",
    "serial_number",
    "product_type",
    "status",
    "current_epr_status",
    "assigned_technician",
    "service_center",
    "is_warranty_claim",
    "payment_completed",
]


def request_export_rows(db: Session, *, status: Optional[Status] = None) -> list[list[Any]]:
    query = db.query(ServiceRequest)
    if status is not None:
        query = query.filter(ServiceRequest.status == status.value)
    rows = []
    for item in query.order_by(ServiceRequest.created_at.asc(), ServiceRequest.id.asc()).all():
        rows.append(
            [
                str(item.id),
                _ts_to_iso(item.created_at),
                item.customer_name,
                item.serial_number,
                item.product_type,
                item.status,
                item.current_epr_status or "",
                item.assigned_technician or "",
                item.service_center,
                "yes" if item.is_warranty_claim else "no",
                "yes" if item.payment_completed else "no",
            ]
        )
    return rows


PAYMENT_EXPORT_HEADER = [
    "id",
    "created_at",
    "service_request_id",
    "receipt",
    "provider_order_id",
    "provider_payment_id",
    "amount",
    "currency",
    "status",
    "refund_amount",
    "captured_at",
]


def payment_export_rows(db: Session) -> list[list[Any]]:
    rows = []
    for item in db.query(Payment).order_by(Payment.created_at.asc(), Payment.id.asc()).all():
        rows.append(
            [
                str(item.id),
                _ts_to_iso(item.created_at),
                str(item.service_request_id),
                item.receipt,
                item.provider_order_id or "",
                item.provider_payment_id or "",
                f"{float(item.amount):.2f}",
                item.currency,
                item.status,
                f"{float(item.refund_amount):.2f}" if item.refund_amount is not None else "",
                _ts_to_iso(item.captured_at),
            ]
        )
    return rows


AUDIT_EXPORT_HEADER = [
    "timestamp",
    "entity_type",
    "entity_id",
    "action",
    "actor_type",
    "actor_id",
    "actor_email",
    "ip_address",
    "old_value",
    "new_value",
    "metadata",
]


def audit_export_row(log: AuditLog) -> list[Any]:
    return [
        _ts_to_iso(log.timestamp),
        log.entity_type,
        str(log.entity_id),
        log.action,
        log.actor_type,
        str(log.actor_id) if log.actor_id else "",
        log.actor_email or "",
        str(log.ip_address) if log.ip_address else "",
        _json_field(log.old_value),
        _json_field(log.new_value),
        _json_field(log.audit_meta),
    ]
