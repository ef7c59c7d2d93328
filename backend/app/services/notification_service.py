from __future__ import annotations

import logging
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.service_request import Notification, ServiceRequest
from app.schemas.support import NotificationType

logger = logging.getLogger(__name__)

_STATUS_MESSAGES = {
    "Diagnosis": "Our technicians have started diagnosing your unit.",
    "Awaiting Approval": "A repair quote is ready for your review.",
    "Repair in Progress": "Repair work on your unit is in progress.",
    "Quality Check": "Your unit is going through quality checks.",
    "Dispatched": "Your unit has been dispatched.",
    "Completed": "Your service request has been completed.",
    "Cancelled": "Your service request has been cancelled.",
}


def notify_customer(
    db: Session,
    *,
    customer_id: str,
    type: NotificationType,
    title: str,
    message: str,
    service_request_id: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> Notification:
    notification = Notification(
        customer_id=customer_id,
        type=type.value,
        title=title,
        message=message,
        service_request_id=service_request_id,
        payment_id=payment_id,
    )
    db.add(notification)
    return notification


def notify_status_change(db: Session, service_request: ServiceRequest) -> Notification:
    status = service_request.status
    return notify_customer(
        db,
        customer_id=str(service_request.customer_id),
        type=NotificationType.STATUS,
        title=f"Request {service_request.serial_number}: {status}",
        message=_STATUS_MESSAGES.get(status, f"Status changed to {status}."),
        service_request_id=str(service_request.id),
    )


def list_notifications(db: Session, customer_id: str, *, limit: int = 50) -> tuple[list[Notification], int]:
    items = (
        db.query(Notification)
        .filter(Notification.customer_id == customer_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
        .all()
    )
    unread = (
        db.query(func.count(Notification.id))
        .filter(Notification.customer_id == customer_id, Notification.read.is_(False))
        .scalar()
    )
    return items, int(unread or 0)


def mark_read(db: Session, customer_id: str, notification_id: str) -> Notification:
    notification = db.get(Notification, notification_id)
    if not notification or str(notification.customer_id) != str(customer_id):
        raise HTTPException(404, "Notification not found")
    notification.read = True
    return notification


def mark_all_read(db: Session, customer_id: str) -> int:
    updated = (
        db.query(Notification)
        .filter(Notification.customer_id == customer_id, Notification.read.is_(False))
        .update({Notification.read: True}, synchronize_session=False)
    )
    logger.debug("Marked %s notifications read for customer_id=%s", updated, customer_id)
    return int(updated or 0)
