from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user, require_roles
from app.core.config import get_settings
from app.core.dependencies import get_db
from app.core.feature_flags import ensure_chat_enabled
from app.schemas.support import (
    ChatMessageIn,
    ChatReplyOut,
    ComplaintCreate,
    ComplaintOut,
    ComplaintResolve,
    FAQItem,
    FeedbackCreate,
    FeedbackOut,
    NotificationListResponse,
    NotificationOut,
)
from app.services import chat_assistant, notification_service, request_service
from app.services.transition_service import actor_from_request, as_utc

router = APIRouter()


def _notification_to_out(notification) -> NotificationOut:
    return NotificationOut(
        id=str(notification.id),
        type=notification.type,
        title=notification.title,
        message=notification.message,
        read=bool(notification.read),
        service_request_id=str(notification.service_request_id) if notification.service_request_id else None,
        payment_id=str(notification.payment_id) if notification.payment_id else None,
        created_at=as_utc(notification.created_at),
    )


# ---------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------


@router.post("/complaints", response_model=ComplaintOut, status_code=201)
async def create_complaint(
    payload: ComplaintCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("customer")),
    db: Session = Depends(get_db),
):
    complaint = request_service.create_complaint(db, payload, current_user, actor_from_request(request, current_user))
    db.commit()
    db.refresh(complaint)
    return ComplaintOut(**request_service.complaint_to_out(complaint))


@router.get("/complaints", response_model=List[ComplaintOut])
async def list_complaints(
    resolved: Optional[bool] = None,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    complaints = request_service.list_complaints(db, current_user, resolved=resolved)
    return [ComplaintOut(**request_service.complaint_to_out(item)) for item in complaints]


@router.patch("/complaints/{complaint_id}", response_model=ComplaintOut)
async def resolve_complaint(
    complaint_id: str,
    payload: ComplaintResolve,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("admin", "service", "cpr")),
    db: Session = Depends(get_db),
):
    complaint = request_service.set_complaint_resolved(
        db, complaint_id, payload.is_resolved, actor_from_request(request, current_user)
    )
    db.commit()
    db.refresh(complaint)
    return ComplaintOut(**request_service.complaint_to_out(complaint))


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


@router.post("/feedback", response_model=FeedbackOut, status_code=201)
async def create_feedback(
    payload: FeedbackCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("customer")),
    db: Session = Depends(get_db),
):
    feedback = request_service.create_feedback(db, payload, current_user, actor_from_request(request, current_user))
    db.commit()
    db.refresh(feedback)
    return FeedbackOut(**request_service.feedback_to_out(feedback))


@router.get("/feedback", response_model=List[FeedbackOut])
async def list_feedback(
    limit: int = Query(100, ge=1, le=500),
    current_user: CurrentUser = Depends(require_roles("admin", "service")),
    db: Session = Depends(get_db),
):
    return [FeedbackOut(**request_service.feedback_to_out(item)) for item in request_service.list_feedback(db, limit=limit)]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@router.get("/notifications", response_model=NotificationListResponse)
async def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items, unread = notification_service.list_notifications(db, current_user.id, limit=limit)
    return NotificationListResponse(
        items=[_notification_to_out(item) for item in items],
        unread_count=unread,
        refresh_seconds=get_settings().dashboard_refresh_seconds,
    )


@router.post("/notifications/read-all")
async def mark_all_notifications_read(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = notification_service.mark_all_read(db, current_user.id)
    db.commit()
    return {"updated": updated}


@router.post("/notifications/{notification_id}/read", response_model=NotificationOut)
async def mark_notification_read(
    notification_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = notification_service.mark_read(
        db, current_user.id, request_service.parse_id(notification_id, "Notification")
    )
    db.commit()
    db.refresh(notification)
    return _notification_to_out(notification)


# ---------------------------------------------------------------------------
# Chat assistant and FAQ
# ---------------------------------------------------------------------------


@router.post("/chat/messages", response_model=ChatReplyOut)
async def send_chat_message(
    payload: ChatMessageIn,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_chat_enabled()
    reply = chat_assistant.reply_to(db, current_user, payload.message)
    return ChatReplyOut(reply=reply.reply, intent=reply.intent, request_ids=reply.request_ids)


@router.get("/faq", response_model=List[FAQItem])
async def list_faq(q: Optional[str] = Query(None, max_length=100)):
    return [FAQItem(**item) for item in chat_assistant.search_faq(q)]
