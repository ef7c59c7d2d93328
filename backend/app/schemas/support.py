from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ComplaintCreate(BaseModel):
    request_id: str
    complaint_details: str = Field(..., max_length=5000)

    @field_validator("complaint_details")
    @classmethod
    def _details_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Complaint details are required")
        return value


class ComplaintResolve(BaseModel):
    is_resolved: bool = True


class ComplaintOut(BaseModel):
    id: str
    request_id: str
    customer_id: str
    customer_name: str
    complaint_details: str
    is_resolved: bool
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    serial_number: Optional[str] = None
    product_type: Optional[str] = None
    request_status: Optional[str] = None


class FeedbackCreate(BaseModel):
    service_request_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=2000)


class FeedbackOut(BaseModel):
    id: str
    service_request_id: str
    customer_id: str
    rating: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None


class NotificationType(StrEnum):
    PAYMENT = "payment"
    STATUS = "status"
    QUOTE = "quote"
    EPR = "epr"
    COMPLAINT = "complaint"


class NotificationOut(BaseModel):
    id: str
    type: NotificationType
    title: str
    message: str
    read: bool
    service_request_id: Optional[str] = None
    payment_id: Optional[str] = None
    created_at: Optional[datetime] = None


class NotificationListResponse(BaseModel):
    items: List[NotificationOut]
    unread_count: int
    refresh_seconds: int


class ChatMessageIn(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)


class ChatReplyOut(BaseModel):
    reply: str
    intent: str
    request_ids: List[str] = Field(default_factory=list)


class FAQItem(BaseModel):
    question: str
    answer: str
    category: str
