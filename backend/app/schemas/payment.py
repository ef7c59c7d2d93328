from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, Field

from app.schemas.service_request import Currency


class PaymentStatus(StrEnum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class CheckoutCreate(BaseModel):
    service_request_id: str


class CheckoutOut(BaseModel):
    payment_id: str
    checkout_url: Optional[str] = None
    provider_order_id: Optional[str] = None
    amount: float
    currency: Currency
    receipt: str
    reused: bool = False


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentOut(BaseModel):
    id: str
    service_request_id: str
    quote_id: Optional[str] = None
    customer_id: str
    provider: str
    provider_order_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    receipt: str
    amount: float
    currency: Currency
    status: PaymentStatus
    method: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None


class PaymentListResponse(BaseModel):
    items: List[PaymentOut]
    total: int


class PaymentStatsOut(BaseModel):
    total_payments: int
    total_amount_captured: float
    successful_payments: int
    pending_payments: int
    failed_payments: int
    refunded_payments: int
    today_payments: int
    today_amount: float
    monthly_payments: int
    monthly_amount: float
    success_rate: float
