from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas.service_request import (
    AuditEntryOut,
    Currency,
    EPRStatus,
    EPRTimelineEntryOut,
    QuoteOut,
)


class BulkStatus(StrEnum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BulkPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ItemStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EquipmentItemCreate(BaseModel):
    equipment_type: str = Field(..., min_length=1, max_length=64)
    equipment_model: Optional[str] = Field(default=None, max_length=128)
    serial_number: Optional[str] = Field(default=None, max_length=128)
    quantity: int = Field(default=1, gt=0)
    unit_price: float = Field(default=0, ge=0)
    issue_description: str
    issue_category: Optional[str] = Field(default=None, max_length=64)
    severity: Severity = Severity.MEDIUM

    @field_validator("issue_description")
    @classmethod
    def _issue_required(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("Issue description is required")
        return value


class BulkRequestCreate(BaseModel):
    requester_name: str = Field(..., min_length=1, max_length=255)
    company_name: str = Field(..., min_length=1, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=32)
    contact_email: Optional[str] = Field(default=None, max_length=255)
    priority: BulkPriority = BulkPriority.MEDIUM
    notes: Optional[str] = None
    equipment_items: List[EquipmentItemCreate] = Field(..., min_length=1)


class BulkStatusUpdate(BaseModel):
    status: BulkStatus
    note: Optional[str] = Field(default=None, max_length=2000)


class BulkItemUpdate(BaseModel):
    item_status: Optional[ItemStatus] = None
    epr_status: Optional[EPRStatus] = None
    epr_cost_estimation: Optional[float] = Field(default=None, gt=0)
    epr_cost_estimation_currency: Optional[Currency] = None


class EquipmentItemOut(BaseModel):
    id: str
    equipment_type: str
    equipment_model: Optional[str] = None
    serial_number: Optional[str] = None
    quantity: int
    unit_price: float
    total_price: float
    issue_description: Optional[str] = None
    issue_category: Optional[str] = None
    severity: Optional[str] = None
    item_status: ItemStatus
    epr_status: Optional[EPRStatus] = None
    epr_cost_estimation: Optional[float] = None
    epr_cost_estimation_currency: Optional[Currency] = None


class ProgressStep(BaseModel):
    status: BulkStatus
    label: str
    completed: bool
    current: bool


class BulkProgressOut(BaseModel):
    steps: List[ProgressStep]
    percent: int
    cancelled: bool


class BulkRequestOut(BaseModel):
    id: str
    requester_id: str
    requester_role: str
    requester_name: str
    company_name: str
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    priority: BulkPriority
    status: BulkStatus
    epr_status: Optional[EPRStatus] = None
    epr_cost_estimation: Optional[float] = None
    epr_cost_estimation_currency: Optional[Currency] = None
    estimated_total_value: float
    total_equipment_count: int
    notes: Optional[str] = None
    equipment_items: List[EquipmentItemOut] = Field(default_factory=list)
    quote: Optional[QuoteOut] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BulkRequestDetailOut(BulkRequestOut):
    progress: BulkProgressOut
    audit_log: List[AuditEntryOut] = Field(default_factory=list)
    epr_timeline: List[EPRTimelineEntryOut] = Field(default_factory=list)


class BulkRequestListResponse(BaseModel):
    items: List[BulkRequestOut]
    total: int
