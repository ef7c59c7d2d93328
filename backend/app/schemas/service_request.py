from datetime import date, datetime
from enum import StrEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class Status(StrEnum):
    RECEIVED = "Received"
    DIAGNOSIS = "Diagnosis"
    AWAITING_APPROVAL = "Awaiting Approval"
    REPAIR_IN_PROGRESS = "Repair in Progress"
    QUALITY_CHECK = "Quality Check"
    DISPATCHED = "Dispatched"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class EPRStatus(StrEnum):
    COST_ESTIMATION_PREPARATION = "Cost Estimation Preparation"
    AWAITING_APPROVAL = "Awaiting Approval"
    APPROVED = "Approved"
    DECLINED = "Declined"
    REPAIR_IN_PROGRESS = "Repair in Progress"
    REPAIR_COMPLETED = "Repair Completed"
    RETURN_TO_CUSTOMER = "Return to Customer"


class ProductType(StrEnum):
    ENERGIZER = "Energizer Product"
    POWER_ADAPTER = "Power Adapter"
    GATE_MOTOR_CONTROLLER = "Gate Motor Controller"


class Currency(StrEnum):
    INR = "INR"
    USD = "USD"


class AuditEntryType(StrEnum):
    STATUS_CHANGE = "status_change"
    QUOTE_GENERATED = "quote_generated"
    QUOTE_DECISION = "quote_decision"
    EPR_ACTION = "epr_action"
    PAYMENT = "payment"
    COMPLAINT = "complaint"
    GENERAL = "general"


def _required_text(value: str, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError(f"{label} is required")
    return value


class ServiceRequestCreate(BaseModel):
    customer_name: str = Field(..., max_length=255)
    customer_phone: Optional[str] = Field(default=None, max_length=32)
    address: str
    service_center: str = Field(..., max_length=255)
    serial_number: str = Field(..., max_length=128)
    product_type: ProductType
    product_model: Optional[str] = Field(default=None, max_length=128)
    purchase_date: date
    fault_description: str
    is_warranty_claim: bool = False
    geolocation: Optional[str] = Field(default=None, max_length=128)
    # Staff may file a request on behalf of a customer.
    customer_id: Optional[str] = None

    @field_validator("customer_name", "address", "service_center", "serial_number", "fault_description")
    @classmethod
    def _not_blank(cls, value: str, info) -> str:
        return _required_text(value, info.field_name.replace("_", " ").capitalize())

    @field_validator("purchase_date")
    @classmethod
    def _not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("Purchase date cannot be in the future")
        return value


class StatusUpdate(BaseModel):
    status: Status
    note: Optional[str] = Field(default=None, max_length=2000)


class AssignmentUpdate(BaseModel):
    assigned_technician: Optional[str] = Field(default=None, max_length=255)
    assigned_to: Optional[str] = None
    notes: Optional[str] = None


class EPRStatusUpdate(BaseModel):
    epr_status: EPRStatus
    details: str
    cost_estimation: Optional[float] = Field(default=None, gt=0)
    cost_estimation_currency: Optional[Currency] = None
    approval_decision: Optional[str] = None

    @field_validator("details")
    @classmethod
    def _details_required(cls, value: str) -> str:
        return _required_text(value, "Details")

    @field_validator("approval_decision")
    @classmethod
    def _decision_value(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower()
        if value not in {"approved", "declined"}:
            raise ValueError("approval_decision must be 'approved' or 'declined'")
        return value

    @model_validator(mode="after")
    def _currency_with_cost(self):
        if self.cost_estimation is not None and self.cost_estimation_currency is None:
            self.cost_estimation_currency = Currency.INR
        return self


class QuoteItem(BaseModel):
    description: str
    cost: float = Field(..., gt=0)
    # Left out, the quote falls back to the estimate currency or INR.
    currency: Optional[Currency] = None

    @field_validator("description")
    @classmethod
    def _description_required(cls, value: str) -> str:
        return _required_text(value, "Item description")


class QuoteCreate(BaseModel):
    items: List[QuoteItem] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _single_currency(self):
        currencies = {item.currency for item in self.items if item.currency is not None}
        if len(currencies) > 1:
            raise ValueError("All quote items must use the same currency")
        return self

    def resolved_currency(self, default: Currency = Currency.INR) -> Currency:
        for item in self.items:
            if item.currency is not None:
                return item.currency
        return default

    def stored_items(self, currency: str) -> List[Dict[str, Any]]:
        return [{**item.model_dump(mode="json"), "currency": currency} for item in self.items]


class QuoteDecision(BaseModel):
    approved: bool


class QuoteOut(BaseModel):
    id: str
    items: List[Dict[str, Any]]
    total_cost: float
    currency: Currency
    is_approved: Optional[bool] = None
    payment_qr_code_url: Optional[str] = None
    created_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AuditEntryOut(BaseModel):
    timestamp: datetime
    user: str
    action: str
    details: Optional[str] = None
    type: AuditEntryType = AuditEntryType.GENERAL
    metadata: Optional[Dict[str, Any]] = None
    epr_status: Optional[EPRStatus] = None
    cost_estimation: Optional[float] = None
    cost_estimation_currency: Optional[Currency] = None
    approval_decision: Optional[str] = None
    quote_decision: Optional[str] = None


class EPRTimelineEntryOut(BaseModel):
    timestamp: datetime
    user: str
    status: EPRStatus
    details: Optional[str] = None
    cost_estimation: Optional[float] = None
    cost_estimation_currency: Optional[Currency] = None
    approval_decision: Optional[str] = None


class ServiceRequestOut(BaseModel):
    id: str
    customer_id: str
    customer_name: str
    customer_phone: Optional[str] = None
    address: str
    service_center: str
    serial_number: str
    product_type: ProductType
    product_details: Optional[Dict[str, Any]] = None
    purchase_date: date
    fault_description: str
    image_urls: List[str] = Field(default_factory=list)
    geolocation: Optional[str] = None
    is_warranty_claim: bool
    status: Status
    assigned_technician: Optional[str] = None
    assigned_to: Optional[str] = None
    notes: Optional[str] = None
    current_epr_status: Optional[EPRStatus] = None
    epr_cost_estimation: Optional[float] = None
    epr_cost_estimation_currency: Optional[Currency] = None
    payment_required: bool = False
    payment_completed: bool = False
    quote: Optional[QuoteOut] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ServiceRequestDetailOut(ServiceRequestOut):
    audit_log: List[AuditEntryOut] = Field(default_factory=list)
    epr_timeline: List[EPRTimelineEntryOut] = Field(default_factory=list)


class ServiceRequestListResponse(BaseModel):
    items: List[ServiceRequestOut]
    total: int


class EPRCheckOut(BaseModel):
    current: Optional[EPRStatus] = None
    target: EPRStatus
    advisory_allowed: bool
    allowed: bool


class AuditLogOut(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    action: str
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    actor_type: str
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None


class AuditLogListResponse(BaseModel):
    items: List[AuditLogOut]
    next_cursor: Optional[str] = None
    has_more: bool = False
