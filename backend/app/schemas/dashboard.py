from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from app.schemas.bulk_request import BulkRequestOut
from app.schemas.payment import PaymentStatsOut
from app.schemas.service_request import ServiceRequestOut
from app.schemas.support import ComplaintOut


class AdminKpis(BaseModel):
    total: int
    in_progress: int
    completed: int
    # Mean rating to one decimal, or "N/A" when there is no feedback yet.
    avg_rating: Union[str, float]
    completion_rate: float


class AdminDashboardOut(BaseModel):
    kpis: AdminKpis
    by_status: Dict[str, int]
    by_product: Dict[str, int]
    payment_stats: Optional[PaymentStatsOut] = None
    feedback_count: int = 0
    open_complaints: int = 0
    refresh_seconds: int


class EPRDashboardOut(BaseModel):
    requests: List[ServiceRequestOut]
    pending_estimation: List[ServiceRequestOut] = Field(default_factory=list)
    approved_quotes: List[ServiceRequestOut] = Field(default_factory=list)
    declined_quotes: List[ServiceRequestOut] = Field(default_factory=list)
    epr_completion_rate: float
    quote_approval_rate: float
    refresh_seconds: int


class CustomerDashboardOut(BaseModel):
    requests: List[ServiceRequestOut]
    complaint_eligible: List[ServiceRequestOut] = Field(default_factory=list)
    complaints: List[ComplaintOut] = Field(default_factory=list)
    unread_notifications: int = 0
    refresh_seconds: int


class PartnerDashboardOut(BaseModel):
    bulk_requests: List[BulkRequestOut]
    bulk_status_counts: Dict[str, int]
    requests: List[ServiceRequestOut] = Field(default_factory=list)
    total_equipment: int = 0
    refresh_seconds: int


class ServiceDashboardOut(BaseModel):
    requests: List[ServiceRequestOut]
    by_status: Dict[str, int]
    open_complaints: List[ComplaintOut] = Field(default_factory=list)
    refresh_seconds: int
