import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")


class User(Base):
    __tablename__ = "app_users"

    # Same id as the Supabase auth subject.
    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(32), nullable=False)
    full_name = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ServiceRequest(Base):
    __tablename__ = "service_requests"
    __table_args__ = (
        Index("idx_service_requests_customer", "customer_id"),
        Index("idx_service_requests_status", "status"),
        Index("idx_service_requests_created", "created_at"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    customer_id = Column(UUID_TYPE, nullable=False)
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(32))
    address = Column(Text, nullable=False)
    service_center = Column(String(255), nullable=False)
    serial_number = Column(String(128), nullable=False)
    product_type = Column(String(64), nullable=False)
    product_details = Column(JSON_TYPE)
    purchase_date = Column(Date, nullable=False)
    fault_description = Column(Text, nullable=False)
    image_urls = Column(JSON_TYPE)
    geolocation = Column(String(128))
    is_warranty_claim = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    status = Column(String(32), nullable=False, default="Received", server_default=text("'Received'"))
    assigned_technician = Column(String(255))
    assigned_to = Column(UUID_TYPE)
    notes = Column(Text)
    current_epr_status = Column(String(64))
    epr_cost_estimation = Column(Numeric(12, 2))
    epr_cost_estimation_currency = Column(String(3))
    payment_required = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    payment_completed = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    quotes = relationship(
        "Quote",
        back_populates="service_request",
        order_by="Quote.created_at",
        cascade="all, delete-orphan",
    )


class BulkServiceRequest(Base):
    __tablename__ = "bulk_service_requests"
    __table_args__ = (
        Index("idx_bulk_requests_requester", "requester_id"),
        Index("idx_bulk_requests_status", "status"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    requester_id = Column(UUID_TYPE, nullable=False)
    requester_role = Column(String(32), nullable=False)
    requester_name = Column(String(255), nullable=False)
    company_name = Column(String(255), nullable=False)
    contact_phone = Column(String(32))
    contact_email = Column(String(255))
    priority = Column(String(16), nullable=False, default="medium", server_default=text("'medium'"))
    status = Column(String(32), nullable=False, default="pending", server_default=text("'pending'"))
    epr_status = Column(String(64))
    epr_cost_estimation = Column(Numeric(12, 2))
    epr_cost_estimation_currency = Column(String(3))
    estimated_total_value = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship(
        "BulkEquipmentItem",
        back_populates="bulk_request",
        order_by="BulkEquipmentItem.position",
        cascade="all, delete-orphan",
    )
    quotes = relationship(
        "Quote",
        back_populates="bulk_request",
        order_by="Quote.created_at",
        cascade="all, delete-orphan",
    )


class BulkEquipmentItem(Base):
    __tablename__ = "bulk_equipment_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_bulk_item_quantity_positive"),)

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    bulk_request_id = Column(
        UUID_TYPE,
        ForeignKey("bulk_service_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    position = Column(Integer, nullable=False, default=0)
    equipment_type = Column(String(64), nullable=False)
    equipment_model = Column(String(128))
    serial_number = Column(String(128))
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    total_price = Column(Numeric(12, 2), nullable=False, default=0)
    issue_description = Column(Text)
    issue_category = Column(String(64))
    severity = Column(String(16))
    item_status = Column(String(32), nullable=False, default="pending", server_default=text("'pending'"))
    epr_status = Column(String(64))
    epr_cost_estimation = Column(Numeric(12, 2))
    epr_cost_estimation_currency = Column(String(3))

    bulk_request = relationship("BulkServiceRequest", back_populates="items")


class Quote(Base):
    __tablename__ = "quotes"
    __table_args__ = (
        CheckConstraint(
            "(service_request_id IS NOT NULL) OR (bulk_request_id IS NOT NULL)",
            name="ck_quotes_has_parent",
        ),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    service_request_id = Column(UUID_TYPE, ForeignKey("service_requests.id", ondelete="CASCADE"))
    bulk_request_id = Column(UUID_TYPE, ForeignKey("bulk_service_requests.id", ondelete="CASCADE"))
    items = Column(JSON_TYPE, nullable=False)
    total_cost = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    is_approved = Column(Boolean, nullable=True)
    payment_qr_code_url = Column(Text)
    created_by = Column(String(255))
    decided_by = Column(UUID_TYPE)
    decided_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    service_request = relationship("ServiceRequest", back_populates="quotes")
    bulk_request = relationship("BulkServiceRequest", back_populates="quotes")


class Complaint(Base):
    __tablename__ = "complaints"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    request_id = Column(UUID_TYPE, ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(UUID_TYPE, nullable=False)
    customer_name = Column(String(255), nullable=False)
    complaint_details = Column(Text, nullable=False)
    is_resolved = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    resolved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    service_request = relationship("ServiceRequest")


class Feedback(Base):
    __tablename__ = "feedback"
    __table_args__ = (
        UniqueConstraint("service_request_id", name="uq_feedback_service_request"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_feedback_rating_range"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    service_request_id = Column(
        UUID_TYPE,
        ForeignKey("service_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    customer_id = Column(UUID_TYPE, nullable=False)
    rating = Column(SmallInteger, nullable=False)
    comment = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_payments_request", "service_request_id"),
        Index("idx_payments_status", "status"),
        UniqueConstraint("provider", "provider_order_id", name="uq_payments_provider_order"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    service_request_id = Column(
        UUID_TYPE,
        ForeignKey("service_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    quote_id = Column(UUID_TYPE, ForeignKey("quotes.id", ondelete="SET NULL"))
    customer_id = Column(UUID_TYPE, nullable=False)
    provider = Column(String(32), nullable=False, default="stripe", server_default=text("'stripe'"))
    provider_order_id = Column(String(128))
    provider_payment_id = Column(String(128))
    checkout_url = Column(Text)
    receipt = Column(String(64), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(32), nullable=False, default="pending", server_default=text("'pending'"))
    method = Column(String(32))
    failure_reason = Column(Text)
    refund_amount = Column(Numeric(12, 2))
    refund_reason = Column(Text)
    provider_refund_id = Column(String(128))
    raw_payload = Column(JSON_TYPE)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    captured_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    service_request = relationship("ServiceRequest")


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (Index("idx_notifications_customer_read", "customer_id", "read"),)

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    customer_id = Column(UUID_TYPE, nullable=False)
    type = Column(String(16), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    service_request_id = Column(UUID_TYPE, ForeignKey("service_requests.id", ondelete="CASCADE"))
    payment_id = Column(UUID_TYPE, ForeignKey("payments.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_logs_entity", "entity_type", "entity_id", "timestamp"),)

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(UUID_TYPE)
    actor_email = Column(String(255))
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
