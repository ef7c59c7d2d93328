import uuid
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import CurrentUser
from app.models.service_request import Base, ServiceRequest
from app.services import chat_assistant


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def customer():
    return CurrentUser(id=str(uuid.uuid4()), role="customer", email="asha@example.com")


def _request(db, customer_id, status="Diagnosis"):
    item = ServiceRequest(
        customer_id=customer_id,
        customer_name="Asha Patel",
        address="12 Farm Road",
        service_center="Gujarat",
        serial_number="EN-42",
        product_type="Energizer Product",
        purchase_date=date(2024, 3, 1),
        fault_description="Weak pulse",
        status=status,
    )
    db.add(item)
    db.commit()
    return item


@pytest.mark.parametrize(
    "message,intent",
    [
        ("Hi there", "greeting"),
        ("Can you check my repair?", "status"),
        ("How do I submit a request", "new_request"),
        ("Is water damage covered?", "warranty"),
        ("How long will it take", "duration"),
        ("Where is the nearest service centre", "service_center"),
        ("What does it cost", "payment"),
        ("I need technical help", "support"),
        ("What is your phone number", "contact"),
        ("Show common questions", "faq"),
        ("thanks a lot", "thanks"),
        ("this thing is broken", "default"),
    ],
)
def test_detect_intent(message, intent):
    assert chat_assistant.detect_intent(message) == intent


def test_greeting_uses_display_name(db, customer):
    reply = chat_assistant.reply_to(db, customer, "hello")
    assert reply.intent == "greeting"
    assert "asha@example.com" in reply.reply


def test_status_without_requests(db, customer):
    reply = chat_assistant.reply_to(db, customer, "status")
    assert reply.intent == "status"
    assert "don't have any service requests" in reply.reply
    assert reply.request_ids == []


def test_status_lists_recent_requests(db, customer):
    first = _request(db, customer.id)
    second = _request(db, customer.id, status="Completed")
    _request(db, str(uuid.uuid4()))

    reply = chat_assistant.reply_to(db, customer, "status")
    assert sorted(reply.request_ids) == sorted([str(first.id), str(second.id)])
    assert "status <request id>" in reply.reply


def test_status_by_full_id(db, customer):
    item = _request(db, customer.id, status="Quality Check")
    reply = chat_assistant.reply_to(db, customer, f"status {item.id}")
    assert reply.request_ids == [str(item.id)]
    assert "Status: Quality Check" in reply.reply
    assert chat_assistant.STATUS_DESCRIPTIONS["Quality Check"] in reply.reply


def test_status_by_short_id(db, customer):
    item = _request(db, customer.id)
    short = str(item.id)[:8]
    reply = chat_assistant.reply_to(db, customer, f"track {short}")
    assert reply.request_ids == [str(item.id)]


def test_status_for_someone_elses_request(db, customer):
    other = _request(db, str(uuid.uuid4()))
    reply = chat_assistant.reply_to(db, customer, f"status {other.id}")
    assert reply.request_ids == []
    assert "couldn't find" in reply.reply


def test_canned_reply(db, customer):
    reply = chat_assistant.reply_to(db, customer, "what about warranty")
    assert reply.reply == chat_assistant.CANNED_REPLIES["warranty"]


def test_faq_search():
    assert len(chat_assistant.search_faq()) == len(chat_assistant.FAQ)
    assert len(chat_assistant.search_faq("   ")) == len(chat_assistant.FAQ)
    hits = chat_assistant.search_faq("Warranty")
    assert hits
    assert all("warranty" in (h["question"] + h["answer"]).lower() for h in hits)
    assert chat_assistant.search_faq("zeppelin") == []
