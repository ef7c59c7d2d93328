"""Keyword based support assistant and the static FAQ."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import String, cast, func
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser
from app.models.service_request import ServiceRequest
from app.services.request_service import can_view_request, visible_requests_query

UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
# Short references are the first 8 hex characters of the request id.
SHORT_ID_RE = re.compile(r"(?<![0-9a-fA-F])[0-9a-fA-F]{8}(?![0-9a-fA-F])")
RECENT_LIMIT = 5

STATUS_DESCRIPTIONS = {
    "Received": "Your request has been submitted and logged in our system.",
    "Diagnosis": "Our technicians are examining your product to identify the issue.",
    "Awaiting Approval": "A repair quote is ready for your approval.",
    "Repair in Progress": "Your product is being repaired by our certified technicians.",
    "Quality Check": "Final testing and quality assurance is being performed.",
    "Dispatched": "Your repaired product is being shipped back to you.",
    "Completed": "Your product has been delivered and the case is closed.",
    "Cancelled": "This request has been cancelled.",
}

CANNED_REPLIES = {
    "new_request": (
        "To submit a new service request open your dashboard, choose 'Submit New Request' and fill in "
        "the product type, serial number, purchase date, a description of the problem, your address, "
        "the preferred service center and photos of the issue."
    ),
    "warranty": (
        "Warranty coverage: Energizer products 1-2 years, power adapters 1 year, gate motor controllers "
        "2 years. Manufacturing defects and component failures are covered; physical damage, water "
        "damage and misuse are not. Warranty status is verified during diagnosis."
    ),
    "duration": (
        "Simple repairs take 1-3 business days, moderate repairs 3-7 and complex repairs 7-14. "
        "You are notified at each stage: Received, Diagnosis, Awaiting Approval, Repair in Progress, "
        "Quality Check, Dispatched, Completed."
    ),
    "service_center": (
        "Our service centers are in Maharashtra (India), Gujarat (India) and Dubai (UAE). "
        "Choose the one closest to you for faster processing."
    ),
    "payment": (
        "Warranty repairs are free. Out-of-warranty repairs get a quote after diagnosis; once you approve "
        "it you receive a secure card payment link. Payment is due before repair work begins."
    ),
    "support": (
        "I can help with troubleshooting, installation guidance and questions about your service "
        "requests. Describe the problem and I will do my best to help."
    ),
    "contact": (
        "Email support@a1fenceservices.com or call +1-800-A1-FENCE, Mon-Fri 8AM-6PM and Sat 9AM-4PM."
    ),
    "faq": (
        "I can answer questions about the service request process, warranty coverage, repair times, "
        "payment options, technical support and service centers. Try 'What is covered under warranty?'"
    ),
    "thanks": "You're very welcome! Is there anything else I can help you with?",
    "default": (
        "I'm not sure I understand. You can ask me to check a status ('status' or 'status <request id>'), "
        "how to submit a new request, what the warranty covers, how long a repair takes, or for support."
    ),
}

# Checked in order; the first matching intent wins.
INTENT_PATTERNS = [
    ("greeting", re.compile(r"\b(hello|hi|hey)\b")),
    ("status", re.compile(r"\b(status|check|track)\b")),
    ("new_request", re.compile(r"\b(new request|submit|create)\b")),
    ("warranty", re.compile(r"\b(warranty|covered)\b")),
    ("duration", re.compile(r"\b(how long|time|duration)\b")),
    ("service_center", re.compile(r"\b(service cent(er|re)|location|where)\b")),
    ("payment", re.compile(r"\b(payment|pay|cost|price|charge)\b")),
    ("support", re.compile(r"\b(technical|help|support|troubleshoot)\b")),
    ("contact", re.compile(r"\b(contact|phone|email|reach)\b")),
    ("faq", re.compile(r"\b(faq|questions|common)\b")),
    ("thanks", re.compile(r"\b(thank|thanks)\b")),
]


@dataclass
class ChatReply:
    reply: str
    intent: str
    request_ids: list[str] = field(default_factory=list)


def detect_intent(message: str) -> str:
    text = message.lower().strip()
    for intent, pattern in INTENT_PATTERNS:
        if pattern.search(text):
            return intent
    return "default"


def _format_request(service_request: ServiceRequest) -> str:
    created = service_request.created_at.strftime("%Y-%m-%d") if service_request.created_at else "-"
    return (
        f"Request {service_request.id}\n"
        f"Status: {service_request.status}\n"
        f"Product: {service_request.product_type}\n"
        f"Created: {created}\n"
        f"{STATUS_DESCRIPTIONS.get(service_request.status, 'Status update available.')}"
    )


def _lookup_request(db: Session, user: CurrentUser, message: str) -> tuple[bool, Optional[ServiceRequest]]:
    """Return (reference_given, request). The request is None when not found or not visible."""
    match = UUID_RE.search(message)
    if match:
        service_request = db.get(ServiceRequest, uuid.UUID(match.group(0)))
    else:
        short = SHORT_ID_RE.search(message)
        if not short:
            return False, None
        service_request = (
            visible_requests_query(db, user)
            .filter(func.lower(cast(ServiceRequest.id, String)).like(f"{short.group(0).lower()}%"))
            .first()
        )
    if service_request is None or not can_view_request(service_request, user):
        return True, None
    return True, service_request


def _status_reply(db: Session, user: CurrentUser, message: str) -> ChatReply:
    reference_given, service_request = _lookup_request(db, user, message)
    if reference_given:
        if service_request is None:
            return ChatReply(
                reply="Sorry, I couldn't find a request with that ID associated with your account.",
                intent="status",
            )
        return ChatReply(reply=_format_request(service_request), intent="status", request_ids=[str(service_request.id)])

    query = visible_requests_query(db, user)
    total = query.count()
    if total == 0:
        return ChatReply(
            reply="You don't have any service requests yet. Would you like help submitting a new request?",
            intent="status",
        )
    recent = query.order_by(ServiceRequest.created_at.desc()).limit(RECENT_LIMIT).all()
    lines = ["Your service requests:"]
    for index, item in enumerate(recent, start=1):
        lines.append(f"{index}. {item.id} - {item.status} ({item.product_type})")
    if total > RECENT_LIMIT:
        lines.append(f"... and {total - RECENT_LIMIT} more requests.")
    lines.append("To get the detailed status, type: 'status <request id>'")
    return ChatReply(reply="\n".join(lines), intent="status", request_ids=[str(item.id) for item in recent])


def reply_to(db: Session, user: CurrentUser, message: str) -> ChatReply:
    intent = detect_intent(message)
    if intent == "greeting":
        return ChatReply(
            reply=f"Hello {user.display_name}! I'm here to help with your A-1 Fence Services needs. "
            "What can I assist you with today?",
            intent=intent,
        )
    if intent == "status":
        return _status_reply(db, user, message)
    return ChatReply(reply=CANNED_REPLIES[intent], intent=intent)


FAQ = [
    {
        "category": "Getting Started",
        "question": "How do I submit a new service request?",
        "answer": "From your dashboard choose 'Submit New Request' and fill in the form with your serial number, "
        "product type, purchase date and a detailed description of the problem.",
    },
    {
        "category": "Getting Started",
        "question": "What information do I need to submit a service request?",
        "answer": "Your contact information, product serial number, product type (Energizer Product, Power Adapter "
        "or Gate Motor Controller), purchase date, fault description, address, preferred service center and "
        "photos of the issue if applicable.",
    },
    {
        "category": "Getting Started",
        "question": "How do I find my product serial number?",
        "answer": "The serial number is on a label on the product: the back or bottom of Energizer devices, near "
        "the power input on adapters, and on the control box or motor unit of gate motor controllers.",
    },
    {
        "category": "Tracking",
        "question": "How can I track the status of my repair?",
        "answer": "Your dashboard shows every request and its timeline: Received, Diagnosis, Awaiting Approval, "
        "Repair in Progress, Quality Check, Dispatched, Completed.",
    },
    {
        "category": "Tracking",
        "question": "How will I be notified about status updates?",
        "answer": "You receive a notification at each major status change and can check your dashboard at any time.",
    },
    {
        "category": "Repair Process",
        "question": "How long does a typical repair take?",
        "answer": "Simple repairs take 1-3 business days, moderate repairs 3-7 and complex repairs 7-14.",
    },
    {
        "category": "Repair Process",
        "question": "Do I need to approve repair costs before work begins?",
        "answer": "Yes. For non-warranty repairs you receive an itemized quote after diagnosis and must approve it "
        "before repair work begins.",
    },
    {
        "category": "Warranty",
        "question": "What is covered under warranty?",
        "answer": "Manufacturing defects and component failures under normal use. Energizer Products 1-2 years, "
        "Power Adapters 1 year, Gate Motor Controllers 2 years. Physical damage, water damage and misuse are "
        "not covered.",
    },
    {
        "category": "Warranty",
        "question": "What if my product is out of warranty?",
        "answer": "Out-of-warranty repairs are available. You receive a quote after diagnosis and can proceed or "
        "have the product returned unrepaired.",
    },
    {
        "category": "Shipping",
        "question": "Which service center will handle my repair?",
        "answer": "You choose between Maharashtra (India), Gujarat (India) and Dubai (UAE).",
    },
    {
        "category": "Payment",
        "question": "How do I pay for repairs?",
        "answer": "After approving your quote you receive a secure card payment link. Payment must be completed "
        "before repair work begins.",
    },
    {
        "category": "Payment",
        "question": "What if I'm not satisfied with the repair?",
        "answer": "All repairs carry a 90-day warranty. Contact us and we will re-examine the product at no "
        "additional cost.",
    },
    {
        "category": "Support",
        "question": "What if my product can't be repaired?",
        "answer": "If a product is beyond economical repair we discuss replacement options with you.",
    },
]


def search_faq(term: Optional[str] = None) -> list[dict[str, str]]:
    if not term or not term.strip():
        return list(FAQ)
    needle = term.strip().lower()
    return [item for item in FAQ if needle in item["question"].lower() or needle in item["answer"].lower()]
