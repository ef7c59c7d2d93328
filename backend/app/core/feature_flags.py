from fastapi import HTTPException

from app.core.config import get_settings


def ensure_payments_enabled() -> None:
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=503, detail="Payments are not configured")


def ensure_chat_enabled() -> None:
    settings = get_settings()
    if not settings.enable_chat_assistant:
        raise HTTPException(status_code=404, detail="Not found")
