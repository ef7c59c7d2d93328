from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import SessionLocal
from app.services.payment_service import expire_stale_payments

logger = logging.getLogger(__name__)


def expire_pending_payments(db: Session) -> int:
    """
    Idempotent cleanup: pending payments older than PENDING_PAYMENT_EXPIRY_MINUTES
    become cancelled. A later checkout for the same quote opens a fresh session.
    """
    settings = get_settings()
    minutes = max(1, int(settings.pending_payment_expiry_minutes or 60))
    return expire_stale_payments(db, older_than=timedelta(minutes=minutes))


async def _payment_expiry_loop(*, interval_seconds: int) -> None:
    # Backoff on errors to avoid tight loops.
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs or SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            db = SessionLocal()
            try:
                expired_count = expire_pending_payments(db)
                if expired_count:
                    logger.info("Expired pending payments: %s", expired_count)
                db.commit()
            finally:
                db.close()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Payment expiry worker error")
            await asyncio.sleep(error_sleep)


def start_payment_expiry_worker(interval_seconds: int = 300) -> asyncio.Task:
    interval = int(max(30, min(3600, interval_seconds)))
    return asyncio.create_task(_payment_expiry_loop(interval_seconds=interval))
