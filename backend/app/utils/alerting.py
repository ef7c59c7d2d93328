import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "PAYMENT_FAILED": 5,
    "PAYMENT_REFUND_FAILED": 3,
    "STRIPE_SIGNATURE_INVALID": 5,
    "AUTH_LOGIN_FAILED": 20,
    "RATE_LIMIT_BLOCKED": 20,
}


class AuditAlertTracker:
    """Counts error-like audit actions in a sliding window and logs an alert at each threshold multiple."""

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, action: str, metadata: Optional[dict] = None) -> bool:
        if action not in self._thresholds:
            return False
        limit = self._thresholds[action]
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(action, deque())
            cutoff = now - self._window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            if len(bucket) >= limit and len(bucket) % limit == 0:
                logger.warning(
                    "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
                    action,
                    len(bucket),
                    self._window_seconds,
                    metadata or {},
                )
                return True
            return False

    def count(self, action: str) -> int:
        with self._lock:
            return len(self._buckets.get(action, ()))


def parse_thresholds(entries: list[str]) -> dict[str, int]:
    thresholds = dict(DEFAULT_THRESHOLDS)
    for entry in entries:
        action, _, raw = entry.partition("=")
        action = action.strip().upper()
        try:
            limit = int(raw)
        except ValueError:
            logger.warning("Ignoring malformed alert threshold %r", entry)
            continue
        if limit <= 0:
            thresholds.pop(action, None)
        else:
            thresholds[action] = limit
    return thresholds


def build_alert_tracker(settings: Optional[Settings] = None) -> AuditAlertTracker:
    settings = settings or get_settings()
    window = settings.alert_window_seconds if settings.alert_window_seconds > 0 else DEFAULT_WINDOW_SECONDS
    return AuditAlertTracker(window, parse_thresholds(settings.alert_thresholds))


alert_tracker = build_alert_tracker()
