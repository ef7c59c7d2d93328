"""In-process rate limiting and client address helpers.

Limits are per client IP and per scope (auth endpoints, the general API, the
Stripe webhook). Buckets live in memory, so each worker process counts on its
own.
"""

import ipaddress
import time
from collections import deque
from threading import Lock
from typing import Optional

from fastapi import Request

from app.core.config import get_settings

SCOPE_AUTH = "auth"
SCOPE_API = "api"
SCOPE_STRIPE_WEBHOOK = "stripe"

MINUTE = 60
DEFAULT_MAX_BUCKETS = 50_000
DEFAULT_PRUNE_INTERVAL_SECONDS = 60


def client_key(scope: str, ip: Optional[str]) -> str:
    return f"{scope}:ip:{ip or 'unknown'}"


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        max_buckets: int = DEFAULT_MAX_BUCKETS,
        prune_interval_seconds: int = DEFAULT_PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._max_buckets = max_buckets
        self._prune_every = max(1, int(prune_interval_seconds))
        self._pruned_at = 0.0

    @staticmethod
    def _drop_expired(bucket: deque, cutoff: float) -> None:
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def allow(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        """Register one hit for ``key``.

        Returns ``(allowed, hits)``. A rejected hit is not counted. A
        non-positive limit or window disables limiting.
        """
        if limit <= 0 or window_seconds <= 0:
            return True, 0
        now = time.monotonic()
        cutoff = now - window_seconds
        with self._lock:
            overfull = len(self._hits) > self._max_buckets
            if overfull or now - self._pruned_at >= self._prune_every:
                self._prune(cutoff)
                self._pruned_at = now

            bucket = self._hits.setdefault(key, deque())
            self._drop_expired(bucket, cutoff)
            if len(bucket) >= limit:
                return False, len(bucket)
            bucket.append(now)
            return True, len(bucket)

    def allow_per_minute(self, scope: str, ip: Optional[str], limit: int) -> bool:
        allowed, _ = self.allow(client_key(scope, ip), limit, MINUTE)
        return allowed

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._hits)

    def _prune(self, cutoff: float) -> None:
        for key in list(self._hits):
            bucket = self._hits[key]
            self._drop_expired(bucket, cutoff)
            if not bucket:
                del self._hits[key]

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._pruned_at = 0.0


rate_limiter = SlidingWindowRateLimiter()


def ip_in_networks(ip: str, networks: list[str]) -> bool:
    """True when ``ip`` equals an entry or falls inside a CIDR entry.

    Non-IP values (such as the "testclient" host) only match literally.
    Malformed entries are ignored.
    """
    if not ip:
        return False
    if ip in networks:
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for entry in networks:
        try:
            network = ipaddress.ip_network(entry, strict=False)
        except ValueError:
            continue
        if address in network:
            return True
    return False


def get_client_ip(request: Request) -> Optional[str]:
    # Forwarded headers are spoofable; read them only from a trusted proxy peer.
    peer = request.client.host if request.client else None
    trusted = get_settings().trusted_proxy_cidrs
    if not peer or not trusted or not ip_in_networks(peer, trusted):
        return peer

    forwarded = [part.strip() for part in request.headers.get("x-forwarded-for", "").split(",")]
    forwarded = [part for part in forwarded if part]
    if forwarded:
        # The proxy appends the address it saw last.
        return forwarded[-1]
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    return real_ip or peer


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") if request else None
