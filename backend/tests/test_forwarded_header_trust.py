from types import SimpleNamespace

from app.core.config import get_settings
from app.utils.rate_limit import get_client_ip


def _request(*, peer_ip: str, forwarded_for: str | None = None, real_ip: str | None = None):
    headers = {}
    if forwarded_for is not None:
        headers["x-forwarded-for"] = forwarded_for
    if real_ip is not None:
        headers["x-real-ip"] = real_ip
    return SimpleNamespace(headers=headers, client=SimpleNamespace(host=peer_ip))


def test_forwarded_for_ignored_from_untrusted_peer():
    settings = get_settings()
    original = settings.trusted_proxy_cidrs
    try:
        settings.trusted_proxy_cidrs = ["10.0.0.0/8"]
        req = _request(peer_ip="198.51.100.15", forwarded_for="203.0.113.9")
        assert get_client_ip(req) == "198.51.100.15"
    finally:
        settings.trusted_proxy_cidrs = original


def test_forwarded_for_used_behind_trusted_proxy():
    settings = get_settings()
    original = settings.trusted_proxy_cidrs
    try:
        settings.trusted_proxy_cidrs = ["10.0.0.0/8"]
        req = _request(peer_ip="10.1.2.3", forwarded_for="1.1.1.1, 203.0.113.9")
        assert get_client_ip(req) == "203.0.113.9"
        req = _request(peer_ip="10.1.2.3", real_ip="203.0.113.7")
        assert get_client_ip(req) == "203.0.113.7"
    finally:
        settings.trusted_proxy_cidrs = original


def test_no_trusted_proxies_means_peer_ip():
    settings = get_settings()
    original = settings.trusted_proxy_cidrs
    try:
        settings.trusted_proxy_cidrs = []
        req = _request(peer_ip="10.1.2.3", forwarded_for="203.0.113.9")
        assert get_client_ip(req) == "10.1.2.3"
    finally:
        settings.trusted_proxy_cidrs = original
