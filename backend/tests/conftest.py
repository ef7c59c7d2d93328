import os
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest
import pytest_asyncio

from app.core.config import get_settings

BASE_URL = os.getenv("BASE_URL", "http://127.0.0.1:8000")

ADMIN_SUB = "00000000-0000-0000-0000-000000000001"
CUSTOMER_SUB = "00000000-0000-0000-0000-000000000002"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests that patch env vars clear the settings cache; never leak a cached
    # Settings instance (e.g. with a different JWT secret) into the next test.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _has_jwt_secret() -> bool:
    return bool(os.getenv("SUPABASE_JWT_SECRET"))


def _build_auth_header(role: str | None = None) -> dict:
    """Build auth headers.

    When SUPABASE_JWT_SECRET is set, mint a real JWT.
    Otherwise, use X-Test-* headers consumed by the dependency override.
    """
    token = os.getenv("TEST_AUTH_TOKEN")
    if token:
        return {"Authorization": f"Bearer {token}"}

    effective_role = role or os.getenv("TEST_AUTH_ROLE", "admin")
    default_sub = ADMIN_SUB if effective_role == "admin" else CUSTOMER_SUB
    sub = os.getenv("TEST_AUTH_SUB", default_sub)

    secret = os.getenv("SUPABASE_JWT_SECRET")
    if not secret:
        return {
            "X-Test-Role": effective_role,
            "X-Test-Sub": sub,
            "X-Test-Email": os.getenv("TEST_AUTH_EMAIL", "tests@example.com"),
        }

    payload = {
        "sub": sub,
        "email": os.getenv("TEST_AUTH_EMAIL", "tests@example.com"),
        "app_metadata": {"role": effective_role},
        # Keep in sync with the audience check in app.core.auth.
        "aud": os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated"),
        "iat": int(datetime.now(timezone.utc).timestamp()),
        "exp": int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp()),
    }
    return {"Authorization": f"Bearer {jwt.encode(payload, secret, algorithm='HS256')}"}


def _install_test_auth_override():
    """Install a dependency override that reads the caller from X-Test-* headers.

    Re-installs if another test cleared app.dependency_overrides.
    """
    from fastapi import Request

    from app.core.auth import CurrentUser, get_current_user
    from app.main import app

    if get_current_user in app.dependency_overrides:
        return

    def _test_get_current_user(request: Request):
        role = request.headers.get("x-test-role", "admin")
        sub = request.headers.get("x-test-sub", ADMIN_SUB)
        email = request.headers.get("x-test-email", "tests@example.com")
        return CurrentUser(id=sub, role=role, email=email)

    app.dependency_overrides[get_current_user] = _test_get_current_user


async def _make_asgi_client(headers: dict):
    from app.main import app

    if not _has_jwt_secret():
        _install_test_auth_override()

    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test", headers=headers)


async def _client_for(role: str):
    headers = _build_auth_header(role=role)
    # USE_LIVE_SERVER=true runs against a server at BASE_URL (manual smoke tests).
    if os.getenv("USE_LIVE_SERVER", "").strip().lower() in {"1", "true", "yes"}:
        return httpx.AsyncClient(base_url=BASE_URL, headers=headers)
    return await _make_asgi_client(headers)


@pytest_asyncio.fixture
async def client():
    c = await _client_for("admin")
    async with c:
        yield c


@pytest_asyncio.fixture
async def customer_client():
    """Client authenticated as a customer (for RBAC tests)."""
    c = await _client_for("customer")
    async with c:
        yield c
