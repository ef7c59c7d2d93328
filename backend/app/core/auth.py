import logging
import threading
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import PyJWKClient

from app.core.config import get_settings
from app.schemas.auth import Role

logger = logging.getLogger(__name__)

ALLOWED_ROLES = {role.value for role in Role}
STAFF_ROLES = (Role.ADMIN.value, Role.SERVICE.value)
BULK_REQUESTER_ROLES = (Role.CHANNEL_PARTNER.value, Role.SYSTEM_INTEGRATOR.value)

# Thread-safe JWKS client cache (initialised lazily, lives for process lifetime).
_jwks_client: Optional[PyJWKClient] = None
_jwks_lock = threading.Lock()


def _get_jwks_client(jwks_url: str) -> PyJWKClient:
    """Return a cached PyJWKClient (with built-in key caching)."""
    global _jwks_client
    if _jwks_client is not None:
        return _jwks_client
    with _jwks_lock:
        if _jwks_client is not None:
            return _jwks_client
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)
        return _jwks_client


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    access_token: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or self.id


def _extract_role(payload: dict) -> Optional[str]:
    # SECURITY: role must come only from server-managed app_metadata.
    # user_metadata is user-editable in Supabase Auth and cannot be trusted for RBAC.
    # Self-registered accounts carry no role claim and are customers.
    app_meta = payload.get("app_metadata") or {}
    raw = app_meta.get("role")
    if raw is None:
        return Role.CUSTOMER.value
    role = str(raw).strip().lower()
    if role not in ALLOWED_ROLES:
        return None
    return role


def _decode_options(settings):
    """Build shared audience kwargs + options dict."""
    audience = (settings.supabase_jwt_audience or "").strip()
    decode_kwargs = {}
    options = {}
    if audience:
        decode_kwargs["audience"] = audience
        options["verify_aud"] = True
    else:
        options["verify_aud"] = False
    return decode_kwargs, options


def _try_hs256(token: str, settings, decode_kwargs: dict, options: dict):
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            options=options,
            **decode_kwargs,
        )
    except jwt.InvalidTokenError:
        return None


def _try_es256(token: str, settings, decode_kwargs: dict, options: dict):
    """Attempt ES256 verification via the Supabase JWKS endpoint."""
    supabase_url = (settings.supabase_url or "").rstrip("/")
    if not supabase_url:
        return None
    jwks_url = f"{supabase_url}/auth/v1/.well-known/jwks.json"
    try:
        client = _get_jwks_client(jwks_url)
        signing_key = client.get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["ES256"],
            options=options,
            **decode_kwargs,
        )
    except (jwt.PyJWKClientError, jwt.InvalidTokenError) as exc:
        logger.debug("ES256 verification failed: %s", exc)
        return None


def decode_access_token(token: str) -> dict:
    settings = get_settings()

    if not settings.supabase_jwt_secret and not settings.supabase_url:
        raise HTTPException(500, "SUPABASE_JWT_SECRET is not configured")

    decode_kwargs, options = _decode_options(settings)

    # Peek at the header to pick the verification order and avoid needless JWKS calls.
    try:
        header = jwt.get_unverified_header(token)
    except jwt.DecodeError:
        raise HTTPException(401, "Invalid token")

    alg = header.get("alg", "")

    payload = None
    if alg == "ES256":
        payload = _try_es256(token, settings, decode_kwargs, options)
        if payload is None and settings.supabase_jwt_secret:
            payload = _try_hs256(token, settings, decode_kwargs, options)
    else:
        if settings.supabase_jwt_secret:
            payload = _try_hs256(token, settings, decode_kwargs, options)
        if payload is None:
            payload = _try_es256(token, settings, decode_kwargs, options)

    if payload is None:
        raise HTTPException(401, "Invalid token")
    return payload


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    payload = decode_access_token(token)

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(401, "Invalid token")

    role = _extract_role(payload)
    if not role:
        raise HTTPException(403, "Missing role")

    user_meta = payload.get("user_metadata") or {}
    return CurrentUser(
        id=user_id,
        role=role,
        email=payload.get("email"),
        full_name=user_meta.get("full_name"),
        access_token=token,
    )


def require_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "Forbidden")
        return user

    return _dependency
