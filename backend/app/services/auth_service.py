"""Supabase Auth REST calls (signup, password login, recovery, user update)
plus the local ``app_users`` mirror."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser
from app.core.config import get_settings
from app.models.service_request import User
from app.schemas.auth import RegisterRequest, Role

logger = logging.getLogger(__name__)

SELF_SIGNUP_ROLES = {Role.CUSTOMER}
AUTH_TIMEOUT_SECONDS = 10.0


def _auth_base_url() -> str:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        raise HTTPException(503, "Auth provider is not configured")
    return f"{settings.supabase_url.rstrip('/')}/auth/v1"


def _headers(access_token: Optional[str] = None) -> dict[str, str]:
    settings = get_settings()
    headers = {"apikey": settings.supabase_key, "Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("msg") or data.get("error_description") or data.get("message") or data.get("error") or "")
    return ""


async def _call(
    method: str,
    path: str,
    *,
    json: Optional[dict[str, Any]] = None,
    params: Optional[dict[str, str]] = None,
    access_token: Optional[str] = None,
) -> httpx.Response:
    url = f"{_auth_base_url()}{path}"
    try:
        async with httpx.AsyncClient(timeout=AUTH_TIMEOUT_SECONDS) as client:
            return await client.request(method, url, json=json, params=params, headers=_headers(access_token))
    except httpx.HTTPError as exc:
        logger.warning("Supabase auth %s %s failed: %s", method, path, exc)
        raise HTTPException(502, "Auth provider unavailable") from exc


def _raise_for_status(resp: httpx.Response, *, default_status: int = 400) -> None:
    if resp.status_code < 400:
        return
    message = _error_message(resp) or "Auth provider error"
    if resp.status_code >= 500:
        logger.warning("Supabase auth returned %s: %s", resp.status_code, message)
        raise HTTPException(502, "Auth provider error")
    if resp.status_code == 422 and "already" in message.lower():
        raise HTTPException(409, "An account with this email already exists")
    raise HTTPException(default_status, message)


def upsert_user(db: Session, *, user_id: str, email: Optional[str], role: str, full_name: Optional[str]) -> User:
    user = db.get(User, user_id)
    if user is None:
        user = User(id=user_id, email=email or f"{user_id}@unknown.local", role=role, full_name=full_name)
        db.add(user)
        return user
    if email:
        user.email = email
    user.role = role
    if full_name:
        user.full_name = full_name
    return user


def _user_from_payload(data: dict[str, Any]) -> dict[str, Any]:
    app_meta = data.get("app_metadata") or {}
    user_meta = data.get("user_metadata") or {}
    return {
        "user_id": data.get("id"),
        "email": data.get("email"),
        "role": str(app_meta.get("role") or Role.CUSTOMER.value).lower(),
        "full_name": user_meta.get("full_name"),
    }


async def register(db: Session, payload: RegisterRequest) -> dict[str, Any]:
    if payload.role not in SELF_SIGNUP_ROLES:
        raise HTTPException(403, "Staff accounts are created by an administrator")

    resp = await _call(
        "POST",
        "/signup",
        json={
            "email": payload.email,
            "password": payload.password,
            "data": {"full_name": payload.full_name},
        },
    )
    _raise_for_status(resp)
    data = resp.json()
    # Signup returns a session when email confirmation is off, a bare user otherwise.
    user_data = data.get("user") or data
    if not user_data.get("id"):
        raise HTTPException(502, "Auth provider returned no user")
    if user_data.get("identities") == []:
        raise HTTPException(409, "An account with this email already exists")

    upsert_user(
        db,
        user_id=user_data["id"],
        email=payload.email,
        role=Role.CUSTOMER.value,
        full_name=payload.full_name,
    )
    logger.info("Registered customer user_id=%s", user_data["id"])
    return {
        "user": {
            "user_id": user_data["id"],
            "email": payload.email,
            "role": Role.CUSTOMER.value,
            "full_name": payload.full_name,
        },
        "access_token": data.get("access_token"),
        "refresh_token": data.get("refresh_token"),
        "expires_in": data.get("expires_in"),
    }


async def login(email: str, password: str) -> dict[str, Any]:
    resp = await _call(
        "POST",
        "/token",
        params={"grant_type": "password"},
        json={"email": email, "password": password},
    )
    if resp.status_code in {400, 401}:
        raise HTTPException(401, "Invalid email or password")
    _raise_for_status(resp)
    data = resp.json()
    return {
        "access_token": data["access_token"],
        "refresh_token": data.get("refresh_token"),
        "token_type": "bearer",
        "expires_in": data.get("expires_in"),
        "user": _user_from_payload(data.get("user") or {}),
    }


async def logout(access_token: str) -> None:
    resp = await _call("POST", "/logout", access_token=access_token)
    # An already revoked session is fine.
    if resp.status_code in {401, 403, 404}:
        return
    _raise_for_status(resp)


async def request_password_reset(email: str) -> None:
    settings = get_settings()
    resp = await _call(
        "POST",
        "/recover",
        json={"email": email},
        params={"redirect_to": f"{settings.public_app_url.rstrip('/')}/reset-password"},
    )
    # Unknown addresses are not revealed to the caller.
    if resp.status_code in {400, 404, 422}:
        logger.info("Password reset requested for unknown or invalid address")
        return
    _raise_for_status(resp)


async def change_password(user: CurrentUser, new_password: str) -> None:
    if not user.access_token:
        raise HTTPException(401, "Missing bearer token")
    resp = await _call("PUT", "/user", json={"password": new_password}, access_token=user.access_token)
    _raise_for_status(resp)


async def update_profile(db: Session, user: CurrentUser, full_name: str) -> User:
    full_name = full_name.strip()
    if not full_name:
        raise HTTPException(400, "Full name is required")
    if user.access_token:
        resp = await _call(
            "PUT",
            "/user",
            json={"data": {"full_name": full_name}},
            access_token=user.access_token,
        )
        _raise_for_status(resp)
    return upsert_user(db, user_id=user.id, email=user.email, role=user.role, full_name=full_name)
