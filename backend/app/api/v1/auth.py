from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user
from app.core.config import get_settings
from app.core.dependencies import get_db
from app.models.service_request import User
from app.schemas.auth import (
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetRequest,
    ProfileUpdate,
    RegisterRequest,
    SessionOut,
    UserOut,
)
from app.services import auth_service
from app.services.transition_service import ENTITY_SYSTEM, SYSTEM_ENTITY_ID, create_audit_log
from app.utils.rate_limit import SCOPE_AUTH, get_client_ip, get_user_agent, rate_limiter

router = APIRouter()


def _enforce_auth_rate_limit(request: Request) -> None:
    settings = get_settings()
    if not rate_limiter.allow_per_minute(SCOPE_AUTH, get_client_ip(request), settings.rate_limit_auth_ip_per_min):
        raise HTTPException(429, "Too Many Requests")


@router.post("/auth/register", response_model=SessionOut | UserOut, status_code=201)
async def register(payload: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    _enforce_auth_rate_limit(request)
    result = await auth_service.register(db, payload)
    db.commit()
    if result.get("access_token"):
        return SessionOut(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_in=result.get("expires_in"),
            user=UserOut(**result["user"]),
        )
    # Email confirmation pending: no session yet.
    return UserOut(**result["user"])


@router.post("/auth/login", response_model=SessionOut)
async def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    _enforce_auth_rate_limit(request)
    try:
        result = await auth_service.login(payload.email, payload.password)
    except HTTPException as exc:
        if exc.status_code == 401:
            create_audit_log(
                db,
                entity_type=ENTITY_SYSTEM,
                entity_id=SYSTEM_ENTITY_ID,
                action="AUTH_LOGIN_FAILED",
                old_value=None,
                new_value=None,
                actor_type="anonymous",
                actor_id=None,
                ip_address=get_client_ip(request),
                user_agent=get_user_agent(request),
                metadata={"email": payload.email},
            )
            db.commit()
        raise

    user = result["user"]
    if user.get("user_id"):
        auth_service.upsert_user(
            db,
            user_id=user["user_id"],
            email=user.get("email"),
            role=user["role"],
            full_name=user.get("full_name"),
        )
        db.commit()
    return SessionOut(
        access_token=result["access_token"],
        refresh_token=result.get("refresh_token"),
        expires_in=result.get("expires_in"),
        user=UserOut(**user),
    )


@router.post("/auth/logout", status_code=204)
async def logout(current_user: CurrentUser = Depends(get_current_user)):
    if current_user.access_token:
        await auth_service.logout(current_user.access_token)


@router.get("/auth/me", response_model=UserOut)
async def me(current_user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    stored = db.get(User, current_user.id)
    return UserOut(
        user_id=current_user.id,
        email=current_user.email,
        role=current_user.role,
        full_name=(stored.full_name if stored else None) or current_user.full_name,
    )


@router.put("/auth/profile", response_model=UserOut)
async def update_profile(
    payload: ProfileUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = await auth_service.update_profile(db, current_user, payload.full_name)
    db.commit()
    return UserOut(user_id=current_user.id, email=current_user.email, role=current_user.role, full_name=user.full_name)


@router.post("/auth/password", status_code=204)
async def change_password(payload: PasswordChangeRequest, current_user: CurrentUser = Depends(get_current_user)):
    await auth_service.change_password(current_user, payload.new_password)


@router.post("/auth/password-reset", status_code=202)
async def request_password_reset(payload: PasswordResetRequest, request: Request):
    _enforce_auth_rate_limit(request)
    await auth_service.request_password_reset(payload.email)
    return {"detail": "If the address is registered, a reset link has been sent"}
