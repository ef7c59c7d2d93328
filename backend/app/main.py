import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.admin import router as admin_router
from app.api.v1.auth import router as auth_router
from app.api.v1.bulk_requests import router as bulk_requests_router
from app.api.v1.dashboards import router as dashboards_router
from app.api.v1.payments import router as payments_router
from app.api.v1.service_requests import router as service_requests_router
from app.api.v1.support import router as support_router
from app.core.config import get_settings
from app.core.dependencies import SessionLocal, init_schema
from app.services.recurring_jobs import start_payment_expiry_worker
from app.services.transition_service import ENTITY_SYSTEM, SYSTEM_ENTITY_ID, create_audit_log
from app.utils.rate_limit import (
    MINUTE,
    SCOPE_API,
    SCOPE_STRIPE_WEBHOOK,
    client_key,
    get_client_ip,
    get_user_agent,
    ip_in_networks,
    rate_limiter,
)

settings = get_settings()
_payment_expiry_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Fence Service Desk API",
    version="1.4.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)

STRIPE_WEBHOOK_PATH = "/api/v1/webhook/stripe"


@app.on_event("startup")
async def _startup_jobs():
    global _payment_expiry_task
    errors = settings.validate_required_config()
    if errors:
        for error in errors:
            logger.warning("Configuration problem: %s", error)
        if settings.is_production:
            raise RuntimeError("Configuration validation failed in production environment")

    logging.getLogger("app").setLevel(settings.log_level.upper())

    if settings.auto_create_schema:
        init_schema()
    if _payment_expiry_task is None and settings.enable_recurring_jobs:
        _payment_expiry_task = start_payment_expiry_worker()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _payment_expiry_task
    if _payment_expiry_task is not None:
        _payment_expiry_task.cancel()
        _payment_expiry_task = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(auth_router, prefix="/api/v1", tags=["auth"])
app.include_router(service_requests_router, prefix="/api/v1", tags=["service-requests"])
app.include_router(bulk_requests_router, prefix="/api/v1", tags=["bulk-requests"])
app.include_router(payments_router, prefix="/api/v1", tags=["payments"])
app.include_router(dashboards_router, prefix="/api/v1", tags=["dashboards"])
app.include_router(support_router, prefix="/api/v1", tags=["support"])
app.include_router(admin_router, prefix="/api/v1", tags=["admin"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # 5xx details stay server-side unless explicitly exposed.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _ip_in_allowlist(ip: str, allowlist: list[str]) -> bool:
    return bool(ip) and ip_in_networks(ip, allowlist)


@app.middleware("http")
async def webhook_rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if request.method != "POST" or not path.startswith(STRIPE_WEBHOOK_PATH):
        return await call_next(request)

    settings = get_settings()
    if not settings.rate_limit_webhook_enabled:
        return await call_next(request)

    ip = get_client_ip(request)
    limit = settings.rate_limit_stripe_ip_per_min
    if not rate_limiter.allow_per_minute(SCOPE_STRIPE_WEBHOOK, ip, limit):
        if SessionLocal is not None:
            db = SessionLocal()
            try:
                create_audit_log(
                    db,
                    entity_type=ENTITY_SYSTEM,
                    entity_id=SYSTEM_ENTITY_ID,
                    action="RATE_LIMIT_BLOCKED",
                    old_value=None,
                    new_value=None,
                    actor_type="system",
                    actor_id=None,
                    ip_address=ip,
                    user_agent=get_user_agent(request),
                    metadata={"path": path, "key": client_key(SCOPE_STRIPE_WEBHOOK, ip), "limit": limit, "window_seconds": MINUTE},
                )
                db.commit()
            finally:
                db.close()
        return JSONResponse(status_code=429, content={"detail": "Too Many Requests"})

    return await call_next(request)


@app.middleware("http")
async def api_rate_limit_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        return await call_next(request)

    path = request.url.path
    if not path.startswith("/api/v1") or path.startswith(STRIPE_WEBHOOK_PATH):
        return await call_next(request)

    settings = get_settings()
    if not settings.rate_limit_api_enabled:
        return await call_next(request)

    if not rate_limiter.allow_per_minute(SCOPE_API, get_client_ip(request), settings.rate_limit_api_per_min):
        return JSONResponse(status_code=429, content={"detail": "Too Many Requests"})

    return await call_next(request)


@app.middleware("http")
async def admin_ip_allowlist_middleware(request: Request, call_next):
    allowlist = settings.admin_ip_allowlist
    if not allowlist:
        return await call_next(request)

    if request.url.path.startswith("/api/v1/admin/"):
        ip = get_client_ip(request) or ""
        if not _ip_in_allowlist(ip, allowlist):
            return JSONResponse(status_code=403, content={"detail": "Admin IP not allowed"})
    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("X-Frame-Options", "DENY")
    headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'; base-uri 'none'")
    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
