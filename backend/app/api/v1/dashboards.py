"""Role dashboards and the admin live stream.

Thin router: every view model is built in dashboard_read_models.
"""

from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, require_roles
from app.core.config import get_settings
from app.core.dependencies import SessionLocal, get_db
from app.schemas.dashboard import (
    AdminDashboardOut,
    CustomerDashboardOut,
    EPRDashboardOut,
    PartnerDashboardOut,
    ServiceDashboardOut,
)
from app.services import dashboard_read_models

router = APIRouter()

_dashboard_sse_connections = 0


@router.get("/dashboard/admin", response_model=AdminDashboardOut)
async def admin_dashboard(
    current_user: CurrentUser = Depends(require_roles("admin")),
    db: Session = Depends(get_db),
):
    return dashboard_read_models.build_admin_dashboard(db, settings=get_settings())


@router.get("/dashboard/admin/stream")
async def admin_dashboard_stream(
    request: Request,
    current_user: CurrentUser = Depends(require_roles("admin")),
):
    """SSE stream of admin KPIs, one event per refresh interval."""
    global _dashboard_sse_connections

    settings = get_settings()
    if _dashboard_sse_connections >= settings.dashboard_sse_max_connections:
        raise HTTPException(429, "Too many active dashboard streams")

    _dashboard_sse_connections += 1

    async def event_stream():
        global _dashboard_sse_connections
        try:
            while True:
                if await request.is_disconnected():
                    break
                db = SessionLocal()
                try:
                    data = dashboard_read_models.build_admin_dashboard(db, settings=settings)
                finally:
                    db.close()
                payload = {"type": "dashboard_update", **data}
                yield f"data: {json.dumps(payload, default=str)}\n\n"
                await asyncio.sleep(settings.dashboard_refresh_seconds)
        finally:
            _dashboard_sse_connections -= 1

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/dashboard/epr", response_model=EPRDashboardOut)
async def epr_dashboard(
    current_user: CurrentUser = Depends(require_roles("epr", "admin")),
    db: Session = Depends(get_db),
):
    return dashboard_read_models.build_epr_dashboard(db, current_user, settings=get_settings())


@router.get("/dashboard/customer", response_model=CustomerDashboardOut)
async def customer_dashboard(
    current_user: CurrentUser = Depends(require_roles("customer")),
    db: Session = Depends(get_db),
):
    return dashboard_read_models.build_customer_dashboard(db, current_user, settings=get_settings())


@router.get("/dashboard/partner", response_model=PartnerDashboardOut)
async def partner_dashboard(
    current_user: CurrentUser = Depends(require_roles("channel_partner", "system_integrator")),
    db: Session = Depends(get_db),
):
    return dashboard_read_models.build_partner_dashboard(db, current_user, settings=get_settings())


@router.get("/dashboard/service", response_model=ServiceDashboardOut)
async def service_dashboard(
    current_user: CurrentUser = Depends(require_roles("service", "cpr", "admin")),
    db: Session = Depends(get_db),
):
    return dashboard_read_models.build_service_dashboard(db, current_user, settings=get_settings())
