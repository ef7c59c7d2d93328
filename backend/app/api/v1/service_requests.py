from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user, require_roles
from app.core.dependencies import get_db
from app.schemas.service_request import (
    AssignmentUpdate,
    EPRCheckOut,
    EPRStatus,
    EPRStatusUpdate,
    QuoteCreate,
    QuoteDecision,
    ServiceRequestCreate,
    ServiceRequestDetailOut,
    ServiceRequestListResponse,
    ServiceRequestOut,
    Status,
    StatusUpdate,
)
from app.services import request_service
from app.services.transition_service import (
    EPR_TRANSITIONS,
    MAIN_TRANSITIONS,
    actor_from_request,
    allowed_targets,
    can_transition,
    can_update_epr_status,
)

router = APIRouter()


def _detail(db: Session, service_request) -> ServiceRequestDetailOut:
    db.refresh(service_request)
    return ServiceRequestDetailOut(**request_service.request_detail(db, service_request))


@router.post("/service-requests", response_model=ServiceRequestOut, status_code=201)
async def create_service_request(
    payload: ServiceRequestCreate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    actor = actor_from_request(request, current_user)
    service_request = request_service.create_service_request(db, payload, current_user, actor)
    db.commit()
    db.refresh(service_request)
    return ServiceRequestOut(**request_service.request_to_out(service_request))


@router.get("/service-requests", response_model=ServiceRequestListResponse)
async def list_service_requests(
    search: Optional[str] = Query(None, max_length=200),
    status: Optional[Status] = None,
    product_type: Optional[str] = None,
    epr_status: Optional[EPRStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items, total = request_service.list_service_requests(
        db,
        current_user,
        search=search,
        status=status,
        product_type=product_type,
        epr_status=epr_status,
        limit=limit,
        offset=offset,
    )
    return ServiceRequestListResponse(
        items=[ServiceRequestOut(**request_service.request_to_out(item)) for item in items],
        total=total,
    )


@router.get("/service-requests/{request_id}", response_model=ServiceRequestDetailOut)
async def get_service_request(
    request_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    return ServiceRequestDetailOut(**request_service.request_detail(db, service_request))


@router.get("/service-requests/{request_id}/transitions")
async def list_allowed_transitions(
    request_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    current_epr = EPRStatus(service_request.current_epr_status) if service_request.current_epr_status else None
    return {
        "status": service_request.status,
        "allowed_statuses": [
            target.value for target in allowed_targets(MAIN_TRANSITIONS, Status(service_request.status), current_user.role)
        ],
        "epr_status": service_request.current_epr_status,
        "allowed_epr_statuses": [
            target.value for target in allowed_targets(EPR_TRANSITIONS, current_epr, current_user.role)
        ],
    }


@router.patch("/service-requests/{request_id}/status", response_model=ServiceRequestDetailOut)
async def update_status(
    request_id: str,
    payload: StatusUpdate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    actor = actor_from_request(request, current_user)
    request_service.update_request_status(db, service_request, payload.status, actor, note=payload.note)
    db.commit()
    return _detail(db, service_request)


@router.patch("/service-requests/{request_id}/assignment", response_model=ServiceRequestOut)
async def update_assignment(
    request_id: str,
    payload: AssignmentUpdate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("admin", "service")),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    request_service.update_assignment(
        db,
        service_request,
        assigned_technician=payload.assigned_technician,
        assigned_to=payload.assigned_to,
        notes=payload.notes,
        actor=actor_from_request(request, current_user),
    )
    db.commit()
    db.refresh(service_request)
    return ServiceRequestOut(**request_service.request_to_out(service_request))


@router.post("/service-requests/{request_id}/photos", response_model=ServiceRequestOut)
async def upload_photos(
    request_id: str,
    request: Request,
    files: List[UploadFile] = File(...),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    if not current_user.is_staff and str(service_request.customer_id) != str(current_user.id):
        raise HTTPException(403, "Forbidden")

    photos = [
        request_service.PhotoUpload(
            filename=upload.filename,
            content=await upload.read(),
            content_type=upload.content_type,
        )
        for upload in files
    ]
    request_service.add_request_photos(db, service_request, photos, actor_from_request(request, current_user))
    db.commit()
    db.refresh(service_request)
    return ServiceRequestOut(**request_service.request_to_out(service_request))


@router.patch("/service-requests/{request_id}/epr", response_model=ServiceRequestDetailOut)
async def update_epr_status(
    request_id: str,
    payload: EPRStatusUpdate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    request_service.update_epr_status(db, service_request, payload, actor_from_request(request, current_user))
    db.commit()
    return _detail(db, service_request)


@router.get("/service-requests/{request_id}/epr/check", response_model=EPRCheckOut)
async def check_epr_status(
    request_id: str,
    target: EPRStatus,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    current = EPRStatus(service_request.current_epr_status) if service_request.current_epr_status else None
    return EPRCheckOut(
        current=current,
        target=target,
        advisory_allowed=can_update_epr_status(current, target),
        allowed=can_transition(EPR_TRANSITIONS, current, target, current_user.role),
    )


@router.post("/service-requests/{request_id}/awaiting-approval", response_model=ServiceRequestDetailOut)
async def mark_awaiting_approval(
    request_id: str,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    request_service.mark_awaiting_approval(db, service_request, actor_from_request(request, current_user))
    db.commit()
    return _detail(db, service_request)


@router.post("/service-requests/{request_id}/quotes", response_model=ServiceRequestDetailOut, status_code=201)
async def create_quote(
    request_id: str,
    payload: QuoteCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*request_service.QUOTE_ROLES)),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    request_service.add_quote_to_request(db, service_request, payload, actor_from_request(request, current_user))
    db.commit()
    return _detail(db, service_request)


@router.post("/service-requests/{request_id}/quote/decision", response_model=ServiceRequestDetailOut)
async def decide_quote(
    request_id: str,
    payload: QuoteDecision,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = request_service.get_visible_request(db, request_id, current_user)
    request_service.decide_quote(db, service_request, payload.approved, actor_from_request(request, current_user))
    db.commit()
    return _detail(db, service_request)
