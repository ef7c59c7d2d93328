from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user, require_roles
from app.core.dependencies import get_db
from app.schemas.bulk_request import (
    BulkItemUpdate,
    BulkRequestCreate,
    BulkRequestDetailOut,
    BulkRequestListResponse,
    BulkRequestOut,
    BulkStatus,
    BulkStatusUpdate,
)
from app.schemas.service_request import EPRStatusUpdate, QuoteCreate, QuoteDecision
from app.services import bulk_request_service
from app.services.transition_service import actor_from_request

router = APIRouter()


def _detail(db: Session, bulk_request) -> BulkRequestDetailOut:
    db.refresh(bulk_request)
    return BulkRequestDetailOut(**bulk_request_service.bulk_detail(db, bulk_request))


@router.post("/bulk-requests", response_model=BulkRequestOut, status_code=201)
async def create_bulk_request(
    payload: BulkRequestCreate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    bulk_request = bulk_request_service.create_bulk_request(
        db, payload, current_user, actor_from_request(request, current_user)
    )
    db.commit()
    db.refresh(bulk_request)
    return BulkRequestOut(**bulk_request_service.bulk_to_out(bulk_request))


@router.get("/bulk-requests", response_model=BulkRequestListResponse)
async def list_bulk_requests(
    status: Optional[BulkStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items, total = bulk_request_service.list_bulk_requests(
        db, current_user, status=status, limit=limit, offset=offset
    )
    return BulkRequestListResponse(
        items=[BulkRequestOut(**bulk_request_service.bulk_to_out(item)) for item in items],
        total=total,
    )


@router.get("/bulk-requests/{bulk_id}", response_model=BulkRequestDetailOut)
async def get_bulk_request(
    bulk_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    bulk_request = bulk_request_service.get_visible_bulk(db, bulk_id, current_user)
    return BulkRequestDetailOut(**bulk_request_service.bulk_detail(db, bulk_request))


@router.patch("/bulk-requests/{bulk_id}/status", response_model=BulkRequestDetailOut)
async def update_bulk_status(
    bulk_id: str,
    payload: BulkStatusUpdate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    bulk_request = bulk_request_service.get_visible_bulk(db, bulk_id, current_user)
    bulk_request_service.update_bulk_status(
        db, bulk_request, payload.status, actor_from_request(request, current_user), note=payload.note
    )
    db.commit()
    return _detail(db, bulk_request)


@router.patch("/bulk-requests/{bulk_id}/epr", response_model=BulkRequestDetailOut)
async def update_bulk_epr_status(
    bulk_id: str,
    payload: EPRStatusUpdate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    bulk_request = bulk_request_service.get_visible_bulk(db, bulk_id, current_user)
    bulk_request_service.update_bulk_epr_status(db, bulk_request, payload, actor_from_request(request, current_user))
    db.commit()
    return _detail(db, bulk_request)


@router.patch("/bulk-requests/{bulk_id}/items/{item_id}", response_model=BulkRequestDetailOut)
async def update_bulk_item(
    bulk_id: str,
    item_id: str,
    payload: BulkItemUpdate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*bulk_request_service.OPERATOR_ROLES)),
    db: Session = Depends(get_db),
):
    bulk_request = bulk_request_service.get_visible_bulk(db, bulk_id, current_user)
    bulk_request_service.update_bulk_item(db, bulk_request, item_id, payload, actor_from_request(request, current_user))
    db.commit()
    return _detail(db, bulk_request)


@router.post("/bulk-requests/{bulk_id}/quotes", response_model=BulkRequestDetailOut, status_code=201)
async def create_bulk_quote(
    bulk_id: str,
    payload: QuoteCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*bulk_request_service.OPERATOR_ROLES)),
    db: Session = Depends(get_db),
):
    bulk_request = bulk_request_service.get_visible_bulk(db, bulk_id, current_user)
    bulk_request_service.add_quote_to_bulk_request(db, bulk_request, payload, actor_from_request(request, current_user))
    db.commit()
    return _detail(db, bulk_request)


@router.post("/bulk-requests/{bulk_id}/quote/decision", response_model=BulkRequestDetailOut)
async def decide_bulk_quote(
    bulk_id: str,
    payload: QuoteDecision,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    bulk_request = bulk_request_service.get_visible_bulk(db, bulk_id, current_user)
    bulk_request_service.decide_bulk_quote(db, bulk_request, payload.approved, actor_from_request(request, current_user))
    db.commit()
    return _detail(db, bulk_request)
