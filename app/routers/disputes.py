"""Dispute endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.dispute import Dispute
from app.schemas.dispute import DisputeRead, DisputeResolve
from app.security import require_scope
from app.services import disputes as disputes_service
from app.services.notifications import NotificationSink, get_notification_sink
from app.services.state import get_dispute
from app.utils.audit import actor_from_api_key

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.get("/{dispute_id}", response_model=DisputeRead)
def read_dispute(
    dispute_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> Dispute:
    return get_dispute(db, dispute_id)


@router.post("/{dispute_id}/resolve", response_model=DisputeRead)
def resolve_dispute(
    dispute_id: int,
    payload: DisputeResolve,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> Dispute:
    return disputes_service.resolve_dispute(
        db,
        dispute_id,
        payload.mode,
        client_share_percent=payload.client_share_percent,
        note=payload.note,
        actor=actor_from_api_key(api_key),
        sink=sink,
    )
