"""Quote negotiation endpoints."""
from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.project import Project
from app.models.quote import Quote
from app.schemas.project import ProjectRead
from app.schemas.quote import QuoteReject, QuoteRead, QuoteRevision
from app.security import ensure_user_or_admin, require_scope
from app.services import quotes as quotes_service
from app.services.notifications import NotificationSink, get_notification_sink
from app.services.state import get_project, get_quote
from app.utils.audit import actor_from_api_key

router = APIRouter(prefix="/quotes", tags=["quotes"])


def _ensure_project_client(db: Session, quote_id: int, api_key: ApiKey) -> None:
    quote = get_quote(db, quote_id)
    ensure_user_or_admin(api_key, get_project(db, quote.project_id).client_id)


def _ensure_provider(db: Session, quote_id: int, api_key: ApiKey) -> None:
    ensure_user_or_admin(api_key, get_quote(db, quote_id).provider_id)


@router.get("/{quote_id}", response_model=QuoteRead)
def read_quote(
    quote_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client, ApiScope.artisan})),
) -> Quote:
    quote = get_quote(db, quote_id)
    if api_key.scope == ApiScope.artisan:
        ensure_user_or_admin(api_key, quote.provider_id)
    else:
        ensure_user_or_admin(api_key, get_project(db, quote.project_id).client_id)
    return quote


@router.post("/{quote_id}/view", response_model=QuoteRead)
def view_quote(
    quote_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client})),
) -> Quote:
    _ensure_project_client(db, quote_id, api_key)
    return quotes_service.mark_quote_viewed(db, quote_id, actor=actor_from_api_key(api_key))


@router.post("/{quote_id}/reject", response_model=QuoteRead)
def reject_quote(
    quote_id: int,
    payload: QuoteReject | None = Body(default=None),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.client})),
) -> Quote:
    _ensure_project_client(db, quote_id, api_key)
    return quotes_service.reject_quote(
        db, quote_id, reason=payload.reason if payload else None, actor=actor_from_api_key(api_key), sink=sink
    )


@router.post("/{quote_id}/accept", response_model=ProjectRead)
def accept_quote(
    quote_id: int,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.client})),
) -> Project:
    _ensure_project_client(db, quote_id, api_key)
    return quotes_service.accept_quote(db, quote_id, actor=actor_from_api_key(api_key), sink=sink)


@router.post("/{quote_id}/abandon", response_model=QuoteRead)
def abandon_quote(
    quote_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.artisan})),
) -> Quote:
    _ensure_provider(db, quote_id, api_key)
    return quotes_service.abandon_quote(db, quote_id, actor=actor_from_api_key(api_key))


@router.post("/{quote_id}/revise", response_model=QuoteRead)
def revise_quote(
    quote_id: int,
    payload: QuoteRevision,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.artisan})),
) -> Quote:
    _ensure_provider(db, quote_id, api_key)
    return quotes_service.revise_quote(
        db,
        quote_id,
        amount=payload.amount,
        urgent_surcharge_percent=payload.urgent_surcharge_percent,
        labor_cost=payload.labor_cost,
        materials_cost=payload.materials_cost,
        message=payload.message,
        estimated_duration=payload.estimated_duration,
        actor=actor_from_api_key(api_key),
    )
