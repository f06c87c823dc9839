"""Project lifecycle endpoints."""
from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.dispute import Dispute
from app.models.project import Project, ProjectStatus
from app.models.quote import Quote
from app.schemas.escrow import EscrowRead, escrow_read
from app.schemas.dispute import DisputeRead
from app.schemas.project import DisputeCreate, ProjectCancel, ProjectCreate, ProjectRead
from app.schemas.quote import QuoteCreate, QuoteRead
from app.security import ensure_user_or_admin, require_scope, require_user_id
from app.services import projects as projects_service
from app.services import quotes as quotes_service
from app.services.notifications import NotificationSink, get_notification_sink
from app.services.state import accepted_quote, escrow_for_project, get_project
from app.utils.audit import actor_from_api_key
from app.utils.errors import error_response

router = APIRouter(prefix="/projects", tags=["projects"])

ANY_PARTY = {ApiScope.client, ApiScope.artisan}


def _ensure_party(db: Session, project: Project, api_key: ApiKey) -> None:
    if api_key.scope == ApiScope.admin:
        return
    quote = accepted_quote(db, project.id)
    parties = {project.client_id, quote.provider_id if quote else None}
    if getattr(api_key, "user_id", None) not in parties:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response("NOT_A_PARTY", "This resource belongs to another user."),
        )


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client})),
) -> Project:
    if api_key.scope == ApiScope.admin and payload.client_id is not None:
        client_id = payload.client_id
    else:
        client_id = require_user_id(api_key)
    return projects_service.create_project(
        db,
        client_id,
        payload.title,
        description=payload.description,
        category=payload.category,
        location=payload.location,
        is_urgent=payload.is_urgent,
        publish=payload.publish,
        actor=actor_from_api_key(api_key),
    )


@router.get("", response_model=list[ProjectRead])
def list_projects(
    status_filter: ProjectStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope(ANY_PARTY)),
) -> list[Project]:
    """Clients see their own projects, artisans the ones open for quotes."""

    if api_key.scope == ApiScope.admin:
        return projects_service.list_projects(db, status=status_filter)
    if api_key.scope == ApiScope.client:
        return projects_service.list_projects(db, client_id=require_user_id(api_key), status=status_filter)
    statuses = [status_filter] if status_filter else [ProjectStatus.OPEN, ProjectStatus.QUOTE_RECEIVED]
    return [p for s in statuses for p in projects_service.list_projects(db, status=s)]


@router.get("/{project_id}", response_model=ProjectRead)
def read_project(
    project_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope(ANY_PARTY)),
) -> Project:
    return get_project(db, project_id)


@router.post("/{project_id}/publish", response_model=ProjectRead)
def publish_project(
    project_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client})),
) -> Project:
    ensure_user_or_admin(api_key, get_project(db, project_id).client_id)
    return projects_service.publish_project(db, project_id, actor=actor_from_api_key(api_key))


@router.post("/{project_id}/cancel", response_model=ProjectRead)
def cancel_project(
    project_id: int,
    payload: ProjectCancel | None = Body(default=None),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.client})),
) -> Project:
    ensure_user_or_admin(api_key, get_project(db, project_id).client_id)
    return projects_service.cancel_project(
        db,
        project_id,
        reason=payload.reason if payload else None,
        actor=actor_from_api_key(api_key),
        sink=sink,
    )


@router.post("/{project_id}/completion-request", response_model=ProjectRead)
def request_completion(
    project_id: int,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope(ANY_PARTY)),
) -> Project:
    return projects_service.request_completion(
        db, project_id, require_user_id(api_key), actor=actor_from_api_key(api_key), sink=sink
    )


@router.post("/{project_id}/completion-confirm", response_model=ProjectRead)
def confirm_completion(
    project_id: int,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.client})),
) -> Project:
    ensure_user_or_admin(api_key, get_project(db, project_id).client_id)
    return projects_service.confirm_completion(db, project_id, actor=actor_from_api_key(api_key), sink=sink)


@router.post("/{project_id}/disputes", response_model=DisputeRead, status_code=status.HTTP_201_CREATED)
def raise_dispute(
    project_id: int,
    payload: DisputeCreate,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope(ANY_PARTY)),
) -> Dispute:
    return projects_service.raise_dispute(
        db, project_id, require_user_id(api_key), payload.reason, actor=actor_from_api_key(api_key), sink=sink
    )


@router.post("/{project_id}/retry-escrow", response_model=ProjectRead)
def retry_escrow_creation(
    project_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> Project:
    return projects_service.retry_escrow_creation(db, project_id, actor=actor_from_api_key(api_key))


@router.get("/{project_id}/escrow", response_model=EscrowRead)
def read_project_escrow(
    project_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope(ANY_PARTY)),
):
    project = get_project(db, project_id)
    _ensure_party(db, project, api_key)
    escrow = escrow_for_project(db, project_id)
    if escrow is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("ESCROW_NOT_FOUND", "This project has no escrow yet."),
        )
    return escrow_read(escrow)


@router.get("/{project_id}/quotes", response_model=list[QuoteRead])
def list_quotes(
    project_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope(ANY_PARTY)),
) -> list[Quote]:
    """The client sees every quote; an artisan only their own."""

    quotes = quotes_service.list_quotes(db, project_id)
    if api_key.scope == ApiScope.artisan:
        return [q for q in quotes if q.provider_id == api_key.user_id]
    if api_key.scope == ApiScope.client:
        ensure_user_or_admin(api_key, get_project(db, project_id).client_id)
    return quotes


@router.post("/{project_id}/quotes", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def submit_quote(
    project_id: int,
    payload: QuoteCreate,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.artisan})),
) -> Quote:
    return quotes_service.submit_quote(
        db,
        project_id,
        require_user_id(api_key),
        payload.amount,
        urgent_surcharge_percent=payload.urgent_surcharge_percent,
        labor_cost=payload.labor_cost,
        materials_cost=payload.materials_cost,
        message=payload.message,
        estimated_duration=payload.estimated_duration,
        actor=actor_from_api_key(api_key),
        sink=sink,
    )
