"""Escrow ledger endpoints."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.escrow import Escrow
from app.models.user import User
from app.schemas.escrow import EscrowAmountUpdate, EscrowDeposit, EscrowEventRead, EscrowRead, EscrowRefund, escrow_read
from app.security import ensure_user_or_admin, require_scope
from app.services import escrow as escrow_service
from app.services.notifications import NotificationSink, get_notification_sink
from app.services.payment_gateway import PAYMENT_METHODS, PaymentGateway, get_payment_gateway
from app.services.state import accepted_quote, get_escrow, get_project
from app.utils.audit import actor_from_api_key, log_audit
from app.utils.errors import error_response

router = APIRouter(prefix="/escrows", tags=["escrow"])


def _ensure_party(db: Session, escrow: Escrow, api_key: ApiKey) -> None:
    if api_key.scope == ApiScope.admin:
        return
    project = get_project(db, escrow.project_id)
    quote = accepted_quote(db, project.id)
    if getattr(api_key, "user_id", None) not in {project.client_id, quote.provider_id if quote else None}:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response("NOT_A_PARTY", "This resource belongs to another user."),
        )


@router.get("/payment-methods")
def list_payment_methods(
    api_key: ApiKey = Depends(require_scope({ApiScope.client, ApiScope.artisan})),
) -> list[dict]:
    return [
        {
            "id": method.id,
            "name": method.name,
            "fee_percent": method.fee_percent,
            "min_amount": method.min_amount,
            "max_amount": method.max_amount,
        }
        for method in PAYMENT_METHODS.values()
        if method.available
    ]


@router.get("/{escrow_id}", response_model=EscrowRead)
def read_escrow(
    escrow_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client, ApiScope.artisan})),
):
    escrow = get_escrow(db, escrow_id)
    _ensure_party(db, escrow, api_key)
    log_audit(
        db,
        actor=actor_from_api_key(api_key, fallback="apikey:unknown"),
        action="READ_ESCROW",
        entity="Escrow",
        entity_id=escrow_id,
        data={"endpoint": "GET /escrows/{id}"},
    )
    db.commit()
    return escrow_read(escrow)


@router.get("/{escrow_id}/events", response_model=list[EscrowEventRead])
def read_escrow_events(
    escrow_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client, ApiScope.artisan})),
):
    escrow = get_escrow(db, escrow_id)
    _ensure_party(db, escrow, api_key)
    return escrow.events


@router.post("/{escrow_id}/deposit", response_model=EscrowRead)
async def deposit(
    escrow_id: int,
    payload: EscrowDeposit,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.client})),
):
    """Charge the client and hold the funds. Gateway failures answer 502 and can be retried.

    The service runs its locked database sections in worker threads, so this
    handler can await the gateway without holding the event loop on a
    contended project lock.
    """

    escrow = get_escrow(db, escrow_id)
    ensure_user_or_admin(api_key, get_project(db, escrow.project_id).client_id)
    escrow = await escrow_service.confirm_deposit(
        db,
        escrow_id,
        payload.payment_method,
        gateway=gateway,
        actor=actor_from_api_key(api_key),
        sink=sink,
    )
    return escrow_read(escrow)


@router.post("/{escrow_id}/release-advance", response_model=EscrowRead)
def release_advance(
    escrow_id: int,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
):
    escrow = escrow_service.release_advance(db, escrow_id, actor=actor_from_api_key(api_key), sink=sink)
    return escrow_read(escrow)


@router.post("/{escrow_id}/amount", response_model=EscrowRead)
def update_amount(
    escrow_id: int,
    payload: EscrowAmountUpdate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
):
    """Renegotiated price before any deposit."""

    escrow = get_escrow(db, escrow_id)
    quote = accepted_quote(db, escrow.project_id)
    provider = db.get(User, quote.provider_id) if quote else None
    escrow = escrow_service.update_for_new_amount(
        db,
        escrow_id,
        payload.base_amount,
        provider_is_verified=bool(provider and provider.is_verified),
        urgent_surcharge_percent=payload.urgent_surcharge_percent,
        actor=actor_from_api_key(api_key),
    )
    return escrow_read(escrow)


@router.post("/{escrow_id}/refund", response_model=EscrowRead)
def refund(
    escrow_id: int,
    payload: EscrowRefund,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
):
    """Full refund to the client; the project is cancelled."""

    escrow = escrow_service.refund_escrow(
        db, escrow_id, reason=payload.reason, actor=actor_from_api_key(api_key), sink=sink
    )
    return escrow_read(escrow)
