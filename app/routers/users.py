"""User endpoints."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.user import User
from app.schemas.user import UserCreate, UserRead, UserVerificationUpdate
from app.security import ensure_user_or_admin, require_scope
from app.utils.audit import actor_from_api_key, log_audit
from app.utils.errors import error_response

router = APIRouter(prefix="/users", tags=["users"])


def _get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error_response("USER_NOT_FOUND", "User not found."))
    return user


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> User:
    """Register a client or an artisan."""

    user = User(**payload.model_dump())
    db.add(user)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("USER_CREATE_FAILED", "Username or email already registered."),
        ) from exc

    log_audit(
        db,
        actor=actor_from_api_key(api_key, fallback="apikey:unknown"),
        action="CREATE_USER",
        entity="User",
        entity_id=user.id,
        data={"username": user.username, "email": user.email, "phone_number": user.phone_number},
    )
    db.commit()
    db.refresh(user)
    return user


@router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client, ApiScope.artisan})),
) -> User:
    ensure_user_or_admin(api_key, user_id)
    return _get_user_or_404(db, user_id)


@router.post("/{user_id}/verification", response_model=UserRead)
def set_verification(
    user_id: int,
    payload: UserVerificationUpdate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> User:
    """Mark an artisan as verified, which entitles future escrows to an advance."""

    user = _get_user_or_404(db, user_id)
    user.is_verified = payload.is_verified
    log_audit(
        db,
        actor=actor_from_api_key(api_key, fallback="apikey:unknown"),
        action="USER_VERIFICATION_CHANGED",
        entity="User",
        entity_id=user.id,
        data={"is_verified": payload.is_verified},
    )
    db.commit()
    db.refresh(user)
    return user
