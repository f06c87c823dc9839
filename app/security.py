# app/security.py
"""Security dependencies for API key validation and scope enforcement."""
from __future__ import annotations

from typing import Callable, Set

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.config import DEV_API_KEY_ALLOWED, ENV
from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.utils.apikey import find_valid_key
from app.utils.audit import log_audit
from app.utils.errors import error_response
from app.utils.time import utcnow


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``X-API-Key`` or ``Authorization: Bearer``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _legacy_key(db: Session) -> ApiKey:
    if not DEV_API_KEY_ALLOWED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("LEGACY_KEY_FORBIDDEN", "Legacy dev key disabled."),
        )
    now = utcnow()
    log_audit(db, actor="legacy-apikey", action="LEGACY_API_KEY_USED", entity="ApiKey", entity_id=0, data={"env": ENV})
    db.commit()
    return ApiKey(
        id=0,
        name="__legacy__",
        prefix="legacy",
        key_hash="legacy",
        scope=ApiScope.admin,
        is_active=True,
        created_at=now,
        expires_at=None,
        last_used_at=now,
    )


def require_api_key(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> ApiKey:
    """Validate API key tokens and return the corresponding row."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    key = find_valid_key(db, token)
    if key == "legacy":
        return _legacy_key(db)

    if not isinstance(key, ApiKey) or not key.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid or expired API key"),
        )

    key.last_used_at = utcnow()
    log_audit(
        db,
        actor=f"apikey:{key.prefix}",
        action="API_KEY_USED",
        entity="ApiKey",
        entity_id=key.id,
        data={"scope": key.scope.value, "prefix": key.prefix},
    )
    db.commit()
    return key


def require_scope(allowed: Set[ApiScope]) -> Callable:
    """Enforce that the key carries one of the allowed scopes; admin keys pass every check."""

    if not allowed:
        raise RuntimeError("require_scope needs a non-empty set of ApiScope")

    def _dep(key: ApiKey = Depends(require_api_key)) -> ApiKey:
        if key.scope == ApiScope.admin or key.scope in allowed:
            return key
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response(
                "INSUFFICIENT_SCOPE",
                f"Requires one of: {sorted(scope.value for scope in allowed)}",
            ),
        )

    return _dep


def require_user_id(api_key: ApiKey) -> int:
    """Return the marketplace user behind the key, or 403 when the key is not linked to one."""

    user_id = getattr(api_key, "user_id", None)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response("USER_REQUIRED", "This action needs an API key linked to a user."),
        )
    return user_id


def ensure_user_or_admin(api_key: ApiKey, user_id: int | None) -> None:
    """403 unless the key belongs to ``user_id`` or has the admin scope."""

    if api_key.scope == ApiScope.admin:
        return
    if user_id is None or getattr(api_key, "user_id", None) != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response("NOT_A_PARTY", "This resource belongs to another user."),
        )


__all__ = ["require_api_key", "require_scope", "require_user_id", "ensure_user_or_admin"]
