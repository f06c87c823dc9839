"""Standardized error payloads and the engine's exception taxonomy."""
from __future__ import annotations

from typing import Any, Iterable


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class EngineError(Exception):
    """Base class for errors raised by the escrow / project engine."""

    code = "ENGINE_ERROR"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


class NotFoundError(EngineError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found.", details={"entity": entity, "id": entity_id})
        self.code = f"{entity.upper()}_NOT_FOUND"


class InvalidTransitionError(EngineError):
    """A state change was attempted from a state that does not permit it."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(
        self,
        entity: str,
        action: str,
        current_status: str,
        allowed: Iterable[str] = (),
        *,
        reason: str | None = None,
    ) -> None:
        allowed_list = sorted(allowed)
        message = f"Cannot {action} {entity} in status '{current_status}'."
        if reason:
            message = f"{message} {reason}"
        super().__init__(
            message,
            details={
                "entity": entity,
                "action": action,
                "current_status": current_status,
                "allowed_from": allowed_list,
            },
        )
        self.entity = entity
        self.action = action
        self.current_status = current_status


class PolicyViolationError(EngineError):
    """The action is structurally possible but forbidden by a business rule."""

    code = "POLICY_VIOLATION"
    status_code = 409


class AlreadyExistsError(EngineError):
    """Idempotent creation met an existing record; callers resolve it by reusing the record."""

    code = "ALREADY_EXISTS"
    status_code = 409


class ExternalServiceError(EngineError):
    """The payment gateway declined, failed or timed out. Safe to retry."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502
    retryable = True

    def __init__(self, message: str, *, unavailable: bool = False, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={**(details or {}), "retryable": True, "unavailable": unavailable})
        self.unavailable = unavailable


class InvariantViolationError(EngineError):
    """A computed breakdown or a status combination broke its own invariant."""

    code = "INVARIANT_VIOLATION"
    status_code = 500


class DomainValidationError(EngineError):
    code = "VALIDATION_ERROR"
    status_code = 422


__all__ = [
    "error_response",
    "EngineError",
    "NotFoundError",
    "InvalidTransitionError",
    "PolicyViolationError",
    "AlreadyExistsError",
    "ExternalServiceError",
    "InvariantViolationError",
    "DomainValidationError",
]
