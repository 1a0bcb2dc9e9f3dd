"""
Structured error taxonomy for the audit trail.

Every application error has:
  - A stable error code (prefixed by domain)
  - A human-readable message
  - An optional detail dict for machine consumers

A broken hash chain is not an error: verification reports it as a
``False`` result. Errors here describe failures to record or read.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Stable, versioned error codes. Never reuse a retired code."""

    # Audit
    AUDIT_MISSING_ACTOR = "AUD_001"
    AUDIT_PERSISTENCE_FAILED = "AUD_002"
    AUDIT_HASH_UNAVAILABLE = "AUD_003"
    AUDIT_IMMUTABLE_RECORD = "AUD_004"

    # Generic
    VALIDATION_ERROR = "GEN_001"
    INTERNAL_ERROR = "GEN_002"


class AppError(Exception):
    """Base class for all application errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "detail": self.detail,
            }
        }


# ── Typed convenience subclasses ──────────────────────────────────────── #


class MissingActorError(AppError):
    """No resolvable actor or tenant was supplied with a recording intent."""

    def __init__(self, message: str = "Audit actor with a tenant is required") -> None:
        super().__init__(code=ErrorCode.AUDIT_MISSING_ACTOR, message=message)


class PersistenceError(AppError):
    """The underlying store failed to append or read audit events."""

    def __init__(self, operation: str, message: str | None = None) -> None:
        super().__init__(
            code=ErrorCode.AUDIT_PERSISTENCE_FAILED,
            message=message or f"Audit store failed during {operation}",
            detail={"operation": operation},
        )


class HashComputationError(AppError):
    """The hashing primitive or the canonical encoding failed."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.AUDIT_HASH_UNAVAILABLE, message=message)


class ImmutableRecordError(AppError):
    """An already persisted audit event was about to be changed or removed."""

    def __init__(self, event_id: int | None, action: str) -> None:
        super().__init__(
            code=ErrorCode.AUDIT_IMMUTABLE_RECORD,
            message=f"Audit events are append-only; {action} is not allowed",
            detail={"event_id": event_id, "action": action},
        )


class ValidationError(AppError):
    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            detail=detail,
        )
