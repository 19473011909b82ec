"""Domain-level exception primitives with stable machine-readable codes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class DomainError(Exception):
    """Use-case level error with stable code and HTTP mapping."""

    code: str
    http_status: int
    message: str
    details: dict[str, Any] | None = None
    retryable: bool = False

    def __str__(self) -> str:
        return self.message


class ValidationFailed(DomainError):
    def __init__(self, message: str, *, rule: str, details: dict[str, Any] | None = None):
        super().__init__(
            code="VALIDATION_FAILED",
            http_status=400,
            message=message,
            details={"rule": rule, **(details or {})},
        )


class InvalidQuestionForStage(DomainError):
    def __init__(self, message: str = "Question does not belong to the job's current stage", **details: Any):
        super().__init__(
            code="INVALID_QUESTION_FOR_STAGE",
            http_status=400,
            message=message,
            details=details or None,
        )


class AmbiguousTransition(DomainError):
    """More than one automatic rule matched the same answer."""

    def __init__(self, message: str, *, transition_ids: list[str]):
        super().__init__(
            code="AMBIGUOUS_TRANSITION",
            http_status=409,
            message=message,
            details={"transition_ids": transition_ids},
        )


class AuthenticationRequired(DomainError):
    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(code="AUTHENTICATION_REQUIRED", http_status=401, message=message)


class AccessDenied(DomainError):
    def __init__(self, message: str = "Access denied", *, code: str = "ACCESS_DENIED"):
        super().__init__(code=code, http_status=403, message=message)


class NotFound(DomainError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(code=code, http_status=404, message=message)


class StorageError(DomainError):
    def __init__(self, message: str = "Storage operation failed", *, details: dict[str, Any] | None = None):
        super().__init__(
            code="STORAGE_ERROR",
            http_status=500,
            message=message,
            details=details,
            retryable=True,
        )


class SpawnError(DomainError):
    def __init__(self, message: str, *, template_id: str | None = None):
        super().__init__(
            code="SPAWN_ERROR",
            http_status=500,
            message=message,
            details={"template_id": template_id} if template_id else None,
            retryable=True,
        )


class ReorderFailed(DomainError):
    """Reorder aborted before any final sequence value was written."""

    def __init__(self, message: str, *, phase: str, errors: list[dict[str, Any]]):
        super().__init__(
            code="REORDER_FAILED",
            http_status=500,
            message=message,
            details={"phase": phase, "errors": errors},
            retryable=True,
        )
