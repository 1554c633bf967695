from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories; the value doubles as the wire error code."""

    VALIDATION_FAILED = "validation_error"
    UNAUTHENTICATED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "service_unavailable"
    INTERNAL = "server_error"


KIND_TO_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.INTERNAL: 500,
}

# HTTP 423 for a locked account; still reported as kind FORBIDDEN
LOCKED_STATUS = 423


class ServiceError(Exception):
    """Single service-layer error type, mapped to HTTP by ``kind``.

    ``reason`` is a stable machine-readable refinement of the kind (for example
    ``token_expired`` or ``account_locked``). ``status_code`` overrides the
    kind's default status where one kind has two wire renditions.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        reason: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.reason = reason
        self.detail = detail or {}
        self.status_code = status_code or KIND_TO_STATUS[self.kind]

    @property
    def error_code(self) -> str:
        return self.kind.value

    def __repr__(self) -> str:
        return (
            f"ServiceError(kind={self.kind.name}, reason={self.reason!r}, "
            f"message={self.message!r})"
        )


__all__ = ["ErrorKind", "KIND_TO_STATUS", "LOCKED_STATUS", "ServiceError"]
