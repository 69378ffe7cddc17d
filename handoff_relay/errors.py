"""errors.py — Single handoff error type with a kind discriminator.

Every failure the subsystem surfaces is a ``HandoffError``. The ``kind``
decides the HTTP status, whether the Retry Executor may retry it, and how
entry points render it. Controller operations return ``(value, error)``
tuples; lower layers raise and the Controller converts.
"""
from __future__ import annotations

import enum
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

__all__ = [
    "ErrorKind",
    "HandoffError",
    "_client_error_code",
    "_from_aws_error",
]


class ErrorKind(enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    QUEUE_FULL = "queue_full"
    TRANSIENT_INFRA = "transient_infra"
    STALE_CONNECTION = "stale_connection"
    RETRY_EXHAUSTED = "retry_exhausted"


_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.QUEUE_FULL: 429,
    ErrorKind.TRANSIENT_INFRA: 503,
    ErrorKind.STALE_CONNECTION: 410,
    ErrorKind.RETRY_EXHAUSTED: 502,
}

_DEFAULT_CODE_BY_KIND: Dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "INVALID_INPUT",
    ErrorKind.NOT_FOUND: "HANDOFF_NOT_FOUND",
    ErrorKind.CONFLICT: "HANDOFF_CONFLICT",
    ErrorKind.QUEUE_FULL: "HANDOFF_QUEUE_FULL",
    ErrorKind.TRANSIENT_INFRA: "UPSTREAM_ERROR",
    ErrorKind.STALE_CONNECTION: "CONNECTION_GONE",
    ErrorKind.RETRY_EXHAUSTED: "RETRIES_EXHAUSTED",
}

_RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT_INFRA})


class HandoffError(Exception):
    """Failure carrying a ``kind``, a machine code and structured details."""

    def __init__(self, kind: ErrorKind, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or _DEFAULT_CODE_BY_KIND[kind]
        self.details: Dict[str, Any] = details

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }

    def __repr__(self) -> str:
        return f"HandoffError(kind={self.kind.value!r}, code={self.code!r}, message={self.message!r})"


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _from_aws_error(exc: Exception, operation: str, **details: Any) -> HandoffError:
    """Map a botocore failure at a store/queue/channel boundary to a HandoffError."""
    if isinstance(exc, ClientError):
        code = _client_error_code(exc)
        if code == "ConditionalCheckFailedException":
            return HandoffError(
                ErrorKind.CONFLICT,
                f"{operation}: precondition failed",
                aws_code=code,
                **details,
            )
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code == "GoneException" or status == 410:
            return HandoffError(ErrorKind.STALE_CONNECTION, f"{operation}: connection gone", **details)
        return HandoffError(
            ErrorKind.TRANSIENT_INFRA,
            f"{operation} failed: {code or exc}",
            aws_code=code,
            **details,
        )
    if isinstance(exc, BotoCoreError):
        return HandoffError(ErrorKind.TRANSIENT_INFRA, f"{operation} failed: {exc}", **details)
    return HandoffError(ErrorKind.TRANSIENT_INFRA, f"{operation} failed: {exc}", **details)
