"""Exception hierarchy for the sync engine.

Exception Hierarchy:
    SyncEngineError (base)
    ├── StorageError - local store failures
    │   ├── QuotaExceededError - disk full / storage quota exhausted
    │   └── SchemaMigrationError - schema upgrade failed or downgrade requested
    ├── NetworkError - remote authority failures (always retryable)
    │   ├── RemoteTimeoutError - call exceeded its time budget
    │   ├── OfflineError - remote unreachable
    │   └── RemoteHTTPError - non-2xx response
    ├── ValidationError - malformed mutation, detected before enqueue
    └── QueueError - queue state machine violations
        ├── InvalidTransitionError
        └── QueueItemNotFoundError

A missing record is not an error: store lookups return None.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Stable error codes, usable by operators and the presentation layer."""

    STORAGE_FAILED = "STO_FAILED"
    STORAGE_QUOTA = "STO_QUOTA_EXCEEDED"
    STORAGE_MIGRATION = "STO_MIGRATION_FAILED"

    NET_FAILED = "NET_FAILED"
    NET_TIMEOUT = "NET_TIMEOUT"
    NET_OFFLINE = "NET_OFFLINE"
    NET_HTTP = "NET_HTTP_STATUS"

    VAL_INVALID_INPUT = "VAL_INVALID_INPUT"

    QUEUE_INVALID_TRANSITION = "QUE_INVALID_TRANSITION"
    QUEUE_NOT_FOUND = "QUE_NOT_FOUND"

    UNKNOWN = "UNKNOWN"


class SyncEngineError(Exception):
    """Base class for all sync engine errors.

    Attributes:
        message: Human-readable description
        code: ErrorCode for programmatic handling
        details: Optional extra context
    """

    default_code = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "detail": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return self.message


class StorageError(SyncEngineError):
    default_code = ErrorCode.STORAGE_FAILED


class QuotaExceededError(StorageError):
    default_code = ErrorCode.STORAGE_QUOTA


class SchemaMigrationError(StorageError):
    default_code = ErrorCode.STORAGE_MIGRATION


class NetworkError(SyncEngineError):
    default_code = ErrorCode.NET_FAILED


class RemoteTimeoutError(NetworkError):
    default_code = ErrorCode.NET_TIMEOUT


class OfflineError(NetworkError):
    default_code = ErrorCode.NET_OFFLINE


class RemoteHTTPError(NetworkError):
    """Non-2xx response from the remote authority."""

    default_code = ErrorCode.NET_HTTP

    def __init__(self, status_code: int, reason: str = "", body: str = ""):
        super().__init__(
            f"Remote returned HTTP {status_code} {reason}".strip(),
            details={"status_code": status_code, "body": body[:500]},
        )
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class ValidationError(SyncEngineError):
    default_code = ErrorCode.VAL_INVALID_INPUT


class QueueError(SyncEngineError):
    pass


class InvalidTransitionError(QueueError):
    default_code = ErrorCode.QUEUE_INVALID_TRANSITION


class QueueItemNotFoundError(QueueError):
    default_code = ErrorCode.QUEUE_NOT_FOUND
