"""
Bundleflow - Error Taxonomy

Structured error classification for pipeline observability.
Every error carries a stable error_code that can be aggregated in logs and
used in alerting rules.

Error Code Format: BFE-{CATEGORY}-{NUMBER}
- CONFIG (001-099): Configuration and collaborator wiring
- DB (100-199): Ledger and queue database errors
- STORAGE (200-299): Object store errors
- ENVELOPE (300-399): Message envelope decoding
- VALIDATION (500-599): Business validation outcomes
- COLLABORATOR (600-699): Failures raised inside external collaborators
- INTERNAL (900-999): Unexpected internal errors

Handling policy by category:
- DB / STORAGE are transport-transient: they propagate out of the stage
  handler and the queue redelivers the message.
- VALIDATION / COLLABORATOR terminalize the file entry as rejected.
- ENVELOPE goes straight to the dead letter queue.
- CONFIG stops the worker at startup.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================


class ErrorCategory(str, Enum):
    """Error category for classification."""

    CONFIG = "CONFIG"
    DB = "DB"
    STORAGE = "STORAGE"
    ENVELOPE = "ENVELOPE"
    VALIDATION = "VALIDATION"
    COLLABORATOR = "COLLABORATOR"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


ERR_CONFIG_MISSING = ErrorCode("BFE-CONFIG-001", ErrorCategory.CONFIG, "Required setting is missing")
ERR_CONFIG_COLLABORATOR = ErrorCode(
    "BFE-CONFIG-010", ErrorCategory.CONFIG, "Collaborator factory could not be loaded"
)

ERR_DB_CONNECTION = ErrorCode(
    "BFE-DB-100", ErrorCategory.DB, "Database connection failed", retryable=True
)
ERR_DB_QUERY = ErrorCode("BFE-DB-110", ErrorCategory.DB, "Ledger query failed", retryable=True)
ERR_DB_NOT_FOUND = ErrorCode("BFE-DB-120", ErrorCategory.DB, "Ledger record not found")
ERR_DB_QUEUE = ErrorCode("BFE-DB-130", ErrorCategory.DB, "Queue operation failed", retryable=True)

ERR_STORAGE_NOT_FOUND = ErrorCode("BFE-STORAGE-200", ErrorCategory.STORAGE, "Object not found")
ERR_STORAGE_IO = ErrorCode(
    "BFE-STORAGE-210", ErrorCategory.STORAGE, "Object store operation failed", retryable=True
)

ERR_ENVELOPE_INVALID = ErrorCode(
    "BFE-ENVELOPE-300", ErrorCategory.ENVELOPE, "Message envelope could not be decoded"
)

ERR_VALIDATION_BUSINESS = ErrorCode(
    "BFE-VALIDATION-510", ErrorCategory.VALIDATION, "Business rule validation failed"
)

ERR_COLLABORATOR_EXCEPTION = ErrorCode(
    "BFE-COLLABORATOR-600", ErrorCategory.COLLABORATOR, "Collaborator raised an exception"
)
ERR_COLLABORATOR_CONTRACT = ErrorCode(
    "BFE-COLLABORATOR-610", ErrorCategory.COLLABORATOR, "Collaborator broke its result contract"
)

ERR_INTERNAL_UNKNOWN = ErrorCode("BFE-INTERNAL-900", ErrorCategory.INTERNAL, "Unknown internal error")


# =============================================================================
# EXCEPTIONS
# =============================================================================


class BundleflowError(Exception):
    """Base class for pipeline errors; carries a stable ErrorCode."""

    error_code: ErrorCode = ERR_INTERNAL_UNKNOWN

    def __init__(self, message: str, *, error_code: ErrorCode | None = None):
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code

    @property
    def retryable(self) -> bool:
        return self.error_code.retryable


class ConfigurationError(BundleflowError):
    """Raised when a worker cannot be wired from its settings."""

    error_code = ERR_CONFIG_MISSING


class LedgerError(BundleflowError):
    """Raised when a ledger statement fails or returns an impossible shape."""

    error_code = ERR_DB_QUERY


class ObjectNotFoundError(BundleflowError):
    """Raised when an object is absent from the location it was expected in."""

    error_code = ERR_STORAGE_NOT_FOUND

    def __init__(self, location: str, name: str):
        super().__init__(f"Object {name!r} not found in {location}/")
        self.location = location
        self.name = name


class StorageError(BundleflowError):
    """Raised when the object store fails for a reason other than absence."""

    error_code = ERR_STORAGE_IO


class QueueError(BundleflowError):
    """Raised when a pgmq operation fails."""

    error_code = ERR_DB_QUEUE


# =============================================================================
# STRUCTURED ERROR
# =============================================================================


@dataclass
class StructuredError:
    """Structured error for logging with full pipeline context."""

    error_code: ErrorCode
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: dict[str, Any] = field(default_factory=dict)
    original_exception: BaseException | None = None
    traceback_str: str | None = None

    def __post_init__(self) -> None:
        if self.original_exception and not self.traceback_str:
            self.traceback_str = "".join(
                traceback.format_exception(
                    type(self.original_exception),
                    self.original_exception,
                    self.original_exception.__traceback__,
                )
            )

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "error_code": str(self.error_code),
            "error_category": self.error_code.category.value,
            "error_message": self.message,
            "retryable": self.error_code.retryable,
            "timestamp": self.timestamp.isoformat(),
            **self.context,
        }

    def log(self, level: int = logging.ERROR) -> None:
        logger.log(
            level,
            f"[{self.error_code}] {self.message}",
            extra=self.to_log_dict(),
            exc_info=self.original_exception,
        )


def classify_exception(exc: BaseException, context: dict[str, Any] | None = None) -> StructuredError:
    """
    Classify an exception into a structured error.

    Pipeline exceptions keep their own code; psycopg and storage client
    errors are mapped by type name so this module does not import them.
    """
    context = context or {}
    exc_type = type(exc).__name__
    module = type(exc).__module__ or ""

    if isinstance(exc, BundleflowError):
        error_code = exc.error_code
    elif module.startswith("psycopg"):
        lowered = str(exc).lower()
        error_code = ERR_DB_CONNECTION if "connect" in lowered else ERR_DB_QUERY
    elif module.startswith(("storage3", "httpx")) or "Storage" in exc_type:
        error_code = ERR_STORAGE_IO
    else:
        error_code = ERR_INTERNAL_UNKNOWN

    return StructuredError(
        error_code=error_code,
        message=str(exc) or exc_type,
        context={"exception_type": exc_type, **context},
        original_exception=exc,
    )


def log_classified_error(
    exc: BaseException,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> StructuredError:
    """Classify and log an exception in one call."""
    structured = classify_exception(exc, context)
    structured.log(level)
    return structured
