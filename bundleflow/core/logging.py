"""
Bundleflow - Structured Logging

JSON log output for workers. Every entry carries:
- timestamp (ISO 8601, UTC)
- level
- logger name
- message
- pipeline context (batch_id, file_name, stage, job_id, msg_id)

Usage:
    from bundleflow.core.logging import LogContext

    logger = logging.getLogger(__name__)

    with LogContext(batch_id=batch_id, file_name=name, stage="import"):
        logger.info("Import started")  # includes batch_id, file_name, stage
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Generator

from pydantic import BaseModel

# =============================================================================
# Context Variables
# =============================================================================

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

CONTEXT_KEYS = ("batch_id", "file_name", "stage", "job_id", "msg_id", "queue")


def get_current_context() -> Dict[str, Any]:
    """Get current logging context."""
    return _log_context.get().copy()


def set_context(**kwargs: Any) -> None:
    """Set context values for the current context."""
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def clear_context() -> None:
    """Clear all context values."""
    _log_context.set({})


@contextmanager
def LogContext(**kwargs: Any) -> Generator[None, None, None]:
    """
    Add fields to every log record emitted inside the block.

    None values are dropped so optional envelope fields can be passed as-is.
    """
    previous = _log_context.get()
    merged = previous.copy()
    merged.update({k: v for k, v in kwargs.items() if v is not None})
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


# =============================================================================
# Sensitive Data Redaction
# =============================================================================

REDACT_PATTERNS = frozenset(
    {
        "password",
        "secret",
        "api_key",
        "apikey",
        "token",
        "service_role",
        "credential",
    }
)


def redact_sensitive(data: Any, max_depth: int = 10) -> Any:
    """Recursively redact sensitive fields from data structures."""
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(pattern in key_lower for pattern in REDACT_PATTERNS):
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive(value, max_depth - 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, max_depth - 1) for item in data]

    if isinstance(data, BaseModel):
        return redact_sensitive(data.model_dump(), max_depth - 1)

    return data


# =============================================================================
# Formatters
# =============================================================================


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON log formatter.

    Output format:
    {
        "timestamp": "2026-10-18T10:30:00.123456+00:00",
        "level": "INFO",
        "logger": "bundleflow.workers.import_worker",
        "message": "Import completed",
        "batch_id": "6f1c...",
        "file_name": "a.xlsx",
        "stage": "import"
    }
    """

    EXTRA_KEYS = (
        *CONTEXT_KEYS,
        "outcome",
        "remaining",
        "duration_ms",
        "error_code",
        "error_category",
        "retryable",
    )

    def __init__(self, include_traceback: bool = True, redact_sensitive_data: bool = True):
        super().__init__()
        self.include_traceback = include_traceback
        self.redact_sensitive_data = redact_sensitive_data

    def format(self, record: logging.LogRecord) -> str:
        log_dict: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_dict.update(get_current_context())

        for key in self.EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_dict[key] = value

        if record.exc_info and self.include_traceback:
            log_dict["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if self.redact_sensitive_data:
            log_dict = redact_sensitive(log_dict)

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class _SimpleFormatter(logging.Formatter):
    """timestamp | level | name | [context] message, for local runs."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = get_current_context()
        parts = [f"{key}={context[key]}" for key in CONTEXT_KEYS if key in context]
        return f"{line} [{', '.join(parts)}]" if parts else line


# =============================================================================
# Split-Stream Handlers (stdout for INFO/DEBUG, stderr for WARNING+)
# =============================================================================


class _MaxLevelFilter(logging.Filter):
    """Pass records at or below a maximum level."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _create_split_handlers(formatter: logging.Formatter, level: int) -> list[logging.Handler]:
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(max(level, logging.WARNING))
    stderr_handler.setFormatter(formatter)

    return [stdout_handler, stderr_handler]


def configure_worker_logging(
    worker_name: str,
    level: str = "INFO",
    json_output: bool = True,
) -> logging.Logger:
    """
    Configure root logging for a worker process.

    - DEBUG, INFO -> stdout
    - WARNING, ERROR, CRITICAL -> stderr

    Returns:
        Logger named after the worker.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter = StructuredJsonFormatter() if json_output else _SimpleFormatter()
    for handler in _create_split_handlers(formatter, numeric_level):
        root_logger.addHandler(handler)

    set_context(service=worker_name)
    return logging.getLogger(worker_name)


# =============================================================================
# Timing
# =============================================================================


class Timer:
    """
    Context manager for timing code blocks.

        with Timer() as t:
            handle(envelope)
        logger.info("done", extra={"duration_ms": t.elapsed_ms})
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time or time.perf_counter()
        return round((end - self.start_time) * 1000, 2)
