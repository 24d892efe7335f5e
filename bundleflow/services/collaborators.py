"""Collaborator contracts for the stage workers.

The pipeline does not validate spreadsheets, apply business rules or load
data itself. It delegates to three collaborators wired in at startup:

- Transformer: validates and transforms one file into staged rows.
- Importer: merges a staged job into the target tables.
- NotificationSender: delivers a templated notification.

Transformer and Importer report a tri-state StageResult. A collaborator that
raises, or returns anything other than a StageResult, is recorded as an
ERROR outcome; nothing is ever coerced to success.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from bundleflow.core.config import Settings
from bundleflow.core.errors import (
    ERR_COLLABORATOR_CONTRACT,
    ERR_COLLABORATOR_EXCEPTION,
    ERR_CONFIG_COLLABORATOR,
    ERR_VALIDATION_BUSINESS,
    ConfigurationError,
    StructuredError,
)

logger = logging.getLogger(__name__)


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"  # business validation failed; expected per-file outcome
    ERROR = "error"  # unexpected error inside the collaborator


@dataclass(frozen=True)
class StageResult:
    """Outcome of one collaborator call.

    Attributes:
        status: SUCCESS, FAILURE or ERROR.
        reason: Human-readable detail for FAILURE/ERROR; surfaces as the
            file entry's error_message.
        job_id: Staging job produced by a successful transform.
    """

    status: ResultStatus
    reason: str | None = None
    job_id: str | None = None

    @classmethod
    def success(cls, job_id: str | None = None) -> "StageResult":
        return cls(ResultStatus.SUCCESS, job_id=job_id)

    @classmethod
    def failure(cls, reason: str) -> "StageResult":
        return cls(ResultStatus.FAILURE, reason=reason or "validation failed")

    @classmethod
    def error(cls, reason: str) -> "StageResult":
        return cls(ResultStatus.ERROR, reason=reason or "unexpected error")

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCESS


@runtime_checkable
class Transformer(Protocol):
    """Validation and business-rule transformation of one file.

    Example:
        class SheetTransformer:
            def transform(self, content, template, retry_count, *, batch_id, file_name):
                rows = parse(content, template)
                if not rows:
                    return StageResult.failure("sheet has no data rows")
                return StageResult.success(job_id=stage(rows, batch_id, file_name))

            def purge_staged(self, batch_id, file_name):
                delete_staged_rows(batch_id, file_name)
    """

    def transform(
        self,
        content: bytes,
        template: bytes | None,
        retry_count: int,
        *,
        batch_id: str,
        file_name: str,
    ) -> StageResult:
        ...

    def purge_staged(self, batch_id: str, file_name: str) -> None:
        """Remove rows staged (but not imported) by earlier attempts. Idempotent."""
        ...


@runtime_checkable
class Importer(Protocol):
    def run_import(self, job_id: str) -> StageResult:
        ...


@runtime_checkable
class NotificationSender(Protocol):
    def send(self, recipient: str, template: str, parameters: Mapping[str, Any]) -> bool:
        """Deliver one notification; False when the provider refused it."""
        ...


def invoke_stage(stage: str, call: Callable[..., Any], *args: Any, **kwargs: Any) -> StageResult:
    """
    Call a collaborator and normalise its outcome into a StageResult.

    Exceptions are logged with the current pipeline context and converted to
    ERROR so that a crash in business logic still terminalizes the entry.
    """
    try:
        result = call(*args, **kwargs)
    except Exception as e:
        StructuredError(
            error_code=ERR_COLLABORATOR_EXCEPTION,
            message=f"{stage} collaborator raised {type(e).__name__}: {e}",
            context={"stage": stage, "exception_type": type(e).__name__},
            original_exception=e,
        ).log()
        return StageResult.error(f"{type(e).__name__}: {e}")

    if not isinstance(result, StageResult):
        logger.error(
            "[%s] %s returned %s instead of a StageResult",
            ERR_COLLABORATOR_CONTRACT,
            stage,
            type(result).__name__,
            extra={"error_code": str(ERR_COLLABORATOR_CONTRACT)},
        )
        return StageResult.error(
            f"{stage} collaborator returned {type(result).__name__}, expected StageResult"
        )
    if result.status is ResultStatus.FAILURE:
        logger.warning(
            "[%s] %s rejected the file: %s",
            ERR_VALIDATION_BUSINESS,
            stage,
            result.reason,
            extra={"error_code": str(ERR_VALIDATION_BUSINESS)},
        )
    return result


def load_collaborator(path: str | None, settings: Settings, *, setting_name: str) -> Any:
    """
    Build a collaborator from a "package.module:factory" path.

    The factory is called with the settings object.

    Raises:
        ConfigurationError: path unset, unimportable, or the factory failed.
    """
    if not path:
        raise ConfigurationError(
            f"{setting_name} is not configured",
            error_code=ERR_CONFIG_COLLABORATOR,
        )
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"{setting_name} must look like 'package.module:factory', got {path!r}",
            error_code=ERR_CONFIG_COLLABORATOR,
        )

    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(
            f"Cannot load {setting_name}={path}: {e}",
            error_code=ERR_CONFIG_COLLABORATOR,
        ) from e

    try:
        collaborator = factory(settings)
    except Exception as e:
        raise ConfigurationError(
            f"{setting_name} factory {path} failed: {e}",
            error_code=ERR_CONFIG_COLLABORATOR,
        ) from e

    logger.info("Loaded %s from %s (%s)", setting_name, path, type(collaborator).__name__)
    return collaborator
