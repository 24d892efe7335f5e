"""
Bundleflow - File Envelope Schema

Defines the contract for every message on the stage queues. One envelope
describes one file entry of one batch; each worker builds the next envelope
from the one it received plus its own results (the model is frozen).

Wire format: the envelope is dumped to JSON using the field aliases below,
Base64-encoded, and sent to pgmq as a JSON string.

    {"FileName": "a.xlsx", "Batch_ID": "6f1c...", "RetryCount": 0, "Rerun": false}

Decoding is deliberately permissive across pipeline versions: unknown fields
are ignored, missing fields take their defaults and a malformed RetryCount
reads as 0. Only a payload that cannot be decoded into an object at all
raises InvalidEnvelopeError.

Usage:
    from bundleflow.workers.envelope import FileEnvelope, InvalidEnvelopeError

    try:
        envelope = FileEnvelope.decode(msg.message)
        envelope.require_identity()
    except InvalidEnvelopeError:
        # Dead letter - never retried
        ...

    forward = envelope.next_hop(job_id=result.job_id, file_status=True)
    queue.send(settings.STAGE2_QUEUE, forward.encode())
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError, field_validator

from bundleflow.core.errors import ERR_ENVELOPE_INVALID, BundleflowError


class InvalidEnvelopeError(BundleflowError):
    """Raised when a message cannot be turned into a usable FileEnvelope."""

    error_code = ERR_ENVELOPE_INVALID

    def __init__(self, message: str, raw_payload: Any = None):
        super().__init__(message)
        self.raw_payload = raw_payload
        self.validation_errors: list[dict[str, Any]] = []

    @classmethod
    def from_validation_error(
        cls,
        error: ValidationError,
        raw_payload: Any = None,
    ) -> "InvalidEnvelopeError":
        """Create from a Pydantic ValidationError."""
        instance = cls(str(error), raw_payload)
        instance.validation_errors = error.errors(include_url=False)
        return instance


def _is_uuid(value: str | None) -> bool:
    if not value:
        return False
    try:
        UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def _parse_optional_bool(v: Any) -> bool | None:
    """Lenient bool: unrecognised values read as None rather than failing."""
    if v is None or isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        lowered = v.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return None


class FileEnvelope(BaseModel):
    """
    Per-file message carried between pipeline stages.

    Optional fields are None until the stage that produces them runs:
    job_id appears after validate/transform succeeds, file_status and
    error_message once a stage has an outcome to report.
    """

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    file_name: str | None = Field(default=None, alias="FileName")
    batch_id: str | None = Field(default=None, alias="Batch_ID")
    job_id: str | None = Field(
        default=None,
        alias="Job_ID",
        description="Staging job produced by the transformer, consumed by the importer",
    )

    # -------------------------------------------------------------------------
    # Attempt tracking
    # -------------------------------------------------------------------------

    retry_count: int = Field(
        default=0,
        alias="RetryCount",
        description="Batch attempt this message belongs to (Batch.retry_count at intake)",
    )
    rerun: bool = Field(
        default=False,
        alias="Rerun",
        description="Purge previously staged rows for this file before transforming",
    )

    # -------------------------------------------------------------------------
    # Outcome
    # -------------------------------------------------------------------------

    file_status: bool | None = Field(default=None, alias="FileStatus")
    process_status: str | None = Field(default=None, alias="ProcessStatus")
    error_message: str | None = Field(default=None, alias="ErrorMessage")

    notification_email: str | None = Field(default=None, alias="NotificationEmailAddress")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
        "frozen": True,
    }

    # -------------------------------------------------------------------------
    # Permissive field parsing
    # -------------------------------------------------------------------------

    @field_validator("retry_count", mode="before")
    @classmethod
    def _coerce_retry_count(cls, v: Any) -> int:
        if isinstance(v, bool):
            return 0
        try:
            count = int(v)
        except (TypeError, ValueError):
            return 0
        return max(count, 0)

    @field_validator("file_status", mode="before")
    @classmethod
    def _coerce_file_status(cls, v: Any) -> bool | None:
        return _parse_optional_bool(v)

    @field_validator("rerun", mode="before")
    @classmethod
    def _coerce_rerun(cls, v: Any) -> bool:
        return bool(_parse_optional_bool(v))

    @field_validator(
        "file_name",
        "batch_id",
        "job_id",
        "process_status",
        "error_message",
        "notification_email",
        mode="before",
    )
    @classmethod
    def _coerce_optional_str(cls, v: Any) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    # -------------------------------------------------------------------------
    # Factory methods
    # -------------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        file_name: str,
        batch_id: str,
        *,
        retry_count: int = 0,
        notification_email: str | None = None,
        rerun: bool = False,
    ) -> "FileEnvelope":
        """Envelope emitted by intake for a freshly registered file entry."""
        return cls(
            file_name=file_name,
            batch_id=batch_id,
            retry_count=retry_count,
            notification_email=notification_email,
            rerun=rerun,
        )

    @classmethod
    def parse(cls, raw: dict[str, Any]) -> "FileEnvelope":
        """
        Validate an already-decoded dictionary.

        Raises:
            InvalidEnvelopeError: If raw is not a mapping.
        """
        if not isinstance(raw, dict):
            raise InvalidEnvelopeError(
                f"Envelope must be a JSON object, got {type(raw).__name__}", raw
            )
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise InvalidEnvelopeError.from_validation_error(e, raw) from e

    @classmethod
    def decode(cls, payload: str | bytes | dict[str, Any]) -> "FileEnvelope":
        """
        Decode a queue payload.

        Accepts the Base64 wire string (or its bytes), plain JSON text, or a
        dictionary that pgmq already decoded.
        """
        if isinstance(payload, dict):
            return cls.parse(payload)

        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidEnvelopeError("Envelope bytes are not UTF-8", payload) from e

        if not isinstance(payload, str):
            raise InvalidEnvelopeError(
                f"Unsupported envelope payload type {type(payload).__name__}", payload
            )

        text = payload.strip()
        if not text.startswith("{"):
            try:
                text = base64.b64decode(text, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise InvalidEnvelopeError("Envelope is not valid Base64", payload) from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidEnvelopeError(f"Envelope is not valid JSON: {e}", payload) from e
        return cls.parse(raw)

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Wire-named dictionary; None fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def encode(self) -> str:
        """Base64 of the JSON wire form."""
        raw = json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    # -------------------------------------------------------------------------
    # Utility methods
    # -------------------------------------------------------------------------

    def next_hop(self, **updates: Any) -> "FileEnvelope":
        """
        Build the envelope for the next stage.

        The rerun flag is consumed by the stage that purges, so it is never
        carried forward unless explicitly passed.
        """
        updates.setdefault("rerun", False)
        unknown = set(updates) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown envelope fields: {sorted(unknown)}")
        return self.model_copy(update=updates)

    def require_identity(self) -> None:
        """
        Ensure the envelope names a file of a well-formed batch.

        Raises:
            InvalidEnvelopeError: FileName missing or Batch_ID missing/not a UUID.
        """
        if not self.file_name:
            raise InvalidEnvelopeError("Envelope has no FileName", self.to_dict())
        if not _is_uuid(self.batch_id):
            raise InvalidEnvelopeError(
                f"Envelope Batch_ID is missing or not a UUID: {self.batch_id!r}",
                self.to_dict(),
            )

    @property
    def has_valid_job_id(self) -> bool:
        return _is_uuid(self.job_id)

    def to_dlq_payload(self, reason: str) -> dict[str, Any]:
        return {
            "original_envelope": self.to_dict(),
            "dlq_reason": reason,
            "dlq_at": datetime.now(timezone.utc).isoformat(),
        }

    @property
    def log_context(self) -> dict[str, Any]:
        """Keyword arguments for LogContext."""
        return {
            "batch_id": self.batch_id,
            "file_name": self.file_name,
            "job_id": self.job_id,
        }
