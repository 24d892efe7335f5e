"""
Bundleflow - Intake Worker

Consumes bundle-arrival messages from INTAKE_QUEUE and runs the Intake
Detector on each. Message body (plain JSON, not Base64):

    {"name": "bundle.zip", "notification_email": "ops@example.com"}

The pgmq msg_id is the intake key, so a redelivered message resumes its
batch instead of registering a second one.

If any registered entry could not be enqueued to Stage-1 the handler raises,
so the message comes back and the resume path emits the stragglers.

Usage:
    python -m bundleflow.workers.intake_worker
"""

from __future__ import annotations

import logging
import sys
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from bundleflow.core.config import Settings, get_settings
from bundleflow.core.errors import QueueError
from bundleflow.core.logging import configure_worker_logging
from bundleflow.ingest.intake import IntakeDetector, IntakeStatus

from .base import OUTCOME_SKIPPED, BaseWorker
from .envelope import InvalidEnvelopeError
from .queue import PgmqQueue, QueueMessage
from .wiring import build_components

logger = logging.getLogger(__name__)


class IntakeRequest(BaseModel):
    """Body of an intake queue message."""

    name: str = Field(..., min_length=1, description="Object name in incoming/")
    notification_email: str | None = None

    model_config = {"extra": "ignore", "str_strip_whitespace": True}

    @classmethod
    def parse(cls, raw: Any) -> "IntakeRequest":
        if not isinstance(raw, dict):
            raise InvalidEnvelopeError(f"Intake message must be an object, got {type(raw).__name__}", raw)
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise InvalidEnvelopeError.from_validation_error(e, raw) from e


class IntakeWorker(BaseWorker):
    def __init__(self, settings: Settings, *, detector: IntakeDetector, queue: PgmqQueue):
        self.queue_name = settings.INTAKE_QUEUE
        self.detector = detector
        super().__init__(settings, queue)

    @classmethod
    def from_settings(cls, settings: Settings) -> "IntakeWorker":
        components = build_components(settings, "intake")
        detector = IntakeDetector(
            settings,
            components["ledger"],
            components["store"],
            components["queue"],
        )
        return cls(settings, detector=detector, queue=components["queue"])

    def intake_key(self, msg: QueueMessage) -> str:
        return f"{self.queue_name}:{msg.msg_id}"

    def handle(self, msg: QueueMessage) -> str | None:
        request = IntakeRequest.parse(msg.message)
        report = self.detector.handle(
            request.name,
            request.notification_email,
            intake_key=self.intake_key(msg),
        )
        if report.failed:
            logger.error(
                "Intake of %s finished with %d failed members: %s",
                report.name,
                len(report.failed),
                report.failed,
            )
        if report.unemitted:
            # Leave the message for redelivery; the batch resumes from the ledger.
            raise QueueError(
                f"{len(report.unemitted)} entries of {report.name} were not enqueued: "
                f"{', '.join(report.unemitted)}"
            )
        if report.status is IntakeStatus.MISSING:
            return OUTCOME_SKIPPED
        return report.status.value


def main() -> int:
    settings = get_settings()
    configure_worker_logging("bundleflow.intake", settings.LOG_LEVEL, settings.LOG_JSON)
    return IntakeWorker.from_settings(settings).run()


if __name__ == "__main__":
    sys.exit(main())
