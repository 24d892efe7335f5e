"""
Bundleflow - Validate/Transform Worker

Consumes Stage-1 envelopes (STAGE1_QUEUE).

For each file entry:
1. Skip unknown, finished or superseded entries.
2. Locate processing/<name> (or importing/<name> when an earlier delivery
   moved it but died before forwarding).
3. Rerun with the object still in processing/: purge rows staged by earlier
   attempts (idempotent). Load the object and the optional template.
4. Run the Transformer.
5. Success -> move to importing/, forward to Stage-2 with the job id.
   The entry stays unfinished.
6. Failure or collaborator exception -> move to rejected/, mark rejected,
   dispatch the notification.

Usage:
    python -m bundleflow.workers.validate_worker
"""

from __future__ import annotations

import logging
import sys

from bundleflow.core.config import Settings, get_settings
from bundleflow.core.errors import ObjectNotFoundError
from bundleflow.core.logging import configure_worker_logging
from bundleflow.ingest.classify import template_name
from bundleflow.ledger import FileOutcome
from bundleflow.services.collaborators import Transformer, invoke_stage, load_collaborator
from bundleflow.storage.object_store import Location

from .base import OUTCOME_SKIPPED, StageWorker
from .envelope import FileEnvelope
from .wiring import build_components

logger = logging.getLogger(__name__)


class ValidateWorker(StageWorker):
    stage = "validate"

    def __init__(self, settings: Settings, *, transformer: Transformer, **components):
        self.queue_name = settings.STAGE1_QUEUE
        self.transformer = transformer
        super().__init__(settings, **components)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ValidateWorker":
        transformer = load_collaborator(
            settings.TRANSFORMER_FACTORY, settings, setting_name="TRANSFORMER_FACTORY"
        )
        return cls(settings, transformer=transformer, **build_components(settings, "validate"))

    def _load_template(self, file_name: str) -> bytes | None:
        name = template_name(file_name, self.settings)
        template = self.store.open_optional(Location.TEMPLATES, name)
        if template is None:
            logger.warning("No template %s for %s; transforming without one", name, file_name)
        return template

    def process(self, envelope: FileEnvelope) -> str:
        admitted = self.admit(envelope)
        if admitted is None:
            return OUTCOME_SKIPPED
        batch, entry = admitted
        if entry.finished:
            logger.info("Entry already %s; skipping", entry.outcome.value)
            self.reconcile(entry)
            return OUTCOME_SKIPPED

        source = self.store.locate(entry.file_name, (Location.PROCESSING, Location.IMPORTING))
        # importing/ means this attempt already staged rows; only processing/ is pre-transform
        if envelope.rerun and source is Location.PROCESSING:
            logger.info("Rerun: purging staged rows from earlier attempts")
            self.transformer.purge_staged(batch.batch_id, entry.file_name)

        if source is None:
            if self.store.exists(Location.REJECTED, entry.file_name):
                # An earlier delivery moved the object but died before marking.
                self.terminalize(
                    envelope,
                    None,
                    FileOutcome.REJECTED,
                    envelope.error_message or "validation interrupted after rejection",
                )
                return "recovered"
            raise ObjectNotFoundError(Location.PROCESSING.value, entry.file_name)

        content = self.store.open(source, entry.file_name)
        template = self._load_template(entry.file_name)

        result = invoke_stage(
            self.stage,
            self.transformer.transform,
            content,
            template,
            envelope.retry_count,
            batch_id=batch.batch_id,
            file_name=entry.file_name,
        )

        if not result.ok:
            self.terminalize(envelope, source, FileOutcome.REJECTED, result.reason)
            return "rejected"

        if source is Location.PROCESSING:
            self.store.move(Location.PROCESSING, entry.file_name, Location.IMPORTING)
        forward = envelope.next_hop(
            job_id=result.job_id,
            file_status=True,
            process_status="transformed",
            error_message=None,
        )
        msg_id = self.queue.send(self.settings.STAGE2_QUEUE, forward.encode())
        logger.info(
            "Transformed; forwarded to %s as msg_id=%d job_id=%s",
            self.settings.STAGE2_QUEUE,
            msg_id,
            result.job_id,
        )
        return "forwarded"


def main() -> int:
    settings = get_settings()
    configure_worker_logging("bundleflow.validate", settings.LOG_LEVEL, settings.LOG_JSON)
    return ValidateWorker.from_settings(settings).run()


if __name__ == "__main__":
    sys.exit(main())
