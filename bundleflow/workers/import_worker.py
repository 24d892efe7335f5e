"""
Bundleflow - Import Worker

Consumes Stage-2 envelopes (STAGE2_QUEUE) and finishes every file entry
that reached it:

    importing/ --importer ok--> completed/  + mark completed
    importing/ --failure------> rejected/   + mark rejected

Marking always precedes notification and happens once per entry.

Redelivery handling:
- entry already finished: only reconcile a leftover object in importing/,
  never re-mark or re-notify;
- object already in completed/ or rejected/ while the entry is unfinished
  (crash between move and mark): apply the matching mark only.

The importer may run for a long time, so this worker leases messages for
LONG_RUNNING_TIMEOUT instead of VISIBILITY_TIMEOUT.

Usage:
    python -m bundleflow.workers.import_worker
"""

from __future__ import annotations

import logging
import sys

from bundleflow.core.config import Settings, get_settings
from bundleflow.core.errors import ObjectNotFoundError
from bundleflow.core.logging import configure_worker_logging
from bundleflow.ledger import FileOutcome
from bundleflow.services.collaborators import Importer, invoke_stage, load_collaborator
from bundleflow.storage.object_store import Location

from .base import OUTCOME_SKIPPED, StageWorker
from .envelope import FileEnvelope
from .wiring import build_components

logger = logging.getLogger(__name__)

_RECOVERY_LOCATIONS = (Location.IMPORTING, Location.COMPLETED, Location.REJECTED)


class ImportWorker(StageWorker):
    stage = "import"

    def __init__(self, settings: Settings, *, importer: Importer, **components):
        self.queue_name = settings.STAGE2_QUEUE
        self.importer = importer
        components.setdefault("visibility_timeout", settings.LONG_RUNNING_TIMEOUT)
        super().__init__(settings, **components)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImportWorker":
        importer = load_collaborator(settings.IMPORTER_FACTORY, settings, setting_name="IMPORTER_FACTORY")
        return cls(settings, importer=importer, **build_components(settings, "import"))

    def process(self, envelope: FileEnvelope) -> str:
        admitted = self.admit(envelope)
        if admitted is None:
            return OUTCOME_SKIPPED
        _, entry = admitted
        if entry.finished:
            logger.info("Entry already %s; skipping re-mark and re-notify", entry.outcome.value)
            self.reconcile(entry)
            return OUTCOME_SKIPPED

        location = self.store.locate(entry.file_name, _RECOVERY_LOCATIONS)
        if location is None:
            raise ObjectNotFoundError(Location.IMPORTING.value, entry.file_name)

        if location is Location.COMPLETED:
            logger.info("Object already in completed/; applying the missing mark")
            self.terminalize(envelope, None, FileOutcome.COMPLETED)
            return "recovered"
        if location is Location.REJECTED:
            logger.info("Object already in rejected/; applying the missing mark")
            self.terminalize(
                envelope,
                None,
                FileOutcome.REJECTED,
                envelope.error_message or "import interrupted after rejection",
            )
            return "recovered"

        if not envelope.has_valid_job_id:
            logger.error("Malformed Job_ID %r", envelope.job_id)
            self.terminalize(
                envelope,
                Location.IMPORTING,
                FileOutcome.REJECTED,
                f"invalid job id: {envelope.job_id!r}",
            )
            return "rejected"

        result = invoke_stage(self.stage, self.importer.run_import, envelope.job_id)
        if result.ok:
            self.terminalize(envelope, Location.IMPORTING, FileOutcome.COMPLETED)
            return "completed"

        self.terminalize(envelope, Location.IMPORTING, FileOutcome.REJECTED, result.reason)
        return "rejected"


def main() -> int:
    settings = get_settings()
    configure_worker_logging("bundleflow.import", settings.LOG_LEVEL, settings.LOG_JSON)
    return ImportWorker.from_settings(settings).run()


if __name__ == "__main__":
    sys.exit(main())
