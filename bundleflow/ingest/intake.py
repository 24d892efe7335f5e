"""
Bundleflow - Intake Detector

Turns an object that arrived in incoming/ into a registered batch:

    archive      -> members extracted to processing/, one entry each,
                    bundle moved to archive/
    single file  -> one entry, object moved to processing/
    unsupported  -> object moved to rejected/, nothing registered

Every registered entry gets one envelope on the Stage-1 queue, emitted after
the whole bundle has been registered.

Rerun marker: an archive may carry an empty member named RERUN_MARKER_NAME.
It is never extracted. Instead the latest batch for the same origin name is
restarted with retry_count + 1 and every emitted envelope carries Rerun=true,
telling Stage-1 to purge previously staged rows first. A non-empty member
with the marker name is an ordinary member.

Failure policy: one member's extraction failure is logged and the member is
skipped; ledger and queue failures for a member are logged at ERROR and the
remaining members still go through. Failures that hit the bundle as a whole
(the download, the batch row) propagate so the intake message is redelivered.
"""

from __future__ import annotations

import io
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from bundleflow.core.config import Settings
from bundleflow.core.errors import BundleflowError, ObjectNotFoundError, StorageError
from bundleflow.core.logging import LogContext
from bundleflow.ledger import Batch, BatchLedger
from bundleflow.storage.object_store import Location, ObjectStore
from bundleflow.workers.envelope import FileEnvelope

from .classify import BundleKind, classify_bundle, is_supported_file, member_basename

logger = logging.getLogger(__name__)

# Where an earlier upload of the same name may have left its copy.
_STALE_LOCATIONS = (Location.COMPLETED, Location.REJECTED)
# A rerun also supersedes its own previous attempt, which may still be mid-import.
_RERUN_STALE_LOCATIONS = (Location.IMPORTING, Location.COMPLETED, Location.REJECTED)


class QueueSender(Protocol):
    def send(self, queue_name: str, payload: Any, delay: int = 0) -> int:
        ...


class IntakeStatus(str, Enum):
    REGISTERED = "registered"
    REJECTED = "rejected"  # unsupported or unreadable bundle
    RESUMED = "resumed"  # redelivery after the bundle already left incoming/
    MISSING = "missing"


@dataclass
class IntakeReport:
    """What intake did with one arriving object."""

    name: str
    status: IntakeStatus
    kind: BundleKind | None = None
    batch_id: str | None = None
    retry_count: int = 0
    rerun: bool = False
    registered: list[str] = field(default_factory=list)
    emitted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    # registered but not enqueued; only a redelivery (resume) can emit them
    unemitted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class _Member:
    info: zipfile.ZipInfo
    name: str


class IntakeDetector:
    """
    Classifies and registers arriving bundles.

    Args:
        settings: Extension lists, rerun marker name and Stage-1 queue name.
        ledger: Batch ledger.
        store: Object store adapter.
        queue: Anything with send(queue_name, payload); normally PgmqQueue.
    """

    def __init__(self, settings: Settings, ledger: BatchLedger, store: ObjectStore, queue: QueueSender):
        self.settings = settings
        self.ledger = ledger
        self.store = store
        self.queue = queue

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def handle(
        self,
        name: str,
        notification_email: str | None = None,
        *,
        intake_key: str | None = None,
    ) -> IntakeReport:
        """
        Process incoming/<name>.

        Args:
            name: Object name inside incoming/.
            notification_email: Recipient carried on every envelope.
            intake_key: Identity of the triggering message, so a redelivery
                resumes its batch instead of creating another.
        """
        with LogContext(file_name=name, stage="intake"):
            try:
                content = self.store.open(Location.INCOMING, name)
            except ObjectNotFoundError:
                return self._resume(name, notification_email, intake_key)

            kind = classify_bundle(name, content, self.settings)
            logger.info("Classified %s as %s (%d bytes)", name, kind.value, len(content))

            if kind is BundleKind.ARCHIVE:
                return self._handle_archive(name, content, notification_email, intake_key)
            if kind is BundleKind.SINGLE_FILE:
                return self._handle_single(name, notification_email, intake_key)
            return self._reject(name, kind, "unsupported file type")

    # -------------------------------------------------------------------------
    # Single file
    # -------------------------------------------------------------------------

    def _handle_single(
        self, name: str, notification_email: str | None, intake_key: str | None
    ) -> IntakeReport:
        batch = self.ledger.begin_batch(name, intake_key=intake_key)
        report = IntakeReport(
            name=name,
            status=IntakeStatus.REGISTERED,
            kind=BundleKind.SINGLE_FILE,
            batch_id=batch.batch_id,
            retry_count=batch.retry_count,
        )
        with LogContext(batch_id=batch.batch_id):
            self._discard_stale(batch, name, _STALE_LOCATIONS)
            if self.ledger.register_entry(batch.batch_id, name):
                report.registered.append(name)
            self.store.move(Location.INCOMING, name, Location.PROCESSING)
            self.ledger.mark_extracted(batch.batch_id, name)
            self._emit(batch, [name], notification_email, report)
        return report

    # -------------------------------------------------------------------------
    # Archive
    # -------------------------------------------------------------------------

    def _scan_archive(self, zf: zipfile.ZipFile, report: IntakeReport) -> tuple[list[_Member], bool]:
        """Pick extractable members and detect the rerun marker."""
        members: list[_Member] = []
        seen: set[str] = set()
        rerun = False

        for info in zf.infolist():
            if info.is_dir():
                continue
            base = member_basename(info.filename)
            if not base:
                continue
            if base == self.settings.RERUN_MARKER_NAME and info.file_size == 0:
                rerun = True
                continue
            if not is_supported_file(base, self.settings):
                logger.debug("Ignoring archive member %s (unsupported type)", info.filename)
                report.skipped.append(info.filename)
                continue
            if base in seen:
                logger.warning("Duplicate member name %s in archive; keeping the first", base)
                report.skipped.append(info.filename)
                continue
            seen.add(base)
            members.append(_Member(info=info, name=base))
        return members, rerun

    def _handle_archive(
        self,
        name: str,
        content: bytes,
        notification_email: str | None,
        intake_key: str | None,
    ) -> IntakeReport:
        try:
            zf = zipfile.ZipFile(io.BytesIO(content))
        except zipfile.BadZipFile as e:
            return self._reject(name, BundleKind.ARCHIVE, f"unreadable archive: {e}")

        with zf:
            report = IntakeReport(name=name, status=IntakeStatus.REGISTERED, kind=BundleKind.ARCHIVE)
            members, rerun = self._scan_archive(zf, report)
            if not members:
                return self._reject(name, BundleKind.ARCHIVE, "archive has no supported members")

            batch = self.ledger.begin_batch(name, rerun=rerun, intake_key=intake_key)
            report.batch_id = batch.batch_id
            report.retry_count = batch.retry_count
            report.rerun = rerun

            with LogContext(batch_id=batch.batch_id):
                if rerun:
                    logger.info(
                        "Rerun marker found in %s; batch restarted at retry_count=%d",
                        name,
                        batch.retry_count,
                    )
                stale = _RERUN_STALE_LOCATIONS if rerun else _STALE_LOCATIONS
                ready = [m.name for m in members if self._extract_member(zf, m, batch, report, stale)]
                self._emit(batch, ready, notification_email, report, rerun=rerun)

        if report.registered or report.emitted:
            self.store.move(Location.INCOMING, name, Location.ARCHIVE)
        else:
            logger.error("No member of %s could be registered; bundle left in incoming/", name)
        return report

    def _extract_member(
        self,
        zf: zipfile.ZipFile,
        member: _Member,
        batch: Batch,
        report: IntakeReport,
        stale: tuple[Location, ...],
    ) -> bool:
        """Write one member to processing/ and register it. False if it was skipped."""
        with LogContext(file_name=member.name):
            self._discard_stale(batch, member.name, stale)
            try:
                data = zf.read(member.info)
                self.store.put(Location.PROCESSING, member.name, data)
            except (
                zipfile.BadZipFile,
                zlib.error,
                OSError,
                NotImplementedError,  # unsupported compression method
                RuntimeError,  # encrypted member
                StorageError,
            ) as e:
                logger.warning("Extraction of %s failed, member skipped: %s", member.info.filename, e)
                report.failed[member.name] = f"extraction failed: {e}"
                return False

            try:
                if self.ledger.register_entry(batch.batch_id, member.name, extracted=True):
                    report.registered.append(member.name)
            except BundleflowError as e:
                logger.error("Ledger registration of %s failed: %s", member.name, e, exc_info=True)
                report.failed[member.name] = f"registration failed: {e}"
                return False
            return True

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------

    def _discard_stale(self, batch: Batch, file_name: str, locations: tuple[Location, ...]) -> None:
        """
        Clear copies a previous upload or attempt left downstream, so the new
        copy is the only one. A finished entry of this batch is a redelivery
        and keeps its result. Storage failures propagate.
        """
        entry = self.ledger.get_entry(batch.batch_id, file_name)
        if entry is not None and entry.finished:
            return
        self.store.discard(file_name, locations)

    def _emit(
        self,
        batch: Batch,
        file_names: list[str],
        notification_email: str | None,
        report: IntakeReport,
        *,
        rerun: bool = False,
    ) -> None:
        for file_name in file_names:
            envelope = FileEnvelope.create(
                file_name,
                batch.batch_id,
                retry_count=batch.retry_count,
                notification_email=notification_email,
                rerun=rerun,
            )
            try:
                msg_id = self.queue.send(self.settings.STAGE1_QUEUE, envelope.encode())
            except BundleflowError as e:
                logger.error(
                    "Enqueue of %s to %s failed: %s",
                    file_name,
                    self.settings.STAGE1_QUEUE,
                    e,
                    exc_info=True,
                )
                report.failed[file_name] = f"enqueue failed: {e}"
                report.unemitted.append(file_name)
                continue
            report.emitted.append(file_name)
            logger.debug("Emitted %s as msg_id=%d", file_name, msg_id)

        logger.info(
            "Batch %s: %d entries emitted to %s",
            batch.batch_id,
            len(report.emitted),
            self.settings.STAGE1_QUEUE,
        )

    def _reject(self, name: str, kind: BundleKind, reason: str) -> IntakeReport:
        logger.warning("Rejecting %s: %s", name, reason)
        self.store.move(Location.INCOMING, name, Location.REJECTED)
        return IntakeReport(name=name, status=IntakeStatus.REJECTED, kind=kind, failed={name: reason})

    def _resume(
        self, name: str, notification_email: str | None, intake_key: str | None
    ) -> IntakeReport:
        """
        The object already left incoming/.

        With an intake_key this is a redelivery of a message whose earlier
        delivery moved the object; re-emit envelopes for the batch's
        unfinished entries so none is stranded. Stage workers ignore the
        duplicates.
        """
        batch = self.ledger.batch_for_intake(intake_key) if intake_key else None
        if batch is None:
            logger.warning("Object %s is not in incoming/; nothing to do", name)
            return IntakeReport(name=name, status=IntakeStatus.MISSING)

        report = IntakeReport(
            name=name,
            status=IntakeStatus.RESUMED,
            batch_id=batch.batch_id,
            retry_count=batch.retry_count,
            rerun=batch.retry_count > 0,
        )
        with LogContext(batch_id=batch.batch_id):
            pending: list[str] = []
            for entry in self.ledger.list_entries(batch.batch_id):
                if entry.finished:
                    continue
                if not entry.extracted:
                    if not self.store.exists(Location.PROCESSING, entry.file_name):
                        logger.error("Entry %s was never extracted; redrive required", entry.file_name)
                        report.failed[entry.file_name] = "not extracted"
                        continue
                    self.ledger.mark_extracted(batch.batch_id, entry.file_name)
                pending.append(entry.file_name)

            logger.info("Resuming intake of %s: %d unfinished entries", name, len(pending))
            self._emit(batch, pending, notification_email, report, rerun=report.rerun)
        return report
