"""
Bundleflow - BaseWorker (pgmq Queue Consumer)

Base classes for every pipeline worker.

Lifecycle: Poll -> Lease (visibility timeout) -> Handle -> Archive

- A handler that returns normally has its message archived.
- A handler that raises leaves the message leased; pgmq redelivers it once
  the visibility timeout expires (transport-transient failures).
- A message read MAX_RETRY_COUNT times that still fails is poison: the
  worker gives up on it (StageWorker terminalizes the file entry as
  rejected so its batch cannot hang), copies it to the dead letter queue
  and deletes it.
- An undecodable envelope goes straight to the dead letter queue.

Usage:
    class MyWorker(StageWorker):
        stage = "validate"

        def process(self, envelope: FileEnvelope) -> str:
            ...
            return "forwarded"

    if __name__ == "__main__":
        sys.exit(MyWorker.from_settings(get_settings()).run())
"""

from __future__ import annotations

import logging
import os
import platform
import signal
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any

from bundleflow.core.config import Settings
from bundleflow.core.errors import BundleflowError, log_classified_error
from bundleflow.core.logging import LogContext, Timer
from bundleflow.ledger import Batch, BatchLedger, FileEntry, FileOutcome, TerminalMark
from bundleflow.services.dispatcher import NotificationDispatcher
from bundleflow.storage.object_store import Location, ObjectStore

from .envelope import FileEnvelope, InvalidEnvelopeError
from .queue import PgmqQueue, QueueMessage

logger = logging.getLogger(__name__)

# Handler outcomes (logged, counted)
OUTCOME_SKIPPED = "skipped"


class BaseWorker(ABC):
    """
    Abstract pgmq queue worker.

    Subclasses set `queue_name` (normally from settings in __init__) and
    implement handle(msg).
    """

    queue_name: str = ""

    def __init__(
        self,
        settings: Settings,
        queue: PgmqQueue,
        *,
        visibility_timeout: int | None = None,
        worker_id: uuid.UUID | None = None,
    ):
        if not self.queue_name:
            raise ValueError(f"{self.__class__.__name__} must define queue_name")

        self.settings = settings
        self.queue = queue
        self.worker_id = worker_id or uuid.uuid4()
        self.batch_size = settings.BATCH_SIZE
        self.poll_interval = settings.POLL_INTERVAL
        self.max_retries = settings.MAX_RETRY_COUNT
        self.visibility_timeout = visibility_timeout or settings.VISIBILITY_TIMEOUT

        self._shutdown_requested = False
        self._jobs_processed = 0
        self._jobs_failed = 0
        self._jobs_skipped = 0
        self._jobs_invalid = 0
        self._jobs_dead_lettered = 0

        self._hostname = platform.node()
        self._pid = os.getpid()
        self._start_time: float | None = None

        logger.info(
            "Initialized %s worker_id=%s queue=%s batch_size=%d vt=%ds max_retries=%d",
            self.__class__.__name__,
            self.worker_id,
            self.queue_name,
            self.batch_size,
            self.visibility_timeout,
            self.max_retries,
        )

    # -------------------------------------------------------------------------
    # Abstract Method
    # -------------------------------------------------------------------------

    @abstractmethod
    def handle(self, msg: QueueMessage) -> str | None:
        """
        Handle one message.

        Returns:
            A short outcome label for logs ("skipped" is counted separately).

        Raises:
            InvalidEnvelopeError: message can never be handled; dead-lettered.
            Exception: anything else leaves the message for redelivery.
        """
        raise NotImplementedError

    def on_poison(self, msg: QueueMessage, error: BaseException) -> None:
        """Hook run before a message that keeps failing is dead-lettered."""

    # -------------------------------------------------------------------------
    # Signal Handling
    # -------------------------------------------------------------------------

    def _setup_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        sig_name = signal.Signals(signum).name
        logger.info(
            "Received %s, initiating graceful shutdown (worker_id=%s)",
            sig_name,
            self.worker_id,
        )
        self._shutdown_requested = True

    def request_shutdown(self) -> None:
        self._shutdown_requested = True

    # -------------------------------------------------------------------------
    # Job Processing Wrapper
    # -------------------------------------------------------------------------

    def _process_wrapper(self, msg: QueueMessage) -> None:
        """
        Run handle() for one message and settle it on the queue:
        archive on success, dead-letter if invalid or poison, otherwise leave
        it leased for redelivery.
        """
        with LogContext(msg_id=msg.msg_id, queue=self.queue_name), Timer() as timer:
            try:
                outcome = self.handle(msg)
            except InvalidEnvelopeError as e:
                logger.error("Invalid envelope msg_id=%d - sending to DLQ (no retry): %s", msg.msg_id, e)
                self._jobs_invalid += 1
                self._jobs_dead_lettered += 1
                self.queue.dead_letter(
                    self.queue_name,
                    msg,
                    "Invalid Envelope",
                    validation_errors=e.validation_errors or [str(e)],
                )
                return
            except Exception as e:
                self._jobs_failed += 1
                structured = log_classified_error(
                    e,
                    {"attempt": msg.read_ct, "max_retries": self.max_retries},
                )
                if msg.read_ct >= self.max_retries:
                    logger.warning(
                        "Giving up on msg_id=%d after %d deliveries",
                        msg.msg_id,
                        msg.read_ct,
                    )
                    self.on_poison(msg, e)
                    self._jobs_dead_lettered += 1
                    self.queue.dead_letter(
                        self.queue_name,
                        msg,
                        "Max retries exceeded",
                        error_message=structured.message,
                        error_code=str(structured.error_code),
                    )
                else:
                    logger.info(
                        "Will retry in %ds (attempt %d/%d) msg_id=%d",
                        self.visibility_timeout,
                        msg.read_ct,
                        self.max_retries,
                        msg.msg_id,
                    )
                return

            self.queue.archive(self.queue_name, msg.msg_id)
            if outcome == OUTCOME_SKIPPED:
                self._jobs_skipped += 1
            else:
                self._jobs_processed += 1
            logger.info(
                "Handled msg_id=%d outcome=%s",
                msg.msg_id,
                outcome or "done",
                extra={"duration_ms": timer.elapsed_ms},
            )

    # -------------------------------------------------------------------------
    # Main Run Loop
    # -------------------------------------------------------------------------

    def run_once(self) -> int:
        """Read one batch of messages and handle them. Returns how many were read."""
        messages = self.queue.read(self.queue_name, self.visibility_timeout, self.batch_size)
        if messages:
            logger.debug("Fetched %d messages from %s", len(messages), self.queue_name)
        for msg in messages:
            if self._shutdown_requested:
                logger.info("Shutdown requested, stopping message processing")
                break
            try:
                self._process_wrapper(msg)
            except BundleflowError as e:
                # Settling the message failed (queue unavailable); it is redelivered.
                logger.error("Could not settle msg_id=%d: %s", msg.msg_id, e, exc_info=True)
        return len(messages)

    def run(self) -> int:
        """
        Main worker loop. Polls until shutdown is requested.

        Returns:
            Exit code (0 for clean shutdown).
        """
        self._setup_signal_handlers()
        self._start_time = time.monotonic()
        logger.info(
            "Starting worker loop queue=%s worker_id=%s hostname=%s pid=%d",
            self.queue_name,
            self.worker_id,
            self._hostname,
            self._pid,
        )

        while not self._shutdown_requested:
            try:
                if self.run_once() == 0:
                    time.sleep(self.poll_interval)
            except BundleflowError as e:
                if self._shutdown_requested:
                    break
                logger.error("Queue unavailable, will retry: %s", e)
                time.sleep(self.poll_interval * 2)

        logger.info(
            "Worker shutdown complete queue=%s processed=%d failed=%d skipped=%d invalid=%d dlq=%d",
            self.queue_name,
            self._jobs_processed,
            self._jobs_failed,
            self._jobs_skipped,
            self._jobs_invalid,
            self._jobs_dead_lettered,
        )
        return 0

    def get_stats(self) -> dict[str, Any]:
        uptime = round(time.monotonic() - self._start_time, 2) if self._start_time else 0.0
        return {
            "worker_id": str(self.worker_id),
            "queue_name": self.queue_name,
            "hostname": self._hostname,
            "pid": self._pid,
            "uptime_seconds": uptime,
            "jobs_processed": self._jobs_processed,
            "jobs_failed": self._jobs_failed,
            "jobs_skipped": self._jobs_skipped,
            "jobs_invalid": self._jobs_invalid,
            "jobs_dead_lettered": self._jobs_dead_lettered,
            "shutdown_requested": self._shutdown_requested,
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} queue={self.queue_name} worker_id={self.worker_id}>"


class StageWorker(BaseWorker):
    """
    Worker for one per-file pipeline stage.

    Decodes the FileEnvelope, checks it against the ledger and hands it to
    process(). Provides the terminal path shared by both stages: relocate the
    object, mark the entry (the atomic fan-in decrement) and dispatch the
    notification the mark calls for.
    """

    stage: str = ""

    def __init__(
        self,
        settings: Settings,
        *,
        ledger: BatchLedger,
        store: ObjectStore,
        queue: PgmqQueue,
        dispatcher: NotificationDispatcher,
        visibility_timeout: int | None = None,
        worker_id: uuid.UUID | None = None,
    ):
        self.ledger = ledger
        self.store = store
        self.dispatcher = dispatcher
        super().__init__(
            settings,
            queue,
            visibility_timeout=visibility_timeout,
            worker_id=worker_id,
        )

    @abstractmethod
    def process(self, envelope: FileEnvelope) -> str:
        raise NotImplementedError

    def handle(self, msg: QueueMessage) -> str | None:
        envelope = FileEnvelope.decode(msg.message)
        envelope.require_identity()
        with LogContext(stage=self.stage, **envelope.log_context):
            return self.process(envelope)

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def admit(self, envelope: FileEnvelope) -> tuple[Batch, FileEntry] | None:
        """
        Look up the entry an envelope refers to.

        Returns None (skip the message) when the entry is unknown or the
        envelope belongs to an attempt superseded by a rerun.
        """
        entry = self.ledger.get_entry(envelope.batch_id, envelope.file_name)
        batch = self.ledger.get_batch(envelope.batch_id) if entry else None
        if entry is None or batch is None:
            logger.warning("No ledger entry for %s in batch %s; skipping", envelope.file_name, envelope.batch_id)
            return None
        if envelope.retry_count < batch.retry_count:
            logger.info(
                "Envelope is from attempt %d, batch is on attempt %d; skipping",
                envelope.retry_count,
                batch.retry_count,
            )
            return None
        return batch, entry

    # -------------------------------------------------------------------------
    # Terminal path
    # -------------------------------------------------------------------------

    @staticmethod
    def location_for(outcome: FileOutcome) -> Location:
        return Location.COMPLETED if outcome is FileOutcome.COMPLETED else Location.REJECTED

    def terminalize(
        self,
        envelope: FileEnvelope,
        source: Location | None,
        outcome: FileOutcome,
        reason: str | None = None,
    ) -> TerminalMark | None:
        """
        Finish a file entry: move, mark, notify (in that order).

        source None means the object is already where the outcome puts it.
        Returns the mark, or None if another delivery got there first.
        """
        if source is not None:
            self.store.move(source, envelope.file_name, self.location_for(outcome))

        mark = self.ledger.mark_terminal(
            envelope.batch_id,
            envelope.file_name,
            outcome,
            reason,
            attempt=envelope.retry_count,
        )
        if mark is None:
            return None

        if outcome is FileOutcome.REJECTED:
            logger.warning("File rejected: %s", reason, extra={"outcome": outcome.value})
        self.dispatcher.dispatch(mark, envelope.notification_email)
        return mark

    def reconcile(self, entry: FileEntry) -> None:
        """Move a finished entry's object out of a working location."""
        target = self.location_for(entry.outcome)
        for working in (Location.PROCESSING, Location.IMPORTING):
            if self.store.exists(working, entry.file_name):
                logger.info(
                    "Finished entry still in %s/; moving to %s/",
                    working.value,
                    target.value,
                )
                self.store.move(working, entry.file_name, target)
                return

    def on_poison(self, msg: QueueMessage, error: BaseException) -> None:
        """Reject the entry so its batch can still complete. Best effort."""
        try:
            envelope = FileEnvelope.decode(msg.message)
            envelope.require_identity()
        except InvalidEnvelopeError:
            return

        with LogContext(stage=self.stage, **envelope.log_context):
            try:
                admitted = self.admit(envelope)
                if admitted is None or admitted[1].finished:
                    return
                source = self.store.locate(
                    envelope.file_name, (Location.PROCESSING, Location.IMPORTING)
                )
                self.terminalize(
                    envelope,
                    source,
                    FileOutcome.REJECTED,
                    f"{self.stage} gave up after {msg.read_ct} attempts: {error}",
                )
            except Exception:
                logger.exception("Could not reject %s after repeated failures", envelope.file_name)
