"""
Bundleflow - Notification Dispatcher

Decides, after each successful terminal marking, which notification (if
any) the marking caller owns:

    total_entries == 1   -> per-file notification (completed / rejected)
    remaining == 0       -> the one batch notification, summarising all entries
    otherwise            -> nothing

Input is the TerminalMark returned by BatchLedger.mark_terminal. Only the
caller whose atomic decrement reached zero holds a mark with remaining == 0,
so the batch notification is sent exactly once however the finishers
interleave. A redelivered message gets no mark and never reaches here.

Delivery failures are logged, not raised: the entry is already terminal, so
a redelivery would be skipped and could not resend anyway.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from bundleflow.core.config import Settings
from bundleflow.ledger import BatchLedger, FileEntry, FileOutcome, TerminalMark

from .collaborators import NotificationSender

logger = logging.getLogger(__name__)


class DispatchDecision(str, Enum):
    FILE = "file"
    BATCH = "batch"
    NONE = "none"


def decide(mark: TerminalMark) -> DispatchDecision:
    """Pure fan-in decision for one terminal mark."""
    if mark.is_single_file_batch:
        return DispatchDecision.FILE
    if mark.batch_completed:
        return DispatchDecision.BATCH
    return DispatchDecision.NONE


def summarize_entries(entries: list[FileEntry]) -> dict[str, Any]:
    """Counts and per-file rows for the batch template, ordered by file name."""
    ordered = sorted(entries, key=lambda e: e.file_name)
    completed = sum(1 for e in ordered if e.outcome is FileOutcome.COMPLETED)
    rejected = sum(1 for e in ordered if e.outcome is FileOutcome.REJECTED)
    return {
        "total": len(ordered),
        "completed": completed,
        "rejected": rejected,
        "files": [
            {
                "file_name": e.file_name,
                "outcome": e.outcome.value,
                "error_message": e.error_message,
            }
            for e in ordered
        ],
    }


class NotificationDispatcher:
    def __init__(self, settings: Settings, ledger: BatchLedger, sender: NotificationSender):
        self.settings = settings
        self.ledger = ledger
        self.sender = sender

    def _recipient(self, requested: str | None) -> str | None:
        return requested or self.settings.DEFAULT_NOTIFICATION_EMAIL

    def dispatch(self, mark: TerminalMark, recipient: str | None = None) -> DispatchDecision:
        """
        Send whatever notification this terminal mark calls for.

        Returns the decision taken, whether or not delivery succeeded.
        """
        decision = decide(mark)
        if decision is DispatchDecision.NONE:
            logger.debug(
                "Batch %s still open (%d of %d remaining)",
                mark.batch_id,
                mark.remaining,
                mark.total_entries,
            )
            return decision

        to = self._recipient(recipient)
        if not to:
            logger.warning(
                "No notification recipient for batch %s; %s notification skipped",
                mark.batch_id,
                decision.value,
            )
            return decision

        if decision is DispatchDecision.FILE:
            template, parameters = self._file_notification(mark)
        else:
            template, parameters = self._batch_notification(mark)

        try:
            delivered = self.sender.send(to, template, parameters)
        except Exception:
            logger.exception("Notification sender raised for batch %s", mark.batch_id)
            delivered = False

        if delivered:
            logger.info(
                "Sent %s notification for batch %s to %s",
                decision.value,
                mark.batch_id,
                to,
                extra={"outcome": mark.outcome.value, "remaining": mark.remaining},
            )
        else:
            logger.error(
                "%s notification for batch %s was not delivered",
                decision.value.capitalize(),
                mark.batch_id,
            )
        return decision

    def _file_notification(self, mark: TerminalMark) -> tuple[str, dict[str, Any]]:
        template = (
            self.settings.FILE_COMPLETED_TEMPLATE_ID
            if mark.outcome is FileOutcome.COMPLETED
            else self.settings.FILE_REJECTED_TEMPLATE_ID
        )
        return template, {
            "batch_id": mark.batch_id,
            "file_name": mark.file_name,
            "outcome": mark.outcome.value,
            "error_message": mark.error_message,
        }

    def _batch_notification(self, mark: TerminalMark) -> tuple[str, dict[str, Any]]:
        batch = self.ledger.get_batch(mark.batch_id)
        parameters = {
            "batch_id": mark.batch_id,
            "origin_file_name": batch.origin_file_name if batch else None,
            "retry_count": batch.retry_count if batch else None,
            **summarize_entries(self.ledger.list_entries(mark.batch_id)),
        }
        return self.settings.BATCH_COMPLETED_TEMPLATE_ID, parameters
