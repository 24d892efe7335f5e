"""
Bundleflow - Ledger Records

Plain dataclasses mirroring intake.batches and intake.file_entries rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class FileOutcome(str, Enum):
    """Outcome of a file entry. PENDING until a worker terminalizes it."""

    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not FileOutcome.PENDING


@dataclass(frozen=True)
class Batch:
    """One uploaded bundle (archive or single file)."""

    batch_id: str
    origin_file_name: str
    created_at: datetime
    retry_count: int
    total_entries: int
    remaining_entries: int

    @property
    def is_complete(self) -> bool:
        return self.total_entries > 0 and self.remaining_entries == 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Batch":
        return cls(
            batch_id=str(row["batch_id"]),
            origin_file_name=row["origin_file_name"],
            created_at=row["created_at"],
            retry_count=int(row["retry_count"]),
            total_entries=int(row["total_entries"]),
            remaining_entries=int(row["remaining_entries"]),
        )


@dataclass(frozen=True)
class FileEntry:
    """One constituent file of a batch."""

    batch_id: str
    file_name: str
    extracted: bool
    finished: bool
    outcome: FileOutcome
    error_message: str | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FileEntry":
        return cls(
            batch_id=str(row["batch_id"]),
            file_name=row["file_name"],
            extracted=bool(row["extracted"]),
            finished=bool(row["finished"]),
            outcome=FileOutcome(row["outcome"]),
            error_message=row.get("error_message"),
            finished_at=row.get("finished_at"),
        )


@dataclass(frozen=True)
class TerminalMark:
    """
    Result of the one successful terminal marking of a file entry.

    `remaining` is the batch's remaining_entries after the decrement; the
    caller that sees 0 owns the batch notification.
    """

    batch_id: str
    file_name: str
    outcome: FileOutcome
    error_message: str | None
    remaining: int
    total_entries: int

    @property
    def is_single_file_batch(self) -> bool:
        return self.total_entries == 1

    @property
    def batch_completed(self) -> bool:
        return self.remaining == 0
