"""
Bundleflow - Batch Ledger Store

Relational store of Batch and FileEntry records (schema `intake`).

Terminal marking is the pipeline's only mutual-exclusion point. It runs as
ONE statement: a data-modifying CTE flips the entry from unfinished to
finished and decrements the batch's remaining_entries, returning the
post-decrement value. Postgres row locks serialize concurrent finishers, so
exactly one caller observes remaining == 0. A second marking of the same entry
matches no row and returns None.

Usage:
    ledger = BatchLedger(ConnectionFactory(settings.DATABASE_URL, "import"))

    mark = ledger.mark_terminal(batch_id, "a.xlsx", FileOutcome.COMPLETED)
    if mark is None:
        ...  # already terminal: redelivery, do nothing
    elif mark.batch_completed:
        ...  # this caller owns the batch notification
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import psycopg

from bundleflow.core.db import ConnectFn
from bundleflow.core.errors import ERR_DB_NOT_FOUND, LedgerError

from .models import Batch, FileEntry, FileOutcome, TerminalMark

logger = logging.getLogger(__name__)

BATCH_COLUMNS = (
    "batch_id, origin_file_name, created_at, retry_count, total_entries, remaining_entries"
)
ENTRY_COLUMNS = "batch_id, file_name, extracted, finished, outcome, error_message, finished_at"

# =============================================================================
# SQL
# =============================================================================

SQL_INSERT_BATCH = f"""
    INSERT INTO intake.batches (origin_file_name, retry_count, intake_key)
    VALUES (%s, %s, %s)
    ON CONFLICT (intake_key) DO UPDATE SET intake_key = EXCLUDED.intake_key
    RETURNING {BATCH_COLUMNS}
"""

SQL_LOCK_LATEST_BATCH = """
    SELECT batch_id, intake_key
    FROM intake.batches
    WHERE origin_file_name = %s
    ORDER BY created_at DESC
    LIMIT 1
    FOR UPDATE
"""

SQL_CLEAR_ENTRIES = "DELETE FROM intake.file_entries WHERE batch_id = %s"

SQL_RESTART_BATCH = f"""
    UPDATE intake.batches
    SET retry_count = retry_count + 1,
        total_entries = 0,
        remaining_entries = 0,
        intake_key = %s
    WHERE batch_id = %s
    RETURNING {BATCH_COLUMNS}
"""

SQL_REGISTER_ENTRY = """
    WITH inserted AS (
        INSERT INTO intake.file_entries (batch_id, file_name, extracted)
        VALUES (%s, %s, %s)
        ON CONFLICT (batch_id, file_name) DO NOTHING
        RETURNING batch_id
    )
    UPDATE intake.batches b
    SET total_entries = b.total_entries + 1,
        remaining_entries = b.remaining_entries + 1
    FROM inserted
    WHERE b.batch_id = inserted.batch_id
    RETURNING b.total_entries
"""

SQL_MARK_EXTRACTED = """
    UPDATE intake.file_entries
    SET extracted = true
    WHERE batch_id = %s AND file_name = %s
    RETURNING file_name
"""

SQL_MARK_TERMINAL = """
    WITH marked AS (
        UPDATE intake.file_entries e
        SET finished = true,
            outcome = %(outcome)s,
            error_message = %(error_message)s,
            finished_at = now()
        WHERE e.batch_id = %(batch_id)s
          AND e.file_name = %(file_name)s
          AND e.finished = false
          AND (
              %(attempt)s::integer IS NULL
              OR EXISTS (
                  SELECT 1 FROM intake.batches cur
                  WHERE cur.batch_id = e.batch_id
                    AND cur.retry_count = %(attempt)s::integer
              )
          )
        RETURNING e.batch_id, e.file_name, e.outcome, e.error_message
    )
    UPDATE intake.batches b
    SET remaining_entries = b.remaining_entries - 1
    FROM marked
    WHERE b.batch_id = marked.batch_id
    RETURNING b.batch_id, marked.file_name, marked.outcome, marked.error_message,
              b.remaining_entries, b.total_entries
"""

SQL_GET_BATCH = f"SELECT {BATCH_COLUMNS} FROM intake.batches WHERE batch_id = %s"

SQL_BATCH_BY_INTAKE_KEY = f"SELECT {BATCH_COLUMNS} FROM intake.batches WHERE intake_key = %s"

SQL_LATEST_BATCH = f"""
    SELECT {BATCH_COLUMNS}
    FROM intake.batches
    WHERE origin_file_name = %s
    ORDER BY created_at DESC
    LIMIT 1
"""

SQL_GET_ENTRY = f"""
    SELECT {ENTRY_COLUMNS}
    FROM intake.file_entries
    WHERE batch_id = %s AND file_name = %s
"""

SQL_LIST_ENTRIES = f"""
    SELECT {ENTRY_COLUMNS}
    FROM intake.file_entries
    WHERE batch_id = %s
    ORDER BY file_name
"""


class BatchLedger:
    """psycopg-backed ledger. Stateless; every call opens its own connection."""

    def __init__(self, connect: ConnectFn):
        self._connect = connect

    # -------------------------------------------------------------------------
    # Statement helpers
    # -------------------------------------------------------------------------

    def _fetch_one(self, sql: str, params: Sequence[Any] | Mapping[str, Any]) -> dict[str, Any] | None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    row = cur.fetchone()
                conn.commit()
                return row
        except psycopg.Error as e:
            raise LedgerError(f"Ledger statement failed: {e}") from e

    def _fetch_all(self, sql: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return list(cur.fetchall())
        except psycopg.Error as e:
            raise LedgerError(f"Ledger query failed: {e}") from e

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def begin_batch(
        self,
        origin_file_name: str,
        *,
        rerun: bool = False,
        intake_key: str | None = None,
    ) -> Batch:
        """
        Register the batch for an arriving bundle.

        Without rerun a new batch is created. With rerun the latest batch for
        the same origin name is restarted (retry_count + 1, entries cleared);
        if none exists a new batch starts at retry_count 1.

        intake_key identifies the intake message. A redelivered message with
        the same key gets its original batch back, neither duplicated nor
        restarted a second time.
        """
        if not rerun:
            row = self._fetch_one(SQL_INSERT_BATCH, (origin_file_name, 0, intake_key))
            if row is None:
                raise LedgerError(f"Batch insert returned no row for {origin_file_name!r}")
            batch = Batch.from_row(row)
            logger.info("Registered batch %s for %s", batch.batch_id, origin_file_name)
            return batch

        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(SQL_LOCK_LATEST_BATCH, (origin_file_name,))
                    existing = cur.fetchone()
                    if existing and intake_key is not None and existing["intake_key"] == intake_key:
                        cur.execute(SQL_GET_BATCH, (existing["batch_id"],))
                    elif existing:
                        cur.execute(SQL_CLEAR_ENTRIES, (existing["batch_id"],))
                        cur.execute(SQL_RESTART_BATCH, (intake_key, existing["batch_id"]))
                    else:
                        cur.execute(SQL_INSERT_BATCH, (origin_file_name, 1, intake_key))
                    row = cur.fetchone()
                conn.commit()
        except psycopg.Error as e:
            raise LedgerError(f"Batch rerun registration failed: {e}") from e

        if row is None:
            raise LedgerError(f"Batch rerun returned no row for {origin_file_name!r}")
        batch = Batch.from_row(row)
        logger.info(
            "Rerun of %s registered on batch %s (retry_count=%d)",
            origin_file_name,
            batch.batch_id,
            batch.retry_count,
        )
        return batch

    def register_entry(self, batch_id: str, file_name: str, *, extracted: bool = False) -> bool:
        """
        Add a file entry and grow the batch counters in one statement.

        Returns False when the entry already existed (intake redelivery); the
        counters are untouched in that case.
        """
        row = self._fetch_one(SQL_REGISTER_ENTRY, (batch_id, file_name, extracted))
        return row is not None

    def mark_extracted(self, batch_id: str, file_name: str) -> None:
        self._fetch_one(SQL_MARK_EXTRACTED, (batch_id, file_name))

    # -------------------------------------------------------------------------
    # Terminal marking (fan-in)
    # -------------------------------------------------------------------------

    def mark_terminal(
        self,
        batch_id: str,
        file_name: str,
        outcome: FileOutcome,
        error_message: str | None = None,
        *,
        attempt: int | None = None,
    ) -> TerminalMark | None:
        """
        Atomically terminalize an entry and decrement its batch.

        Args:
            attempt: when given, only mark if the batch is still on this
                retry_count (messages of a superseded rerun are ignored).

        Returns:
            The TerminalMark for the one caller that flipped the entry, or
            None if it was already finished, unknown or superseded.
        """
        if not outcome.is_terminal:
            raise ValueError(f"mark_terminal needs a terminal outcome, got {outcome.value}")

        row = self._fetch_one(
            SQL_MARK_TERMINAL,
            {
                "batch_id": batch_id,
                "file_name": file_name,
                "outcome": outcome.value,
                "error_message": error_message,
                "attempt": attempt,
            },
        )
        if row is None:
            logger.info(
                "Entry %s/%s already terminal or superseded; nothing marked",
                batch_id,
                file_name,
            )
            return None

        mark = TerminalMark(
            batch_id=str(row["batch_id"]),
            file_name=row["file_name"],
            outcome=FileOutcome(row["outcome"]),
            error_message=row["error_message"],
            remaining=int(row["remaining_entries"]),
            total_entries=int(row["total_entries"]),
        )
        logger.info(
            "Marked %s/%s %s (remaining=%d of %d)",
            mark.batch_id,
            mark.file_name,
            mark.outcome.value,
            mark.remaining,
            mark.total_entries,
            extra={"outcome": mark.outcome.value, "remaining": mark.remaining},
        )
        return mark

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_batch(self, batch_id: str) -> Batch | None:
        row = self._fetch_one(SQL_GET_BATCH, (batch_id,))
        return Batch.from_row(row) if row else None

    def require_batch(self, batch_id: str) -> Batch:
        batch = self.get_batch(batch_id)
        if batch is None:
            raise LedgerError(f"Batch {batch_id} not found", error_code=ERR_DB_NOT_FOUND)
        return batch

    def latest_batch(self, origin_file_name: str) -> Batch | None:
        row = self._fetch_one(SQL_LATEST_BATCH, (origin_file_name,))
        return Batch.from_row(row) if row else None

    def batch_for_intake(self, intake_key: str) -> Batch | None:
        row = self._fetch_one(SQL_BATCH_BY_INTAKE_KEY, (intake_key,))
        return Batch.from_row(row) if row else None

    def get_entry(self, batch_id: str, file_name: str) -> FileEntry | None:
        row = self._fetch_one(SQL_GET_ENTRY, (batch_id, file_name))
        return FileEntry.from_row(row) if row else None

    def list_entries(self, batch_id: str) -> list[FileEntry]:
        return [FileEntry.from_row(row) for row in self._fetch_all(SQL_LIST_ENTRIES, (batch_id,))]

    def is_batch_complete(self, batch_id: str) -> bool:
        batch = self.get_batch(batch_id)
        return batch is not None and batch.is_complete
