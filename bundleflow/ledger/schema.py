"""
Bundleflow - Ledger Schema

DDL for the intake schema and the pgmq queues the pipeline uses. Applied by
`bundleflow init-db`; every statement is idempotent.
"""

from __future__ import annotations

import logging

import psycopg

from bundleflow.core.config import Settings
from bundleflow.core.db import ConnectFn
from bundleflow.core.errors import LedgerError

logger = logging.getLogger(__name__)

LEDGER_DDL = (
    "CREATE EXTENSION IF NOT EXISTS pgcrypto",
    "CREATE EXTENSION IF NOT EXISTS pgmq",
    "CREATE SCHEMA IF NOT EXISTS intake",
    """
    CREATE TABLE IF NOT EXISTS intake.batches (
        batch_id            uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        origin_file_name    text NOT NULL,
        created_at          timestamptz NOT NULL DEFAULT now(),
        retry_count         integer NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
        intake_key          text UNIQUE,
        total_entries       integer NOT NULL DEFAULT 0 CHECK (total_entries >= 0),
        remaining_entries   integer NOT NULL DEFAULT 0
            CHECK (remaining_entries >= 0 AND remaining_entries <= total_entries)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_batches_origin_created
        ON intake.batches (origin_file_name, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS intake.file_entries (
        batch_id        uuid NOT NULL REFERENCES intake.batches (batch_id) ON DELETE CASCADE,
        file_name       text NOT NULL,
        extracted       boolean NOT NULL DEFAULT false,
        finished        boolean NOT NULL DEFAULT false,
        outcome         text NOT NULL DEFAULT 'pending'
            CHECK (outcome IN ('pending', 'completed', 'rejected')),
        error_message   text,
        finished_at     timestamptz,
        PRIMARY KEY (batch_id, file_name),
        CHECK (finished = (outcome <> 'pending'))
    )
    """,
)


def queue_names(settings: Settings) -> tuple[str, ...]:
    return (
        settings.INTAKE_QUEUE,
        settings.STAGE1_QUEUE,
        settings.STAGE2_QUEUE,
        settings.DEAD_LETTER_QUEUE,
    )


def init_schema(connect: ConnectFn, settings: Settings) -> None:
    """Create the ledger tables and pgmq queues if they do not exist."""
    try:
        with connect() as conn:
            with conn.cursor() as cur:
                for statement in LEDGER_DDL:
                    cur.execute(statement)
                for name in queue_names(settings):
                    # pgmq.create is a no-op for an existing queue
                    cur.execute("SELECT pgmq.create(%s)", (name,))
            conn.commit()
    except psycopg.Error as e:
        raise LedgerError(f"Schema initialisation failed: {e}") from e
    logger.info("Ledger schema and queues ready: %s", ", ".join(queue_names(settings)))
