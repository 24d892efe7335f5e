"""
Bundleflow - Database Connections

Connection helpers shared by the ledger and the pgmq queue adapter:
- PostgreSQL-safe application_name per worker
- Exponential backoff with jitter on connect
- A ConnectionFactory context manager that always closes its connection

Usage:
    from bundleflow.core.db import ConnectionFactory

    connect = ConnectionFactory(settings.DATABASE_URL, worker_type="import")
    with connect() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")

Exit Codes (used by the CLI):
    2 - Database unavailable after retries (EXIT_CODE_DB_UNAVAILABLE)
"""

from __future__ import annotations

import logging
import random
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, ContextManager, Generator
from urllib.parse import urlparse

import psycopg
from psycopg.rows import dict_row

from bundleflow import __version__
from bundleflow.core.errors import ERR_DB_CONNECTION, LedgerError

logger = logging.getLogger(__name__)

EXIT_CODE_DB_UNAVAILABLE = 2

# Anything that yields a psycopg connection inside a with-block.
ConnectFn = Callable[[], ContextManager[psycopg.Connection]]


def get_safe_application_name(worker_type: str = "worker") -> str:
    """
    Generate a PostgreSQL-safe application_name.

    Returns:
        String like "bundleflow_v0_1_0_import" (no spaces, no dots)
    """
    safe_version = __version__.replace(".", "_").replace(" ", "_").replace("-", "_")
    safe_worker = worker_type.replace(" ", "_").replace("-", "_").replace(".", "_")
    return f"bundleflow_v{safe_version}_{safe_worker}"


def describe_dsn(dsn: str) -> str:
    """host:port/dbname for logs; never includes credentials."""
    parsed = urlparse(dsn)
    dbname = parsed.path.lstrip("/") if parsed.path else ""
    return f"{parsed.hostname}:{parsed.port or 5432}/{dbname}"


@dataclass(frozen=True)
class RetryConfig:
    """Connection retry behaviour."""

    initial_delay: float = 0.5
    max_delay: float = 10.0
    max_attempts: int = 5
    jitter_factor: float = 0.2
    connect_timeout: int = 10


def connect_with_retry(
    dsn: str,
    worker_type: str,
    config: RetryConfig | None = None,
) -> psycopg.Connection:
    """
    Connect to PostgreSQL with exponential backoff and jitter.

    Raises:
        LedgerError: when every attempt failed.
    """
    config = config or RetryConfig()
    if not dsn or not dsn.strip():
        raise LedgerError("DATABASE_URL is not configured", error_code=ERR_DB_CONNECTION)

    last_error: Exception | None = None
    delay = config.initial_delay

    for attempt in range(1, config.max_attempts + 1):
        try:
            start_time = time.monotonic()
            conn = psycopg.connect(
                dsn.strip(),
                connect_timeout=config.connect_timeout,
                row_factory=dict_row,
                application_name=get_safe_application_name(worker_type),
            )
            elapsed_ms = (time.monotonic() - start_time) * 1000
            logger.debug(
                "[%s] Database connection established to %s (%.0fms)",
                worker_type,
                describe_dsn(dsn),
                elapsed_ms,
            )
            return conn
        except psycopg.OperationalError as e:
            last_error = e
            logger.warning(
                "[%s] Connection attempt %d/%d failed: %s",
                worker_type,
                attempt,
                config.max_attempts,
                e,
            )

        if attempt < config.max_attempts:
            jitter = random.uniform(-config.jitter_factor, config.jitter_factor) * delay
            actual_delay = max(min(delay + jitter, config.max_delay), config.initial_delay)
            time.sleep(actual_delay)
            delay = min(delay * 2, config.max_delay)

    logger.critical(
        "[%s] Database unavailable after %d attempts (%s)",
        worker_type,
        config.max_attempts,
        describe_dsn(dsn),
    )
    raise LedgerError(
        f"Database unavailable after {config.max_attempts} attempts: {last_error}",
        error_code=ERR_DB_CONNECTION,
    ) from last_error


class ConnectionFactory:
    """Callable returning a context manager over a fresh connection."""

    def __init__(self, dsn: str, worker_type: str = "worker", retry: RetryConfig | None = None):
        self.dsn = dsn
        self.worker_type = worker_type
        self.retry = retry or RetryConfig()

    @contextmanager
    def __call__(self) -> Generator[psycopg.Connection, None, None]:
        conn = connect_with_retry(self.dsn, self.worker_type, self.retry)
        try:
            yield conn
        finally:
            try:
                conn.close()
            except psycopg.Error as e:
                logger.debug("Ignoring error while closing connection: %s", e)

    def __repr__(self) -> str:
        return f"<ConnectionFactory {describe_dsn(self.dsn)} worker={self.worker_type}>"
