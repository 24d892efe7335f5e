"""Builds the shared components a worker needs from one Settings instance."""

from __future__ import annotations

import logging
from typing import Any

from bundleflow.core.config import Settings, validate_required_settings
from bundleflow.core.db import ConnectionFactory, RetryConfig
from bundleflow.core.errors import ERR_CONFIG_MISSING, ConfigurationError
from bundleflow.ledger import BatchLedger
from bundleflow.services.dispatcher import NotificationDispatcher
from bundleflow.services.notification_service import create_notification_sender
from bundleflow.storage.object_store import ObjectStore

from .queue import PgmqQueue

logger = logging.getLogger(__name__)


def build_connect(settings: Settings, worker_type: str) -> ConnectionFactory:
    return ConnectionFactory(
        settings.DATABASE_URL,
        worker_type,
        RetryConfig(max_attempts=settings.DB_CONNECT_ATTEMPTS),
    )


def build_components(settings: Settings, worker_type: str) -> dict[str, Any]:
    """
    Ledger, object store, queue and dispatcher for one worker process.

    Raises:
        ConfigurationError: a required setting is empty.
    """
    missing = validate_required_settings(settings)
    if missing:
        raise ConfigurationError(
            f"Missing required settings: {', '.join(missing)}",
            error_code=ERR_CONFIG_MISSING,
        )

    connect = build_connect(settings, worker_type)
    ledger = BatchLedger(connect)
    dispatcher = NotificationDispatcher(settings, ledger, create_notification_sender(settings))
    logger.debug("Wired %s worker against %r", worker_type, connect)
    return {
        "ledger": ledger,
        "store": ObjectStore.from_settings(settings),
        "queue": PgmqQueue(connect, settings.DEAD_LETTER_QUEUE),
        "dispatcher": dispatcher,
    }
