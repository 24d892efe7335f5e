"""
Bundleflow - pgmq Queue Adapter

Thin wrapper over the pgmq SQL API used by every worker and by intake:

    send     -> pgmq.send(queue, jsonb)
    read     -> pgmq.read(queue, vt, qty)     (messages invisible for vt seconds)
    archive  -> pgmq.archive(queue, msg_id)   (ack after successful handling)
    delete   -> pgmq.delete(queue, msg_id)    (ack when dead-lettered)

Delivery is at-least-once: a message that is neither archived nor deleted
before its visibility timeout expires is delivered again with read_ct + 1.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import psycopg

from bundleflow.core.db import ConnectFn
from bundleflow.core.errors import QueueError

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    """A message read from pgmq."""

    msg_id: int
    read_ct: int
    enqueued_at: datetime
    vt: datetime  # visibility timeout expiry
    message: Any

    @property
    def attempt_count(self) -> int:
        """Number of times this message has been read."""
        return self.read_ct


class PgmqQueue:
    """pgmq client; every call runs on its own short-lived connection."""

    def __init__(self, connect: ConnectFn, dead_letter_queue: str = "q_dead_letter"):
        self._connect = connect
        self.dead_letter_queue = dead_letter_queue

    def _execute(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    rows = list(cur.fetchall())
                conn.commit()
                return rows
        except psycopg.Error as e:
            raise QueueError(f"Queue operation failed: {e}") from e

    def send(self, queue_name: str, payload: Any, delay: int = 0) -> int:
        """Enqueue a JSON-serialisable payload; returns the pgmq msg_id."""
        rows = self._execute(
            "SELECT pgmq.send(%s, %s::jsonb, %s) AS msg_id",
            (queue_name, json.dumps(payload, default=str), delay),
        )
        if not rows:
            raise QueueError(f"pgmq.send on {queue_name} returned no message id")
        msg_id = int(rows[0]["msg_id"])
        logger.debug("Enqueued msg_id=%d on %s", msg_id, queue_name)
        return msg_id

    def read(self, queue_name: str, visibility_timeout: int, batch_size: int) -> list[QueueMessage]:
        rows = self._execute(
            "SELECT msg_id, read_ct, enqueued_at, vt, message FROM pgmq.read(%s, %s, %s)",
            (queue_name, visibility_timeout, batch_size),
        )
        return [
            QueueMessage(
                msg_id=int(row["msg_id"]),
                read_ct=int(row["read_ct"]),
                enqueued_at=row["enqueued_at"],
                vt=row["vt"],
                message=row["message"],
            )
            for row in rows
        ]

    def archive(self, queue_name: str, msg_id: int) -> bool:
        """Archive a successfully handled message."""
        rows = self._execute("SELECT pgmq.archive(%s, %s) AS archived", (queue_name, msg_id))
        return bool(rows and rows[0]["archived"])

    def delete(self, queue_name: str, msg_id: int) -> bool:
        rows = self._execute("SELECT pgmq.delete(%s, %s) AS deleted", (queue_name, msg_id))
        return bool(rows and rows[0]["deleted"])

    def dead_letter(self, queue_name: str, msg: QueueMessage, reason: str, **details: Any) -> int:
        """
        Copy a message to the dead letter queue, then delete the original.

        Invalid and poison messages are never retried.
        """
        payload = {
            "original_queue": queue_name,
            "original_msg_id": msg.msg_id,
            "read_ct": msg.read_ct,
            "raw_payload": msg.message,
            "error": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **details,
        }
        dlq_id = self.send(self.dead_letter_queue, payload)
        self.delete(queue_name, msg.msg_id)
        logger.warning(
            "Dead-lettered msg_id=%d from %s as %s/%d: %s",
            msg.msg_id,
            queue_name,
            self.dead_letter_queue,
            dlq_id,
            reason,
        )
        return dlq_id
