"""
Lacquer — Ingestion job queue (PostgreSQL-backed, at-least-once).

Messages live in the ingestion_queue table. receive() claims visible rows with
FOR UPDATE SKIP LOCKED, bumps dequeue_count and pushes visible_at forward by
the visibility timeout. A message only disappears when the consumer calls
delete() after handling it; if the consumer crashes the row becomes visible
again and is redelivered. Rows delivered more than max_dequeue_count times are
dropped as poison.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

from models import db

logger = logging.getLogger("lacquer.ingestion.queue")


@dataclass
class QueueMessage:
    message_id: int
    body: Any
    dequeue_count: int
    enqueued_at: Optional[str] = None


class JobQueue:
    """One named queue inside the ingestion_queue table."""

    def __init__(self, queue_name: str, visibility_timeout: int = 300,
                 max_dequeue_count: int = 5, transaction_factory=None):
        self.queue_name = queue_name
        self.visibility_timeout = visibility_timeout
        self.max_dequeue_count = max_dequeue_count
        self._transaction = transaction_factory or db.transaction

    @classmethod
    def from_config(cls, ingestion_config, transaction_factory=None) -> "JobQueue":
        return cls(
            ingestion_config.queue_name,
            visibility_timeout=ingestion_config.visibility_timeout,
            max_dequeue_count=ingestion_config.max_dequeue_count,
            transaction_factory=transaction_factory,
        )

    def send(self, body: dict) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO ingestion_queue (queue_name, body)
                VALUES (%s, %s::jsonb)
                RETURNING message_id
                """,
                (self.queue_name, json.dumps(body, default=str)),
            )
            message_id = cur.fetchone()["message_id"]
        logger.info(f"Enqueued message {message_id} on {self.queue_name}")
        return message_id

    def receive(self, max_messages: int = 1) -> List[QueueMessage]:
        """Claim up to max_messages visible messages for visibility_timeout seconds."""
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE ingestion_queue
                SET visible_at = NOW() + make_interval(secs => %s),
                    dequeue_count = dequeue_count + 1
                WHERE message_id IN (
                    SELECT message_id FROM ingestion_queue
                    WHERE queue_name = %s AND visible_at <= NOW()
                    ORDER BY message_id
                    FOR UPDATE SKIP LOCKED
                    LIMIT %s
                )
                RETURNING message_id, body, dequeue_count, enqueued_at
                """,
                (self.visibility_timeout, self.queue_name, max_messages),
            )
            rows = cur.fetchall()

            messages = []
            for row in sorted(rows, key=lambda r: r["message_id"]):
                if row["dequeue_count"] > self.max_dequeue_count:
                    cur.execute("DELETE FROM ingestion_queue WHERE message_id = %s", (row["message_id"],))
                    logger.error(
                        f"Dropping poison message {row['message_id']} from {self.queue_name} "
                        f"after {row['dequeue_count'] - 1} deliveries: {json.dumps(row['body'], default=str)[:300]}"
                    )
                    continue
                enqueued = row.get("enqueued_at")
                messages.append(QueueMessage(
                    message_id=row["message_id"],
                    body=row["body"],
                    dequeue_count=row["dequeue_count"],
                    enqueued_at=enqueued.isoformat() if isinstance(enqueued, datetime) else enqueued,
                ))
        return messages

    def delete(self, message_id: int):
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM ingestion_queue WHERE message_id = %s AND queue_name = %s",
                (message_id, self.queue_name),
            )

    def purge(self) -> int:
        """Delete every message on this queue. Job rows are not touched."""
        with self._transaction() as cur:
            cur.execute("DELETE FROM ingestion_queue WHERE queue_name = %s", (self.queue_name,))
            purged = cur.rowcount
        logger.warning(f"Purged {purged} message(s) from {self.queue_name}")
        return purged

    def stats(self) -> dict:
        with self._transaction() as cur:
            cur.execute(
                "SELECT COUNT(*) AS message_count FROM ingestion_queue WHERE queue_name = %s",
                (self.queue_name,),
            )
            count = cur.fetchone()["message_count"]
        return {
            "queueName": self.queue_name,
            "messageCount": count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
