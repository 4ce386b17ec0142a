"""
At-least-once message queue on top of the SQLite file.

Semantics mirror a hosted queue with a visibility timeout:
    - receive() hands out ready messages and hides them for visibility_seconds
    - delete() acknowledges a message for good
    - a message that isn't deleted in time becomes visible again (redelivery)
    - after max_receives deliveries it is parked as 'dead' instead

Consumers therefore see duplicates and must be idempotent. That's the
contract the ingestion and themes workers are written against.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from review_tracker.config import QUEUE_MAX_RECEIVES, QUEUE_VISIBILITY_SECONDS
from review_tracker.database import Database
from review_tracker.dates import to_iso, utc_now
from review_tracker.models import MalformedMessage

logger = logging.getLogger(__name__)

INGEST_QUEUE = "ingest"
THEMES_QUEUE = "themes"


@dataclass
class Message:
    id: int
    queue: str
    body: str                   # raw JSON text, parsed by the consumer
    receipt: str
    receive_count: int


@dataclass
class ConsumeResult:
    received: int = 0
    handled: int = 0
    dropped: int = 0            # malformed, acknowledged without processing
    failed: int = 0             # left for redelivery


class MessageQueue:
    """SQLite-backed queue. One instance serves every named queue."""

    def __init__(self, db: Database,
                 visibility_seconds: int = QUEUE_VISIBILITY_SECONDS,
                 max_receives: int = QUEUE_MAX_RECEIVES):
        self.db = db
        self.visibility_seconds = visibility_seconds
        self.max_receives = max_receives

    def send(self, queue: str, body: dict, now: Optional[datetime] = None) -> str:
        """Enqueue a JSON message. Returns the message id as a string."""
        stamp = to_iso(now or utc_now())
        with self.db.connect() as conn:
            cursor = conn.execute(
                "INSERT INTO queue_messages (queue, body, status, visible_at, created_at) "
                "VALUES (?, ?, 'ready', ?, ?)",
                (queue, json.dumps(body, ensure_ascii=False), stamp, stamp),
            )
            message_id = cursor.lastrowid
        logger.debug("queue.send queue=%s id=%s", queue, message_id)
        return str(message_id)

    def receive(self, queue: str, max_messages: int = 10,
                visibility_seconds: Optional[int] = None,
                now: Optional[datetime] = None) -> list[Message]:
        """
        Claim up to max_messages visible messages.

        Each claim is a conditional update on (id, visible_at), so two
        consumers polling at once never both receive the same delivery.
        """
        now = now or utc_now()
        stamp = to_iso(now)
        hide_until = to_iso(now + timedelta(seconds=visibility_seconds or self.visibility_seconds))
        claimed = []

        with self.db.connect() as conn:
            # Redrive: park messages that have already been delivered too often
            conn.execute(
                "UPDATE queue_messages SET status = 'dead' "
                "WHERE queue = ? AND status = 'ready' AND visible_at <= ? AND receive_count >= ?",
                (queue, stamp, self.max_receives),
            )
            candidates = conn.execute(
                "SELECT id, body, visible_at, receive_count FROM queue_messages "
                "WHERE queue = ? AND status = 'ready' AND visible_at <= ? "
                "ORDER BY id ASC LIMIT ?",
                (queue, stamp, int(max_messages)),
            ).fetchall()

            for row in candidates:
                receipt = uuid.uuid4().hex
                cursor = conn.execute(
                    "UPDATE queue_messages SET visible_at = ?, receive_count = receive_count + 1, receipt = ? "
                    "WHERE id = ? AND status = 'ready' AND visible_at = ?",
                    (hide_until, receipt, row["id"], row["visible_at"]),
                )
                if cursor.rowcount:
                    claimed.append(Message(
                        id=row["id"],
                        queue=queue,
                        body=row["body"],
                        receipt=receipt,
                        receive_count=row["receive_count"] + 1,
                    ))
        return claimed

    def delete(self, message: Message) -> bool:
        """Acknowledge. Only the holder of the latest receipt can delete."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM queue_messages WHERE id = ? AND receipt = ?",
                (message.id, message.receipt),
            )
            return cursor.rowcount > 0

    def pending_count(self, queue: str) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM queue_messages WHERE queue = ? AND status = 'ready'",
                (queue,),
            ).fetchone()[0]

    def peek(self, queue: str) -> list[dict]:
        """Bodies of every ready message, oldest first. Handy for tests and the CLI."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT body FROM queue_messages WHERE queue = ? AND status = 'ready' ORDER BY id ASC",
                (queue,),
            ).fetchall()
        return [json.loads(row["body"]) for row in rows]

    def dead_count(self, queue: str) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM queue_messages WHERE queue = ? AND status = 'dead'",
                (queue,),
            ).fetchone()[0]


def parse_body(body: str) -> dict:
    """
    Raises:
        MalformedMessage: if the body is not a JSON object.
    """
    try:
        payload = json.loads(body or "{}")
    except json.JSONDecodeError as exc:
        raise MalformedMessage(f"Invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedMessage("Message body must be a JSON object")
    return payload


def consume(queue: MessageQueue, queue_name: str, handler: Callable[[dict], object],
            max_messages: int = 10, now: Optional[datetime] = None) -> ConsumeResult:
    """
    Receive one batch and run handler(payload) on each message.

    - handler returns          -> message deleted
    - MalformedMessage raised  -> warning logged, message deleted (never retried)
    - anything else raised     -> error logged, message left for redelivery
    """
    result = ConsumeResult()
    for message in queue.receive(queue_name, max_messages=max_messages, now=now):
        result.received += 1
        try:
            payload = parse_body(message.body)
            handler(payload)
        except MalformedMessage as exc:
            logger.warning("Dropping malformed %s message id=%s: %s", queue_name, message.id, exc)
            queue.delete(message)
            result.dropped += 1
            continue
        except Exception:
            logger.exception("Handler failed for %s message id=%s (delivery %d), will be redelivered",
                             queue_name, message.id, message.receive_count)
            result.failed += 1
            continue
        queue.delete(message)
        result.handled += 1
    return result
