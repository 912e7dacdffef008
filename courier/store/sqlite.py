"""
SQLite queue store for courier.

Single-process deployments and tests. SQLite has no server-side push channel,
so change notifications are delivered in-process: ``enqueue`` broadcasts to
every live subscription on the notify channel after the insert commits. Rows
written by other processes are only picked up by a drain.

Uses WAL mode and a single shared aiosqlite connection. Every claim and status
change is a single conditional UPDATE, so concurrent dispatch tasks on the
shared connection cannot both win the same row.
"""

from __future__ import annotations

import json
import logging
import os
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

import aiosqlite

from ..constants import DEFAULT_NOTIFY_CHANNEL, SENT_MESSAGE_TYPE
from ..exceptions import NotClaimableError, StorageError
from ..models import (
    ClaimedMessage,
    Notification,
    OutboxEvent,
    QueueEntry,
    QueueStats,
    QueueStatus,
)
from .base import ErrorCallback, OutboxStore, Subscription

logger = logging.getLogger(__name__)


_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS chats (
    chat_id         TEXT PRIMARY KEY,
    is_group        INTEGER NOT NULL DEFAULT 0,
    name            TEXT,
    last_message_at TEXT,
    created_at      TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS contacts (
    phone_number  TEXT PRIMARY KEY,
    push_name     TEXT,
    first_seen_at TEXT NOT NULL DEFAULT (datetime('now')),
    last_seen_at  TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS messages (
    message_id   TEXT NOT NULL,
    chat_id      TEXT NOT NULL,
    sender_id    TEXT REFERENCES contacts(phone_number),
    sender_name  TEXT,
    message_type TEXT NOT NULL,
    media_type   TEXT,
    content      TEXT,
    is_from_me   INTEGER NOT NULL DEFAULT 0,
    timestamp    TEXT NOT NULL,
    created_at   TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (message_id, chat_id)
);
CREATE INDEX IF NOT EXISTS idx_messages_chat_ts ON messages(chat_id, timestamp);

CREATE TABLE IF NOT EXISTS outgoing_messages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id         TEXT NOT NULL,
    content         TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'sending', 'sent', 'failed')),
    sent_message_id TEXT,
    error_message   TEXT,
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    completed_at    TEXT
);
CREATE INDEX IF NOT EXISTS idx_outgoing_status ON outgoing_messages(status, id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SQLiteOutboxStore(OutboxStore):
    """Outbox store over a local SQLite file."""

    def __init__(self, db_path: str, notify_channel: str = DEFAULT_NOTIFY_CHANNEL) -> None:
        self.db_path = db_path
        self.notify_channel = notify_channel
        self._conn: aiosqlite.Connection | None = None
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)

    async def init(self) -> None:
        """Open connection and run DDL."""
        try:
            if self.db_path != ":memory:":
                os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.executescript(_DDL)
            await self._conn.commit()
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(f"could not open queue database {self.db_path}: {e}") from e
        logger.info("Queue database initialised: %s", self.db_path)

    async def close(self) -> None:
        for subs in self._subscribers.values():
            for sub in subs:
                sub.close()
        self._subscribers.clear()
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the shared connection. Callers must not close it."""
        if self._conn is None:
            raise RuntimeError("SQLiteOutboxStore not initialised; call init() first")
        yield self._conn

    # ── Queue operations ────────────────────────────────────────────────────────

    async def pending_ids(self) -> list[int]:
        async with self.get_connection() as conn:
            rows = await conn.execute_fetchall(
                "SELECT id FROM outgoing_messages WHERE status = ? ORDER BY id",
                (QueueStatus.PENDING.value,),
            )
        return [row["id"] for row in rows]

    async def claim(self, outbox_id: int) -> ClaimedMessage:
        async with self.get_connection() as conn:
            rows = await conn.execute_fetchall(
                """
                UPDATE outgoing_messages
                SET status = ?
                WHERE id = ? AND status = ?
                RETURNING chat_id, content
                """,
                (QueueStatus.SENDING.value, outbox_id, QueueStatus.PENDING.value),
            )
            await conn.commit()
        if not rows:
            raise NotClaimableError(outbox_id)
        row = rows[0]
        return ClaimedMessage(id=outbox_id, target=row["chat_id"], content=row["content"])

    async def mark_sent(self, outbox_id: int, provider_message_id: str) -> bool:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE outgoing_messages
                SET status = ?, sent_message_id = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    QueueStatus.SENT.value,
                    provider_message_id,
                    _now(),
                    outbox_id,
                    QueueStatus.SENDING.value,
                ),
            )
            await conn.commit()
            return cursor.rowcount > 0

    async def mark_failed(self, outbox_id: int, reason: str) -> bool:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE outgoing_messages
                SET status = ?, error_message = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    QueueStatus.FAILED.value,
                    reason,
                    _now(),
                    outbox_id,
                    QueueStatus.SENDING.value,
                ),
            )
            await conn.commit()
            return cursor.rowcount > 0

    # ── Side bookkeeping ────────────────────────────────────────────────────────

    async def upsert_own_contact(self, account_id: str) -> None:
        if not account_id:
            return
        async with self.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO contacts (phone_number, last_seen_at)
                VALUES (?, datetime('now'))
                ON CONFLICT(phone_number) DO UPDATE SET last_seen_at = datetime('now')
                """,
                (account_id,),
            )
            await conn.commit()

    async def record_sent_message(
        self,
        provider_message_id: str,
        chat_id: str,
        sender_id: str,
        content: str,
        timestamp: datetime,
    ) -> None:
        async with self.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO messages
                    (message_id, chat_id, sender_id, sender_name, message_type,
                     content, is_from_me, timestamp)
                VALUES (?, ?, NULLIF(?, ''), '', ?, ?, 1, ?)
                ON CONFLICT(message_id, chat_id) DO NOTHING
                """,
                (
                    provider_message_id,
                    chat_id,
                    sender_id,
                    SENT_MESSAGE_TYPE,
                    content,
                    timestamp.isoformat(),
                ),
            )
            await conn.commit()

    async def touch_chat_activity(self, chat_id: str, timestamp: datetime) -> None:
        async with self.get_connection() as conn:
            await conn.execute(
                "UPDATE chats SET last_message_at = ? WHERE chat_id = ?",
                (timestamp.isoformat(), chat_id),
            )
            await conn.commit()

    # ── Change notifications ────────────────────────────────────────────────────

    @asynccontextmanager
    async def subscribe(
        self, channel: str, on_error: ErrorCallback | None = None
    ) -> AsyncIterator[Subscription]:
        if self._conn is None:
            raise StorageError("cannot subscribe: queue database is not open")
        sub = Subscription(channel, on_error)
        self._subscribers[channel].add(sub)
        logger.debug("Subscribed to %s (in-process)", channel)
        try:
            yield sub
        finally:
            sub.close()
            self._subscribers[channel].discard(sub)

    def broadcast(self, channel: str, event: OutboxEvent) -> int:
        """Deliver an event to every live subscription on ``channel``."""
        subs = list(self._subscribers.get(channel, ()))
        for sub in subs:
            sub.publish(event)
        return len(subs)

    # ── Producer side and diagnostics ───────────────────────────────────────────

    async def enqueue(self, target: str, content: str) -> int:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "INSERT INTO outgoing_messages (chat_id, content, status) VALUES (?, ?, ?)",
                (target, content, QueueStatus.PENDING.value),
            )
            await conn.commit()
            outbox_id = cursor.lastrowid
        logger.debug("Enqueued outbox message %d for %s", outbox_id, target)
        self.broadcast(
            self.notify_channel,
            Notification(self.notify_channel, json.dumps({"id": outbox_id})),
        )
        return outbox_id

    async def get_entry(self, outbox_id: int) -> QueueEntry | None:
        async with self.get_connection() as conn:
            rows = await conn.execute_fetchall(
                "SELECT * FROM outgoing_messages WHERE id = ?", (outbox_id,)
            )
        if not rows:
            return None
        return self._row_to_entry(rows[0])

    async def queue_stats(self) -> QueueStats:
        async with self.get_connection() as conn:
            rows = await conn.execute_fetchall(
                "SELECT status, COUNT(*) AS n FROM outgoing_messages "
                "WHERE status != ? GROUP BY status",
                (QueueStatus.SENT.value,),
            )
            sent = await conn.execute_fetchall(
                """
                SELECT COUNT(*) AS n FROM outgoing_messages
                WHERE status = ? AND completed_at > ?
                """,
                (
                    QueueStatus.SENT.value,
                    (datetime.now(timezone.utc) - timedelta(days=1)).isoformat(),
                ),
            )
        counts = {row["status"]: row["n"] for row in rows}
        return QueueStats(
            pending=counts.get(QueueStatus.PENDING.value, 0),
            sending=counts.get(QueueStatus.SENDING.value, 0),
            failed=counts.get(QueueStatus.FAILED.value, 0),
            sent_24h=sent[0]["n"] if sent else 0,
        )

    def _row_to_entry(self, row: aiosqlite.Row) -> QueueEntry:
        """Convert a database row to a QueueEntry."""
        return QueueEntry(
            id=row["id"],
            target=row["chat_id"],
            content=row["content"],
            status=QueueStatus(row["status"]),
            provider_message_id=row["sent_message_id"],
            error_detail=row["error_message"],
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )
