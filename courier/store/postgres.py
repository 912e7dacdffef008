"""
Postgres queue store for courier.

Claims and status updates go through a pooled asyncpg connection; the change
notification subscription holds its own dedicated connection for as long as
it is open. New rows are announced by an AFTER INSERT trigger that calls
pg_notify with ``{"id": <id>}``.

When the subscription connection drops, the adapter reports the error through
the subscription's error callback and keeps reconnecting with a doubling
delay. Once LISTEN is re-established it publishes ``ReconnectOccurred`` so the
listener can re-drain anything announced while it was away.
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg

from ..constants import DEFAULT_NOTIFY_CHANNEL, SENT_MESSAGE_TYPE
from ..exceptions import NotClaimableError, StorageError
from ..models import (
    ClaimedMessage,
    Notification,
    QueueEntry,
    QueueStats,
    QueueStatus,
    ReconnectOccurred,
)
from .base import ErrorCallback, OutboxStore, Subscription

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError)


SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS {schema};

CREATE TABLE IF NOT EXISTS {schema}.chats (
    chat_id         text PRIMARY KEY,
    is_group        boolean NOT NULL DEFAULT false,
    name            text,
    last_message_at timestamptz,
    created_at      timestamptz DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {schema}.contacts (
    phone_number  text PRIMARY KEY,
    push_name     text,
    first_seen_at timestamptz DEFAULT now(),
    last_seen_at  timestamptz DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {schema}.messages (
    message_id   text NOT NULL,
    chat_id      text NOT NULL,
    sender_id    text REFERENCES {schema}.contacts(phone_number),
    sender_name  text,
    message_type text NOT NULL,
    media_type   text,
    media_path   text,
    content      text,
    is_from_me   boolean NOT NULL DEFAULT false,
    timestamp    timestamptz NOT NULL,
    created_at   timestamptz DEFAULT now(),
    PRIMARY KEY (message_id, chat_id)
);

CREATE TABLE IF NOT EXISTS {schema}.outgoing_messages (
    id              bigserial PRIMARY KEY,
    chat_id         text NOT NULL,
    content         text NOT NULL,
    status          text NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'sending', 'sent', 'failed')),
    sent_message_id text,
    error_message   text,
    created_at      timestamptz NOT NULL DEFAULT now(),
    completed_at    timestamptz
);
CREATE INDEX IF NOT EXISTS outgoing_messages_pending_idx
    ON {schema}.outgoing_messages (id) WHERE status = 'pending';

CREATE OR REPLACE FUNCTION {schema}.notify_new_outgoing_message() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify('{channel}', json_build_object('id', NEW.id)::text);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DO $$
BEGIN
    IF NOT EXISTS (
        SELECT 1 FROM pg_trigger
        WHERE tgname = 'outgoing_messages_notify'
          AND tgrelid = '{schema}.outgoing_messages'::regclass
    ) THEN
        CREATE TRIGGER outgoing_messages_notify
            AFTER INSERT ON {schema}.outgoing_messages
            FOR EACH ROW EXECUTE FUNCTION {schema}.notify_new_outgoing_message();
    END IF;
END
$$;
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class ListenConnection:
    """Dedicated LISTEN connection feeding a Subscription, with reconnects."""

    def __init__(
        self,
        dsn: str,
        subscription: Subscription,
        min_reconnect_interval: float = 10.0,
        max_reconnect_interval: float = 60.0,
    ) -> None:
        self._dsn = dsn
        self._subscription = subscription
        self._min_interval = min_reconnect_interval
        self._max_interval = max_reconnect_interval
        self._conn: Any | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def start(self) -> None:
        """Open the connection and LISTEN. Raises StorageError on failure."""
        try:
            self._conn = await self._connect()
        except _CONNECT_ERRORS as e:
            raise StorageError(
                f"failed to LISTEN on {self._subscription.channel}: {e}"
            ) from e

    async def _connect(self) -> Any:
        conn = await asyncpg.connect(self._dsn)
        try:
            await conn.add_listener(self._subscription.channel, self._on_notify)
        except BaseException:
            await conn.close()
            raise
        conn.add_termination_listener(self._on_terminated)
        return conn

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        self._subscription.publish(Notification(channel, payload))

    def _on_terminated(self, connection: Any) -> None:
        if self._closing:
            return
        self._conn = None
        self._subscription.report_error(
            StorageError(f"notification connection for {self._subscription.channel} lost")
        )
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        delay = self._min_interval
        while not self._closing:
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                self._conn = await self._connect()
            except Exception as e:
                self._subscription.report_error(e)
                delay = min(delay * 2, self._max_interval)
                continue
            logger.info("Notification connection for %s re-established", self._subscription.channel)
            self._subscription.publish(ReconnectOccurred())
            return

    async def close(self) -> None:
        self._closing = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        conn, self._conn = self._conn, None
        if conn is not None and not conn.is_closed():
            try:
                await conn.remove_listener(self._subscription.channel, self._on_notify)
            except _CONNECT_ERRORS as e:
                logger.debug("Could not UNLISTEN %s cleanly: %s", self._subscription.channel, e)
            await conn.close()


class PostgresOutboxStore(OutboxStore):
    """Outbox store over Postgres, with LISTEN/NOTIFY change notifications."""

    def __init__(
        self,
        dsn: str,
        *,
        schema: str = "wa_bridge",
        notify_channel: str = DEFAULT_NOTIFY_CHANNEL,
        pool_min_size: int = 1,
        pool_max_size: int = 5,
        create_schema: bool = True,
        min_reconnect_interval: float = 10.0,
        max_reconnect_interval: float = 60.0,
    ) -> None:
        for name, value in (("schema", schema), ("notify_channel", notify_channel)):
            if not _IDENTIFIER.match(value):
                raise ValueError(f"{name} must be a lowercase SQL identifier, got {value!r}")
        self.dsn = dsn
        self.schema = schema
        self.notify_channel = notify_channel
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.create_schema = create_schema
        self.min_reconnect_interval = min_reconnect_interval
        self.max_reconnect_interval = max_reconnect_interval
        self.pool: Any | None = None

    def _t(self, table: str) -> str:
        return f"{self.schema}.{table}"

    def _pool(self) -> Any:
        if self.pool is None:
            raise RuntimeError("PostgresOutboxStore not initialised; call init() first")
        return self.pool

    async def init(self) -> None:
        try:
            self.pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.pool_min_size,
                max_size=self.pool_max_size,
            )
        except _CONNECT_ERRORS as e:
            raise StorageError(f"failed to connect to queue database: {e}") from e

        if self.create_schema:
            try:
                async with self.pool.acquire() as conn:
                    await conn.execute(
                        SCHEMA_SQL.format(schema=self.schema, channel=self.notify_channel)
                    )
            except asyncpg.PostgresError as e:
                await self.close()
                raise StorageError(f"failed to create queue schema {self.schema}: {e}") from e
        logger.info("Connected to queue database (schema=%s)", self.schema)

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None

    # ── Queue operations ────────────────────────────────────────────────────────

    async def pending_ids(self) -> list[int]:
        rows = await self._pool().fetch(
            f"SELECT id FROM {self._t('outgoing_messages')} WHERE status = $1 ORDER BY id",
            QueueStatus.PENDING.value,
        )
        return [row["id"] for row in rows]

    async def claim(self, outbox_id: int) -> ClaimedMessage:
        row = await self._pool().fetchrow(
            f"""
            UPDATE {self._t('outgoing_messages')}
            SET status = $2
            WHERE id = $1 AND status = $3
            RETURNING chat_id, content
            """,
            outbox_id,
            QueueStatus.SENDING.value,
            QueueStatus.PENDING.value,
        )
        if row is None:
            raise NotClaimableError(outbox_id)
        return ClaimedMessage(id=outbox_id, target=row["chat_id"], content=row["content"])

    async def mark_sent(self, outbox_id: int, provider_message_id: str) -> bool:
        status = await self._pool().execute(
            f"""
            UPDATE {self._t('outgoing_messages')}
            SET status = $3, sent_message_id = $2, completed_at = now()
            WHERE id = $1 AND status = $4
            """,
            outbox_id,
            provider_message_id,
            QueueStatus.SENT.value,
            QueueStatus.SENDING.value,
        )
        return _affected(status) > 0

    async def mark_failed(self, outbox_id: int, reason: str) -> bool:
        status = await self._pool().execute(
            f"""
            UPDATE {self._t('outgoing_messages')}
            SET status = $3, error_message = $2, completed_at = now()
            WHERE id = $1 AND status = $4
            """,
            outbox_id,
            reason,
            QueueStatus.FAILED.value,
            QueueStatus.SENDING.value,
        )
        return _affected(status) > 0

    # ── Side bookkeeping ────────────────────────────────────────────────────────

    async def upsert_own_contact(self, account_id: str) -> None:
        if not account_id:
            return
        await self._pool().execute(
            f"""
            INSERT INTO {self._t('contacts')} (phone_number, last_seen_at)
            VALUES ($1, now())
            ON CONFLICT (phone_number) DO UPDATE SET last_seen_at = now()
            """,
            account_id,
        )

    async def record_sent_message(
        self,
        provider_message_id: str,
        chat_id: str,
        sender_id: str,
        content: str,
        timestamp: datetime,
    ) -> None:
        await self._pool().execute(
            f"""
            INSERT INTO {self._t('messages')}
                (message_id, chat_id, sender_id, sender_name, message_type,
                 content, is_from_me, timestamp)
            VALUES ($1, $2, NULLIF($3, ''), '', $4, $5, true, $6)
            ON CONFLICT (message_id, chat_id) DO NOTHING
            """,
            provider_message_id,
            chat_id,
            sender_id,
            SENT_MESSAGE_TYPE,
            content,
            timestamp,
        )

    async def touch_chat_activity(self, chat_id: str, timestamp: datetime) -> None:
        await self._pool().execute(
            f"UPDATE {self._t('chats')} SET last_message_at = $1 WHERE chat_id = $2",
            timestamp,
            chat_id,
        )

    # ── Change notifications ────────────────────────────────────────────────────

    @asynccontextmanager
    async def subscribe(
        self, channel: str, on_error: ErrorCallback | None = None
    ) -> AsyncIterator[Subscription]:
        sub = Subscription(channel, on_error)
        listen = ListenConnection(
            self.dsn,
            sub,
            min_reconnect_interval=self.min_reconnect_interval,
            max_reconnect_interval=self.max_reconnect_interval,
        )
        await listen.start()
        logger.debug("LISTEN established on %s", channel)
        try:
            yield sub
        finally:
            sub.close()
            await listen.close()

    # ── Producer side and diagnostics ───────────────────────────────────────────

    async def enqueue(self, target: str, content: str) -> int:
        return await self._pool().fetchval(
            f"""
            INSERT INTO {self._t('outgoing_messages')} (chat_id, content, status)
            VALUES ($1, $2, $3)
            RETURNING id
            """,
            target,
            content,
            QueueStatus.PENDING.value,
        )

    async def get_entry(self, outbox_id: int) -> QueueEntry | None:
        row = await self._pool().fetchrow(
            f"SELECT * FROM {self._t('outgoing_messages')} WHERE id = $1", outbox_id
        )
        if row is None:
            return None
        return QueueEntry(
            id=row["id"],
            target=row["chat_id"],
            content=row["content"],
            status=QueueStatus(row["status"]),
            provider_message_id=row["sent_message_id"],
            error_detail=row["error_message"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    async def queue_stats(self) -> QueueStats:
        row = await self._pool().fetchrow(
            f"""
            SELECT
                count(*) FILTER (WHERE status = 'pending') AS pending,
                count(*) FILTER (WHERE status = 'sending') AS sending,
                count(*) FILTER (WHERE status = 'failed') AS failed,
                count(*) FILTER (
                    WHERE status = 'sent' AND completed_at > now() - interval '1 day'
                ) AS sent_24h
            FROM {self._t('outgoing_messages')}
            """
        )
        return QueueStats(
            pending=row["pending"],
            sending=row["sending"],
            failed=row["failed"],
            sent_24h=row["sent_24h"],
        )
