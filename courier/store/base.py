"""
Queue store contract used by the outbox engine.

The store, not the process, is authoritative for every queue row. Adapters
must make ``claim`` an atomic conditional transition (pending -> sending) so
that racing triggers for the same row resolve to exactly one winner, and must
only ever move a row forward (sending -> sent | failed).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, Callable

from ..models import ClaimedMessage, OutboxEvent, QueueEntry, QueueStats

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Buffered stream of events for one notification channel.

    Store adapters push ``Notification`` and ``ReconnectOccurred`` events in
    with ``publish``; the listener pulls them out with ``get``. Connection
    problems the adapter recovers from on its own go to ``report_error``.
    """

    def __init__(self, channel: str, on_error: ErrorCallback | None = None) -> None:
        self.channel = channel
        self._on_error = on_error
        self._events: asyncio.Queue[OutboxEvent] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: OutboxEvent) -> None:
        if self._closed:
            return
        self._events.put_nowait(event)

    def report_error(self, exc: Exception) -> None:
        if self._on_error is None:
            logger.warning("Subscription %s error: %s", self.channel, exc)
            return
        try:
            self._on_error(exc)
        except Exception:
            logger.exception("Subscription error callback failed for %s", self.channel)

    async def get(self) -> OutboxEvent:
        """Wait for the next event."""
        return await self._events.get()

    def pending_events(self) -> int:
        return self._events.qsize()

    def close(self) -> None:
        self._closed = True


class OutboxStore(ABC):
    """Atomic queue operations over a relational backing store."""

    @abstractmethod
    async def init(self) -> None:
        """Open connections and ensure the schema exists. Raises StorageError."""

    @abstractmethod
    async def close(self) -> None:
        """Release all connections."""

    # ── Queue operations ────────────────────────────────────────────────────────

    @abstractmethod
    async def pending_ids(self) -> list[int]:
        """Ids of all rows still pending, ascending."""

    @abstractmethod
    async def claim(self, outbox_id: int) -> ClaimedMessage:
        """Atomically move a row pending -> sending.

        Raises NotClaimableError if the row is absent or not pending.
        """

    @abstractmethod
    async def mark_sent(self, outbox_id: int, provider_message_id: str) -> bool:
        """Move a row sending -> sent. Returns False if no row was changed."""

    @abstractmethod
    async def mark_failed(self, outbox_id: int, reason: str) -> bool:
        """Move a row sending -> failed. Returns False if no row was changed."""

    # ── Side bookkeeping ────────────────────────────────────────────────────────

    @abstractmethod
    async def upsert_own_contact(self, account_id: str) -> None:
        """Idempotently record the sending account as a contact. No-op if empty."""

    @abstractmethod
    async def record_sent_message(
        self,
        provider_message_id: str,
        chat_id: str,
        sender_id: str,
        content: str,
        timestamp: datetime,
    ) -> None:
        """Insert a sent message into history; duplicates are ignored."""

    @abstractmethod
    async def touch_chat_activity(self, chat_id: str, timestamp: datetime) -> None:
        """Bump a chat's last-activity timestamp."""

    # ── Change notifications ────────────────────────────────────────────────────

    @abstractmethod
    def subscribe(
        self, channel: str, on_error: ErrorCallback | None = None
    ) -> AsyncContextManager[Subscription]:
        """Attach to a change-notification channel for the life of the context.

        Raises StorageError if the subscription cannot be established.
        """

    # ── Producer side and diagnostics ───────────────────────────────────────────

    @abstractmethod
    async def enqueue(self, target: str, content: str) -> int:
        """Insert a pending row and return its id."""

    @abstractmethod
    async def get_entry(self, outbox_id: int) -> QueueEntry | None:
        """Fetch one queue row."""

    @abstractmethod
    async def queue_stats(self) -> QueueStats:
        """Row counts per status for diagnostics."""

    async def count_stuck_sending(self) -> int:
        """Rows left in 'sending', e.g. by a crash mid-send."""
        stats = await self.queue_stats()
        return stats.sending
