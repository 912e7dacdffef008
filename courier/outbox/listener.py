"""
NotificationListener: turns change notifications into dispatches.

State machine:
    DISCONNECTED -> LISTENING -> (notification | reconnect) -> LISTENING
                             -> (stop) -> CLOSED

Each notification carries ``{"id": <int>}`` and is handed to the dispatch
pool without waiting for the send. A ``ReconnectOccurred`` event means
notifications may have been lost while the subscription was down, so it
triggers a full drain. Bad payloads are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from pydantic import ValidationError

from ..constants import DEFAULT_NOTIFY_CHANNEL
from ..models import Notification, NotificationPayload, OutboxEvent, ReconnectOccurred
from ..store.base import OutboxStore, Subscription
from .drainer import PendingDrainer
from .pool import DispatchPool

logger = logging.getLogger(__name__)


class ListenerState(str, Enum):
    DISCONNECTED = "disconnected"
    LISTENING = "listening"
    CLOSED = "closed"


class NotificationListener:
    def __init__(
        self,
        store: OutboxStore,
        drainer: PendingDrainer,
        pool: DispatchPool,
        *,
        channel: str = DEFAULT_NOTIFY_CHANNEL,
        drain_interval: float = 0.0,
    ) -> None:
        self._store = store
        self._drainer = drainer
        self._pool = pool
        self.channel = channel
        self.drain_interval = drain_interval
        self._state = ListenerState.DISCONNECTED
        self.notifications_received = 0
        self.reconnects = 0

    @property
    def state(self) -> ListenerState:
        return self._state

    async def listen(self, stop: asyncio.Event) -> None:
        """Subscribe and dispatch until ``stop`` is set.

        Raises StorageError if the subscription cannot be established.
        """
        async with self._store.subscribe(self.channel, on_error=self._report_problem) as subscription:
            self._state = ListenerState.LISTENING
            logger.info("Listening for outgoing messages on %s channel", self.channel)
            try:
                await self._drainer.drain_pending()
                await self._receive_loop(subscription, stop)
            finally:
                self._state = ListenerState.CLOSED
        logger.info("Stopped listening on %s", self.channel)

    async def _receive_loop(self, subscription: Subscription, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        stop_waiter = asyncio.create_task(stop.wait())
        next_event: asyncio.Task | None = None
        last_drain = loop.time()
        try:
            while not stop.is_set():
                if next_event is None:
                    next_event = asyncio.create_task(subscription.get())

                timeout = None
                if self.drain_interval > 0:
                    timeout = max(0.0, last_drain + self.drain_interval - loop.time())

                done, _ = await asyncio.wait(
                    {next_event, stop_waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                # An event already taken off the subscription is handled even
                # when stop fires in the same round.
                if next_event in done:
                    event = next_event.result()
                    next_event = None
                    if isinstance(event, ReconnectOccurred):
                        last_drain = loop.time()
                    await self._handle(event)
                if stop_waiter in done:
                    break

                if self.drain_interval > 0 and loop.time() - last_drain >= self.drain_interval:
                    last_drain = loop.time()
                    await self._drainer.drain_pending()
        finally:
            stop_waiter.cancel()
            if next_event is not None:
                next_event.cancel()

    async def _handle(self, event: OutboxEvent) -> None:
        if isinstance(event, ReconnectOccurred):
            self.reconnects += 1
            logger.info("Listener reconnected, some notifications may have been missed; draining")
            await self._drainer.drain_pending()
            return

        if isinstance(event, Notification):
            self.notifications_received += 1
            try:
                payload = NotificationPayload.model_validate_json(event.payload)
            except ValidationError as e:
                logger.error("Failed to parse outbox notification %r: %s", event.payload, e)
                return
            self._pool.submit(payload.id)
            return

        logger.warning("Ignoring unknown subscription event %r", event)

    def _report_problem(self, exc: Exception) -> None:
        logger.error("Notification listener error: %s", exc)
