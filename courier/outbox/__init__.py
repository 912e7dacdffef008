"""Outbox claim-and-dispatch engine for queued outgoing messages."""

from courier.outbox.dispatcher import ClaimDispatcher
from courier.outbox.drainer import PendingDrainer
from courier.outbox.listener import ListenerState, NotificationListener
from courier.outbox.pool import DispatchPool

__all__ = [
    "ClaimDispatcher",
    "DispatchPool",
    "ListenerState",
    "NotificationListener",
    "PendingDrainer",
]
