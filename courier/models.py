"""
Domain types for courier: queue rows, claim results, subscription events.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict


class QueueStatus(str, Enum):
    """Status of an outgoing queue row. Transitions only move forward."""

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class QueueEntry:
    """A row in the outgoing message queue."""

    id: int
    target: str
    content: str
    status: QueueStatus
    provider_message_id: str | None
    error_detail: str | None
    created_at: datetime | None
    completed_at: datetime | None


@dataclass(frozen=True)
class ClaimedMessage:
    """What a successful claim hands back: enough to send, nothing more."""

    id: int
    target: str
    content: str


@dataclass
class QueueStats:
    """Statistics for the outgoing queue."""

    pending: int = 0
    sending: int = 0
    sent_24h: int = 0
    failed: int = 0


class DispatchOutcome(str, Enum):
    """How a single dispatch attempt ended."""

    SKIPPED = "skipped"  # claim lost or row already terminal
    SENT = "sent"
    FAILED = "failed"


# ── Subscription events ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Notification:
    """A raw change notification delivered on a channel."""

    channel: str
    payload: str


@dataclass(frozen=True)
class ReconnectOccurred:
    """The subscription re-established its connection; events may have been missed."""


OutboxEvent = Union[Notification, ReconnectOccurred]


class NotificationPayload(BaseModel):
    """JSON body of a ``new_outgoing_message`` notification."""

    model_config = ConfigDict(extra="ignore", strict=True)

    id: int
