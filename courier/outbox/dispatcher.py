"""
ClaimDispatcher: claims one queue row, sends it, records the outcome.

State machine (per row, enforced by the store's conditional updates):
    pending -> sending -> sent     (transport accepted the message)
                       -> failed   (bad target or transport error, never retried)

A lost claim is the normal resolution of two triggers racing for the same
row: the loser returns quietly without touching anything.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from ..exceptions import InvalidTargetError, NotClaimableError
from ..models import ClaimedMessage, DispatchOutcome
from ..store.base import OutboxStore
from ..transport.address import parse_target
from ..transport.base import Transport

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClaimDispatcher:
    """Per-row worker: claim, resolve, send, record."""

    def __init__(
        self,
        store: OutboxStore,
        transport: Transport,
        *,
        account_id: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._transport = transport
        self._account_id = account_id
        self._clock = clock

    @property
    def account_id(self) -> str:
        """Sending account, preferring what the transport reports."""
        return self._transport.account_id or self._account_id or ""

    async def dispatch(self, outbox_id: int) -> DispatchOutcome:
        try:
            claimed = await self._store.claim(outbox_id)
        except NotClaimableError:
            logger.debug("Outbox message %d already claimed or no longer pending", outbox_id)
            return DispatchOutcome.SKIPPED

        try:
            address = parse_target(claimed.target)
        except InvalidTargetError as e:
            await self._fail(outbox_id, str(e))
            return DispatchOutcome.FAILED

        try:
            provider_id = await self._transport.send(address, claimed.content)
        except Exception as e:
            await self._fail(outbox_id, str(e) or type(e).__name__)
            return DispatchOutcome.FAILED

        try:
            if not await self._store.mark_sent(outbox_id, provider_id):
                logger.warning(
                    "Outbox message %d sent as %s but was no longer in 'sending'",
                    outbox_id,
                    provider_id,
                )
        except Exception:
            logger.exception(
                "Failed to mark outbox message %d as sent (message_id=%s)",
                outbox_id,
                provider_id,
                extra={"outbox_id": outbox_id, "message_id": provider_id},
            )

        await self._record_bookkeeping(claimed, provider_id)

        logger.info(
            "Message sent: outbox %d -> %s (message_id=%s)",
            outbox_id,
            claimed.target,
            provider_id,
            extra={"outbox_id": outbox_id, "chat_id": claimed.target, "message_id": provider_id},
        )
        return DispatchOutcome.SENT

    async def _fail(self, outbox_id: int, reason: str) -> None:
        logger.error(
            "Outbox message %d failed: %s",
            outbox_id,
            reason,
            extra={"outbox_id": outbox_id},
        )
        try:
            await self._store.mark_failed(outbox_id, reason)
        except Exception:
            logger.exception("Failed to mark outbox message %d as failed", outbox_id)

    async def _record_bookkeeping(self, claimed: ClaimedMessage, provider_id: str) -> None:
        """Contact, history and chat updates. Each is best-effort; 'sent' stands regardless."""
        now = self._clock()
        sender_id = self.account_id

        try:
            await self._store.upsert_own_contact(sender_id)
        except Exception:
            logger.exception("Failed to upsert own contact %s", sender_id)

        try:
            await self._store.record_sent_message(
                provider_id, claimed.target, sender_id, claimed.content, now
            )
        except Exception:
            logger.exception(
                "Failed to insert sent message %s into %s",
                provider_id,
                claimed.target,
                extra={"message_id": provider_id, "chat_id": claimed.target},
            )

        try:
            await self._store.touch_chat_activity(claimed.target, now)
        except Exception:
            logger.exception(
                "Failed to update chat %s last_message_at",
                claimed.target,
                extra={"chat_id": claimed.target},
            )
