"""
PendingDrainer: re-submits every row still pending.

Runs once when the listener attaches (rows inserted before anyone was
listening) and again after every reconnect (notifications lost while the
subscription was down). Ids are submitted in ascending order; completion
order is up to the pool.
"""

import logging

from ..store.base import OutboxStore
from .pool import DispatchPool

logger = logging.getLogger(__name__)


class PendingDrainer:
    def __init__(self, store: OutboxStore, pool: DispatchPool) -> None:
        self._store = store
        self._pool = pool

    async def drain_pending(self) -> int:
        """Submit all pending rows. Returns how many were submitted."""
        if not self._pool.accepting:
            return 0
        try:
            ids = await self._store.pending_ids()
        except Exception:
            logger.exception("Failed to query pending outbox messages")
            return 0

        submitted = 0
        for outbox_id in ids:
            if self._pool.submit(outbox_id) is not None:
                submitted += 1

        if submitted:
            logger.info(
                "Submitted %d pending outbox messages",
                submitted,
                extra={"count": submitted},
            )
        return submitted
