"""
DispatchPool: runs dispatches as independent tasks with an optional cap.

Every submitted id gets its own task so a slow send never holds up the
listener. ``max_in_flight`` bounds how many dispatches run at once (0 keeps it
unbounded); waiting tasks queue on a semaphore. Running dispatches are never
cancelled: a claimed row must reach a terminal state, so ``shutdown`` only
waits for them, up to a timeout.
"""

from __future__ import annotations

import asyncio
import logging

from ..models import DispatchOutcome
from .dispatcher import ClaimDispatcher

logger = logging.getLogger(__name__)


class DispatchPool:
    def __init__(self, dispatcher: ClaimDispatcher, max_in_flight: int = 0) -> None:
        self._dispatcher = dispatcher
        self._semaphore = asyncio.Semaphore(max_in_flight) if max_in_flight > 0 else None
        self.max_in_flight = max_in_flight
        self._tasks: set[asyncio.Task] = set()
        self._accepting = True

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def accepting(self) -> bool:
        return self._accepting

    def submit(self, outbox_id: int) -> asyncio.Task | None:
        """Start dispatching ``outbox_id`` in the background."""
        if not self._accepting:
            logger.warning("Dispatch pool is shutting down; outbox %d left pending", outbox_id)
            return None
        task = asyncio.create_task(self._run(outbox_id), name=f"outbox-dispatch-{outbox_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, outbox_id: int) -> DispatchOutcome | None:
        try:
            if self._semaphore is None:
                return await self._dispatcher.dispatch(outbox_id)
            async with self._semaphore:
                return await self._dispatcher.dispatch(outbox_id)
        except Exception:
            logger.exception("Dispatch of outbox message %d crashed", outbox_id)
            return None

    async def wait_idle(self) -> None:
        """Wait until every dispatch submitted so far has finished."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def shutdown(self, timeout: float | None = None) -> bool:
        """Stop accepting work and wait for in-flight dispatches.

        Returns True if everything finished within ``timeout``.
        """
        self._accepting = False
        if not self._tasks:
            return True
        logger.info("Waiting for %d in-flight dispatches", len(self._tasks))
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        if still_running:
            logger.warning(
                "%d dispatches still running after %ss; leaving them to finish in the background",
                len(still_running),
                timeout,
            )
            return False
        return True
