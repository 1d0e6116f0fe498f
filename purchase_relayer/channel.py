"""
Bounded event channel between the subscriber side and the orchestrator.

Also decides how far the source checkpoint may advance: a block is
checkpointed only once it has been scanned and every event at or below it
has been handled.
"""

import asyncio
from typing import Optional

import structlog

from .models import EventIdentity, PurchaseEvent
from .store import RelayStore

logger = structlog.get_logger()


class EventChannel:
    def __init__(self, store: RelayStore, maxsize: int = 100):
        self.store = store
        self._queue: asyncio.Queue[PurchaseEvent] = asyncio.Queue(maxsize=maxsize)
        # identity -> (block number, deliveries not yet done)
        self._pending: dict[EventIdentity, tuple[int, int]] = {}
        self._scanned: Optional[int] = store.get_checkpoint()
        self._checkpoint: Optional[int] = self._scanned

    @property
    def checkpoint(self) -> Optional[int]:
        return self._checkpoint

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, event: PurchaseEvent) -> None:
        """Enqueue an event; waits while the channel is full."""
        block_number, refs = self._pending.get(event.identity, (event.block_number, 0))
        self._pending[event.identity] = (block_number, refs + 1)
        await self._queue.put(event)

    async def get(self) -> PurchaseEvent:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def mark_scanned(self, block_number: int) -> None:
        """All events up to `block_number` have been put on the channel."""
        if block_number < 0:
            return
        if self._scanned is None or block_number > self._scanned:
            self._scanned = block_number
            self._advance()

    def done(self, event: PurchaseEvent) -> None:
        """The event reached a terminal, skipped or recorded-in-flight state."""
        entry = self._pending.get(event.identity)
        if entry is not None:
            block_number, refs = entry
            if refs > 1:
                self._pending[event.identity] = (block_number, refs - 1)
            else:
                del self._pending[event.identity]
        self._advance()

    def _advance(self) -> None:
        if self._scanned is None:
            return

        candidate = self._scanned
        if self._pending:
            candidate = min(candidate, min(block for block, _ in self._pending.values()) - 1)

        if candidate < 0 or (self._checkpoint is not None and candidate <= self._checkpoint):
            return

        self.store.set_checkpoint(candidate)
        self._checkpoint = candidate
        logger.debug("checkpoint_advanced", block_number=candidate)
