"""
Idempotency guard: each on-chain purchase triggers at most one payout.
"""

import asyncio

import structlog

from .models import EventIdentity, RelayTransaction
from .store import RelayStore

logger = structlog.get_logger()


class IdempotencyGuard:
    """
    Gate keyed on EventIdentity.

    The ProcessedSet (terminal identities) is rebuilt from the store at
    start-up. Identities currently being relayed are claimed in memory so a
    duplicate delivery arriving mid-flight is refused too. Rows left
    non-terminal by a previous run stay blocked until reconciliation
    resolves them.
    """

    def __init__(self, store: RelayStore):
        self.store = store
        self._processed: set[EventIdentity] = store.load_processed()
        self._in_flight: set[EventIdentity] = set()
        self._unresolved: set[EventIdentity] = {
            row.event.identity for row in store.get_in_flight()
        }

        logger.info(
            "idempotency_guard_loaded",
            processed=len(self._processed),
            unresolved=len(self._unresolved),
        )

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    def is_processed(self, identity: EventIdentity) -> bool:
        return identity in self._processed

    def should_process(self, identity: EventIdentity) -> bool:
        """
        Check-and-claim. True exactly once per identity until released.

        Contains no await, so it is atomic with respect to other tasks.
        """
        if identity in self._processed:
            return False
        if identity in self._in_flight or identity in self._unresolved:
            return False

        self._in_flight.add(identity)
        return True

    def claim_unresolved(self, identity: EventIdentity) -> bool:
        """Take over an identity left in flight by a previous run."""
        if identity in self._processed or identity in self._in_flight:
            return False
        self._unresolved.discard(identity)
        self._in_flight.add(identity)
        return True

    async def record_submitted(self, tx: RelayTransaction) -> None:
        """Persist the signed hash and nonce before the transfer is broadcast."""
        await asyncio.to_thread(self.store.save, tx)

    async def record_terminal(self, tx: RelayTransaction) -> None:
        """Persist a terminal outcome and add it to the ProcessedSet."""
        if not tx.is_terminal:
            raise ValueError(f"{tx.status.value} is not a terminal status")

        await asyncio.to_thread(self.store.save, tx)
        self._processed.add(tx.identity)
        self._in_flight.discard(tx.identity)
        self._unresolved.discard(tx.identity)

    def release(self, identity: EventIdentity, unresolved: bool = False) -> None:
        """
        Drop an in-flight claim without a terminal record.

        With `unresolved=True` the identity stays blocked until
        reconciliation settles the broadcast it left behind.
        """
        self._in_flight.discard(identity)
        if unresolved:
            self._unresolved.add(identity)
