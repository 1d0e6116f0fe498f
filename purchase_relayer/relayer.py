"""
Main relayer logic - watches purchases on the source chain and pays out
on the destination chain.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog

from .balance import BalanceGuard
from .channel import EventChannel
from .config import RelayerConfig
from .errors import ConfirmationTimeout
from .evm import DestinationClient
from .executor import RelayExecutor
from .guard import IdempotencyGuard
from .models import (
    NATIVE_DECIMALS,
    STABLE_DECIMALS,
    PurchaseEvent,
    RelayStatus,
    RelayTransaction,
    expected_payout,
    format_units,
)
from .store import RelayStore
from .subscriber import ChainLogSubscriber
from .supervisor import ConnectionSupervisor, ReconnectPolicy
from .txlog import RelayLog

logger = structlog.get_logger()


@dataclass
class RelayerState:
    """Current relayer state."""

    is_running: bool = False
    started_at: Optional[datetime] = None
    events_received: int = 0
    duplicates_skipped: int = 0
    payouts_confirmed: int = 0
    payouts_rejected: int = 0
    payouts_unresolved: int = 0


class PurchaseRelayer:
    """
    Main relayer that:
    1. Subscribes to purchase events on the source chain
    2. Drops events already relayed
    3. Checks the funding account balance
    4. Sends the native payout and waits for confirmation
    5. Records the outcome in the store and the relay log
    """

    def __init__(
        self,
        config: RelayerConfig,
        subscriber: Optional[ChainLogSubscriber] = None,
        client: Optional[DestinationClient] = None,
        store: Optional[RelayStore] = None,
        relay_log: Optional[RelayLog] = None,
        supervisor: Optional[ConnectionSupervisor] = None,
    ):
        self.config = config
        self.state = RelayerState()
        settings = config.settings

        self.store = store or RelayStore(settings.database_url)
        self.guard = IdempotencyGuard(self.store)
        self.relay_log = relay_log or RelayLog(settings.tx_log_path)

        self.client = client or DestinationClient(
            rpc_url=settings.resolved_destination_rpc_url(),
            private_key=settings.private_key,
            chain_id=settings.destination_chain_id,
        )
        self.balance_guard = BalanceGuard(self.client)
        self.executor = RelayExecutor(
            client=self.client,
            balance_guard=self.balance_guard,
            guard=self.guard,
            gas_limit=settings.gas_limit,
            max_attempts=settings.max_submit_attempts,
            retry_delay=settings.submit_retry_delay,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            queue_size=settings.event_queue_size,
        )

        self.subscriber = subscriber or ChainLogSubscriber(
            ws_url=settings.resolved_source_ws_url(),
            contract_address=settings.purchase_contract_address,
            event_name=settings.purchase_event_name,
        )
        self.channel = EventChannel(self.store, maxsize=settings.event_queue_size)
        self.supervisor = supervisor or ConnectionSupervisor(
            subscriber=self.subscriber,
            channel=self.channel,
            policy=ReconnectPolicy(
                initial_delay=settings.reconnect_initial_delay,
                max_delay=settings.reconnect_max_delay,
                max_retries=settings.reconnect_max_retries,
            ),
            startup_lookback_blocks=settings.startup_lookback_blocks,
            replay_chunk_blocks=settings.replay_chunk_blocks,
        )

        self._handlers: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(max(settings.max_concurrent_events, 1))
        self._shutdown = asyncio.Event()

        logger.info(
            "relayer_initialized",
            contract=settings.purchase_contract_address,
            event_name=settings.purchase_event_name,
            destination_chain_id=settings.destination_chain_id,
            funding_account=self.client.address,
            processed=self.guard.processed_count,
            checkpoint=self.channel.checkpoint,
        )

    # -- per-event pipeline -------------------------------------------------

    async def handle_event(self, event: PurchaseEvent) -> Optional[RelayTransaction]:
        """
        Relay one purchase.

        Returns the terminal RelayTransaction, or None when the event was a
        duplicate or its confirmation is still outstanding.
        """
        identity = event.identity
        if not self.guard.should_process(identity):
            self.state.duplicates_skipped += 1
            logger.info(
                "duplicate_event_skipped",
                source_tx_hash=identity.source_tx_hash,
                log_index=identity.log_index,
            )
            return None

        logger.info(
            "purchase_detected",
            buyer=event.buyer_address,
            stable_amount=format_units(event.stable_amount, STABLE_DECIMALS),
            payout_amount=format_units(event.payout_amount, NATIVE_DECIMALS),
            source_tx_hash=identity.source_tx_hash,
            log_index=identity.log_index,
            block_number=event.block_number,
        )

        try:
            rejection = self._check_payout_amount(event)
            if rejection:
                tx = RelayTransaction(event=event, gas_limit=self.executor.gas_limit)
                tx.mark_rejected(rejection)
            else:
                tx = await self.executor.submit(event)
        except ConfirmationTimeout as e:
            self.guard.release(identity, unresolved=True)
            self.state.payouts_unresolved += 1
            logger.warning(
                "relay_unresolved",
                source_tx_hash=identity.source_tx_hash,
                destination_tx_hash=e.tx_hash,
            )
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Whether anything was broadcast is unknown; never pay twice.
            logger.error(
                "relay_pipeline_error",
                source_tx_hash=identity.source_tx_hash,
                error=str(e),
                exc_info=True,
            )
            tx = RelayTransaction(event=event, gas_limit=self.executor.gas_limit)
            tx.mark_rejected(f"Relay error: {e}")

        await self._record(tx)
        return tx

    def _check_payout_amount(self, event: PurchaseEvent) -> Optional[str]:
        settings = self.config.settings
        expected = expected_payout(event.stable_amount, settings.conversion_rate)
        if expected == event.payout_amount:
            return None

        logger.warning(
            "payout_amount_mismatch",
            source_tx_hash=event.source_tx_hash,
            event_payout=format_units(event.payout_amount, NATIVE_DECIMALS),
            expected_payout=format_units(expected, NATIVE_DECIMALS),
            policy=settings.payout_mismatch_policy,
        )
        if settings.payout_mismatch_policy == "reject":
            return (
                f"Payout mismatch: event pays {format_units(event.payout_amount, NATIVE_DECIMALS)}, "
                f"expected {format_units(expected, NATIVE_DECIMALS)}"
            )
        return None

    async def _record(self, tx: RelayTransaction) -> None:
        await self.guard.record_terminal(tx)
        await asyncio.to_thread(self.relay_log.append, tx)

        if tx.status is RelayStatus.CONFIRMED:
            self.state.payouts_confirmed += 1
        else:
            self.state.payouts_rejected += 1

        logger.info("relay_outcome", **tx.to_log_record())

    # -- reconciliation -----------------------------------------------------

    async def reconcile_in_flight(self) -> int:
        """
        Settle payouts left "submitted" by a timeout or an earlier run.

        Returns the number of outcomes recorded.
        """
        settled = 0
        for row in self.store.get_in_flight():
            identity = row.event.identity
            if not self.guard.claim_unresolved(identity):
                continue

            logger.info(
                "reconciling_in_flight",
                source_tx_hash=identity.source_tx_hash,
                destination_tx_hash=row.destination_tx_hash,
            )
            try:
                tx = await self.executor.submit(
                    row.event, prior_tx_hash=row.destination_tx_hash, prior_nonce=row.nonce
                )
                await self._record(tx)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.guard.release(identity, unresolved=True)
                logger.warning(
                    "reconcile_deferred",
                    source_tx_hash=identity.source_tx_hash,
                    error=str(e),
                )
                continue

            settled += 1
        return settled

    async def _reconcile_loop(self) -> None:
        interval = self.config.settings.reconcile_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile_in_flight()
            except Exception as e:
                logger.error("reconcile_error", error=str(e))
            logger.info("relayer_status", **self.stats())

    # -- lifecycle ----------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            event = await self.channel.get()
            self.state.events_received += 1
            await self._slots.acquire()
            task = asyncio.create_task(self._handle_and_ack(event))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)

    async def _handle_and_ack(self, event: PurchaseEvent) -> None:
        try:
            await self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Outcome not recorded: keep the identity blocked and the
            # checkpoint below this block so a restart replays it.
            self.guard.release(event.identity, unresolved=True)
            logger.error(
                "relay_outcome_not_recorded",
                source_tx_hash=event.identity.source_tx_hash,
                log_index=event.identity.log_index,
                block_number=event.block_number,
                error=str(e),
                exc_info=True,
            )
        else:
            self.channel.done(event)
        finally:
            self.channel.task_done()
            self._slots.release()

    async def run(self) -> None:
        """Run the relayer until stopped or the supervisor gives up."""
        self.state.is_running = True
        self.state.started_at = datetime.now()
        logger.info("relayer_starting")

        await self.executor.start()
        await self.reconcile_in_flight()

        tasks = {
            "supervisor": asyncio.create_task(self.supervisor.run(), name="supervisor"),
            "consumer": asyncio.create_task(self._consume(), name="consumer"),
            "reconcile": asyncio.create_task(self._reconcile_loop(), name="reconcile"),
        }
        shutdown = asyncio.create_task(self._shutdown.wait(), name="shutdown")

        try:
            done, _ = await asyncio.wait(
                [shutdown, *tasks.values()], return_when=asyncio.FIRST_COMPLETED
            )
            for name, task in tasks.items():
                if task in done and not task.cancelled() and task.exception():
                    logger.error("relayer_task_failed", task=name, error=str(task.exception()))
                    raise task.exception()
        finally:
            shutdown.cancel()
            await self._shutdown_tasks(tasks)

    async def _shutdown_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        self.supervisor.stop()
        for task in tasks.values():
            task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)

        # Broadcast payouts cannot be recalled; give them time to confirm.
        if self._handlers:
            _, pending = await asyncio.wait(
                set(self._handlers), timeout=self.config.settings.shutdown_grace_seconds
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        await self.executor.stop()
        self.state.is_running = False
        logger.info("relayer_stopped", **self.stats())

    def stop(self) -> None:
        """Stop the relayer."""
        self.state.is_running = False
        self._shutdown.set()
        logger.info("relayer_stopping")

    async def close(self) -> None:
        await self.client.close()
        self.store.close()

    def stats(self) -> dict[str, Any]:
        return {
            "events_received": self.state.events_received,
            "duplicates_skipped": self.state.duplicates_skipped,
            "payouts_confirmed": self.state.payouts_confirmed,
            "payouts_rejected": self.state.payouts_rejected,
            "payouts_unresolved": self.state.payouts_unresolved,
            "processed": self.guard.processed_count,
            "checkpoint": self.channel.checkpoint,
            "connection": self.supervisor.state.value if self.supervisor.state else None,
            "queued": self.channel.qsize(),
        }
