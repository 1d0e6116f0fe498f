"""
Relay executor: single-flight payout queue for the funding account.

One worker task owns the signing key and the nonce. Every payout goes
through the queue, so the balance check, nonce assignment and broadcast of
one payout never interleave with another.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from .balance import BalanceGuard
from .errors import ConfirmationTimeout
from .evm import DestinationClient, classify_error
from .guard import IdempotencyGuard
from .models import (
    DEFAULT_GAS_LIMIT,
    NATIVE_DECIMALS,
    PurchaseEvent,
    RelayStatus,
    RelayTransaction,
    format_units,
)

logger = structlog.get_logger()


@dataclass
class PayoutRequest:
    """A queued payout and the future its caller waits on."""

    tx: RelayTransaction
    future: "asyncio.Future[RelayTransaction]"
    prior_tx_hash: Optional[str] = None
    prior_nonce: Optional[int] = None


class RelayExecutor:
    """Submits native transfers and waits for their confirmation."""

    def __init__(
        self,
        client: DestinationClient,
        balance_guard: BalanceGuard,
        guard: IdempotencyGuard,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        confirmation_timeout: float = 180.0,
        queue_size: int = 100,
    ):
        self.client = client
        self.balance_guard = balance_guard
        self.guard = guard
        self.gas_limit = gas_limit
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.confirmation_timeout = confirmation_timeout
        self.queue_size = queue_size

        self._queue: Optional[asyncio.Queue[PayoutRequest]] = None
        self._worker: Optional[asyncio.Task] = None
        self._next_nonce: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = asyncio.create_task(self._run(), name="relay-executor")
        logger.info("relay_executor_started", funding_account=self.client.address)

    async def stop(self) -> None:
        if self._worker is None:
            return

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

        # Requests still queued were never broadcast
        while self._queue is not None and not self._queue.empty():
            request = self._queue.get_nowait()
            if not request.future.done():
                request.future.cancel()

        logger.info("relay_executor_stopped")

    async def submit(
        self,
        event: PurchaseEvent,
        prior_tx_hash: Optional[str] = None,
        prior_nonce: Optional[int] = None,
        attempts: int = 0,
    ) -> RelayTransaction:
        """
        Queue a payout for `event` and wait for its terminal state.

        `prior_tx_hash` is a broadcast from an earlier run, signed with
        `prior_nonce`; it is checked for inclusion before anything new is
        sent, and a resend reuses its nonce while that nonce is unspent.

        Raises:
            ConfirmationTimeout: The transfer was broadcast but its receipt
                could not be obtained. It is left "submitted".
        """
        if not self.is_running:
            await self.start()
        assert self._queue is not None

        tx = RelayTransaction(event=event, gas_limit=self.gas_limit, attempts=attempts)
        future: asyncio.Future[RelayTransaction] = asyncio.get_running_loop().create_future()
        await self._queue.put(
            PayoutRequest(tx=tx, future=future, prior_tx_hash=prior_tx_hash, prior_nonce=prior_nonce)
        )

        # A broadcast transfer cannot be retracted; the caller may stop
        # waiting but the worker carries on.
        return await asyncio.shield(future)

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            request = await self._queue.get()
            try:
                tx = await self._execute(request)
                if not request.future.done():
                    request.future.set_result(tx)
            except asyncio.CancelledError:
                if not request.future.done():
                    request.future.cancel()
                raise
            except Exception as e:
                if not request.future.done():
                    request.future.set_exception(e)
            finally:
                self._queue.task_done()

    async def _execute(self, request: PayoutRequest) -> RelayTransaction:
        tx = request.tx
        event = tx.event
        prior_hash = request.prior_tx_hash
        prior_nonce = request.prior_nonce
        last_reason: Optional[str] = None

        while True:
            reuse_nonce: Optional[int] = None
            if prior_hash:
                try:
                    # Read before the receipt lookup so a transfer mined in
                    # between is still caught by the lookup.
                    reuse_nonce = await self._unspent_nonce(prior_nonce)
                    resumed = await self._resume(tx, prior_hash, prior_nonce)
                except ConfirmationTimeout:
                    raise
                except Exception as e:
                    raise self._outcome_unknown(prior_hash, e) from e

                if resumed is not None:
                    return resumed
                logger.info(
                    "prior_broadcast_dropped",
                    source_tx_hash=event.source_tx_hash,
                    destination_tx_hash=prior_hash,
                    reuse_nonce=reuse_nonce,
                )
                prior_hash = None

            if tx.attempts >= self.max_attempts:
                break
            tx.attempts += 1

            try:
                gas_price = await self.client.get_gas_price()
                check = await self.balance_guard.check_sufficient(
                    event.payout_amount, fee=self.gas_limit * gas_price
                )
                if not check.sufficient:
                    tx.mark_rejected(check.describe())
                    return tx

                nonce = reuse_nonce if reuse_nonce is not None else await self._assign_nonce()
                signed = self.client.sign_transfer(
                    to=event.buyer_address,
                    value=event.payout_amount,
                    nonce=nonce,
                    gas_limit=self.gas_limit,
                    gas_price=gas_price,
                )

                # The row must exist before the transfer can leave: a crash
                # after broadcast is then settled by reconciliation.
                tx.mark_submitted(signed.tx_hash, nonce=nonce)
                await self.guard.record_submitted(tx)
                prior_hash, prior_nonce = signed.tx_hash, nonce

                await self.client.broadcast(signed)
                self._next_nonce = nonce + 1
                logger.info(
                    "relay_submitted",
                    buyer=event.buyer_address,
                    payout=format_units(event.payout_amount, NATIVE_DECIMALS),
                    destination_tx_hash=signed.tx_hash,
                    nonce=nonce,
                    attempt=tx.attempts,
                )
            except Exception as e:
                failure = classify_error(e)
                self._next_nonce = None
                if not failure.retryable:
                    logger.error(
                        "relay_submission_failed",
                        source_tx_hash=event.source_tx_hash,
                        error=failure.reason,
                        retryable=False,
                    )
                    tx.mark_rejected(failure.reason)
                    return tx

                last_reason = failure.reason
                logger.warning(
                    "relay_submission_retry",
                    source_tx_hash=event.source_tx_hash,
                    error=failure.reason,
                    attempt=tx.attempts,
                    max_attempts=self.max_attempts,
                )
                if tx.attempts < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * tx.attempts)
                continue

            return await self._await_confirmation(tx)

        tx.mark_rejected(
            f"Submission failed after {tx.attempts} attempts: {last_reason or 'unknown error'}"
        )
        return tx

    async def _assign_nonce(self) -> int:
        chain_nonce = await self.client.get_nonce()
        if self._next_nonce is None:
            return chain_nonce
        return max(chain_nonce, self._next_nonce)

    async def _unspent_nonce(self, nonce: Optional[int]) -> Optional[int]:
        """
        `nonce` if nothing has been mined with it yet, else None.

        Resending with the same nonce means at most one of the transfers
        can ever be included.
        """
        if nonce is None:
            return None
        confirmed = await self.client.get_confirmed_nonce()
        return nonce if confirmed <= nonce else None

    async def _resume(
        self, tx: RelayTransaction, tx_hash: str, nonce: Optional[int] = None
    ) -> Optional[RelayTransaction]:
        """
        Settle an earlier broadcast. Returns None if the chain never saw it.
        """
        receipt = await self.client.get_receipt(tx_hash)
        if receipt is not None:
            if tx.status is RelayStatus.PENDING:
                tx.mark_submitted(tx_hash, nonce=nonce)
            self._apply_receipt(tx, receipt)
            return tx

        if await self.client.is_known(tx_hash):
            if tx.status is RelayStatus.PENDING:
                tx.mark_submitted(tx_hash, nonce=nonce)
            return await self._await_confirmation(tx)

        return None

    async def _await_confirmation(self, tx: RelayTransaction) -> RelayTransaction:
        assert tx.destination_tx_hash is not None
        try:
            receipt = await self.client.wait_for_receipt(
                tx.destination_tx_hash, timeout=self.confirmation_timeout
            )
        except Exception as e:
            raise self._outcome_unknown(tx.destination_tx_hash, e) from e

        if receipt is None:
            logger.warning(
                "relay_confirmation_timeout",
                destination_tx_hash=tx.destination_tx_hash,
                timeout=self.confirmation_timeout,
            )
            raise ConfirmationTimeout(tx.destination_tx_hash, self.confirmation_timeout)

        self._apply_receipt(tx, receipt)
        return tx

    def _outcome_unknown(self, tx_hash: str, error: Exception) -> ConfirmationTimeout:
        """A broadcast whose fate could not be read stays unresolved."""
        logger.warning("relay_confirmation_error", destination_tx_hash=tx_hash, error=str(error))
        return ConfirmationTimeout(tx_hash, self.confirmation_timeout)

    def _apply_receipt(self, tx: RelayTransaction, receipt) -> None:
        if receipt["status"] == 1:
            tx.mark_confirmed(gas_used=receipt.get("gasUsed"))
            logger.info(
                "relay_confirmed",
                destination_tx_hash=tx.destination_tx_hash,
                gas_used=tx.gas_used,
            )
        else:
            tx.mark_rejected("Transaction reverted")
            logger.error("relay_reverted", destination_tx_hash=tx.destination_tx_hash)
