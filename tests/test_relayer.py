"""
End-to-end tests for the purchase relayer pipeline.
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from purchase_relayer.config import RelayerConfig
from purchase_relayer.models import ConnectionState, RelayStatus
from purchase_relayer.relayer import PurchaseRelayer
from purchase_relayer.store import RelayStore

from conftest import ETH, USDT, FakeDestinationClient, FakeSubscriber, make_event, wait_until


def make_relayer(config: RelayerConfig, client: FakeDestinationClient, subscriber=None) -> PurchaseRelayer:
    return PurchaseRelayer(config, subscriber=subscriber or FakeSubscriber(), client=client)


class TestInit:
    @pytest.mark.asyncio
    async def test_init_logs_configured_event(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        with capture_logs() as logs:
            relayer = make_relayer(config, client)
        await relayer.close()

        [entry] = [log for log in logs if log["event"] == "relayer_initialized"]
        assert entry["event_name"] == config.settings.purchase_event_name
        assert entry["funding_account"] == client.address

class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_purchase_scenario_pays_once(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        relayer = make_relayer(config, client)
        event = make_event(
            source_tx_hash="0xabc", log_index=0, stable_amount=1 * USDT, payout_amount=10 * ETH
        )
        try:
            tx = await relayer.handle_event(event)
            duplicate = await relayer.handle_event(make_event(source_tx_hash="0xabc", log_index=0))
        finally:
            await relayer.executor.stop()
            await relayer.close()

        assert tx.status is RelayStatus.CONFIRMED
        assert duplicate is None
        assert len(client.sent) == 1
        assert client.sent[0]["value"] == 10 * ETH
        assert relayer.state.duplicates_skipped == 1

        log = relayer.relay_log.read()
        assert list(log) == ["0xabc:0"]
        assert log["0xabc:0"]["status"] == "confirmed"
        assert log["0xabc:0"]["payoutAmountFormatted"] == "10.0"

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_pay_once(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        relayer = make_relayer(config, client)
        try:
            results = await asyncio.gather(*(relayer.handle_event(make_event()) for _ in range(3)))
        finally:
            await relayer.executor.stop()
            await relayer.close()

        assert [r.status for r in results if r is not None] == [RelayStatus.CONFIRMED]
        assert len(client.sent) == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_logged_and_final(self, config: RelayerConfig) -> None:
        client = FakeDestinationClient(balance=5 * ETH)
        relayer = make_relayer(config, client)
        try:
            tx = await relayer.handle_event(make_event(payout_amount=10 * ETH))
            client.balance = 50 * ETH
            again = await relayer.handle_event(make_event(payout_amount=10 * ETH))
        finally:
            await relayer.executor.stop()
            await relayer.close()

        assert tx.status is RelayStatus.REJECTED
        assert tx.error_reason == "Insufficient balance: 5.0 available, 10.0 required plus 0.000021 gas"
        assert again is None
        assert client.signed == []

        [entry] = relayer.relay_log.read().values()
        assert entry["status"] == "rejected"
        assert entry["error"] == tx.error_reason

    @pytest.mark.asyncio
    async def test_payout_mismatch_reject_policy(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        config.settings.payout_mismatch_policy = "reject"
        relayer = make_relayer(config, client)
        try:
            tx = await relayer.handle_event(make_event(stable_amount=1 * USDT, payout_amount=20 * ETH))
        finally:
            await relayer.executor.stop()
            await relayer.close()

        assert tx.status is RelayStatus.REJECTED
        assert tx.error_reason.startswith("Payout mismatch")
        assert client.signed == []

    @pytest.mark.asyncio
    async def test_payout_mismatch_warn_policy_pays_event_amount(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        relayer = make_relayer(config, client)
        try:
            tx = await relayer.handle_event(make_event(stable_amount=1 * USDT, payout_amount=9 * ETH))
        finally:
            await relayer.executor.stop()
            await relayer.close()

        assert tx.status is RelayStatus.CONFIRMED
        assert client.sent[0]["value"] == 9 * ETH

    @pytest.mark.asyncio
    async def test_restart_does_not_pay_again(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        first = make_relayer(config, client)
        try:
            await first.handle_event(make_event())
        finally:
            await first.executor.stop()
            await first.close()

        second = make_relayer(config, client)
        try:
            assert await second.handle_event(make_event()) is None
        finally:
            await second.executor.stop()
            await second.close()

        assert len(client.sent) == 1


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_timed_out_payout_settles_without_resend(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        client.hold_receipts = True
        relayer = make_relayer(config, client)
        event = make_event()
        try:
            assert await relayer.handle_event(event) is None
            assert relayer.state.payouts_unresolved == 1
            # Redelivery while unresolved is refused
            assert await relayer.handle_event(event) is None

            client.mine(client.sent[0]["hash"])
            settled = await relayer.reconcile_in_flight()
        finally:
            await relayer.executor.stop()
            await relayer.close()

        assert settled == 1
        assert len(client.sent) == 1
        assert relayer.guard.is_processed(event.identity)
        assert relayer.relay_log.read()[event.identity.key()]["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_reconcile_after_restart(
        self, config: RelayerConfig, client: FakeDestinationClient, database_url: str
    ) -> None:
        client.hold_receipts = True
        first = make_relayer(config, client)
        try:
            await first.handle_event(make_event())
        finally:
            await first.executor.stop()
            await first.close()

        client.mine(client.sent[0]["hash"])
        second = make_relayer(config, client)
        try:
            assert await second.reconcile_in_flight() == 1
        finally:
            await second.executor.stop()
            await second.close()

        store = RelayStore(database_url)
        try:
            assert store.get_status(make_event().identity) is RelayStatus.CONFIRMED
        finally:
            store.close()
        assert len(client.sent) == 1


class TestRun:
    @pytest.mark.asyncio
    async def test_events_missed_during_disconnect_are_paid_once(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        subscriber = FakeSubscriber(head=100)
        live = make_event(source_tx_hash="0x01", block_number=100)
        missed = make_event(source_tx_hash="0x02", block_number=101)
        subscriber.emit(live)
        # The live event is delivered by replay and by the stream
        subscriber.sessions = [[live]]
        subscriber.on_close = [lambda: subscriber.emit(missed)]

        relayer = make_relayer(config, client, subscriber=subscriber)
        runner = asyncio.create_task(relayer.run())
        try:
            await wait_until(lambda: relayer.state.payouts_confirmed == 2)
            await wait_until(lambda: relayer.supervisor.state is ConnectionState.CONNECTED)
        finally:
            relayer.stop()
            await asyncio.wait_for(runner, timeout=5.0)
            await relayer.close()

        assert relayer.supervisor.transitions == [
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert sorted(t["to"] for t in client.sent) == [live.buyer_address, missed.buyer_address]
        assert len(client.sent) == 2
        assert relayer.state.duplicates_skipped >= 1
        assert set(relayer.relay_log.read()) == {"0x01:0", "0x02:0"}
        assert relayer.channel.checkpoint == 101


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_receipt_error_leaves_payout_for_reconciliation(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        client.receipt_errors = [ConnectionError("rpc reset")]
        relayer = make_relayer(config, client)
        event = make_event()
        try:
            assert await relayer.handle_event(event) is None
            assert relayer.relay_log.read() == {}
            assert relayer.state.payouts_rejected == 0

            settled = await relayer.reconcile_in_flight()
        finally:
            await relayer.executor.stop()
            await relayer.close()

        assert settled == 1
        assert len(client.sent) == 1
        assert relayer.relay_log.read()[event.identity.key()]["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_reconcile_resend_reuses_stored_nonce(
        self, config: RelayerConfig, client: FakeDestinationClient
    ) -> None:
        client.hold_receipts = True
        relayer = make_relayer(config, client)
        try:
            await relayer.handle_event(make_event())
            # The node forgot the transfer; it may still be mined elsewhere
            client.known.clear()
            client.hold_receipts = False

            assert await relayer.reconcile_in_flight() == 1
        finally:
            await relayer.executor.stop()
            await relayer.close()

        assert client.nonce == 1
        assert [t["nonce"] for t in client.sent] == [0, 0]

    @pytest.mark.asyncio
    async def test_failed_outcome_write_holds_checkpoint(
        self, config: RelayerConfig, client: FakeDestinationClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        relayer = make_relayer(config, client)
        save = relayer.store.save

        def failing_save(tx):
            if tx.is_terminal:
                raise RuntimeError("database is locked")
            return save(tx)

        monkeypatch.setattr(relayer.store, "save", failing_save)
        event = make_event(block_number=100)
        try:
            await relayer.channel.put(event)
            relayer.channel.mark_scanned(110)
            await relayer.channel.get()

            await relayer._handle_and_ack(event)

            assert relayer.channel.checkpoint == 99
            assert not relayer.guard.should_process(event.identity)
            [row] = relayer.store.get_in_flight()
            assert row.destination_tx_hash == client.sent[0]["hash"]
            assert relayer.relay_log.read() == {}
        finally:
            await relayer.executor.stop()
            await relayer.close()
