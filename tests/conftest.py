from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from web3 import Web3

from purchase_relayer.config import RelayerConfig, Settings
from purchase_relayer.errors import SubmissionFailure, TransportFailure
from purchase_relayer.evm import SignedTransfer
from purchase_relayer.models import PurchaseEvent
from purchase_relayer.store import RelayStore

ETH = 10**18
USDT = 10**6

BUYER = "0x00000000000000000000000000000000000000Aa"
FUNDING_ACCOUNT = "0x1111111111111111111111111111111111111111"
SOURCE_TX = "0x" + "ab" * 32

_ENV_VARS = (
    "PRIVATE_KEY",
    "ALCHEMY_API_KEY",
    "SOURCE_WS_URL",
    "DESTINATION_RPC_URL",
    "DATABASE_URL",
    "TX_LOG_PATH",
    "PAYOUT_MISMATCH_POLICY",
    "CONVERSION_RATE",
)


def make_event(
    source_tx_hash: str = SOURCE_TX,
    log_index: int = 0,
    stable_amount: int = 1 * USDT,
    payout_amount: int = 10 * ETH,
    buyer: str = BUYER,
    block_number: int = 100,
) -> PurchaseEvent:
    return PurchaseEvent(
        buyer_address=buyer,
        stable_amount=stable_amount,
        payout_amount=payout_amount,
        source_tx_hash=source_tx_hash,
        log_index=log_index,
        block_number=block_number,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class FakeDestinationClient:
    """In-memory destination chain for one funding account."""

    def __init__(self, balance: int = 100 * ETH):
        self.balance = balance
        self.nonce = 0
        self.gas_price = 1_000_000_000
        self.signed: list[SignedTransfer] = []
        self.sent: list[dict[str, Any]] = []
        self.receipts: dict[str, dict[str, Any]] = {}
        self.known: set[str] = set()
        self.send_errors: list[Exception] = []
        self.confirmed_nonce = 0
        self.receipt_status = 1
        self.hold_receipts = False
        self.balance_queries = 0
        # Broadcasts that reach the chain but whose send call then fails
        self.lost_acks: list[Exception] = []
        self.receipt_errors: list[Exception] = []
        self.on_broadcast: Optional[Callable[[SignedTransfer], None]] = None
        self._transfers: dict[str, dict[str, Any]] = {}

    @property
    def address(self) -> str:
        return FUNDING_ACCOUNT

    async def get_balance(self) -> int:
        self.balance_queries += 1
        return self.balance

    async def get_nonce(self) -> int:
        return self.nonce

    async def get_confirmed_nonce(self) -> int:
        return self.confirmed_nonce

    async def get_gas_price(self) -> int:
        return self.gas_price

    def sign_transfer(
        self, to: str, value: int, nonce: int, gas_limit: int, gas_price: int
    ) -> SignedTransfer:
        if not Web3.is_address(to):
            raise SubmissionFailure(f"Invalid recipient {to!r}", retryable=False)
        tx_hash = "0x" + f"{len(self.signed) + 1:064x}"
        signed = SignedTransfer(
            tx_hash=tx_hash, raw_transaction=b"\x01", nonce=nonce, gas_price=gas_price
        )
        self.signed.append(signed)
        self._transfers[tx_hash] = {
            "to": to,
            "value": value,
            "nonce": nonce,
            "gas": gas_limit,
            "hash": tx_hash,
        }
        return signed

    async def broadcast(self, signed: SignedTransfer) -> str:
        await asyncio.sleep(0)
        if self.on_broadcast is not None:
            self.on_broadcast(signed)
        if self.send_errors:
            raise self.send_errors.pop(0)

        transfer = self._transfers[signed.tx_hash]
        self.sent.append(transfer)
        self.nonce = max(self.nonce, transfer["nonce"] + 1)
        self.balance -= transfer["value"]
        if self.lost_acks:
            # On chain, but the node has not indexed it yet
            raise self.lost_acks.pop(0)

        self.known.add(signed.tx_hash)
        if not self.hold_receipts:
            self.mine(signed.tx_hash)
        return signed.tx_hash

    def mine(self, tx_hash: str, status: Optional[int] = None) -> None:
        transfer = self._transfers.get(tx_hash)
        if transfer is not None:
            self.confirmed_nonce = max(self.confirmed_nonce, transfer["nonce"] + 1)
        self.receipts[tx_hash] = {
            "status": self.receipt_status if status is None else status,
            "gasUsed": 21_000,
            "transactionHash": tx_hash,
        }

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[dict]:
        await asyncio.sleep(0)
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        return self.receipts.get(tx_hash)

    async def get_receipt(self, tx_hash: str) -> Optional[dict]:
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        return self.receipts.get(tx_hash)

    async def is_known(self, tx_hash: str) -> bool:
        return tx_hash in self.known

    async def close(self) -> None:
        return


class FakeSubscriber:
    """
    Scripted source chain.

    Each entry in `sessions` is one live connection: its events are
    streamed, then `on_close` runs and the transport fails. Once sessions
    run out the stream stays open until cancelled.
    """

    def __init__(self, head: int = 100):
        self.head = head
        self.history: list[PurchaseEvent] = []
        self.sessions: list[list[PurchaseEvent]] = []
        self.on_close: list[Callable[[], None]] = []
        self.connect_failures = 0
        self.connects = 0
        self.disconnects = 0
        self.fetched: list[tuple[int, int]] = []

    def emit(self, event: PurchaseEvent) -> None:
        """Record an event on chain (visible to gap replay)."""
        self.history.append(event)
        self.head = max(self.head, event.block_number)

    async def connect(self) -> None:
        self.connects += 1
        if self.connect_failures:
            self.connect_failures -= 1
            raise TransportFailure("connection refused")

    async def disconnect(self) -> None:
        self.disconnects += 1

    async def subscribe(self) -> str:
        return "0xsub"

    async def head_block(self) -> int:
        return self.head

    async def fetch_range(self, from_block: int, to_block: int) -> list[PurchaseEvent]:
        self.fetched.append((from_block, to_block))
        return [e for e in self.history if from_block <= e.block_number <= to_block]

    async def stream(self):
        if not self.sessions:
            await asyncio.Event().wait()
            return

        session = self.sessions.pop(0)
        for event in session:
            await asyncio.sleep(0)
            yield event

        if self.on_close:
            self.on_close.pop(0)()
        raise TransportFailure("websocket closed")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'relayer.db'}"


@pytest.fixture
def store(database_url: str) -> RelayStore:
    store = RelayStore(database_url)
    yield store
    store.close()


@pytest.fixture
def settings(tmp_path: Path, database_url: str) -> Settings:
    return Settings(
        _env_file=None,
        private_key="0x" + "11" * 32,
        alchemy_api_key="test-key",
        database_url=database_url,
        tx_log_path=str(tmp_path / "tx_log.json"),
        reconnect_initial_delay=0.0,
        reconnect_max_delay=0.0,
        submit_retry_delay=0.0,
        confirmation_timeout_seconds=1.0,
        shutdown_grace_seconds=1.0,
    )


@pytest.fixture
def config(settings: Settings) -> RelayerConfig:
    return RelayerConfig(settings=settings)


@pytest.fixture
def client() -> FakeDestinationClient:
    return FakeDestinationClient()


@pytest.fixture
def subscriber() -> FakeSubscriber:
    return FakeSubscriber()
