"""
Destination-chain access: balance queries and native transfers.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.types import TxReceipt

from .errors import SubmissionFailure

logger = structlog.get_logger()

# Node error fragments that clear up on their own (fresh nonce, fresh gas price, later retry)
TRANSIENT_ERROR_MARKERS = (
    "nonce too low",
    "replacement transaction underpriced",
    "transaction underpriced",
    "already known",
    "known transaction",
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "header not found",
    "503",
    "502",
    "429",
)


def classify_error(exc: BaseException) -> SubmissionFailure:
    """Map a submission exception to a retryable or permanent failure."""
    if isinstance(exc, SubmissionFailure):
        return exc

    message = str(exc) or exc.__class__.__name__

    if isinstance(
        exc,
        (asyncio.TimeoutError, TimeExhausted, aiohttp.ClientError, ConnectionError, OSError),
    ):
        return SubmissionFailure(message, retryable=True)

    lowered = message.lower()
    if any(marker in lowered for marker in TRANSIENT_ERROR_MARKERS):
        return SubmissionFailure(message, retryable=True)

    return SubmissionFailure(message, retryable=False)


@dataclass
class SignedTransfer:
    """A signed native transfer, hash known before broadcast."""

    tx_hash: str
    raw_transaction: bytes
    nonce: int
    gas_price: int


class DestinationClient:
    """Async client for the destination chain's funding account."""

    def __init__(self, rpc_url: str, private_key: str, chain_id: int):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id

        logger.info(
            "destination_client_initialized",
            chain_id=chain_id,
            sender=self.account.address,
        )

    @property
    def address(self) -> str:
        return self.account.address

    async def get_balance(self) -> int:
        """Spendable balance of the funding account, including pending spends."""
        return await self.w3.eth.get_balance(self.address, "pending")

    async def get_nonce(self) -> int:
        return await self.w3.eth.get_transaction_count(self.address, "pending")

    async def get_confirmed_nonce(self) -> int:
        """Number of transactions from the funding account already mined."""
        return await self.w3.eth.get_transaction_count(self.address, "latest")

    async def get_gas_price(self) -> int:
        return await self.w3.eth.gas_price

    def sign_transfer(
        self,
        to: str,
        value: int,
        nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> SignedTransfer:
        """Build and sign a plain value transfer."""
        try:
            recipient = Web3.to_checksum_address(to)
        except (ValueError, TypeError) as e:
            raise SubmissionFailure(f"Invalid recipient {to!r}: {e}", retryable=False)

        tx = {
            "chainId": self.chain_id,
            "nonce": nonce,
            "to": recipient,
            "value": value,
            "gas": gas_limit,
            "gasPrice": gas_price,
        }
        signed = self.account.sign_transaction(tx)
        return SignedTransfer(
            tx_hash=Web3.to_hex(signed.hash),
            raw_transaction=signed.raw_transaction,
            nonce=nonce,
            gas_price=gas_price,
        )

    async def broadcast(self, signed: SignedTransfer) -> str:
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[TxReceipt]:
        """Block until the transaction is mined. None on timeout."""
        try:
            return await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted:
            return None

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def is_known(self, tx_hash: str) -> bool:
        """Whether the node still knows the transaction (mined or in mempool)."""
        try:
            tx: Any = await self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        return tx is not None

    async def close(self) -> None:
        await self.w3.provider.disconnect()
