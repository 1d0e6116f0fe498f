"""
Source-chain log subscriber for purchase events.
"""

from typing import Any, AsyncIterator, Optional

import structlog
from web3 import AsyncWeb3, Web3, WebSocketProvider

from .errors import DecodeFailure, TransportFailure
from .models import PurchaseEvent, is_well_formed_tx_hash

logger = structlog.get_logger()


def purchase_event_abi(event_name: str) -> list[dict[str, Any]]:
    """ABI for `<event_name>(address indexed buyer, uint256 stableAmount, uint256 payoutAmount)`."""
    return [
        {
            "anonymous": False,
            "inputs": [
                {"indexed": True, "name": "buyer", "type": "address"},
                {"indexed": False, "name": "stableAmount", "type": "uint256"},
                {"indexed": False, "name": "payoutAmount", "type": "uint256"},
            ],
            "name": event_name,
            "type": "event",
        }
    ]


def purchase_event_topic(event_name: str) -> str:
    return Web3.to_hex(Web3.keccak(text=f"{event_name}(address,uint256,uint256)"))


class ChainLogSubscriber:
    """
    Streams decoded PurchaseEvents from a WebSocket connection.

    A stream ends when the transport fails; call `connect()`,
    `subscribe()` and `stream()` again to resume.
    """

    def __init__(self, ws_url: str, contract_address: str, event_name: str = "PurchaseOccurred"):
        self.ws_url = ws_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.event_name = event_name
        self.topic = purchase_event_topic(event_name)

        self._w3: Optional[AsyncWeb3] = None
        self._subscription_id: Optional[str] = None

        # Decoding needs no connection
        self._event = getattr(
            Web3().eth.contract(address=self.contract_address, abi=purchase_event_abi(event_name)).events,
            event_name,
        )()

    @property
    def log_filter(self) -> dict[str, Any]:
        return {"address": self.contract_address, "topics": [self.topic]}

    async def connect(self) -> None:
        try:
            self._w3 = AsyncWeb3(WebSocketProvider(self.ws_url))
            await self._w3.provider.connect()
        except Exception as e:
            self._w3 = None
            raise TransportFailure(f"connect failed: {e}") from e

        logger.info(
            "source_connected",
            contract=self.contract_address,
            event_name=self.event_name,
        )

    async def disconnect(self) -> None:
        w3, self._w3 = self._w3, None
        self._subscription_id = None
        if w3 is None:
            return
        try:
            await w3.provider.disconnect()
        except Exception as e:
            logger.debug("source_disconnect_error", error=str(e))

    def _require_w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise TransportFailure("not connected")
        return self._w3

    async def subscribe(self) -> str:
        w3 = self._require_w3()
        try:
            self._subscription_id = await w3.eth.subscribe("logs", self.log_filter)
        except Exception as e:
            raise TransportFailure(f"subscribe failed: {e}") from e

        logger.info("source_subscribed", subscription_id=self._subscription_id)
        return self._subscription_id

    async def head_block(self) -> int:
        w3 = self._require_w3()
        try:
            return await w3.eth.block_number
        except Exception as e:
            raise TransportFailure(f"block_number failed: {e}") from e

    async def fetch_range(self, from_block: int, to_block: int) -> list[PurchaseEvent]:
        """Decoded purchase events in `[from_block, to_block]`."""
        w3 = self._require_w3()
        try:
            logs = await w3.eth.get_logs(
                {**self.log_filter, "fromBlock": from_block, "toBlock": to_block}
            )
        except Exception as e:
            raise TransportFailure(f"get_logs failed: {e}") from e

        return [event for event in (self._decode_or_skip(raw) for raw in logs) if event]

    async def stream(self) -> AsyncIterator[PurchaseEvent]:
        """Yield live events until the transport fails."""
        w3 = self._require_w3()
        try:
            async for message in w3.socket.process_subscriptions():
                raw = message.get("result") if isinstance(message, dict) else None
                if raw is None:
                    continue
                event = self._decode_or_skip(raw)
                if event is not None:
                    yield event
        except TransportFailure:
            raise
        except Exception as e:
            raise TransportFailure(f"stream closed: {e}") from e

        raise TransportFailure("stream closed by server")

    def decode_log(self, raw: Any) -> Optional[PurchaseEvent]:
        """
        Decode one raw log.

        Returns None for entries that must be discarded (re-org removals,
        missing or malformed transaction hash).

        Raises:
            DecodeFailure: The entry does not match the purchase event.
        """
        if raw.get("removed"):
            logger.warning("log_removed_skipped", raw=_describe(raw))
            return None

        tx_hash = raw.get("transactionHash")
        tx_hash = Web3.to_hex(tx_hash) if isinstance(tx_hash, (bytes, bytearray)) else tx_hash
        if not is_well_formed_tx_hash(tx_hash):
            logger.warning("log_without_tx_hash_discarded", raw=_describe(raw))
            return None

        try:
            decoded = self._event.process_log(raw)
            args = decoded["args"]
            return PurchaseEvent(
                buyer_address=Web3.to_checksum_address(args["buyer"]),
                stable_amount=int(args["stableAmount"]),
                payout_amount=int(args["payoutAmount"]),
                source_tx_hash=tx_hash,
                log_index=int(decoded["logIndex"]),
                block_number=int(decoded["blockNumber"] or 0),
            )
        except Exception as e:
            raise DecodeFailure(f"cannot decode {self.event_name} log: {e}", raw) from e

    def _decode_or_skip(self, raw: Any) -> Optional[PurchaseEvent]:
        try:
            return self.decode_log(raw)
        except DecodeFailure as e:
            logger.error("log_decode_failed", error=str(e), raw=_describe(raw))
            return None


def _describe(raw: Any) -> dict[str, Any]:
    tx_hash = raw.get("transactionHash")
    return {
        "transactionHash": Web3.to_hex(tx_hash) if isinstance(tx_hash, (bytes, bytearray)) else tx_hash,
        "logIndex": raw.get("logIndex"),
        "blockNumber": raw.get("blockNumber"),
    }
