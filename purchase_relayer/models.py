"""
Domain types for the purchase relayer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple, Optional, Union

from eth_utils import is_0x_prefixed, is_hex

from .errors import InvalidTransition

# Token decimals
STABLE_DECIMALS = 6
NATIVE_DECIMALS = 18

DEFAULT_GAS_LIMIT = 21_000


def is_well_formed_tx_hash(value: Any) -> bool:
    """A source tx hash must be a non-empty 0x-prefixed hex string."""
    if not isinstance(value, str) or len(value) <= 2:
        return False
    return is_0x_prefixed(value) and is_hex(value)


def expected_payout(
    stable_amount: int,
    conversion_rate: Union[str, Decimal],
    stable_decimals: int = STABLE_DECIMALS,
    native_decimals: int = NATIVE_DECIMALS,
) -> int:
    """
    Compute the native payout owed for a stable amount.

    `conversion_rate` is the number of stable units charged per native unit,
    so 1.0 stable at rate 0.1 buys 10.0 native.

    Examples:
        >>> expected_payout(1_000_000, "0.1")
        10000000000000000000
    """
    rate = Decimal(conversion_rate)
    if rate <= 0:
        raise ValueError(f"conversion rate must be positive: {conversion_rate}")

    stable = Decimal(stable_amount) / (Decimal(10) ** stable_decimals)
    native = stable / rate * (Decimal(10) ** native_decimals)
    return int(native.to_integral_value())


def format_units(value: int, decimals: int) -> str:
    """Render an integer minor-unit amount as a decimal string."""
    scaled = Decimal(value) / (Decimal(10) ** decimals)
    text = format(scaled.normalize(), "f")
    return text if "." in text else f"{text}.0"


class EventIdentity(NamedTuple):
    """Unique key of one on-chain log entry."""

    source_tx_hash: str
    log_index: int

    @classmethod
    def of(cls, source_tx_hash: str, log_index: int) -> "EventIdentity":
        return cls(source_tx_hash.lower(), int(log_index))

    def key(self) -> str:
        return f"{self.source_tx_hash}:{self.log_index}"


@dataclass(frozen=True)
class PurchaseEvent:
    """Purchase observed on the source chain."""

    buyer_address: str
    stable_amount: int  # stable minor units (6 decimals)
    payout_amount: int  # native minor units (18 decimals)
    source_tx_hash: str
    log_index: int
    block_number: int = 0

    @property
    def identity(self) -> EventIdentity:
        return EventIdentity.of(self.source_tx_hash, self.log_index)

    def to_dict(self) -> dict[str, Any]:
        return {
            "buyer": self.buyer_address,
            "stableAmount": str(self.stable_amount),
            "payoutAmount": str(self.payout_amount),
            "sourceTxHash": self.source_tx_hash,
            "logIndex": self.log_index,
            "blockNumber": self.block_number,
        }


class RelayStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (RelayStatus.CONFIRMED, RelayStatus.REJECTED)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


@dataclass
class RelayTransaction:
    """
    One payout attempt for a PurchaseEvent.

    Lifecycle: pending -> submitted -> confirmed, or pending/submitted -> rejected.
    """

    event: PurchaseEvent
    gas_limit: int = DEFAULT_GAS_LIMIT
    status: RelayStatus = RelayStatus.PENDING
    destination_tx_hash: Optional[str] = None
    error_reason: Optional[str] = None
    gas_used: Optional[int] = None
    nonce: Optional[int] = None
    attempts: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def identity(self) -> EventIdentity:
        return self.event.identity

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark_submitted(self, tx_hash: str, nonce: Optional[int] = None) -> None:
        if self.status not in (RelayStatus.PENDING, RelayStatus.SUBMITTED):
            raise InvalidTransition(f"cannot submit from {self.status.value}")
        self.status = RelayStatus.SUBMITTED
        self.destination_tx_hash = tx_hash
        if nonce is not None:
            self.nonce = nonce

    def mark_confirmed(self, gas_used: Optional[int] = None) -> None:
        if self.status is not RelayStatus.SUBMITTED:
            raise InvalidTransition(f"cannot confirm from {self.status.value}")
        self.status = RelayStatus.CONFIRMED
        self.gas_used = gas_used
        self.completed_at = datetime.now(timezone.utc)

    def mark_rejected(self, reason: str) -> None:
        if self.is_terminal:
            raise InvalidTransition(f"cannot reject from {self.status.value}")
        self.status = RelayStatus.REJECTED
        self.error_reason = reason
        self.completed_at = datetime.now(timezone.utc)

    def to_log_record(self) -> dict[str, Any]:
        """Entry written to the relay log."""
        return {
            **self.event.to_dict(),
            "stableAmountFormatted": format_units(self.event.stable_amount, STABLE_DECIMALS),
            "payoutAmountFormatted": format_units(self.event.payout_amount, NATIVE_DECIMALS),
            "status": self.status.value,
            "destinationTxHash": self.destination_tx_hash,
            "gasLimit": self.gas_limit,
            "gasUsed": self.gas_used,
            "error": self.error_reason,
            "attempts": self.attempts,
            "timestamp": (self.completed_at or self.created_at).isoformat(),
        }
