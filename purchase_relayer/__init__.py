"""
Purchase Relayer

Watches a purchase contract on the source chain and pays each buyer the
purchased native amount on the destination chain, exactly once.

Usage:
    # Run the relayer
    purchase-relayer run

    # Inspect recorded outcomes
    purchase-relayer status

    # Serve the relay log for the dashboard
    purchase-relayer serve-log
"""

__version__ = "0.1.0"

from .config import RelayerConfig, Settings
from .errors import (
    ConfigurationError,
    ConfirmationTimeout,
    DecodeFailure,
    InsufficientFunds,
    SubmissionFailure,
    TransportFailure,
)
from .models import (
    ConnectionState,
    EventIdentity,
    PurchaseEvent,
    RelayStatus,
    RelayTransaction,
    expected_payout,
)
from .store import RelayStore
from .guard import IdempotencyGuard
from .balance import BalanceCheck, BalanceGuard
from .executor import RelayExecutor
from .subscriber import ChainLogSubscriber
from .supervisor import ConnectionSupervisor, ReconnectPolicy
from .relayer import PurchaseRelayer

__all__ = [
    "__version__",
    "RelayerConfig",
    "Settings",
    "ConfigurationError",
    "ConfirmationTimeout",
    "DecodeFailure",
    "InsufficientFunds",
    "SubmissionFailure",
    "TransportFailure",
    "ConnectionState",
    "EventIdentity",
    "PurchaseEvent",
    "RelayStatus",
    "RelayTransaction",
    "expected_payout",
    "RelayStore",
    "IdempotencyGuard",
    "BalanceCheck",
    "BalanceGuard",
    "RelayExecutor",
    "ChainLogSubscriber",
    "ConnectionSupervisor",
    "ReconnectPolicy",
    "PurchaseRelayer",
]
