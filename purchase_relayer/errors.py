"""
Error taxonomy for the purchase relayer.
"""

from typing import Optional


class RelayerError(Exception):
    """Base class for relayer errors."""


class ConfigurationError(RelayerError):
    """Startup-fatal misconfiguration (missing credentials, bad values)."""


class TransportFailure(RelayerError):
    """Source-chain connection dropped or errored."""


class DecodeFailure(RelayerError):
    """A single log entry could not be decoded into a PurchaseEvent."""

    def __init__(self, message: str, raw_log: Optional[dict] = None):
        super().__init__(message)
        self.raw_log = raw_log


class InsufficientFunds(RelayerError):
    """Funding account balance is below the requested payout."""

    def __init__(self, available: int, required: int):
        super().__init__(
            f"Insufficient balance: {available} wei available, {required} wei required"
        )
        self.available = available
        self.required = required


class SubmissionFailure(RelayerError):
    """
    Destination-chain submission failed.

    `retryable` separates transient failures (nonce races, RPC timeouts)
    from permanent ones (invalid recipient, reverted payout).
    """

    def __init__(self, reason: str, retryable: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.retryable = retryable


class ConfirmationTimeout(RelayerError):
    """Gave up waiting for a receipt; the transaction may still land."""

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"No receipt for {tx_hash} after {timeout}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class InvalidTransition(RelayerError):
    """RelayTransaction state change not allowed by its lifecycle."""
