"""
Balance guard: validate destination-chain liquidity before a payout.
"""

from dataclasses import dataclass
from typing import Protocol

import structlog

from .errors import InsufficientFunds
from .models import NATIVE_DECIMALS, format_units

logger = structlog.get_logger()


class BalanceSource(Protocol):
    async def get_balance(self) -> int: ...


@dataclass(frozen=True)
class BalanceCheck:
    """Outcome of a balance check, amounts in wei. `fee` is the maximum gas cost."""

    available: int
    required: int
    fee: int = 0

    @property
    def total(self) -> int:
        return self.required + self.fee

    @property
    def sufficient(self) -> bool:
        return self.available >= self.total

    def raise_for_insufficient(self) -> None:
        if not self.sufficient:
            raise InsufficientFunds(self.available, self.total)

    def describe(self) -> str:
        message = (
            f"Insufficient balance: {format_units(self.available, NATIVE_DECIMALS)} available, "
            f"{format_units(self.required, NATIVE_DECIMALS)} required"
        )
        if self.fee:
            message += f" plus {format_units(self.fee, NATIVE_DECIMALS)} gas"
        return message


class BalanceGuard:
    """
    Reads the funding account's spendable balance right before submission.

    Advisory on its own; the executor calls it inside its single-flight
    queue so no other payout can spend between check and nonce assignment.
    """

    def __init__(self, source: BalanceSource):
        self.source = source

    async def check_sufficient(self, required: int, fee: int = 0) -> BalanceCheck:
        if required < 0 or fee < 0:
            raise ValueError(f"amounts must be non-negative: {required}, {fee}")

        available = await self.source.get_balance()
        check = BalanceCheck(available=available, required=required, fee=fee)

        if not check.sufficient:
            logger.warning(
                "insufficient_balance",
                available=format_units(available, NATIVE_DECIMALS),
                required=format_units(required, NATIVE_DECIMALS),
                fee=format_units(fee, NATIVE_DECIMALS),
            )
        return check
