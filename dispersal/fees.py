"""
Fee Model
=========

Pure arithmetic for transfer fees, minimum-balance reserves and the
aggregate cost of a dispersal. All amounts are integers of the smallest
transferable unit.
"""

from decimal import Decimal, ROUND_DOWN
from dataclasses import dataclass
from typing import Union

# Intermediate accounts between the funding account and each landing account
HOPS_PER_PATH = 3


@dataclass(frozen=True)
class FeeModel:
    """Fee and reserve constants plus the formulas built on them."""
    fee_per_transaction: int = 5000
    safety_buffer: int = 100000
    reserve: int = 890880
    decimals: int = 9

    def __post_init__(self):
        for name in ("fee_per_transaction", "safety_buffer", "reserve", "decimals"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def fee_per_transfer(self) -> int:
        """Fee budgeted for one outgoing transfer, safety buffer included."""
        return self.fee_per_transaction + self.safety_buffer

    @property
    def hop_cost(self) -> int:
        """What an account must keep back to forward its balance once."""
        return self.fee_per_transfer + self.reserve

    def total_transaction_count(self, paths: int) -> int:
        """One funding push plus three relay hops per path."""
        _check_paths(paths)
        return 1 + HOPS_PER_PATH * paths

    def total_fees(self, paths: int) -> int:
        return self.total_transaction_count(paths) * self.fee_per_transfer

    def total_reserve(self, paths: int, intermediates: int) -> int:
        """Reserve for the funding account, every landing and every intermediate."""
        _check_paths(paths)
        if intermediates < 0:
            raise ValueError("intermediates cannot be negative")
        return self.reserve * (paths + 1 + intermediates)

    def path_forwarding_cost(self) -> int:
        """Fees and reserves consumed by one path's relay hops."""
        return HOPS_PER_PATH * self.hop_cost

    def estimated_total_cost(self, paths: int, max_amount: int) -> int:
        """
        Pre-flight estimate of the deposit a run needs.

        Advisory only; the orchestrator recomputes availability from the
        actual funding balance.
        """
        if max_amount < 0:
            raise ValueError("max_amount cannot be negative")
        return (
            self.total_transaction_count(paths) * self.fee_per_transfer
            + self.reserve * (paths + 1)
            + paths * max_amount
        )

    def clears_reserve(self, balance: int) -> bool:
        return balance > self.hop_cost

    def transferable(self, balance: int) -> int:
        """Amount that can leave an account while it keeps fee and reserve."""
        if not self.clears_reserve(balance):
            return 0
        return balance - self.hop_cost

    def to_units(self, amount: Union[int, float, str, Decimal]) -> int:
        """Convert a native-unit amount to smallest units (truncating)."""
        value = Decimal(str(amount)) * (Decimal(10) ** self.decimals)
        if value < 0:
            raise ValueError("amount cannot be negative")
        return int(value.to_integral_value(rounding=ROUND_DOWN))

    def from_units(self, units: int) -> Decimal:
        return Decimal(units) / (Decimal(10) ** self.decimals)


def _check_paths(paths: int):
    if paths < 1:
        raise ValueError(f"At least one path is required, got {paths}")
