"""
Amount Allocator
================

Splits the funds left after fees and reserves across the paths. Each path
gets a random base amount plus its forwarding cost, so landing balances do
not follow a uniform, inferrable pattern. Any surplus is spread in
proportion to those targets.
"""

import random
import secrets
from typing import List, Optional

from .fees import FeeModel
from .utils import (
    logger,
    format_units,
    AllocationImpossibleError,
    InsufficientFundsError,
)


def validate_bounds(num_paths: int, min_amount: int, max_amount: int):
    """Raise ValueError for a path count or amount range that cannot be drawn from."""
    if num_paths < 1:
        raise ValueError(f"At least one path is required, got {num_paths}")
    if min_amount < 0 or max_amount < 0:
        raise ValueError("Amounts cannot be negative")
    if min_amount > max_amount:
        raise ValueError(f"min_amount ({min_amount}) exceeds max_amount ({max_amount})")


def draw_targets(
    num_paths: int,
    min_amount: int,
    max_amount: int,
    fees: FeeModel,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """Random base in [min_amount, max_amount) plus the path forwarding cost, per path."""
    validate_bounds(num_paths, min_amount, max_amount)

    rng = rng or secrets.SystemRandom()
    forwarding = fees.path_forwarding_cost()
    targets = []
    for _ in range(num_paths):
        base = min_amount if max_amount == min_amount else rng.randrange(min_amount, max_amount)
        targets.append(base + forwarding)
    return targets


def distribute_surplus(targets: List[int], available: int, decimals: int = 9) -> List[int]:
    """
    Add ``available - sum(targets)`` to the targets in proportion to their size.

    Shares are floored; the remainder stays unassigned.
    """
    total = sum(targets)
    if total > available:
        raise InsufficientFundsError(
            f"Insufficient balance. Need {format_units(total, decimals)} but only have "
            f"{format_units(available, decimals)} available after fees.",
            required=total,
            available=available,
        )
    surplus = available - total
    if surplus == 0 or total == 0:
        return list(targets)
    return [target + surplus * target // total for target in targets]


def allocate(
    available: int,
    num_paths: int,
    min_amount: int,
    max_amount: int,
    fees: FeeModel,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """
    Compute the seed amount for every path.

    Args:
        available: Funds left after all fees and reserves (smallest units)
        num_paths: Number of paths
        min_amount: Lower bound of the random base amount (inclusive)
        max_amount: Upper bound of the random base amount (exclusive)
        fees: Fee model supplying the forwarding cost
        rng: Random source, defaults to the OS CSPRNG

    Returns:
        Per-path amounts with amounts[i] >= target_i and sum <= available

    Raises:
        AllocationImpossibleError: Nothing available to allocate
        InsufficientFundsError: Targets exceed the available funds
    """
    if available <= 0:
        raise AllocationImpossibleError(
            f"No funds available for allocation ({format_units(available, fees.decimals)})",
            required=0,
            available=available,
        )

    targets = draw_targets(num_paths, min_amount, max_amount, fees, rng)
    amounts = distribute_surplus(targets, available, fees.decimals)
    logger.debug(f"Allocated {sum(amounts)} of {available} across {num_paths} path(s)")
    return amounts
