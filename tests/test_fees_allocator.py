"""
Fee Model and Allocator Tests
=============================

Run with: pytest tests/ -v
"""

import random
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dispersal.fees import FeeModel, HOPS_PER_PATH
from dispersal.allocator import allocate, distribute_surplus, draw_targets
from dispersal.utils import AllocationImpossibleError, InsufficientFundsError


class TestFeeModel:
    """Tests for fee and reserve arithmetic."""

    def test_default_constants(self):
        fees = FeeModel()

        assert fees.fee_per_transfer == 105000
        assert fees.reserve == 890880
        assert fees.hop_cost == 995880

    def test_total_transaction_count(self):
        """One funding push plus three hops per path."""
        fees = FeeModel()
        for paths in range(1, 50):
            assert fees.total_transaction_count(paths) == 1 + 3 * paths

    def test_total_transaction_count_rejects_zero_paths(self):
        with pytest.raises(ValueError):
            FeeModel().total_transaction_count(0)

    def test_estimated_total_cost(self):
        fees = FeeModel()
        max_amount = 500_000_000

        expected = 7 * 105000 + 890880 * 3 + 2 * max_amount
        assert fees.estimated_total_cost(2, max_amount) == expected

    def test_estimated_total_cost_never_negative(self):
        fees = FeeModel(fee_per_transaction=0, safety_buffer=0, reserve=0)
        assert fees.estimated_total_cost(1, 0) == 0

        with pytest.raises(ValueError):
            fees.estimated_total_cost(1, -1)

    def test_total_reserve_covers_every_account(self):
        fees = FeeModel()
        paths = 4
        assert fees.total_reserve(paths, paths * HOPS_PER_PATH) == 890880 * (1 + paths + 3 * paths)

    def test_path_forwarding_cost(self):
        assert FeeModel().path_forwarding_cost() == 3 * 995880

    def test_transferable(self):
        fees = FeeModel()

        assert fees.transferable(fees.hop_cost) == 0
        assert fees.transferable(fees.hop_cost + 1) == 1
        assert fees.transferable(0) == 0
        assert not fees.clears_reserve(fees.hop_cost)
        assert fees.clears_reserve(fees.hop_cost + 1)

    def test_unit_conversion(self):
        fees = FeeModel(decimals=9)

        assert fees.to_units(0.1) == 100_000_000
        assert fees.to_units("1.5") == 1_500_000_000
        assert fees.to_units(Decimal("0.0000000019")) == 1  # truncates
        assert fees.from_units(250_000_000) == Decimal("0.25")

    def test_negative_constants_rejected(self):
        with pytest.raises(ValueError):
            FeeModel(reserve=-1)


class TestAllocator:
    """Tests for the amount allocator."""

    MIN = 100_000_000
    MAX = 500_000_000

    def test_sum_fits_available_and_amounts_cover_targets(self):
        """Allocator invariants hold across many random draws."""
        fees = FeeModel()

        for seed in range(50):
            rng = random.Random(seed)
            paths = rng.randint(1, 8)
            available = rng.randint(paths * (self.MAX + fees.path_forwarding_cost()), 10 ** 11)

            targets = draw_targets(paths, self.MIN, self.MAX, fees, random.Random(seed))
            amounts = allocate(available, paths, self.MIN, self.MAX, fees, random.Random(seed))

            assert len(amounts) == paths
            assert sum(amounts) <= available
            for amount, target in zip(amounts, targets):
                assert amount >= target

    def test_targets_include_forwarding_cost(self):
        fees = FeeModel()
        targets = draw_targets(20, self.MIN, self.MAX, fees, random.Random(7))

        for target in targets:
            base = target - fees.path_forwarding_cost()
            assert self.MIN <= base < self.MAX

    def test_equal_bounds(self):
        fees = FeeModel()
        targets = draw_targets(3, self.MIN, self.MIN, fees)

        assert targets == [self.MIN + fees.path_forwarding_cost()] * 3

    def test_insufficient_funds(self):
        """Targets above availability fail with required vs available."""
        fees = FeeModel()

        with pytest.raises(InsufficientFundsError) as exc_info:
            allocate(self.MIN, 2, self.MIN, self.MAX, fees)

        assert exc_info.value.available == self.MIN
        assert exc_info.value.required > self.MIN

    def test_nothing_available(self):
        with pytest.raises(AllocationImpossibleError):
            allocate(0, 1, self.MIN, self.MAX, FeeModel())

    def test_invalid_bounds(self):
        fees = FeeModel()

        with pytest.raises(ValueError):
            allocate(10 ** 12, 1, self.MAX, self.MIN, fees)
        with pytest.raises(ValueError):
            allocate(10 ** 12, 0, self.MIN, self.MAX, fees)
        with pytest.raises(ValueError):
            allocate(10 ** 12, 1, -1, self.MAX, fees)

    def test_single_path_takes_everything(self):
        fees = FeeModel()
        available = 10 ** 10

        assert allocate(available, 1, self.MIN, self.MAX, fees) == [available]

    def test_distribute_surplus_floors_shares(self):
        """Remainder of the floor division is left unassigned."""
        assert distribute_surplus([1, 2], 10) == [3, 6]
        assert distribute_surplus([5, 5], 10) == [5, 5]

    def test_distribute_surplus_rejects_overdraw(self):
        with pytest.raises(InsufficientFundsError):
            distribute_surplus([6, 6], 10)

    def test_insufficient_funds_reports_drawn_targets(self):
        """The shortfall error carries the exact sum of the drawn targets."""
        fees = FeeModel()
        targets = draw_targets(3, self.MIN, self.MAX, fees, random.Random(11))

        with pytest.raises(InsufficientFundsError) as exc_info:
            allocate(sum(targets) - 1, 3, self.MIN, self.MAX, fees, random.Random(11))

        assert exc_info.value.required == sum(targets)
        assert exc_info.value.available == sum(targets) - 1
        assert "available after fees" in str(exc_info.value)
