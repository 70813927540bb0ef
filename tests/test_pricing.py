"""
Unit tests for pricing calculations.

Tests discount tier selection, rounding behavior, and determinism.
"""

from decimal import Decimal

import pytest

from ai_quota_guard.core.pricing import (
    calculate_cost,
    cost_to_micros,
    micros_to_cost,
    unit_price,
)
from ai_quota_guard.core.token_counter import TokenUsage, estimate_tokens

from conftest import build_plan


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_zero_tokens(self):
        """Verify zero token handling."""
        usage = TokenUsage(prompt_tokens=0, completion_tokens=0)
        assert usage.total_tokens == 0

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            TokenUsage(prompt_tokens=-1, completion_tokens=0)

    def test_estimate_tokens(self):
        """Roughly four characters per token, rounded up."""
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestUnitPrice:
    """Test discount tier selection."""

    def test_discount_at_1500_calls(self):
        """0.01 per call with a 0.95 tier at 1000 calls costs 0.0095."""
        plan = build_plan(price="0.01")
        assert calculate_cost(plan, 1500) == Decimal("0.0095")

    def test_base_price_below_first_threshold(self):
        plan = build_plan(price="0.01")
        assert unit_price(plan, 0) == Decimal("0.01")
        assert unit_price(plan, 999) == Decimal("0.01")

    def test_threshold_is_inclusive(self):
        plan = build_plan(price="0.01")
        assert unit_price(plan, 1000) == Decimal("0.0095")
        assert unit_price(plan, 10000) == Decimal("0.009")

    def test_highest_matching_tier_wins(self):
        plan = build_plan(price="0.01")
        assert unit_price(plan, 50000) == Decimal("0.009")

    def test_no_tiers_uses_base_price(self):
        plan = build_plan(price="0.02", tiers=())
        assert unit_price(plan, 1_000_000) == Decimal("0.02")

    def test_rounds_up_to_micro_unit(self):
        """Sub-micro prices are rounded up, never down."""
        plan = build_plan(price="0.0000015", tiers=())
        assert unit_price(plan, 0) == Decimal("0.000002")

    def test_free_plan_costs_nothing(self):
        plan = build_plan(price="0")
        assert calculate_cost(plan, 5000, 10) == Decimal("0")

    def test_negative_count_rejected(self):
        with pytest.raises(ValueError):
            unit_price(build_plan(), -1)


class TestCostCalculation:
    """Test total cost for single calls and batches."""

    def test_batch_priced_from_one_snapshot(self):
        """Every unit in a batch sees the same pre-request count."""
        plan = build_plan(price="0.01")
        # 999 calls before the batch: all 5 units at the base price
        assert calculate_cost(plan, 999, 5) == Decimal("0.05")

    def test_batch_cost_is_count_times_unit_price(self):
        plan = build_plan(price="0.01")
        assert calculate_cost(plan, 1500, 3) == Decimal("0.0285")

    def test_unit_count_must_be_positive(self):
        with pytest.raises(ValueError, match="unit_count must be >= 1"):
            calculate_cost(build_plan(), 0, 0)

    def test_deterministic(self):
        plan = build_plan(price="0.013")
        results = {calculate_cost(plan, 4321, 7) for _ in range(20)}
        assert len(results) == 1

    def test_price_never_increases_with_usage(self):
        plan = build_plan(price="0.01")
        counts = [0, 1, 500, 999, 1000, 1001, 5000, 9999, 10000, 20000]
        prices = [unit_price(plan, k) for k in counts]
        assert all(a >= b for a, b in zip(prices, prices[1:]))


class TestCostStorage:
    """Test integer micro-unit conversion."""

    def test_cost_to_micros(self):
        assert cost_to_micros(Decimal("0.0095")) == 9500
        assert cost_to_micros(Decimal("1")) == 1_000_000

    def test_micros_to_cost(self):
        assert micros_to_cost(9500) == Decimal("0.0095")
        assert micros_to_cost(0) == Decimal("0")
