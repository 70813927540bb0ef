"""
Unit tests for multi-window admission.

Tests limit evaluation order, remaining-quota snapshots, monthly resets,
and fail-closed behavior when the ledger is unavailable.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from ai_quota_guard.core.errors import LedgerUnavailableError
from ai_quota_guard.core.plans import PlanCatalog
from ai_quota_guard.core.rate_limiter import (
    DenyReason,
    RateLimiter,
    Subscriber,
    evaluate_windows,
    remaining_quota,
)
from ai_quota_guard.storage.models import WindowUsage, period_end

from conftest import NOW, build_plan

USER = Subscriber(user_id="u1", plan_code="basic")


def _call(engine, now=NOW, units=1):
    decision, event = engine.admit_and_open(USER, units, now=now)
    assert decision.allow, decision.reason
    return event


class TestEvaluateWindows:
    """Test the pure window check."""

    def test_first_violation_wins(self):
        plan = build_plan(monthly=5, daily=5, per_minute=5)
        usage = WindowUsage(monthly=5, daily=5, per_minute=5)
        assert evaluate_windows(plan, usage) == DenyReason.MONTHLY_LIMIT_EXCEEDED

    def test_daily_before_per_minute(self):
        plan = build_plan(monthly=100, daily=5, per_minute=5)
        usage = WindowUsage(monthly=5, daily=5, per_minute=5)
        assert evaluate_windows(plan, usage) == DenyReason.DAILY_LIMIT_EXCEEDED

    def test_unit_count_is_added(self):
        plan = build_plan(monthly=10)
        usage = WindowUsage(monthly=8, daily=0, per_minute=0)
        assert evaluate_windows(plan, usage, 2) is None
        assert evaluate_windows(plan, usage, 3) == DenyReason.MONTHLY_LIMIT_EXCEEDED

    def test_remaining_clamped_at_zero(self):
        plan = build_plan(monthly=10, daily=5, per_minute=2)
        remaining = remaining_quota(plan, WindowUsage(monthly=12, daily=1, per_minute=2))
        assert (remaining.monthly, remaining.daily, remaining.per_minute) == (0, 4, 0)


class TestAdmission:
    """Test admission decisions against the ledger."""

    def test_monthly_limit_two_calls(self, make_engine):
        """Two calls fit a monthly limit of 2; the third is denied."""
        engine = make_engine(build_plan(monthly=2))
        _call(engine)
        _call(engine, NOW + timedelta(seconds=1))

        decision = engine.admit(USER, now=NOW + timedelta(seconds=2))
        assert decision.allow is False
        assert decision.reason == DenyReason.MONTHLY_LIMIT_EXCEEDED
        assert decision.remaining.monthly == 0
        assert decision.cost is None

    def test_daily_limit_with_monthly_quota_left(self, make_engine):
        """The sixth call in one rolling day is denied on the daily limit."""
        engine = make_engine(build_plan(monthly=1000, daily=5))
        for i in range(5):
            _call(engine, NOW + timedelta(minutes=i))

        decision = engine.admit(USER, now=NOW + timedelta(hours=3))
        assert decision.reason == DenyReason.DAILY_LIMIT_EXCEEDED
        assert decision.remaining.monthly == 995
        assert decision.remaining.daily == 0

    def test_daily_window_rolls(self, make_engine):
        engine = make_engine(build_plan(daily=1))
        _call(engine)
        assert engine.admit(USER, now=NOW + timedelta(hours=23)).allow is False
        assert engine.admit(USER, now=NOW + timedelta(hours=24, seconds=1)).allow is True

    def test_per_minute_limit(self, make_engine):
        engine = make_engine(build_plan(per_minute=2))
        _call(engine)
        _call(engine, NOW + timedelta(seconds=10))

        decision = engine.admit(USER, now=NOW + timedelta(seconds=30))
        assert decision.reason == DenyReason.RATE_LIMIT_EXCEEDED
        assert decision.remaining.per_minute == 0
        assert engine.admit(USER, now=NOW + timedelta(seconds=61)).allow is True

    def test_failed_calls_free_short_windows(self, make_engine):
        engine = make_engine(build_plan(daily=1))
        event = _call(engine)
        engine.fail(event.id, "TimeoutError", now=NOW)
        assert engine.admit(USER, now=NOW + timedelta(seconds=1)).allow is True

    def test_allow_carries_cost_and_remaining(self, make_engine):
        engine = make_engine(build_plan(monthly=10, daily=8, per_minute=4))
        _call(engine)

        decision = engine.admit(USER, 2, NOW)
        assert decision.allow is True
        assert decision.reason is None
        assert decision.unit_count == 2
        assert decision.cost == Decimal("0.02")
        assert (decision.remaining.monthly, decision.remaining.daily,
                decision.remaining.per_minute) == (9, 7, 3)
        assert decision.resets_at == period_end(NOW)

    def test_admission_does_not_charge(self, make_engine, repository):
        engine = make_engine(build_plan(monthly=1))
        for _ in range(3):
            assert engine.admit(USER, now=NOW).allow is True
        assert repository.get_quota_state("u1").monthly_calls == 0

    def test_discounted_cost_quoted(self, make_engine):
        engine = make_engine(build_plan(monthly=5000, daily=5000, per_minute=5000))
        engine.repository.open_event(
            "u1", "basic", 5000, 1500, Decimal("15"), lambda usage: None, NOW
        )
        decision = engine.admit(USER, now=NOW)
        assert decision.cost == Decimal("0.0095")

    def test_unit_count_must_be_positive(self, make_engine):
        engine = make_engine(build_plan())
        with pytest.raises(ValueError):
            engine.admit(USER, 0, NOW)


class TestPlanResolution:
    """Test denials for unknown and retired plans."""

    def test_unknown_plan_code(self, make_engine):
        engine = make_engine(build_plan())
        decision = engine.admit(Subscriber("u1", "gold"), now=NOW)
        assert decision.reason == DenyReason.PLAN_NOT_FOUND
        assert decision.remaining is None

    def test_plan_without_active_version(self, make_engine):
        engine = make_engine(build_plan())
        engine.catalog.deactivate("basic")
        decision = engine.admit(USER, now=NOW)
        assert decision.reason == DenyReason.PLAN_NOT_FOUND


class TestReadOnlyAdmission:
    """Test that admission leaves the ledger untouched."""

    def test_new_user_gets_no_ledger_row(self, make_engine, repository):
        engine = make_engine(build_plan())
        decision = engine.admit(Subscriber("newbie", "basic"), now=NOW)

        assert decision.allow is True
        assert decision.remaining.monthly == 1000
        assert decision.resets_at == period_end(NOW)
        assert repository.get_quota_state("newbie") is None

    def test_denied_new_user_gets_no_ledger_row(self, make_engine, repository):
        engine = make_engine(build_plan(monthly=0))
        decision = engine.admit(Subscriber("newbie", "basic"), now=NOW)

        assert decision.reason == DenyReason.MONTHLY_LIMIT_EXCEEDED
        assert repository.get_quota_state("newbie") is None

    def test_batch_admission_gets_no_ledger_row(self, make_engine, repository):
        engine = make_engine(build_plan(batch_size=5, batch_processing=True))
        assert engine.admit_batch(Subscriber("newbie", "basic"), 3, now=NOW).allow is True
        assert repository.get_quota_state("newbie") is None


class TestMonthlyReset:
    """Test that ended periods are reset before evaluation."""

    def test_exhausted_month_resets(self, make_engine, repository):
        engine = make_engine(build_plan(monthly=2))
        _call(engine)
        _call(engine)
        assert engine.admit(USER, now=NOW + timedelta(days=10)).allow is False

        next_month = period_end(NOW)
        decision = engine.admit(USER, now=next_month)
        assert decision.allow is True
        assert decision.remaining.monthly == 2
        assert decision.resets_at == period_end(next_month)
        assert repository.get_quota_state("u1").period_start == next_month

    def test_admit_does_not_reset_inside_period(self, make_engine, repository):
        engine = make_engine(build_plan())
        _call(engine)
        engine.admit(USER, now=NOW + timedelta(days=10))
        state = repository.get_quota_state("u1")
        assert state.period_start == NOW
        assert state.monthly_calls == 1

    def test_reset_restores_full_price(self, make_engine):
        engine = make_engine(build_plan(monthly=5000, daily=5000, per_minute=5000))
        engine.repository.open_event(
            "u1", "basic", 5000, 1500, Decimal("15"), lambda usage: None, NOW
        )
        decision = engine.admit(USER, now=NOW + timedelta(days=45))
        assert decision.cost == Decimal("0.01")


class TestStorageFailure:
    """Test fail-closed admission."""

    def test_unavailable_ledger_denies_indeterminate(self):
        repository = Mock()
        repository.get_window_usage.side_effect = LedgerUnavailableError(
            "disk I/O error", "window_usage"
        )
        catalog = Mock(spec=PlanCatalog)
        catalog.get_plan.return_value = build_plan()
        limiter = RateLimiter(repository, catalog)

        decision = limiter.admit(USER, now=NOW)
        assert decision.allow is False
        assert decision.reason == DenyReason.STORAGE_UNAVAILABLE
        assert decision.indeterminate is True

    def test_unavailable_catalog_denies(self):
        catalog = Mock(spec=PlanCatalog)
        catalog.get_plan.side_effect = LedgerUnavailableError("locked", "fetch_plan")
        limiter = RateLimiter(Mock(), catalog)

        decision = limiter.admit(USER, now=NOW)
        assert decision.reason == DenyReason.STORAGE_UNAVAILABLE
        assert decision.indeterminate is True
