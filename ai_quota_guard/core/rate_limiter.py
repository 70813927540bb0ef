"""
Multi-window rate limiting.

Evaluates monthly, daily (rolling 24h) and per-minute (trailing 60s) limits
for a subscriber and returns an admit/deny decision with the remaining quota
in every window.

Evaluation Order (first failure wins):
1. Plan resolution - unknown or inactive plans are denied
2. Monthly reset - an ended period is reset before it is evaluated
3. Monthly limit
4. Daily limit
5. Per-minute limit

Admission only reads (apart from the monthly reset). Charging quota happens
in UsageRecorder.open, which repeats the window checks atomically.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from ai_quota_guard.storage.models import (
    QuotaState,
    WindowUsage,
    ensure_utc,
    period_end,
    utc_now,
)

from .errors import LedgerUnavailableError
from .observability import ObservabilitySink
from .plans import Plan, PlanCatalog
from .pricing import calculate_cost

logger = logging.getLogger(__name__)


class DenyReason(str, Enum):
    """Machine-readable reasons for a deny decision."""
    PLAN_NOT_FOUND = "plan-not-found"
    MONTHLY_LIMIT_EXCEEDED = "monthly-limit-exceeded"
    DAILY_LIMIT_EXCEEDED = "daily-limit-exceeded"
    RATE_LIMIT_EXCEEDED = "rate-limit-exceeded"
    BATCH_TOO_LARGE = "batch-too-large"
    BATCH_NOT_SUPPORTED = "batch-not-supported"
    STORAGE_UNAVAILABLE = "storage-unavailable"


@dataclass(frozen=True)
class Subscriber:
    """Authenticated caller as supplied by the identity collaborator."""
    user_id: str
    plan_code: str


@dataclass(frozen=True)
class RemainingQuota:
    """Calls left in each window (limit - observed, never below zero)."""
    monthly: int
    daily: int
    per_minute: int


@dataclass(frozen=True)
class Decision:
    """Outcome of an admission check."""
    allow: bool
    reason: Optional[DenyReason]
    remaining: Optional[RemainingQuota]
    unit_count: int = 1
    cost: Optional[Decimal] = None
    resets_at: Optional[datetime] = None
    indeterminate: bool = False

    @classmethod
    def deny(
        cls,
        reason: DenyReason,
        unit_count: int = 1,
        remaining: Optional[RemainingQuota] = None,
        resets_at: Optional[datetime] = None,
        indeterminate: bool = False
    ) -> "Decision":
        return cls(
            allow=False,
            reason=reason,
            remaining=remaining,
            unit_count=unit_count,
            resets_at=resets_at,
            indeterminate=indeterminate,
        )


# Extra gate run after plan resolution, before the window checks
PlanGate = Callable[[Plan], Optional[DenyReason]]


def evaluate_windows(
    plan: Plan,
    usage: WindowUsage,
    unit_count: int = 1
) -> Optional[DenyReason]:
    """Check monthly, daily and per-minute limits in order.

    Shared by admission and by the atomic re-check in open, so both apply
    identical rules.

    Returns:
        The first violated limit, or None if unit_count more calls fit
    """
    limits = plan.limits
    if usage.monthly + unit_count > limits.monthly_calls:
        return DenyReason.MONTHLY_LIMIT_EXCEEDED
    if usage.daily + unit_count > limits.daily_calls:
        return DenyReason.DAILY_LIMIT_EXCEEDED
    if usage.per_minute + unit_count > limits.per_minute:
        return DenyReason.RATE_LIMIT_EXCEEDED
    return None


def remaining_quota(plan: Plan, usage: WindowUsage) -> RemainingQuota:
    """Compute remaining calls per window, clamped at zero."""
    limits = plan.limits
    return RemainingQuota(
        monthly=max(limits.monthly_calls - usage.monthly, 0),
        daily=max(limits.daily_calls - usage.daily, 0),
        per_minute=max(limits.per_minute - usage.per_minute, 0),
    )


class RateLimiter:
    """Read-only admission evaluation against a subscriber's plan."""

    def __init__(
        self,
        repository,
        catalog: PlanCatalog,
        sink: Optional[ObservabilitySink] = None
    ):
        self._repository = repository
        self._catalog = catalog
        self._sink = sink or ObservabilitySink()

    def admit(
        self,
        subscriber: Subscriber,
        unit_count: int = 1,
        now: Optional[datetime] = None,
        gate: Optional[PlanGate] = None
    ) -> Decision:
        """Decide whether ``unit_count`` calls may proceed.

        Never raises for policy or storage problems: storage failures yield
        a ``storage-unavailable`` deny with ``indeterminate`` set.

        Args:
            subscriber: Authenticated caller and plan code
            unit_count: Number of work items requested
            now: Evaluation time (defaults to current UTC time)
            gate: Optional plan-level check run before the window checks

        Returns:
            Decision with reason and remaining quota snapshot

        Raises:
            ValueError: If unit_count < 1
        """
        if unit_count < 1:
            raise ValueError("unit_count must be >= 1")
        now = ensure_utc(now or utc_now())

        try:
            plan = self._catalog.get_plan(subscriber.plan_code)
            if plan is None:
                decision = Decision.deny(DenyReason.PLAN_NOT_FOUND, unit_count)
            else:
                state, usage = self._repository.get_window_usage(
                    subscriber.user_id, plan.code.value, now
                )
                decision = self._decide(plan, state, usage, unit_count, gate)
        except LedgerUnavailableError as e:
            logger.error(
                "Admission failed closed for user %s: %s", subscriber.user_id, e
            )
            decision = Decision.deny(
                DenyReason.STORAGE_UNAVAILABLE, unit_count, indeterminate=True
            )

        if not decision.allow:
            logger.warning(
                "Admission denied: user=%s plan=%s units=%d reason=%s remaining=%s",
                subscriber.user_id, subscriber.plan_code, unit_count,
                decision.reason.value, decision.remaining
            )
        self._sink.admission(subscriber.user_id, decision, subscriber.plan_code, now)
        return decision

    def _decide(
        self,
        plan: Plan,
        state: QuotaState,
        usage: WindowUsage,
        unit_count: int,
        gate: Optional[PlanGate]
    ) -> Decision:
        reason = gate(plan) if gate is not None else None
        if reason is None:
            reason = evaluate_windows(plan, usage, unit_count)

        remaining = remaining_quota(plan, usage)
        resets_at = period_end(state.period_start)
        if reason is not None:
            return Decision.deny(reason, unit_count, remaining, resets_at)

        return Decision(
            allow=True,
            reason=None,
            remaining=remaining,
            unit_count=unit_count,
            cost=calculate_cost(plan, state.monthly_calls, unit_count),
            resets_at=resets_at,
        )
