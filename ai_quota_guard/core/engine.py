"""
Metering engine facade.

Wires the plan catalog, quota ledger, rate limiter, batch admission,
usage recorder, reaper and audit sink behind one object, and adds the
per-user usage report.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from ai_quota_guard.config.loader import EngineSettings
from ai_quota_guard.storage.models import (
    QuotaState,
    UsageEvent,
    UsageStats,
    WindowUsage,
    ensure_utc,
    period_end,
    utc_now,
)
from ai_quota_guard.storage.repository import LedgerRepository

from .admission import BatchAdmissionController
from .errors import AdmissionRaceLostError, InvalidPlanError
from .observability import ObservabilitySink
from .plans import DEFAULT_PLANS, Plan, PlanCatalog
from .rate_limiter import Decision, RateLimiter, RemainingQuota, Subscriber, remaining_quota
from .reaper import PendingEventReaper
from .recorder import UsageRecorder
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageReport:
    """Read-only view of a user's quota and lifetime usage."""
    user_id: str
    plan: Optional[Plan]
    quota: Optional[QuotaState]
    remaining: Optional[RemainingQuota]
    resets_at: Optional[datetime]
    stats: UsageStats


class MeteringEngine:
    """Entry point for the admit/open/complete/fail protocol."""

    def __init__(
        self,
        repository: LedgerRepository,
        catalog: Optional[PlanCatalog] = None,
        sink: Optional[ObservabilitySink] = None,
        refund_failed_calls: bool = False,
        reaper_timeout_seconds: float = 120.0,
        reaper_interval_seconds: float = 60.0
    ):
        self.repository = repository
        self.sink = sink or ObservabilitySink()
        self.catalog = catalog or PlanCatalog(repository)
        self.limiter = RateLimiter(repository, self.catalog, self.sink)
        self.batch_controller = BatchAdmissionController(self.limiter)
        self.recorder = UsageRecorder(
            repository, self.catalog, self.sink, refund_failed_calls
        )
        self.reaper = PendingEventReaper(
            self.recorder,
            repository,
            timeout_seconds=reaper_timeout_seconds,
            interval_seconds=reaper_interval_seconds,
        )

    @classmethod
    def from_settings(cls, settings: EngineSettings, initialize: bool = True) -> "MeteringEngine":
        """Build an engine from settings, creating the schema if requested."""
        repository = LedgerRepository(settings.db_path)
        if initialize:
            repository.initialize_schema()
        return cls(
            repository,
            catalog=PlanCatalog(repository, settings.plan_cache_ttl_seconds),
            refund_failed_calls=settings.refund_failed_calls,
            reaper_timeout_seconds=settings.reaper_timeout_seconds,
            reaper_interval_seconds=settings.reaper_interval_seconds,
        )

    def seed_plans(self, plans: Iterable[Plan] = DEFAULT_PLANS, replace: bool = False) -> int:
        """Publish plans that have no active version yet (all of them if replace).

        Returns:
            Number of plans published
        """
        published = 0
        for plan in plans:
            if replace or self.catalog.get_plan(plan.code) is None:
                self.catalog.publish(plan)
                published += 1
        return published

    def admit(
        self,
        subscriber: Subscriber,
        unit_count: int = 1,
        now: Optional[datetime] = None
    ) -> Decision:
        return self.limiter.admit(subscriber, unit_count, now)

    def admit_batch(
        self,
        subscriber: Subscriber,
        n: int,
        now: Optional[datetime] = None
    ) -> Decision:
        return self.batch_controller.admit_batch(subscriber, n, now)

    def open(
        self,
        subscriber: Subscriber,
        unit_count: int,
        cost: Decimal,
        now: Optional[datetime] = None
    ) -> UsageEvent:
        return self.recorder.open(subscriber, unit_count, cost, now)

    def complete(
        self,
        event_id: int,
        response_time_ms: Optional[int] = None,
        tokens_used: Optional[TokenUsage] = None,
        now: Optional[datetime] = None
    ) -> UsageEvent:
        return self.recorder.complete(event_id, response_time_ms, tokens_used, now)

    def fail(
        self,
        event_id: int,
        error_class: str,
        now: Optional[datetime] = None,
        response_time_ms: Optional[int] = None
    ) -> UsageEvent:
        return self.recorder.fail(event_id, error_class, now, response_time_ms)

    def admit_and_open(
        self,
        subscriber: Subscriber,
        unit_count: int = 1,
        batch: bool = False,
        now: Optional[datetime] = None,
        retries: int = 1
    ) -> Tuple[Decision, Optional[UsageEvent]]:
        """Run admission then open, retrying the pair after a lost race.

        Returns:
            (decision, event); event is None when the decision is a deny

        Raises:
            AdmissionRaceLostError: If every attempt lost the race
            LedgerUnavailableError: If open cannot reach the store
        """
        for attempt in range(retries + 1):
            if batch:
                decision = self.admit_batch(subscriber, unit_count, now)
            else:
                decision = self.admit(subscriber, unit_count, now)
            if not decision.allow:
                return decision, None
            try:
                return decision, self.open(subscriber, unit_count, decision.cost, now)
            except AdmissionRaceLostError:
                if attempt == retries:
                    raise
                logger.info(
                    "Retrying admission for user %s after lost race", subscriber.user_id
                )
        raise AssertionError("unreachable")

    def usage_report(
        self,
        user_id: str,
        plan_code: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> UsageReport:
        """Summarize a user's quota position and lifetime usage.

        Read-only: a period that has ended is reported as already reset
        without writing the reset.
        """
        now = ensure_utc(now or utc_now())
        quota = self.repository.get_quota_state(user_id)
        code = plan_code or (quota.plan_code if quota else None)
        plan = self.catalog.get_plan(code) if code else None
        stats = self.repository.get_usage_stats(user_id)

        remaining = resets_at = None
        if plan is not None:
            monthly = 0
            if quota is not None and now < period_end(quota.period_start):
                monthly = quota.monthly_calls
                resets_at = period_end(quota.period_start)
            daily, per_minute = self.repository.peek_window_counts(user_id, now)
            remaining = remaining_quota(
                plan, WindowUsage(monthly=monthly, daily=daily, per_minute=per_minute)
            )

        return UsageReport(
            user_id=user_id,
            plan=plan,
            quota=quota,
            remaining=remaining,
            resets_at=resets_at,
            stats=stats,
        )

    def history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Tuple[List[UsageEvent], int]:
        """Get one page of a user's usage events, newest first, and the total count."""
        return self.repository.get_history(user_id, page, limit, start, end)

    def change_plan(
        self,
        user_id: str,
        plan_code: str,
        now: Optional[datetime] = None
    ) -> QuotaState:
        """Move a user to another plan. Usage in the current period carries over.

        Raises:
            InvalidPlanError: If the plan code has no active version
        """
        plan = self.catalog.get_plan(plan_code)
        if plan is None:
            raise InvalidPlanError(f"No active plan for code: {plan_code}")
        state = self.repository.change_plan(user_id, plan.code.value, now)
        logger.info("User %s moved to plan %s", user_id, plan.code.value)
        return state
