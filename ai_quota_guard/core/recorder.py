"""
Usage event lifecycle.

A billable event is opened pending at admission, charging quota in the same
atomic step that re-validates the admission, and is closed exactly once as
completed or failed.

    pending --complete--> completed
    pending --fail------> failed
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ai_quota_guard.storage.models import EventState, UsageEvent, ensure_utc, utc_now

from .errors import AdmissionRaceLostError, LedgerUnavailableError, ProtocolError
from .observability import ObservabilitySink
from .plans import PlanCatalog
from .rate_limiter import DenyReason, Subscriber, evaluate_windows
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Writer of the quota ledger.

    Args:
        repository: Ledger repository
        catalog: Plan catalog used for the admission re-check
        sink: Audit sink for lifecycle transitions
        refund_failed_calls: Return a failed event's units to the monthly
            counter. Off by default: attempts are charged.
    """

    def __init__(
        self,
        repository,
        catalog: PlanCatalog,
        sink: Optional[ObservabilitySink] = None,
        refund_failed_calls: bool = False
    ):
        self._repository = repository
        self._catalog = catalog
        self._sink = sink or ObservabilitySink()
        self.refund_failed_calls = refund_failed_calls

    def open(
        self,
        subscriber: Subscriber,
        unit_count: int,
        cost: Decimal,
        now: Optional[datetime] = None
    ) -> UsageEvent:
        """Charge quota and create a pending event in one atomic step.

        Args:
            subscriber: Caller that was admitted
            unit_count: Units admitted
            cost: Total cost quoted by the admission decision
            now: Open time (defaults to current UTC time)

        Returns:
            The pending usage event

        Raises:
            AdmissionRaceLostError: If admission is no longer valid; retry
                the whole admit/open sequence
            LedgerUnavailableError: If the store cannot be reached
        """
        if cost is None or cost < 0:
            raise ValueError("cost must be a non-negative amount")
        now = ensure_utc(now or utc_now())

        plan = self._catalog.get_plan(subscriber.plan_code)
        if plan is None:
            raise AdmissionRaceLostError(subscriber.user_id, DenyReason.PLAN_NOT_FOUND)

        try:
            event = self._repository.open_event(
                user_id=subscriber.user_id,
                plan_code=plan.code.value,
                monthly_limit=plan.limits.monthly_calls,
                unit_count=unit_count,
                cost=cost,
                check=lambda usage: evaluate_windows(plan, usage, unit_count),
                now=now,
            )
        except AdmissionRaceLostError as e:
            e.reason = DenyReason(e.reason)
            logger.warning(
                "Admission race lost for user %s (%d units): %s",
                subscriber.user_id, unit_count, e.reason.value
            )
            self._sink.race_lost(subscriber.user_id, e.reason.value, now)
            raise

        logger.info(
            "Opened usage event %d for user %s (%d units, cost %s)",
            event.id, event.user_id, event.unit_count, event.cost
        )
        self._sink.transition(event, "opened", now)
        return event

    def complete(
        self,
        event_id: int,
        response_time_ms: Optional[int] = None,
        tokens_used: Optional[TokenUsage] = None,
        now: Optional[datetime] = None
    ) -> UsageEvent:
        """Close a pending event as completed.

        Raises:
            EventAlreadyClosedError: If the event was already closed
            UnknownEventError: If no such event exists
            LedgerUnavailableError: If the store cannot be reached
        """
        if response_time_ms is not None and response_time_ms < 0:
            raise ValueError("response_time_ms cannot be negative")
        return self._close(
            event_id,
            EventState.COMPLETED,
            now,
            response_time_ms=response_time_ms,
            tokens_used=tokens_used,
        )

    def fail(
        self,
        event_id: int,
        error_class: str,
        now: Optional[datetime] = None,
        response_time_ms: Optional[int] = None
    ) -> UsageEvent:
        """Close a pending event as failed.

        The monthly charge made at open stays in place unless
        ``refund_failed_calls`` is set.

        Raises:
            EventAlreadyClosedError: If the event was already closed
            UnknownEventError: If no such event exists
            LedgerUnavailableError: If the store cannot be reached
        """
        if not error_class:
            raise ValueError("error_class is required")
        return self._close(
            event_id,
            EventState.FAILED,
            now,
            response_time_ms=response_time_ms,
            error_class=error_class,
            refund=self.refund_failed_calls,
        )

    def _close(
        self,
        event_id: int,
        state: EventState,
        now: Optional[datetime],
        **fields
    ) -> UsageEvent:
        now = ensure_utc(now or utc_now())
        try:
            event = self._repository.close_event(event_id, state, now, **fields)
        except ProtocolError as e:
            logger.warning("Rejected close of event %s as %s: %s", event_id, state.value, e)
            raise
        except LedgerUnavailableError:
            logger.error("Could not close event %s as %s", event_id, state.value)
            raise

        logger.info(
            "Usage event %d %s%s", event.id, state.value,
            f" ({event.error_class})" if event.error_class else ""
        )
        self._sink.transition(event, state.value, now, reason=event.error_class)
        return event
