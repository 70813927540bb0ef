"""
Data models for storage layer.

Defines ledger entities: per-user quota state and billable usage events.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from ai_quota_guard.core.token_counter import TokenUsage

# Trailing windows used for short-window counts
DAILY_WINDOW = timedelta(hours=24)
PER_MINUTE_WINDOW = timedelta(seconds=60)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_end(period_start: datetime) -> datetime:
    """Return period_start plus one calendar month.

    The day is clamped to the end of the target month (Jan 31 -> Feb 28/29).
    """
    month = period_start.month % 12 + 1
    year = period_start.year + (1 if period_start.month == 12 else 0)
    day = min(period_start.day, calendar.monthrange(year, month)[1])
    return period_start.replace(year=year, month=month, day=day)


class EventState(Enum):
    """Lifecycle states of a usage event."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class QuotaState:
    """Per-user running counters for the current monthly period."""
    user_id: str
    plan_code: str
    period_start: datetime
    monthly_calls: int
    last_call_at: Optional[datetime] = None
    total_calls: int = 0


@dataclass(frozen=True)
class WindowUsage:
    """Calls observed in each admission window."""
    monthly: int
    daily: int
    per_minute: int


@dataclass(frozen=True)
class UsageEvent:
    """One billable attempt and its outcome.

    Created pending at admission and closed exactly once. Closed events are
    never modified again.
    """
    id: int
    user_id: str
    plan_code: str
    requested_at: datetime
    unit_count: int
    state: EventState
    cost: Decimal
    tokens_used: Optional[TokenUsage] = None
    response_time_ms: Optional[int] = None
    error_class: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.state == EventState.PENDING


@dataclass(frozen=True)
class UsageStats:
    """Aggregate statistics over a user's usage events."""
    total_events: int
    total_units: int
    successful_events: int
    failed_events: int
    pending_events: int
    total_cost: Decimal
    avg_response_time_ms: Optional[float]
    total_tokens: int
