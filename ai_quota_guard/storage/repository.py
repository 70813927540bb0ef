"""
Repository pattern for the quota ledger.

Handles persistence of plans, per-user quota state, and usage events. All
mutations that the admission protocol depends on are single transactions
guarded by conditional updates, so concurrent callers can never observe or
produce a partially applied change.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterator, List, Optional, Tuple

from ai_quota_guard.core.errors import (
    AdmissionRaceLostError,
    EventAlreadyClosedError,
    LedgerUnavailableError,
    UnknownEventError,
)
from ai_quota_guard.core.pricing import cost_to_micros, micros_to_cost
from ai_quota_guard.core.token_counter import TokenUsage

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import (
    DAILY_WINDOW,
    PER_MINUTE_WINDOW,
    EventState,
    QuotaState,
    UsageEvent,
    UsageStats,
    WindowUsage,
    ensure_utc,
    period_end,
    utc_now,
)

logger = logging.getLogger(__name__)

# Re-check invoked inside open_event; returns a deny reason or None
AdmissionCheck = Callable[[WindowUsage], Optional[str]]

# States that count against short windows
_COUNTED_STATES = (EventState.PENDING.value, EventState.COMPLETED.value)

_EVENT_COLUMNS = """
    id, user_id, plan_code, requested_at, unit_count, state, cost_micros,
    prompt_tokens, completion_tokens, response_time_ms, error_class, completed_at
"""

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS plan (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        code TEXT NOT NULL,
        version INTEGER NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        definition TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (code, version)
    )
    """,
    # At most one active version per plan code
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ix_plan_active_code
        ON plan (code) WHERE is_active = 1
    """,
    """
    CREATE TABLE IF NOT EXISTS quota_state (
        user_id TEXT PRIMARY KEY,
        plan_code TEXT NOT NULL,
        period_start TEXT NOT NULL,
        monthly_calls INTEGER NOT NULL DEFAULT 0 CHECK (monthly_calls >= 0),
        last_call_at TEXT,
        total_calls INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL REFERENCES quota_state (user_id),
        plan_code TEXT NOT NULL,
        requested_at TEXT NOT NULL,
        unit_count INTEGER NOT NULL CHECK (unit_count >= 1),
        state TEXT NOT NULL CHECK (state IN ('pending', 'completed', 'failed')),
        cost_micros INTEGER NOT NULL,
        prompt_tokens INTEGER,
        completion_tokens INTEGER,
        response_time_ms INTEGER,
        error_class TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_usage_event_user_time
        ON usage_event (user_id, requested_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_usage_event_state_time
        ON usage_event (state, requested_at)
    """,
)


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string order matches time order."""
    return ensure_utc(value).replace(tzinfo=None).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def _row_to_state(row: tuple) -> QuotaState:
    return QuotaState(
        user_id=row[0],
        plan_code=row[1],
        period_start=_parse_ts(row[2]),
        monthly_calls=row[3],
        last_call_at=_parse_ts(row[4]),
        total_calls=row[5],
    )


def _row_to_event(row: tuple) -> UsageEvent:
    tokens = None
    if row[7] is not None and row[8] is not None:
        tokens = TokenUsage(prompt_tokens=row[7], completion_tokens=row[8])
    return UsageEvent(
        id=row[0],
        user_id=row[1],
        plan_code=row[2],
        requested_at=_parse_ts(row[3]),
        unit_count=row[4],
        state=EventState(row[5]),
        cost=micros_to_cost(row[6]),
        tokens_used=tokens,
        response_time_ms=row[9],
        error_class=row[10],
        completed_at=_parse_ts(row[11]),
    )


class LedgerRepository:
    """Repository for plans, quota state and usage events.

    Every call opens its own connection, so one instance can be shared by
    any number of threads. SQLite errors raised while talking to the store
    surface as LedgerUnavailableError.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _connect(self, operation: str) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            logger.error("Cannot open ledger %s: %s", self.db_path, e)
            raise LedgerUnavailableError(
                f"Ledger unavailable during {operation}: {e}", operation
            ) from e
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as e:
            logger.error("Ledger error during %s: %s", operation, e)
            raise LedgerUnavailableError(
                f"Ledger unavailable during {operation}: {e}", operation
            ) from e
        finally:
            conn.close()

    def initialize_schema(self) -> None:
        """Create ledger tables and indexes if they don't exist."""
        with self._connect("initialize_schema") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            with transaction(conn):
                for statement in _SCHEMA:
                    conn.execute(statement)

    # Plans

    def publish_plan_version(
        self,
        code: str,
        definition: str,
        now: Optional[datetime] = None
    ) -> int:
        """Insert a new active plan version and retire the current one.

        Returns:
            The new version number
        """
        now = now or utc_now()
        with self._connect("publish_plan") as conn:
            with transaction(conn):
                row = conn.execute(
                    "SELECT COALESCE(MAX(version), 0) FROM plan WHERE code = ?",
                    (code,)
                ).fetchone()
                version = row[0] + 1
                conn.execute(
                    "UPDATE plan SET is_active = 0 WHERE code = ? AND is_active = 1",
                    (code,)
                )
                conn.execute(
                    """
                    INSERT INTO plan (code, version, is_active, definition, created_at)
                    VALUES (?, ?, 1, ?, ?)
                    """,
                    (code, version, definition, _ts(now))
                )
            return version

    def fetch_active_plan(self, code: str) -> Optional[Tuple[int, str]]:
        """Fetch (version, definition) of the active plan for a code."""
        with self._connect("fetch_plan") as conn:
            row = conn.execute(
                "SELECT version, definition FROM plan WHERE code = ? AND is_active = 1",
                (code,)
            ).fetchone()
            return (row[0], row[1]) if row else None

    def fetch_plan_rows(
        self,
        include_inactive: bool = False
    ) -> List[Tuple[str, int, bool, str]]:
        """Fetch (code, version, is_active, definition) rows."""
        with self._connect("fetch_plans") as conn:
            query = "SELECT code, version, is_active, definition FROM plan"
            if not include_inactive:
                query += " WHERE is_active = 1"
            query += " ORDER BY code, version"
            return [
                (row[0], row[1], bool(row[2]), row[3])
                for row in conn.execute(query).fetchall()
            ]

    def deactivate_plan(self, code: str) -> bool:
        """Retire the active version of a plan. Returns True if one was active."""
        with self._connect("deactivate_plan") as conn:
            cursor = conn.execute(
                "UPDATE plan SET is_active = 0 WHERE code = ? AND is_active = 1",
                (code,)
            )
            return cursor.rowcount > 0

    # Quota state

    def _fetch_state(self, conn: sqlite3.Connection, user_id: str) -> Optional[QuotaState]:
        row = conn.execute(
            """
            SELECT user_id, plan_code, period_start, monthly_calls,
                   last_call_at, total_calls
            FROM quota_state WHERE user_id = ?
            """,
            (user_id,)
        ).fetchone()
        return _row_to_state(row) if row else None

    def _fetch_or_create_state(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        plan_code: str,
        now: datetime
    ) -> QuotaState:
        state = self._fetch_state(conn, user_id)
        if state is None:
            conn.execute(
                """
                INSERT OR IGNORE INTO quota_state (user_id, plan_code, period_start)
                VALUES (?, ?, ?)
                """,
                (user_id, plan_code, _ts(now))
            )
            state = self._fetch_state(conn, user_id)
        return state

    def _apply_reset(
        self,
        conn: sqlite3.Connection,
        state: QuotaState,
        now: datetime
    ) -> QuotaState:
        """Start a new monthly period if the current one has ended.

        Compare-and-set on period_start: a second reset at the same instant
        (or one that lost a race) matches no row and changes nothing.
        """
        if now < period_end(state.period_start):
            return state
        cursor = conn.execute(
            """
            UPDATE quota_state SET monthly_calls = 0, period_start = ?
            WHERE user_id = ? AND period_start = ?
            """,
            (_ts(now), state.user_id, _ts(state.period_start))
        )
        if cursor.rowcount:
            logger.info(
                "Monthly period reset for user %s (previous usage %d)",
                state.user_id, state.monthly_calls
            )
        return self._fetch_state(conn, state.user_id)

    def get_quota_state(self, user_id: str) -> Optional[QuotaState]:
        """Get a user's quota state, or None if the user has no ledger yet."""
        with self._connect("get_quota_state") as conn:
            return self._fetch_state(conn, user_id)

    def change_plan(
        self,
        user_id: str,
        plan_code: str,
        now: Optional[datetime] = None
    ) -> QuotaState:
        """Move a user to another plan, keeping the current period's usage."""
        now = ensure_utc(now or utc_now())
        with self._connect("change_plan") as conn:
            with transaction(conn):
                self._fetch_or_create_state(conn, user_id, plan_code, now)
                conn.execute(
                    "UPDATE quota_state SET plan_code = ? WHERE user_id = ?",
                    (plan_code, user_id)
                )
                return self._fetch_state(conn, user_id)

    # Window usage

    def _window_counts(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        now: datetime
    ) -> Tuple[int, int]:
        """Sum units of pending/completed events in the trailing windows.

        Both window starts are inclusive. The scan is bounded by the daily
        window through the (user_id, requested_at) index.
        """
        day_start = _ts(now - DAILY_WINDOW)
        minute_start = _ts(now - PER_MINUTE_WINDOW)
        row = conn.execute(
            """
            SELECT
                COALESCE(SUM(unit_count), 0),
                COALESCE(SUM(CASE WHEN requested_at >= ? THEN unit_count ELSE 0 END), 0)
            FROM usage_event
            WHERE user_id = ?
              AND requested_at >= ?
              AND requested_at <= ?
              AND state IN (?, ?)
            """,
            (minute_start, user_id, day_start, _ts(now)) + _COUNTED_STATES
        ).fetchone()
        return row[0], row[1]

    def peek_window_counts(
        self,
        user_id: str,
        now: Optional[datetime] = None
    ) -> Tuple[int, int]:
        """Report (daily, per_minute) unit counts without touching quota state."""
        now = ensure_utc(now or utc_now())
        with self._connect("peek_window_counts") as conn:
            return self._window_counts(conn, user_id, now)

    def get_window_usage(
        self,
        user_id: str,
        plan_code: str,
        now: Optional[datetime] = None
    ) -> Tuple[QuotaState, WindowUsage]:
        """Report usage in every window, applying a monthly reset only if due.

        Reads run in a deferred transaction. A user with no ledger yet is
        reported against a fresh period starting at ``now`` without creating
        a row; the write lock is taken only when a stored period has ended.
        """
        now = ensure_utc(now or utc_now())
        with self._connect("window_usage") as conn:
            with transaction(conn, immediate=False):
                state = self._fetch_state(conn, user_id)
                daily, per_minute = self._window_counts(conn, user_id, now)
            if state is None:
                state = QuotaState(
                    user_id=user_id,
                    plan_code=plan_code,
                    period_start=now,
                    monthly_calls=0,
                )
            elif now >= period_end(state.period_start):
                with transaction(conn):
                    state = self._apply_reset(conn, state, now)
        return state, WindowUsage(
            monthly=state.monthly_calls,
            daily=daily,
            per_minute=per_minute,
        )

    # Usage events

    def open_event(
        self,
        user_id: str,
        plan_code: str,
        monthly_limit: int,
        unit_count: int,
        cost: Decimal,
        check: AdmissionCheck,
        now: Optional[datetime] = None
    ) -> UsageEvent:
        """Atomically re-check admission, charge quota, and insert a pending event.

        The re-check, the conditional increment and the insert share one
        write transaction, so two callers racing for the last unit of quota
        cannot both succeed.

        Args:
            user_id: Caller identity
            plan_code: Plan the caller is on
            monthly_limit: Ceiling for the conditional increment
            unit_count: Units to charge
            cost: Total cost fixed at admission time
            check: Window check applied to the usage seen inside the transaction
            now: Admission time (defaults to current UTC time)

        Returns:
            The new pending event

        Raises:
            AdmissionRaceLostError: If the re-check or the conditional increment fails
            LedgerUnavailableError: If the store cannot be reached
        """
        if unit_count < 1:
            raise ValueError("unit_count must be >= 1")
        now = ensure_utc(now or utc_now())
        with self._connect("open_event") as conn:
            with transaction(conn):
                state = self._fetch_or_create_state(conn, user_id, plan_code, now)
                state = self._apply_reset(conn, state, now)
                daily, per_minute = self._window_counts(conn, user_id, now)
                reason = check(WindowUsage(
                    monthly=state.monthly_calls,
                    daily=daily,
                    per_minute=per_minute,
                ))
                if reason is not None:
                    raise AdmissionRaceLostError(user_id, reason)

                cursor = conn.execute(
                    """
                    UPDATE quota_state
                    SET monthly_calls = monthly_calls + ?,
                        total_calls = total_calls + ?,
                        last_call_at = ?,
                        plan_code = ?
                    WHERE user_id = ? AND monthly_calls + ? <= ?
                    """,
                    (unit_count, unit_count, _ts(now), plan_code,
                     user_id, unit_count, monthly_limit)
                )
                if cursor.rowcount != 1:
                    raise AdmissionRaceLostError(user_id, "monthly-limit-exceeded")

                cursor = conn.execute(
                    """
                    INSERT INTO usage_event
                    (user_id, plan_code, requested_at, unit_count, state, cost_micros)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, plan_code, _ts(now), unit_count,
                     EventState.PENDING.value, cost_to_micros(cost))
                )
                event_id = cursor.lastrowid

        return UsageEvent(
            id=event_id,
            user_id=user_id,
            plan_code=plan_code,
            requested_at=now,
            unit_count=unit_count,
            state=EventState.PENDING,
            cost=micros_to_cost(cost_to_micros(cost)),
        )

    def close_event(
        self,
        event_id: int,
        state: EventState,
        now: Optional[datetime] = None,
        response_time_ms: Optional[int] = None,
        tokens_used: Optional[TokenUsage] = None,
        error_class: Optional[str] = None,
        refund: bool = False
    ) -> UsageEvent:
        """Move a pending event to a terminal state (compare-and-set on state).

        When ``refund`` is set and the event failed, its units are returned
        to the monthly counter in the same transaction, provided the event
        belongs to the user's current period.

        Raises:
            UnknownEventError: If the event does not exist
            EventAlreadyClosedError: If the event is no longer pending
            LedgerUnavailableError: If the store cannot be reached
        """
        if state == EventState.PENDING:
            raise ValueError("cannot close an event into the pending state")
        now = ensure_utc(now or utc_now())
        prompt_tokens = tokens_used.prompt_tokens if tokens_used else None
        completion_tokens = tokens_used.completion_tokens if tokens_used else None

        with self._connect("close_event") as conn:
            with transaction(conn):
                cursor = conn.execute(
                    """
                    UPDATE usage_event
                    SET state = ?, completed_at = ?, response_time_ms = ?,
                        prompt_tokens = ?, completion_tokens = ?, error_class = ?
                    WHERE id = ? AND state = ?
                    """,
                    (state.value, _ts(now), response_time_ms, prompt_tokens,
                     completion_tokens, error_class, event_id,
                     EventState.PENDING.value)
                )
                if cursor.rowcount == 0:
                    row = conn.execute(
                        "SELECT state FROM usage_event WHERE id = ?", (event_id,)
                    ).fetchone()
                    if row is None:
                        raise UnknownEventError(event_id)
                    raise EventAlreadyClosedError(event_id, EventState(row[0]))

                event = self._fetch_event(conn, event_id)
                if refund and state == EventState.FAILED:
                    conn.execute(
                        """
                        UPDATE quota_state
                        SET monthly_calls = MAX(monthly_calls - ?, 0)
                        WHERE user_id = ? AND period_start <= ?
                        """,
                        (event.unit_count, event.user_id, _ts(event.requested_at))
                    )
            return event

    def _fetch_event(self, conn: sqlite3.Connection, event_id: int) -> Optional[UsageEvent]:
        row = conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM usage_event WHERE id = ?",
            (event_id,)
        ).fetchone()
        return _row_to_event(row) if row else None

    def get_event(self, event_id: int) -> Optional[UsageEvent]:
        """Get a usage event by id."""
        with self._connect("get_event") as conn:
            return self._fetch_event(conn, event_id)

    def find_stale_pending(
        self,
        older_than: datetime,
        limit: int = 500
    ) -> List[UsageEvent]:
        """Find pending events requested before ``older_than``, oldest first."""
        with self._connect("find_stale_pending") as conn:
            cursor = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM usage_event
                WHERE state = ? AND requested_at < ?
                ORDER BY requested_at LIMIT ?
                """,
                (EventState.PENDING.value, _ts(older_than), limit)
            )
            return [_row_to_event(row) for row in cursor.fetchall()]

    def get_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Tuple[List[UsageEvent], int]:
        """Get one page of a user's events (newest first) and the total count."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be >= 1")
        conditions = ["user_id = ?"]
        params: list = [user_id]
        if start is not None:
            conditions.append("requested_at >= ?")
            params.append(_ts(start))
        if end is not None:
            conditions.append("requested_at <= ?")
            params.append(_ts(end))
        where = " AND ".join(conditions)

        with self._connect("get_history") as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM usage_event WHERE {where}", params
            ).fetchone()[0]
            cursor = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM usage_event WHERE {where}
                ORDER BY requested_at DESC, id DESC LIMIT ? OFFSET ?
                """,
                params + [limit, (page - 1) * limit]
            )
            return [_row_to_event(row) for row in cursor.fetchall()], total

    def get_usage_stats(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> UsageStats:
        """Get aggregate statistics over a user's events.

        Args:
            user_id: User to report on
            start: Optional inclusive lower bound on requested_at
            end: Optional inclusive upper bound on requested_at

        Returns:
            UsageStats for the selected events
        """
        query = """
            SELECT
                COUNT(*),
                COALESCE(SUM(unit_count), 0),
                COALESCE(SUM(CASE WHEN state = 'completed' THEN 1 ELSE 0 END), 0),
                COALESCE(SUM(CASE WHEN state = 'failed' THEN 1 ELSE 0 END), 0),
                COALESCE(SUM(CASE WHEN state = 'pending' THEN 1 ELSE 0 END), 0),
                COALESCE(SUM(cost_micros), 0),
                AVG(response_time_ms),
                COALESCE(SUM(COALESCE(prompt_tokens, 0) + COALESCE(completion_tokens, 0)), 0)
            FROM usage_event
            WHERE user_id = ?
        """
        params: list = [user_id]
        if start is not None:
            query += " AND requested_at >= ?"
            params.append(_ts(start))
        if end is not None:
            query += " AND requested_at <= ?"
            params.append(_ts(end))

        with self._connect("get_usage_stats") as conn:
            row = conn.execute(query, params).fetchone()
            return UsageStats(
                total_events=row[0],
                total_units=row[1],
                successful_events=row[2],
                failed_events=row[3],
                pending_events=row[4],
                total_cost=micros_to_cost(row[5]),
                avg_response_time_ms=float(row[6]) if row[6] is not None else None,
                total_tokens=row[7],
            )

