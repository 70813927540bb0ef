"""
Background sweep of abandoned pending events.

Events whose caller never reported an outcome are force-failed with
``error_class = "timeout"`` once they are older than the external call's
own timeout. The sweep uses the same compare-and-set as complete/fail, so a
late legitimate completion and the sweep can never both win.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ai_quota_guard.storage.models import ensure_utc, utc_now

from .errors import EventAlreadyClosedError, LedgerUnavailableError, UnknownEventError
from .recorder import UsageRecorder

logger = logging.getLogger(__name__)

TIMEOUT_ERROR_CLASS = "timeout"


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one sweep."""
    closed: int
    skipped: int
    storage_error: bool = False


class PendingEventReaper:
    """Force-fails pending events older than ``timeout_seconds``."""

    def __init__(
        self,
        recorder: UsageRecorder,
        repository,
        timeout_seconds: float = 120.0,
        interval_seconds: float = 60.0,
        batch_limit: int = 500
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._recorder = recorder
        self._repository = repository
        self.timeout = timedelta(seconds=timeout_seconds)
        self.interval_seconds = interval_seconds
        self.batch_limit = batch_limit
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Close stale pending events once.

        Storage failures skip the sweep rather than risk failing a live
        event; the result carries ``storage_error`` instead of raising.
        """
        now = ensure_utc(now or utc_now())
        try:
            stale = self._repository.find_stale_pending(now - self.timeout, self.batch_limit)
        except LedgerUnavailableError as e:
            logger.warning("Reaper skipped sweep, ledger unavailable: %s", e)
            return SweepResult(closed=0, skipped=0, storage_error=True)

        closed = skipped = 0
        for event in stale:
            try:
                self._recorder.fail(event.id, TIMEOUT_ERROR_CLASS, now=now)
                closed += 1
            except (EventAlreadyClosedError, UnknownEventError):
                # closed concurrently by its caller
                skipped += 1
            except LedgerUnavailableError as e:
                logger.warning("Reaper stopped mid-sweep, ledger unavailable: %s", e)
                return SweepResult(closed=closed, skipped=skipped, storage_error=True)

        if closed or skipped:
            logger.info("Reaper closed %d stale events (%d already closed)", closed, skipped)
        return SweepResult(closed=closed, skipped=skipped)

    def start(self) -> None:
        """Run sweeps every ``interval_seconds`` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="pending-event-reaper", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the background thread to exit and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Reaper sweep crashed")
