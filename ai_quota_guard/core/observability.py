"""
Structured audit records for admission decisions and event transitions.

Records are written to the ``ai_quota_guard.audit`` logger and handed to
any registered listeners. Emission is fire-and-forget: a failing listener
or handler never reaches the admission path.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ai_quota_guard.storage.models import UsageEvent, utc_now

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("ai_quota_guard.audit")

AuditListener = Callable[["AuditRecord"], None]


@dataclass(frozen=True)
class AuditRecord:
    """One admission decision or lifecycle transition."""
    kind: str  # "admission" or "transition"
    user_id: str
    action: str
    at: datetime
    reason: Optional[str] = None
    event_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["at"] = self.at.isoformat()
        return data


class ObservabilitySink:
    """Fan-out of audit records to the audit logger and listeners."""

    def __init__(self, emit_logs: bool = True):
        self._listeners: List[AuditListener] = []
        self._lock = threading.Lock()
        self._emit_logs = emit_logs

    def subscribe(self, listener: AuditListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: AuditListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, record: AuditRecord) -> None:
        """Publish a record. Never raises."""
        if self._emit_logs:
            try:
                audit_logger.info(
                    "%s %s user=%s reason=%s event=%s",
                    record.kind, record.action, record.user_id,
                    record.reason, record.event_id,
                    extra={"audit": record.to_dict()},
                )
            except Exception:
                logger.exception("Audit log handler failed")

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("Audit listener %r failed", listener)

    def admission(
        self,
        user_id: str,
        decision,
        plan_code: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> None:
        """Record an admission decision."""
        try:
            record = AuditRecord(
                kind="admission",
                user_id=user_id,
                action="allow" if decision.allow else "deny",
                at=at or utc_now(),
                reason=decision.reason.value if decision.reason else None,
                details={
                    "plan": plan_code,
                    "unit_count": decision.unit_count,
                    "remaining": asdict(decision.remaining) if decision.remaining else None,
                    "cost": str(decision.cost) if decision.cost is not None else None,
                    "indeterminate": decision.indeterminate,
                },
            )
        except Exception:
            logger.exception("Could not build admission audit record")
            return
        self.emit(record)

    def transition(
        self,
        event: UsageEvent,
        action: str,
        at: Optional[datetime] = None,
        reason: Optional[str] = None
    ) -> None:
        """Record a usage event lifecycle transition."""
        self.emit(AuditRecord(
            kind="transition",
            user_id=event.user_id,
            action=action,
            at=at or utc_now(),
            reason=reason,
            event_id=event.id,
            details={
                "state": event.state.value,
                "unit_count": event.unit_count,
                "cost": str(event.cost),
                "error_class": event.error_class,
            },
        ))

    def race_lost(
        self,
        user_id: str,
        reason: Optional[str],
        at: Optional[datetime] = None
    ) -> None:
        """Record an open refused by the atomic re-check."""
        self.emit(AuditRecord(
            kind="transition",
            user_id=user_id,
            action="race-lost",
            at=at or utc_now(),
            reason=reason,
        ))
