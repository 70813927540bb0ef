"""
Exception hierarchy for the metering engine.

Policy denials are never exceptions; they are reported as deny decisions.
The classes here cover race losses, protocol misuse, storage failures,
and invalid configuration.
"""

from typing import Any, Optional


class QuotaGuardError(Exception):
    """Base class for all engine errors."""


class LedgerUnavailableError(QuotaGuardError):
    """Raised when the backing store cannot be reached.

    The outcome of the attempted operation is indeterminate: callers must
    not assume it was applied, nor that it was not.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class AdmissionRaceLostError(QuotaGuardError):
    """Raised when the atomic re-check inside ``open`` refuses the increment.

    Another request for the same user consumed the quota between admission
    and open. The caller should retry the whole admit/open sequence once.
    """

    def __init__(self, user_id: str, reason: Any):
        reason_value = getattr(reason, "value", reason)
        super().__init__(
            f"Admission race lost for user {user_id}: {reason_value}"
        )
        self.user_id = user_id
        self.reason = reason


class ProtocolError(QuotaGuardError):
    """Raised when a caller violates the admit/open/close protocol."""

    def __init__(self, message: str, event_id: Any):
        super().__init__(message)
        self.event_id = event_id


class EventAlreadyClosedError(ProtocolError):
    """Raised when closing an event that is no longer pending."""

    def __init__(self, event_id: Any, state: Any = None):
        state_value = getattr(state, "value", state)
        super().__init__(
            f"Usage event {event_id} is already closed ({state_value})", event_id
        )
        self.state = state


class UnknownEventError(ProtocolError):
    """Raised when closing an event that does not exist."""

    def __init__(self, event_id: Any):
        super().__init__(f"Usage event {event_id} not found", event_id)


class InvalidPlanError(ValueError):
    """Raised when a plan definition violates catalog invariants."""


class AdmissionDeniedError(QuotaGuardError):
    """Raised by outbound call sites when admission is denied."""

    def __init__(self, decision: Any):
        reason_value = getattr(decision.reason, "value", decision.reason)
        super().__init__(f"Request denied: {reason_value}")
        self.decision = decision


class InputTooLargeError(ValueError):
    """Raised when input text exceeds the plan's maximum input length."""

    def __init__(self, length: int, limit: int):
        super().__init__(
            f"Input length {length:,} exceeds plan limit of {limit:,} characters"
        )
        self.length = length
        self.limit = limit
