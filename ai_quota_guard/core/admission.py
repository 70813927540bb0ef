"""
Batch admission control.

Admits a group of N work items as one unit: either all N fit (feature flag,
batch size cap, and every quota window) or none are admitted.

Enforcement Order:
1. Batch processing feature flag
2. Plan batch size cap
3. Monthly, daily and per-minute windows for all N items together
"""

import logging
from datetime import datetime
from typing import Optional

from .plans import Plan
from .rate_limiter import Decision, DenyReason, RateLimiter, Subscriber

logger = logging.getLogger(__name__)


class BatchAdmissionController:
    """All-or-nothing admission for batches."""

    def __init__(self, limiter: RateLimiter):
        self._limiter = limiter

    def admit_batch(
        self,
        subscriber: Subscriber,
        n: int,
        now: Optional[datetime] = None
    ) -> Decision:
        """Decide whether a batch of ``n`` items may proceed.

        Args:
            subscriber: Authenticated caller and plan code
            n: Number of items in the batch
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Decision covering the whole batch

        Raises:
            ValueError: If n < 1
        """
        if n < 1:
            raise ValueError("batch size must be >= 1")

        def batch_gate(plan: Plan) -> Optional[DenyReason]:
            if not plan.features.batch_processing:
                return DenyReason.BATCH_NOT_SUPPORTED
            if n > plan.limits.batch_size:
                return DenyReason.BATCH_TOO_LARGE
            return None

        decision = self._limiter.admit(subscriber, n, now, gate=batch_gate)
        if decision.allow:
            logger.info(
                "Batch of %d admitted for user %s (cost %s)",
                n, subscriber.user_id, decision.cost
            )
        return decision
