"""
Subscription plans and the plan catalog.

A plan bundles call limits, per-call pricing with volume discounts, and
feature flags. The catalog keeps exactly one active version per plan code
and serves reads through a short-lived cache.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidPlanError

logger = logging.getLogger(__name__)


class PlanCode(Enum):
    """Closed set of subscription tiers."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class VolumeDiscountTier:
    """Price multiplier applied once cumulative monthly calls reach threshold."""
    threshold: int
    multiplier: Decimal


@dataclass(frozen=True)
class PlanLimits:
    """Call-count and size limits for a plan."""
    monthly_calls: int
    daily_calls: int
    per_minute: int
    batch_size: int = 1
    max_input_length: int = 10000  # characters
    max_output_length: int = 1000  # characters

    def __post_init__(self):
        """Validate limits are within range."""
        for name in ("monthly_calls", "daily_calls", "per_minute"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise InvalidPlanError(f"{name} must be a non-negative integer")
        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            raise InvalidPlanError("batch_size must be >= 1")
        if self.max_input_length < 1:
            raise InvalidPlanError("max_input_length must be >= 1")
        if self.max_output_length < 1:
            raise InvalidPlanError("max_output_length must be >= 1")


@dataclass(frozen=True)
class PlanFeatures:
    """Boolean capability flags."""
    basic_summary: bool = True
    custom_styles: bool = False
    batch_processing: bool = False
    api_access: bool = True
    priority_support: bool = False
    analytics_access: bool = False

    def has(self, name: str) -> bool:
        return getattr(self, name, False) is True


@dataclass(frozen=True)
class Plan:
    """One version of a subscription tier."""
    code: PlanCode
    name: str
    price_per_call: Decimal
    limits: PlanLimits
    features: PlanFeatures = field(default_factory=PlanFeatures)
    volume_discount_tiers: Tuple[VolumeDiscountTier, ...] = ()
    is_active: bool = True
    version: int = 0

    def __post_init__(self):
        """Validate pricing and discount tiers.

        Thresholds must be strictly increasing and multipliers must lie in
        (0, 1] and never rise with the threshold, so the unit price is
        non-increasing in monthly usage.
        """
        if not isinstance(self.code, PlanCode):
            raise InvalidPlanError(f"Unknown plan code: {self.code}")
        if self.price_per_call < 0:
            raise InvalidPlanError("price_per_call cannot be negative")

        previous: Optional[VolumeDiscountTier] = None
        for tier in self.volume_discount_tiers:
            if tier.threshold < 0:
                raise InvalidPlanError("discount threshold cannot be negative")
            if not Decimal("0") < tier.multiplier <= Decimal("1"):
                raise InvalidPlanError(
                    f"discount multiplier {tier.multiplier} must be in (0, 1]"
                )
            if previous is not None:
                if tier.threshold <= previous.threshold:
                    raise InvalidPlanError(
                        "discount thresholds must be strictly increasing"
                    )
                if tier.multiplier > previous.multiplier:
                    raise InvalidPlanError(
                        "discount multipliers must not increase with threshold "
                        "(price must be non-increasing in usage)"
                    )
            previous = tier

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the plan definition (without version bookkeeping)."""
        return {
            "code": self.code.value,
            "name": self.name,
            "price_per_call": str(self.price_per_call),
            "limits": {
                "monthly_calls": self.limits.monthly_calls,
                "daily_calls": self.limits.daily_calls,
                "per_minute": self.limits.per_minute,
                "batch_size": self.limits.batch_size,
                "max_input_length": self.limits.max_input_length,
                "max_output_length": self.limits.max_output_length,
            },
            "features": {
                "basic_summary": self.features.basic_summary,
                "custom_styles": self.features.custom_styles,
                "batch_processing": self.features.batch_processing,
                "api_access": self.features.api_access,
                "priority_support": self.features.priority_support,
                "analytics_access": self.features.analytics_access,
            },
            "volume_discounts": [
                {"threshold": t.threshold, "multiplier": str(t.multiplier)}
                for t in self.volume_discount_tiers
            ],
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        is_active: bool = True,
        version: int = 0
    ) -> "Plan":
        """Rebuild a plan from its serialized definition."""
        return cls(
            code=PlanCode(data["code"]),
            name=data["name"],
            price_per_call=Decimal(data["price_per_call"]),
            limits=PlanLimits(**data["limits"]),
            features=PlanFeatures(**data.get("features", {})),
            volume_discount_tiers=tuple(
                VolumeDiscountTier(
                    threshold=int(t["threshold"]),
                    multiplier=Decimal(t["multiplier"])
                )
                for t in data.get("volume_discounts", [])
            ),
            is_active=is_active,
            version=version,
        )


_STANDARD_DISCOUNTS = (
    VolumeDiscountTier(threshold=1000, multiplier=Decimal("0.95")),
    VolumeDiscountTier(threshold=10000, multiplier=Decimal("0.9")),
)

# Seed tiers, used when no plan file is supplied
DEFAULT_PLANS: Tuple[Plan, ...] = (
    Plan(
        code=PlanCode.FREE,
        name="Free Plan",
        price_per_call=Decimal("0"),
        limits=PlanLimits(
            monthly_calls=100,
            daily_calls=10,
            per_minute=2,
            batch_size=1,
            max_input_length=5000,
            max_output_length=500,
        ),
        features=PlanFeatures(),
        volume_discount_tiers=_STANDARD_DISCOUNTS,
    ),
    Plan(
        code=PlanCode.BASIC,
        name="Basic Plan",
        price_per_call=Decimal("0.01"),
        limits=PlanLimits(
            monthly_calls=1000,
            daily_calls=100,
            per_minute=10,
            batch_size=5,
            max_input_length=15000,
            max_output_length=1000,
        ),
        features=PlanFeatures(
            custom_styles=True,
            batch_processing=True,
            analytics_access=True,
        ),
        volume_discount_tiers=_STANDARD_DISCOUNTS,
    ),
    Plan(
        code=PlanCode.PREMIUM,
        name="Premium Plan",
        price_per_call=Decimal("0.008"),
        limits=PlanLimits(
            monthly_calls=10000,
            daily_calls=1000,
            per_minute=30,
            batch_size=10,
            max_input_length=30000,
            max_output_length=2000,
        ),
        features=PlanFeatures(
            custom_styles=True,
            batch_processing=True,
            priority_support=True,
            analytics_access=True,
        ),
        volume_discount_tiers=_STANDARD_DISCOUNTS,
    ),
    Plan(
        code=PlanCode.ENTERPRISE,
        name="Enterprise Plan",
        price_per_call=Decimal("0.005"),
        limits=PlanLimits(
            monthly_calls=100000,
            daily_calls=10000,
            per_minute=100,
            batch_size=50,
            max_input_length=50000,
            max_output_length=5000,
        ),
        features=PlanFeatures(
            custom_styles=True,
            batch_processing=True,
            priority_support=True,
            analytics_access=True,
        ),
        volume_discount_tiers=_STANDARD_DISCOUNTS,
    ),
)


def parse_plan_code(value: Any) -> Optional[PlanCode]:
    """Return the PlanCode for a value, or None if it is not a known tier."""
    if isinstance(value, PlanCode):
        return value
    try:
        return PlanCode(str(value).lower())
    except ValueError:
        return None


class PlanCatalog:
    """Read-mostly lookup of active plans backed by the ledger store.

    Reads are cached for ``cache_ttl_seconds`` so administrator edits become
    visible within seconds. Publishing through this catalog invalidates the
    local cache immediately.
    """

    def __init__(self, repository, cache_ttl_seconds: float = 5.0):
        self._repository = repository
        self._ttl = cache_ttl_seconds
        self._cache: Dict[PlanCode, Tuple[float, Optional[Plan]]] = {}
        self._lock = threading.Lock()

    def get_plan(self, code: Any) -> Optional[Plan]:
        """Get the active plan for a code.

        Returns:
            The active Plan, or None if the code is unknown or has no
            active version.

        Raises:
            LedgerUnavailableError: If the store cannot be read
        """
        plan_code = parse_plan_code(code)
        if plan_code is None:
            return None

        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(plan_code)
            if cached is not None and cached[0] > now:
                return cached[1]

        row = self._repository.fetch_active_plan(plan_code.value)
        plan = None
        if row is not None:
            version, definition = row
            plan = Plan.from_dict(json.loads(definition), version=version)

        with self._lock:
            self._cache[plan_code] = (now + self._ttl, plan)
        return plan

    def publish(self, plan: Plan, now: Optional[datetime] = None) -> Plan:
        """Store a new active version of a plan, retiring the previous one."""
        definition = json.dumps(plan.to_dict(), sort_keys=True)
        version = self._repository.publish_plan_version(
            plan.code.value, definition, now
        )
        self.invalidate(plan.code)
        logger.info("Published plan %s version %d", plan.code.value, version)
        return Plan.from_dict(plan.to_dict(), is_active=True, version=version)

    def deactivate(self, code: Any) -> bool:
        """Retire the active version of a plan. Returns False if none was active."""
        plan_code = parse_plan_code(code)
        if plan_code is None:
            return False
        changed = self._repository.deactivate_plan(plan_code.value)
        self.invalidate(plan_code)
        if changed:
            logger.info("Deactivated plan %s", plan_code.value)
        return changed

    def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        """List plans ordered by tier, then by version."""
        order = {code: i for i, code in enumerate(PlanCode)}
        plans = [
            Plan.from_dict(json.loads(definition), is_active=active, version=version)
            for _, version, active, definition in self._repository.fetch_plan_rows(
                include_inactive
            )
        ]
        return sorted(plans, key=lambda p: (order[p.code], p.version))

    def invalidate(self, code: Optional[PlanCode] = None) -> None:
        """Drop cached entries (all of them when code is None)."""
        with self._lock:
            if code is None:
                self._cache.clear()
            else:
                self._cache.pop(code, None)
