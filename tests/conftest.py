"""
Shared fixtures: a throwaway ledger database and engines built on it.
"""

import os
import shutil
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ai_quota_guard.core.engine import MeteringEngine
from ai_quota_guard.core.observability import ObservabilitySink
from ai_quota_guard.core.plans import (
    Plan,
    PlanCatalog,
    PlanCode,
    PlanFeatures,
    PlanLimits,
    VolumeDiscountTier,
)
from ai_quota_guard.storage.repository import LedgerRepository

NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

STANDARD_TIERS = (
    VolumeDiscountTier(threshold=1000, multiplier=Decimal("0.95")),
    VolumeDiscountTier(threshold=10000, multiplier=Decimal("0.9")),
)


def build_plan(
    code: PlanCode = PlanCode.BASIC,
    monthly: int = 1000,
    daily: int = 1000,
    per_minute: int = 1000,
    batch_size: int = 1,
    batch_processing: bool = False,
    price: str = "0.01",
    tiers=STANDARD_TIERS,
    max_input_length: int = 10000,
    max_output_length: int = 1000
) -> Plan:
    return Plan(
        code=code,
        name=f"{code.value.title()} Plan",
        price_per_call=Decimal(price),
        limits=PlanLimits(
            monthly_calls=monthly,
            daily_calls=daily,
            per_minute=per_minute,
            batch_size=batch_size,
            max_input_length=max_input_length,
            max_output_length=max_output_length,
        ),
        features=PlanFeatures(batch_processing=batch_processing),
        volume_discount_tiers=tuple(tiers),
    )


@pytest.fixture
def make_plan():
    """Factory for plans with test-sized limits."""
    return build_plan


@pytest.fixture
def db_path():
    """Path to a fresh ledger database with the schema created."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "ledger.db")
    LedgerRepository(path).initialize_schema()
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def repository(db_path):
    return LedgerRepository(db_path)


@pytest.fixture
def make_engine(repository):
    """Factory for engines over the fixture database with the given plans."""

    def _make(*plans, refund_failed_calls=False, sink=None, cache_ttl_seconds=60.0):
        catalog = PlanCatalog(repository, cache_ttl_seconds)
        engine = MeteringEngine(
            repository,
            catalog=catalog,
            sink=sink or ObservabilitySink(emit_logs=False),
            refund_failed_calls=refund_failed_calls,
        )
        for plan in plans:
            catalog.publish(plan, NOW)
        return engine

    return _make
