"""
Configuration management and loading.

Handles plan catalog files, engine settings, and environment variables.
"""

import os
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ai_quota_guard.core.errors import InvalidPlanError
from ai_quota_guard.core.plans import (
    Plan,
    PlanCode,
    PlanFeatures,
    PlanLimits,
    VolumeDiscountTier,
)
from ai_quota_guard.storage.db import DEFAULT_DB_PATH

ENV_DB_PATH = "AI_QUOTA_GUARD_DB"
ENV_REFUND_FAILED = "AI_QUOTA_GUARD_REFUND_FAILED"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings for the metering engine."""
    db_path: str = DEFAULT_DB_PATH
    plan_cache_ttl_seconds: float = 5.0
    reaper_timeout_seconds: float = 120.0
    reaper_interval_seconds: float = 60.0
    refund_failed_calls: bool = False

    def __post_init__(self):
        """Validate settings values."""
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if self.plan_cache_ttl_seconds < 0:
            raise ValueError("plan_cache_ttl_seconds must be >= 0")
        if self.reaper_timeout_seconds <= 0:
            raise ValueError("reaper_timeout_seconds must be > 0")
        if self.reaper_interval_seconds <= 0:
            raise ValueError("reaper_interval_seconds must be > 0")


def _read_yaml(path: str, kind: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"{kind} file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {kind} file {path}: {e}")

    if not raw_config:
        raise ValueError(f"{kind} file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError(f"{kind} file must contain a mapping")
    return raw_config


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_bool(value: Any, path: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _TRUE_VALUES | _FALSE_VALUES:
        return value.strip().lower() in _TRUE_VALUES
    raise ValueError(f"'{path}' must be a boolean")


def _parse_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def load_engine_settings(path: Optional[str] = None) -> EngineSettings:
    """Load engine settings from an optional YAML file and the environment.

    Environment variables override file values:
    ``AI_QUOTA_GUARD_DB`` sets the database path and
    ``AI_QUOTA_GUARD_REFUND_FAILED`` the failed-call refund policy.

    Args:
        path: Optional path to a YAML settings file

    Returns:
        Validated EngineSettings

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        ValueError: If settings are invalid
    """
    settings = EngineSettings()

    if path is not None:
        raw = _read_yaml(path, "Settings")
        allowed = {
            'db_path', 'plan_cache_ttl_seconds', 'reaper_timeout_seconds',
            'reaper_interval_seconds', 'refund_failed_calls'
        }
        _check_keys(raw, allowed, "settings")
        values: Dict[str, Any] = {}
        if 'db_path' in raw:
            if not isinstance(raw['db_path'], str):
                raise ValueError("'db_path' must be a string")
            values['db_path'] = raw['db_path']
        for key in ('plan_cache_ttl_seconds', 'reaper_timeout_seconds', 'reaper_interval_seconds'):
            if key in raw:
                values[key] = _parse_number(raw[key], key)
        if 'refund_failed_calls' in raw:
            values['refund_failed_calls'] = _parse_bool(raw['refund_failed_calls'], 'refund_failed_calls')
        settings = replace(settings, **values)

    env_db = os.environ.get(ENV_DB_PATH)
    if env_db:
        settings = replace(settings, db_path=env_db)
    env_refund = os.environ.get(ENV_REFUND_FAILED)
    if env_refund:
        settings = replace(
            settings, refund_failed_calls=_parse_bool(env_refund, ENV_REFUND_FAILED)
        )
    return settings


def load_plan_catalog_config(path: str) -> List[Plan]:
    """Load and validate plan definitions from a YAML file.

    Strict validation ensures a malformed plan fails at load time rather
    than on a customer's request.

    Expected shape::

        plans:
          basic:
            name: Basic Plan
            price_per_call: 0.01
            limits: {monthly_calls: 1000, daily_calls: 100, per_minute: 10, batch_size: 5}
            features: {batch_processing: true}
            volume_discounts:
              - {threshold: 1000, multiplier: 0.95}

    Args:
        path: Path to YAML plan file

    Returns:
        Validated plans, in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If a plan is invalid (InvalidPlanError for invariant violations)
    """
    raw_config = _read_yaml(path, "Plan catalog")
    _check_keys(raw_config, {'plans'}, "plan catalog")

    if 'plans' not in raw_config:
        raise ValueError("Missing required 'plans' section")
    plans_data = raw_config['plans']
    if not isinstance(plans_data, dict) or not plans_data:
        raise ValueError("'plans' must be a non-empty dictionary")

    plans = []
    for code, plan_data in plans_data.items():
        if not isinstance(plan_data, dict):
            raise ValueError(f"Plan '{code}' must be a dictionary")
        plans.append(_parse_plan(str(code), plan_data, f"plans.{code}"))
    return plans


def _parse_plan(code: str, data: Dict, path: str) -> Plan:
    """Parse and validate a single plan definition."""
    _check_keys(data, {'name', 'price_per_call', 'limits', 'features', 'volume_discounts'}, path)

    try:
        plan_code = PlanCode(code.lower())
    except ValueError:
        valid_codes = [c.value for c in PlanCode]
        raise ValueError(f"Plan code '{code}' must be one of: {valid_codes}")

    if 'price_per_call' not in data:
        raise ValueError(f"Missing required 'price_per_call' in {path}")
    price = _parse_decimal(data['price_per_call'], f"{path}.price_per_call")

    if 'limits' not in data or not isinstance(data['limits'], dict):
        raise ValueError(f"Missing required 'limits' dictionary in {path}")
    limits = _parse_limits(data['limits'], f"{path}.limits")

    features_data = data.get('features', {})
    if not isinstance(features_data, dict):
        raise ValueError(f"'features' in {path} must be a dictionary")
    feature_names = set(PlanFeatures.__dataclass_fields__)
    _check_keys(features_data, feature_names, f"{path}.features")
    features = PlanFeatures(**{
        name: _parse_bool(value, f"{path}.features.{name}")
        for name, value in features_data.items()
    })

    discounts_data = data.get('volume_discounts', [])
    if not isinstance(discounts_data, list):
        raise ValueError(f"'volume_discounts' in {path} must be a list")
    tiers = []
    for i, tier_data in enumerate(discounts_data):
        tier_path = f"{path}.volume_discounts[{i}]"
        if not isinstance(tier_data, dict):
            raise ValueError(f"{tier_path} must be a dictionary")
        _check_keys(tier_data, {'threshold', 'multiplier'}, tier_path)
        if 'threshold' not in tier_data or 'multiplier' not in tier_data:
            raise ValueError(f"{tier_path} requires 'threshold' and 'multiplier'")
        threshold = tier_data['threshold']
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise ValueError(f"'{tier_path}.threshold' must be an integer")
        tiers.append(VolumeDiscountTier(
            threshold=threshold,
            multiplier=_parse_decimal(tier_data['multiplier'], f"{tier_path}.multiplier"),
        ))

    try:
        return Plan(
            code=plan_code,
            name=str(data.get('name') or f"{plan_code.value.title()} Plan"),
            price_per_call=price,
            limits=limits,
            features=features,
            volume_discount_tiers=tuple(tiers),
        )
    except InvalidPlanError as e:
        raise InvalidPlanError(f"Invalid plan {path}: {e}") from e


def _parse_limits(data: Dict, path: str) -> PlanLimits:
    allowed = set(PlanLimits.__dataclass_fields__)
    _check_keys(data, allowed, path)
    for required in ('monthly_calls', 'daily_calls', 'per_minute'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{path}.{key}' must be an integer")
    try:
        return PlanLimits(**data)
    except InvalidPlanError as e:
        raise InvalidPlanError(f"Invalid limits in {path}: {e}") from e


def _parse_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        # str() keeps YAML floats like 0.01 exact
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
