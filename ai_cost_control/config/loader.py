"""
Configuration management and loading.

Handles budget defaults, cache lifetimes, in-flight deduplication and
per-operation-type similarity thresholds.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml


@dataclass(frozen=True)
class BudgetDefaults:
    """Budget settings applied to a firm that has none stored yet."""
    monthly_budget_cents: int = 10000
    alert_at_75: bool = True
    alert_at_90: bool = True
    auto_pause_at_100: bool = False

    def __post_init__(self):
        """Validate budget is positive."""
        if self.monthly_budget_cents <= 0:
            raise ValueError("monthly_budget_cents must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Global cache behaviour."""
    default_ttl_hours: float = 24.0
    record_cache_hits: bool = True

    def __post_init__(self):
        if self.default_ttl_hours <= 0:
            raise ValueError("default_ttl_hours must be > 0")


@dataclass(frozen=True)
class InflightConfig:
    """How long a concurrent caller waits for the first caller's answer."""
    wait_seconds: float = 30.0
    marker_ttl_seconds: float = 120.0

    def __post_init__(self):
        if self.wait_seconds < 0:
            raise ValueError("wait_seconds must be >= 0")
        if self.marker_ttl_seconds <= 0:
            raise ValueError("marker_ttl_seconds must be > 0")


@dataclass(frozen=True)
class OperationConfig:
    """Caching rules for a single operation type.

    There is no universal similarity threshold: an operation type without
    one is served from exact matches only.
    """
    similarity_threshold: Optional[float] = None
    cache_ttl_hours: Optional[float] = None

    def __post_init__(self):
        if self.similarity_threshold is not None and not 0 < self.similarity_threshold <= 1:
            raise ValueError("similarity_threshold must be in (0, 1]")
        if self.cache_ttl_hours is not None and self.cache_ttl_hours <= 0:
            raise ValueError("cache_ttl_hours must be > 0")


@dataclass(frozen=True)
class ControlPlaneConfig:
    """Complete control-plane configuration."""
    budget: BudgetDefaults = field(default_factory=BudgetDefaults)
    cache: CacheConfig = field(default_factory=CacheConfig)
    inflight: InflightConfig = field(default_factory=InflightConfig)
    operations: Dict[str, OperationConfig] = field(default_factory=dict)

    @classmethod
    def default(cls) -> "ControlPlaneConfig":
        return cls()

    def get_operation_config(self, operation_type: str) -> OperationConfig:
        """Get configuration for an operation type, empty if not specified."""
        return self.operations.get(operation_type, OperationConfig())

    def similarity_threshold(self, operation_type: str) -> Optional[float]:
        return self.get_operation_config(operation_type).similarity_threshold

    def cache_ttl_hours(self, operation_type: str) -> float:
        ttl = self.get_operation_config(operation_type).cache_ttl_hours
        return ttl if ttl is not None else self.cache.default_ttl_hours


def load_control_plane_config(path: str) -> ControlPlaneConfig:
    """Load and validate control-plane configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns or wrong cached answers.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ControlPlaneConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Control plane config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'budget', 'cache', 'inflight', 'operations'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    budget_data = _section(raw_config, 'budget', {
        'monthly_budget_cents', 'alert_at_75', 'alert_at_90', 'auto_pause_at_100'
    })
    budget = BudgetDefaults(
        monthly_budget_cents=_int(budget_data, 'monthly_budget_cents', 'budget', 10000),
        alert_at_75=_bool(budget_data, 'alert_at_75', 'budget', True),
        alert_at_90=_bool(budget_data, 'alert_at_90', 'budget', True),
        auto_pause_at_100=_bool(budget_data, 'auto_pause_at_100', 'budget', False)
    )

    cache_data = _section(raw_config, 'cache', {'default_ttl_hours', 'record_cache_hits'})
    cache = CacheConfig(
        default_ttl_hours=_number(cache_data, 'default_ttl_hours', 'cache', 24.0),
        record_cache_hits=_bool(cache_data, 'record_cache_hits', 'cache', True)
    )

    inflight_data = _section(raw_config, 'inflight', {'wait_seconds', 'marker_ttl_seconds'})
    inflight = InflightConfig(
        wait_seconds=_number(inflight_data, 'wait_seconds', 'inflight', 30.0),
        marker_ttl_seconds=_number(inflight_data, 'marker_ttl_seconds', 'inflight', 120.0)
    )

    operations_data = raw_config.get('operations') or {}
    if not isinstance(operations_data, dict):
        raise ValueError("'operations' must be a dictionary")

    operations = {}
    for operation_type, operation_data in operations_data.items():
        if not isinstance(operation_data, dict):
            raise ValueError(f"Operation '{operation_type}' must be a dictionary")
        operations[str(operation_type)] = _parse_operation_config(
            operation_data, f"operations.{operation_type}"
        )

    return ControlPlaneConfig(
        budget=budget,
        cache=cache,
        inflight=inflight,
        operations=operations
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _int(data: Dict, key: str, path: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be a positive integer")
    return value


def _number(data: Dict, key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _bool(data: Dict, key: str, path: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _parse_operation_config(data: Dict, path: str) -> OperationConfig:
    """Parse and validate operation-type configuration.

    Args:
        data: Operation configuration data
        path: Path for error messages

    Returns:
        Validated OperationConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'similarity_threshold', 'cache_ttl_hours'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    threshold = data.get('similarity_threshold')
    if threshold is not None:
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise ValueError(f"'similarity_threshold' in {path} must be a number")
        if not 0 < threshold <= 1:
            raise ValueError(f"'similarity_threshold' in {path} must be in (0, 1]")
        threshold = float(threshold)

    ttl = data.get('cache_ttl_hours')
    if ttl is not None:
        if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
            raise ValueError(f"'cache_ttl_hours' in {path} must be > 0")
        ttl = float(ttl)

    return OperationConfig(
        similarity_threshold=threshold,
        cache_ttl_hours=ttl
    )
