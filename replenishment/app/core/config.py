"""
Application configuration utilities.

This module defines the ``Settings`` class used throughout the service for
environment variables and the ``PolicyConfig`` container holding the tunable
constants of the replenishment policy engine (smoothing factor, demand
correlation, bulk-apply guardrails).  Policy constants live in
``configs/policy.yaml`` so operators can adjust them without a deploy.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Any, Dict

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGGER = logging.getLogger(__name__)

POLICY_CONFIG_FILENAME = "policy.yaml"


class Settings(BaseSettings):
    """Configuration loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Directory holding movement history exports (movements.csv / .parquet)
    data_dir: str = "data"

    # Directory holding YAML business configuration
    config_dir: str = "configs"

    # JSON file backing the policy table
    policy_store_path: str = os.path.join("data", "policies.json")

    # Optional bearer token; auth is disabled when unset
    api_token: str | None = None

    rate_limit_per_min: int = 60

    # Comma separated list of allowed CORS origins
    cors_origins: str = ""


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """Return a cached instance of ``Settings``.

    Using a cache ensures that environment variables are only read once.
    """
    return Settings()


def load_yaml(file_path: str) -> dict:
    """Load a YAML file from the given path and return its contents.

    If the file does not exist, an empty dictionary is returned.
    """
    if not os.path.exists(file_path):
        return {}
    with open(file_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


@dataclass(frozen=True)
class PolicyConfig:
    """Tunable constants of the policy engine.

    ``smoothing_alpha`` and ``corr_rho`` are catalog-wide defaults; a policy
    record carrying its own value overrides them for that SKU.
    """

    smoothing_alpha: float = 0.4
    corr_rho: float = 0.25
    deviation_threshold: float = 0.2
    ewma_window_days: int = 90
    default_lead_time_days: int = 14
    default_service_level_percent: float = 95.0
    bulk_concurrency: int = 4

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# (min, max) bounds applied when reading policy.yaml
_BOUNDS: Dict[str, tuple[float, float]] = {
    "smoothing_alpha": (0.0, 1.0),
    "corr_rho": (0.0, 0.5),
    "deviation_threshold": (0.0, 10.0),
    "ewma_window_days": (1, 730),
    "default_lead_time_days": (0, 365),
    "default_service_level_percent": (50.0, 99.9),
    "bulk_concurrency": (1, 64),
}

_INT_FIELDS = {"ewma_window_days", "default_lead_time_days", "bulk_concurrency"}


def _coerce_setting(key: str, value: Any, default: Any) -> Any:
    try:
        number = float(value)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring non-numeric policy setting %s=%r", key, value)
        return default
    if not math.isfinite(number):
        LOGGER.warning("Ignoring non-finite policy setting %s=%r", key, value)
        return default
    low, high = _BOUNDS[key]
    number = max(low, min(number, high))
    if key in _INT_FIELDS:
        return int(round(number))
    return number


def policy_config_from_mapping(raw: Dict[str, Any] | None) -> PolicyConfig:
    """Build a ``PolicyConfig`` from a mapping, clamping out-of-range values."""

    defaults = PolicyConfig()
    if not isinstance(raw, dict):
        return defaults

    values = defaults.to_dict()
    for key, default in list(values.items()):
        if key in raw and raw[key] is not None:
            values[key] = _coerce_setting(key, raw[key], default)
    return PolicyConfig(**values)


def load_policy_config(config_dir: str | None = None) -> PolicyConfig:
    """Read ``policy.yaml`` from ``config_dir`` (defaults to settings)."""

    directory = config_dir or get_settings().config_dir
    path = os.path.join(directory, POLICY_CONFIG_FILENAME)
    try:
        raw = load_yaml(path)
    except yaml.YAMLError:
        LOGGER.exception("Failed to parse policy configuration at %s", path)
        raw = {}
    return policy_config_from_mapping(raw)
