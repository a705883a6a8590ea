"""Compute safety stock, reorder point and demand outlook for a policy."""

from __future__ import annotations

import logging
import math
from typing import Any, List, Optional

from ..core.config import PolicyConfig
from ..models.schemas import (
    MAX_CORRELATION_RHO,
    MAX_SERVICE_LEVEL_PERCENT,
    MIN_SERVICE_LEVEL_PERCENT,
    PolicyMetrics,
    PolicyRecord,
    WeeklyOutlook,
)
from .normal_approximation import service_level_percentage_to_z

LOGGER = logging.getLogger(__name__)

OUTLOOK_WEEKS = (1, 2, 4, 8)


# ---------------------------------------------------------------------------
def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _non_negative(value: Any) -> float:
    number = _finite(value)
    if number is None or number < 0:
        return 0.0
    return number


def lead_time_variance_factor(lead_time_days: float, corr_rho: float) -> float:
    """Return ``sqrt(L * (1 + rho))``.

    Generalises the classic ``sqrt(L)`` term for positively autocorrelated
    daily demand.  ``rho`` is a tunable constant, not estimated from data.
    """

    lead_time = _non_negative(lead_time_days)
    rho = min(_non_negative(corr_rho), MAX_CORRELATION_RHO)
    return math.sqrt(lead_time * (1.0 + rho))


def calculate_safety_stock(z_score: float, daily_std: float, variance_factor: float) -> int:
    std = _non_negative(daily_std)
    if std <= 0 or not math.isfinite(z_score) or z_score <= 0:
        return 0
    return max(int(round(z_score * std * variance_factor)), 0)


def calculate_reorder_point(daily_mean: float, lead_time_days: float, safety_stock: int) -> int:
    value = _non_negative(daily_mean) * _non_negative(lead_time_days) + max(safety_stock, 0)
    if not math.isfinite(value):
        return 0
    return max(int(round(value)), 0)


def weekly_outlook(daily_mean: float) -> WeeklyOutlook:
    mean = _non_negative(daily_mean)
    projected = {
        f"week{weeks}": max(int(round(mean * 7 * weeks)), 0) for weeks in OUTLOOK_WEEKS
    }
    return WeeklyOutlook(**projected)


def recommended_order_quantity(reorder_point: int, available_stock: Any) -> Optional[int]:
    """Return ``max(ROP - available, 0)``; ``None`` when stock is unknown."""

    available = _finite(available_stock)
    if available is None:
        return None
    return max(int(round(reorder_point - max(available, 0.0))), 0)


def calculate_policy(
    mean_daily_demand: Optional[float],
    std_dev_daily_demand: Optional[float],
    lead_time_days: Optional[float],
    correlation_rho: Optional[float],
    service_level_percent: Optional[float],
    *,
    available_stock: Optional[float] = None,
    default_service_level_percent: float = 95.0,
    default_corr_rho: float = 0.25,
) -> PolicyMetrics:
    """Map demand statistics and policy inputs to ordering figures.

    Missing inputs never raise: demand, deviation and lead time fall back to
    zero, the service level and correlation to the supplied defaults.  A
    missing mean or lead time also means no safety stock.  Every
    defaulted input is listed in ``defaulted_inputs`` so callers can tell a
    computed zero from missing data.
    """

    defaulted: List[str] = []

    def resolve(name: str, value: Optional[float], fallback: float) -> float:
        number = _finite(value)
        if number is None:
            defaulted.append(name)
            return fallback
        return number

    mean = max(resolve("forecast_demand", mean_daily_demand, 0.0), 0.0)
    std = max(resolve("demand_std_dev", std_dev_daily_demand, 0.0), 0.0)
    lead_time = max(resolve("lead_time_days", lead_time_days, 0.0), 0.0)
    rho = resolve("corr_rho", correlation_rho, default_corr_rho)
    service_level = resolve(
        "service_level_percent", service_level_percent, default_service_level_percent
    )
    service_level = max(MIN_SERVICE_LEVEL_PERCENT, min(service_level, MAX_SERVICE_LEVEL_PERCENT))

    z_score = service_level_percentage_to_z(service_level)
    factor = lead_time_variance_factor(lead_time, rho)
    if "forecast_demand" in defaulted or "lead_time_days" in defaulted:
        # no buffer without both mean demand and lead time
        safety_stock = 0
    else:
        safety_stock = calculate_safety_stock(z_score, std, factor)
    reorder_point = calculate_reorder_point(mean, lead_time, safety_stock)

    return PolicyMetrics(
        z_score=z_score,
        lead_time_variance_factor=factor,
        safety_stock=safety_stock,
        reorder_point=reorder_point,
        weekly_outlook=weekly_outlook(mean),
        recommended_order_qty=recommended_order_quantity(reorder_point, available_stock),
        defaulted_inputs=defaulted,
    )


class PolicyCalculator:
    """Apply the configured constants to stored policy records."""

    def __init__(self, config: PolicyConfig | None = None) -> None:
        self.config = config or PolicyConfig()

    def resolve_rho(self, record: PolicyRecord | None) -> float:
        """Per-SKU correlation when the record carries one, else the default."""

        if record is not None and record.corr_rho is not None:
            return record.corr_rho
        return self.config.corr_rho

    def metrics_for(
        self,
        record: PolicyRecord,
        available_stock: Optional[float] = None,
    ) -> PolicyMetrics:
        rho = self.resolve_rho(record)
        metrics = calculate_policy(
            record.forecast_demand,
            record.demand_std_dev,
            record.lead_time_days,
            rho,
            record.service_level_percent,
            available_stock=available_stock,
            default_service_level_percent=self.config.default_service_level_percent,
            default_corr_rho=self.config.corr_rho,
        )
        metrics.sku = record.sku
        LOGGER.info(
            "Policy metrics for %s: z=%.3f ss=%d rop=%d order_qty=%s defaulted=%s",
            record.sku,
            metrics.z_score,
            metrics.safety_stock,
            metrics.reorder_point,
            metrics.recommended_order_qty,
            ",".join(metrics.defaulted_inputs) or "-",
        )
        return metrics
