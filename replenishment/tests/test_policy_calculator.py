from __future__ import annotations

import math
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from replenishment.app.core.config import PolicyConfig
from replenishment.app.models.schemas import PolicyRecord
from replenishment.app.services.policy_calculator import (
    PolicyCalculator,
    calculate_policy,
    lead_time_variance_factor,
    recommended_order_quantity,
)


def test_end_to_end_reference_scenario() -> None:
    metrics = calculate_policy(50, 10, 14, 0.25, 95)

    assert metrics.z_score == pytest.approx(1.645, abs=0.01)
    assert metrics.lead_time_variance_factor == pytest.approx(math.sqrt(17.5))
    assert metrics.safety_stock == 69
    assert metrics.reorder_point == 769
    assert metrics.defaulted_inputs == []


def test_weekly_outlook_projection() -> None:
    metrics = calculate_policy(12.5, 0, 7, 0.25, 95)
    outlook = metrics.weekly_outlook
    assert (outlook.week1, outlook.week2, outlook.week4, outlook.week8) == (88, 175, 350, 700)


def test_zero_std_dev_means_no_safety_stock() -> None:
    metrics = calculate_policy(20, 0, 10, 0.25, 99)
    assert metrics.safety_stock == 0
    assert metrics.reorder_point == 200


def test_median_service_level_gives_no_safety_stock() -> None:
    metrics = calculate_policy(20, 5, 10, 0.25, 50)
    assert metrics.safety_stock == 0


def test_higher_service_level_increases_safety_stock_and_rop() -> None:
    previous = None
    for level in (80, 90, 95, 99):
        metrics = calculate_policy(30, 12, 9, 0.25, level)
        if previous is not None:
            assert metrics.safety_stock > previous.safety_stock
            assert metrics.reorder_point > previous.reorder_point
        previous = metrics


def test_correlation_widens_lead_time_variance() -> None:
    assert lead_time_variance_factor(16, 0) == pytest.approx(4.0)
    assert lead_time_variance_factor(16, 0.25) > 4.0
    # rho is capped at 0.5
    assert lead_time_variance_factor(16, 3.0) == pytest.approx(math.sqrt(24))


def test_missing_inputs_degrade_and_are_reported() -> None:
    metrics = calculate_policy(None, None, None, None, None)

    assert metrics.safety_stock == 0
    assert metrics.reorder_point == 0
    assert set(metrics.defaulted_inputs) == {
        "forecast_demand",
        "demand_std_dev",
        "lead_time_days",
        "corr_rho",
        "service_level_percent",
    }


def test_missing_lead_time_only_uses_zero() -> None:
    metrics = calculate_policy(40, 8, None, 0.25, 95)
    assert metrics.reorder_point == 0
    assert metrics.defaulted_inputs == ["lead_time_days"]


def test_missing_mean_drops_safety_stock() -> None:
    metrics = calculate_policy(None, 10, 14, 0.25, 95)
    assert metrics.safety_stock == 0
    assert metrics.reorder_point == 0
    assert metrics.defaulted_inputs == ["forecast_demand"]


def test_invalid_inputs_are_clamped() -> None:
    metrics = calculate_policy(-5, float("nan"), -3, 0.25, 150)
    assert metrics.safety_stock == 0
    assert metrics.reorder_point == 0
    # 150% is clamped to 99.9%
    assert metrics.z_score == pytest.approx(3.09, abs=0.01)


def test_recommended_order_quantity() -> None:
    assert recommended_order_quantity(769, 500) == 269
    assert recommended_order_quantity(769, 1000) == 0
    assert recommended_order_quantity(769, None) is None
    assert recommended_order_quantity(100, -20) == 100

    metrics = calculate_policy(50, 10, 14, 0.25, 95, available_stock=700)
    assert metrics.recommended_order_qty == 69


def test_calculator_prefers_record_rho_over_config() -> None:
    calculator = PolicyCalculator(PolicyConfig(corr_rho=0.0))
    record = PolicyRecord(
        sku="abc-1",
        forecast_demand=50,
        demand_std_dev=10,
        lead_time_days=16,
        service_level_percent=95,
    )

    default_metrics = calculator.metrics_for(record)
    assert default_metrics.lead_time_variance_factor == pytest.approx(4.0)
    assert default_metrics.sku == "ABC-1"

    tuned = calculator.metrics_for(record.model_copy(update={"corr_rho": 0.5}))
    assert tuned.lead_time_variance_factor == pytest.approx(math.sqrt(24))
    assert tuned.safety_stock > default_metrics.safety_stock
