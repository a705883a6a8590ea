r"""replenishment/app/services/demand_statistics.py

Smoothed daily demand statistics for a single SKU.

Outbound movements over a rolling window (90 days by default) are aggregated
into a dense daily series, summarised with the population mean and standard
deviation, and blended into the previously stored policy values with a
one-step exponentially weighted moving average.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from ..core.errors import InsufficientDemandData
from ..models.schemas import DemandObservation

LOGGER = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 90


@dataclass(frozen=True)
class DemandWindow:
    """Raw summary of one demand window."""

    mean: float
    std_dev: float
    sample_size: int
    total_quantity: float


@dataclass(frozen=True)
class DemandStatistics:
    """Smoothed demand figures ready to be written to a policy record."""

    forecast_demand: int
    demand_std_dev: int
    raw_mean: float
    raw_std_dev: float
    sample_size: int
    alpha: float


def window_bounds(as_of: date, window_days: int) -> tuple[date, date]:
    """Return the inclusive ``(start, end)`` dates of a window ending ``as_of``."""

    days = max(int(window_days), 1)
    return as_of - timedelta(days=days - 1), as_of


def daily_series(
    observations: Iterable[DemandObservation],
    start: date,
    end: date,
) -> pd.Series:
    """Return a dense daily outbound series between ``start`` and ``end``.

    Days without a movement are filled with zero; multiple movements on the
    same day are summed.
    """

    index = pd.date_range(start, end, freq="D")
    rows = [(pd.Timestamp(obs.date), obs.quantity) for obs in observations]
    if not rows:
        return pd.Series(0.0, index=index, dtype=float)

    frame = pd.DataFrame(rows, columns=["date", "quantity"])
    frame["quantity"] = pd.to_numeric(frame["quantity"], errors="coerce").fillna(0.0)
    frame["quantity"] = frame["quantity"].clip(lower=0.0)
    per_day = frame.groupby("date")["quantity"].sum()
    return per_day.reindex(index, fill_value=0.0).astype(float)


def summarize_window(
    observations: Iterable[DemandObservation],
    as_of: date,
    window_days: int = DEFAULT_WINDOW_DAYS,
    *,
    sku: str = "",
) -> DemandWindow:
    """Summarise the window ending ``as_of``.

    Raises
    ------
    InsufficientDemandData
        When no observation falls inside the window.
    """

    start, end = window_bounds(as_of, window_days)
    in_window = [obs for obs in observations if start <= obs.date <= end]
    if not in_window:
        raise InsufficientDemandData(sku, window_days)

    series = daily_series(in_window, start, end)
    values = series.to_numpy(dtype=float)
    # population statistics (ddof=0) over the full window
    mean = float(np.mean(values))
    std_dev = float(np.std(values))
    return DemandWindow(
        mean=max(mean, 0.0),
        std_dev=max(std_dev, 0.0),
        sample_size=int(values.size),
        total_quantity=float(values.sum()),
    )


def smooth_value(raw: float, previous: Optional[float], alpha: float) -> Optional[int]:
    """Blend ``raw`` into ``previous`` and round to a non-negative integer.

    Without a usable previous value the raw value seeds the average.  A
    non-finite raw value keeps the previous one.
    """

    prev_ok = previous is not None and math.isfinite(previous)
    if raw is None or not math.isfinite(raw):
        return max(0, int(round(previous))) if prev_ok else None

    base = max(0.0, raw)
    if alpha is None or not math.isfinite(alpha) or not prev_ok:
        return max(0, int(round(base)))

    weight = min(max(alpha, 0.0), 1.0)
    return max(0, int(round(weight * base + (1.0 - weight) * previous)))


def compute_demand_statistics(
    observations: Iterable[DemandObservation],
    *,
    as_of: date,
    alpha: float,
    previous_demand: Optional[float] = None,
    previous_std_dev: Optional[float] = None,
    window_days: int = DEFAULT_WINDOW_DAYS,
    sku: str = "",
) -> DemandStatistics:
    """Return EWMA-smoothed demand mean and standard deviation for ``sku``."""

    window = summarize_window(observations, as_of, window_days, sku=sku)

    forecast = smooth_value(window.mean, previous_demand, alpha)
    std_dev = smooth_value(window.std_dev, previous_std_dev, alpha)

    LOGGER.debug(
        "Demand stats for %s: raw_mean=%.3f raw_std=%.3f smoothed=(%s, %s) alpha=%.2f",
        sku,
        window.mean,
        window.std_dev,
        forecast,
        std_dev,
        alpha,
    )

    return DemandStatistics(
        forecast_demand=int(forecast or 0),
        demand_std_dev=int(std_dev or 0),
        raw_mean=window.mean,
        raw_std_dev=window.std_dev,
        sample_size=window.sample_size,
        alpha=alpha,
    )
