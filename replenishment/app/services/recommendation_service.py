"""Single-SKU recommendations and the bulk apply entry point.

``RecommendationService`` wires the movement history, the policy store and the
calculators together:

* ``recommend`` turns the last ``ewma_window_days`` of outbound movements into
  a smoothed demand mean / deviation and pairs them with the lead time and
  service level already on the policy (or the configured defaults);
* ``apply_recommendation`` writes one recommendation straight into the table;
* ``bulk_apply`` funnels many recommendations through
  :class:`BulkReconciliationEngine`.
"""

from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Iterable, List, Optional

from ..core.config import PolicyConfig
from ..core.errors import InsufficientDemandData
from ..core.observability import RECOMMENDATIONS
from ..models.schemas import (
    BulkApplyOptions,
    BulkApplyOutcome,
    PolicyMetrics,
    PolicyRecord,
    RecommendationResult,
    normalize_sku,
)
from .bulk_reconciliation import BulkReconciliationEngine, ProgressCallback
from .demand_statistics import compute_demand_statistics, window_bounds
from .movement_history import MovementHistory
from .policy_calculator import PolicyCalculator
from .policy_store import PolicyStore

LOGGER = logging.getLogger(__name__)


class RecommendationService:
    """Compute and apply replenishment policy recommendations."""

    def __init__(
        self,
        store: PolicyStore,
        history: MovementHistory,
        config: PolicyConfig | None = None,
    ) -> None:
        self.store = store
        self.history = history
        self.config = config or PolicyConfig()
        self.calculator = PolicyCalculator(self.config)

    def update_config(self, config: PolicyConfig) -> None:
        self.config = config
        self.calculator = PolicyCalculator(config)

    # ------------------------------------------------------------------
    def _alpha_for(self, record: Optional[PolicyRecord]) -> float:
        if record is not None and record.smoothing_alpha is not None:
            return record.smoothing_alpha
        return self.config.smoothing_alpha

    def recommend(self, sku: str, as_of: Optional[date] = None) -> RecommendationResult:
        """Return the recommended policy values for ``sku``.

        A window without any outbound movement yields ``insufficient_data``
        and leaves the demand fields empty instead of reporting zero demand.
        Errors from the history source propagate to the caller.
        """

        key = normalize_sku(sku)
        if not key:
            raise ValueError("sku must be a non-empty string")

        as_of = as_of or date.today()
        record = self.store.get(key)
        alpha = self._alpha_for(record)
        window_days = self.config.ewma_window_days
        start, end = window_bounds(as_of, window_days)

        notes: List[str] = []
        result = RecommendationResult(sku=key)

        observations = self.history.daily_outbound(key, start, end)
        try:
            stats = compute_demand_statistics(
                observations,
                as_of=as_of,
                alpha=alpha,
                previous_demand=record.forecast_demand if record else None,
                previous_std_dev=record.demand_std_dev if record else None,
                window_days=window_days,
                sku=key,
            )
        except InsufficientDemandData as exc:
            LOGGER.info("No demand history for %s; previous values retained", key)
            notes.append(f"{exc} Previous values retained.")
            result.insufficient_data = True
            RECOMMENDATIONS.labels("insufficient_data").inc()
        else:
            result.forecast_demand = stats.forecast_demand
            result.demand_std_dev = stats.demand_std_dev
            seeded = record is None or record.forecast_demand is None
            notes.append(
                f"EWMA (alpha={alpha:g}) over the last {window_days} days of outbound "
                f"movements: raw mean {stats.raw_mean:.2f}, raw std dev {stats.raw_std_dev:.2f}"
                + (" (seeded from raw values)." if seeded else ".")
            )
            RECOMMENDATIONS.labels("computed").inc()

        if record is not None and record.lead_time_days is not None:
            result.lead_time_days = record.lead_time_days
        else:
            result.lead_time_days = self.config.default_lead_time_days
            notes.append(
                f"Lead time unknown; default of {self.config.default_lead_time_days} days used."
            )

        if record is not None and record.service_level_percent is not None:
            result.service_level_percent = record.service_level_percent
        else:
            result.service_level_percent = self.config.default_service_level_percent
            notes.append(
                "Service level unknown; default of "
                f"{self.config.default_service_level_percent:g}% used."
            )

        result.notes = notes
        return result

    def apply_recommendation(
        self, sku: str, as_of: Optional[date] = None
    ) -> tuple[PolicyRecord, RecommendationResult]:
        """Write the non-empty recommended values for ``sku`` to the table."""

        recommendation = self.recommend(sku, as_of=as_of)
        record = self.store.get(recommendation.sku) or PolicyRecord(sku=recommendation.sku)

        updates = {
            name: getattr(recommendation, name)
            for name in (
                "forecast_demand",
                "demand_std_dev",
                "lead_time_days",
                "service_level_percent",
            )
            if getattr(recommendation, name) is not None
        }
        saved = self.store.upsert(record.model_copy(update=updates))
        LOGGER.info("Applied recommendation to %s: %s", saved.sku, sorted(updates))
        return saved, recommendation

    def compute_metrics(
        self, sku: str, available_stock: Optional[float] = None
    ) -> Optional[PolicyMetrics]:
        record = self.store.get(sku)
        if record is None:
            return None
        return self.calculator.metrics_for(record, available_stock=available_stock)

    def bulk_apply(
        self,
        options: BulkApplyOptions,
        *,
        target_skus: Optional[Iterable[str]] = None,
        catalog_skus: Optional[Iterable[str]] = None,
        as_of: Optional[date] = None,
        progress: Optional[ProgressCallback] = None,
        abort_event: Optional[threading.Event] = None,
    ) -> BulkApplyOutcome:
        """Reconcile recommendations for ``target_skus`` (default: every policy)."""

        policies = self.store.snapshot()
        targets = list(target_skus) if target_skus is not None else sorted(policies)
        engine = BulkReconciliationEngine(
            deviation_threshold=self.config.deviation_threshold,
            concurrency=self.config.bulk_concurrency,
        )
        result = engine.run(
            targets,
            lambda sku: self.recommend(sku, as_of=as_of),
            policies,
            options,
            catalog_skus=catalog_skus,
            persist=self.store.save_many,
            progress=progress,
            abort_event=abort_event,
        )
        return result.outcome
