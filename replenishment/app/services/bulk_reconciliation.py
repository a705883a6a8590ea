r"""replenishment/app/services/bulk_reconciliation.py

Bulk reconciliation of fresh recommendations into the policy table.

For every target SKU a recommendation is fetched (with bounded concurrency)
and merged field by field into the existing policy:

* ``fill`` mode only populates fields that are currently empty;
* ``overwrite`` mode replaces known values unless the relative deviation
  ``|new - current| / max(|current|, 1)`` exceeds the configured threshold;
* manually managed policies are left alone unless ``include_manual`` is set.

Each SKU ends up in exactly one of ``applied``, ``skipped`` or ``failed``.
Changed rows are written back in a single batch.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from joblib import Parallel, delayed

from ..core.errors import PolicyEngineError
from ..core.observability import BULK_APPLY_SKUS
from ..models.schemas import (
    BulkApplyOptions,
    BulkApplyOutcome,
    BulkApplyProgress,
    PolicyRecord,
    RecommendationResult,
    SkuReason,
    clamp_service_level,
    normalize_sku,
    to_non_negative_int,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_DEVIATION_THRESHOLD = 0.2
DEFAULT_CONCURRENCY = 4

REASON_MANUAL = "manually managed, not auto-applied."
REASON_NO_POLICY = "no policy record found."
REASON_ABORTED = "bulk apply aborted before processing."
REASON_NOTHING_TO_APPLY = "no applicable fields."
REASON_FETCH_FAILED = "failed to fetch recommendation."

RecommendationFetcher = Callable[[str], RecommendationResult]
ProgressCallback = Callable[[BulkApplyProgress], None]
PersistCallback = Callable[[List[PolicyRecord]], object]

# (field, label, option flag gating the field or None when always attempted)
_FIELDS: Tuple[Tuple[str, str, Optional[str]], ...] = (
    ("forecast_demand", "forecast demand", None),
    ("demand_std_dev", "demand std dev", None),
    ("lead_time_days", "lead time", "include_lead_time"),
    ("service_level_percent", "service level", "include_service_level"),
)


@dataclass(frozen=True)
class FieldOutcome:
    field: str
    applied: bool
    reason: Optional[str] = None


@dataclass
class MergeResult:
    """Outcome of merging one recommendation into one policy."""

    record: PolicyRecord
    changed: bool
    outcomes: List[FieldOutcome] = field(default_factory=list)

    @property
    def reason(self) -> str:
        for outcome in self.outcomes:
            if outcome.reason:
                return outcome.reason
        return REASON_NOTHING_TO_APPLY


@dataclass
class BulkApplyResult:
    merged: Dict[str, PolicyRecord]
    changed: Dict[str, PolicyRecord]
    outcome: BulkApplyOutcome


def sanitize_recommendation(result: RecommendationResult) -> Dict[str, Optional[float]]:
    """Round quantities to non-negative integers and clamp the service level."""

    return {
        "forecast_demand": to_non_negative_int(result.forecast_demand),
        "demand_std_dev": to_non_negative_int(result.demand_std_dev),
        "lead_time_days": to_non_negative_int(result.lead_time_days),
        "service_level_percent": clamp_service_level(result.service_level_percent),
    }


def relative_deviation(new: float, current: float) -> float:
    return abs(new - current) / max(abs(current), 1.0)


def merge_recommendation(
    record: PolicyRecord,
    values: Dict[str, Optional[float]],
    options: BulkApplyOptions,
    threshold: float = DEFAULT_DEVIATION_THRESHOLD,
) -> MergeResult:
    """Apply sanitised recommendation ``values`` to ``record`` per ``options``."""

    updates: Dict[str, float] = {}
    outcomes: List[FieldOutcome] = []

    for name, label, flag in _FIELDS:
        if flag is not None and not getattr(options, flag):
            continue

        new_value = values.get(name)
        if new_value is None:
            outcomes.append(FieldOutcome(name, False, f"{label}: no recommendation available"))
            continue

        current = getattr(record, name)
        if current is not None and not math.isfinite(current):
            current = None

        if current is not None and options.mode == "fill":
            outcomes.append(FieldOutcome(name, False, f"{label}: existing value retained"))
            continue

        if current is not None and options.mode == "overwrite":
            deviation = relative_deviation(new_value, current)
            if deviation > threshold:
                outcomes.append(
                    FieldOutcome(
                        name,
                        False,
                        f"{label}: deviation {round(deviation * 100)}% exceeds "
                        f"threshold ±{round(threshold * 100)}%",
                    )
                )
                continue

        if current is not None and current == new_value:
            outcomes.append(FieldOutcome(name, False, f"{label}: no change"))
            continue

        updates[name] = new_value
        outcomes.append(FieldOutcome(name, True))

    if not updates:
        return MergeResult(record=record, changed=False, outcomes=outcomes)
    return MergeResult(record=record.model_copy(update=updates), changed=True, outcomes=outcomes)


def prepare_targets(
    target_skus: Iterable[str],
    catalog_skus: Optional[Iterable[str]] = None,
) -> List[str]:
    """Normalise and de-duplicate targets, dropping SKUs missing from the catalog."""

    catalog = {normalize_sku(sku) for sku in catalog_skus} if catalog_skus is not None else None
    seen: set[str] = set()
    ordered: List[str] = []
    for raw in target_skus:
        sku = normalize_sku(raw)
        if not sku or sku in seen:
            continue
        if catalog is not None and sku not in catalog:
            continue
        seen.add(sku)
        ordered.append(sku)
    return ordered


def _fetch_one(
    fetch: RecommendationFetcher, sku: str
) -> Tuple[str, Optional[RecommendationResult], Optional[Exception]]:
    try:
        return sku, fetch(sku), None
    except Exception as exc:
        return sku, None, exc


class BulkReconciliationEngine:
    """Merge per-SKU recommendations into a policy table in one batch."""

    def __init__(
        self,
        deviation_threshold: float = DEFAULT_DEVIATION_THRESHOLD,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self.deviation_threshold = float(deviation_threshold)
        self.concurrency = max(int(concurrency), 1)

    # ------------------------------------------------------------------
    def run(
        self,
        target_skus: Iterable[str],
        fetch: RecommendationFetcher,
        policies: Dict[str, PolicyRecord],
        options: BulkApplyOptions,
        *,
        catalog_skus: Optional[Iterable[str]] = None,
        persist: Optional[PersistCallback] = None,
        progress: Optional[ProgressCallback] = None,
        abort_event: Optional[threading.Event] = None,
    ) -> BulkApplyResult:
        targets = prepare_targets(target_skus, catalog_skus)
        table = {normalize_sku(sku): record for sku, record in policies.items()}
        # read once; the manual set must not change mid-run
        manual = frozenset(sku for sku, record in table.items() if record.is_manually_managed)

        outcome = BulkApplyOutcome(total=len(targets))
        changed: Dict[str, PolicyRecord] = {}

        actionable: List[str] = []
        for sku in targets:
            if sku in manual and not options.include_manual:
                outcome.skipped.append(SkuReason(sku=sku, reason=REASON_MANUAL))
            elif sku not in table:
                outcome.skipped.append(SkuReason(sku=sku, reason=REASON_NO_POLICY))
            else:
                actionable.append(sku)

        LOGGER.info(
            "Bulk apply started: total=%d actionable=%d mode=%s lead_time=%s service_level=%s manual=%s",
            len(targets),
            len(actionable),
            options.mode,
            options.include_lead_time,
            options.include_service_level,
            options.include_manual,
        )

        completed = 0
        self._report(progress, len(actionable), completed)

        for start in range(0, len(actionable), self.concurrency):
            if abort_event is not None and abort_event.is_set():
                remaining = actionable[start:]
                LOGGER.warning("Bulk apply aborted with %d SKUs remaining", len(remaining))
                outcome.aborted = True
                outcome.skipped.extend(SkuReason(sku=sku, reason=REASON_ABORTED) for sku in remaining)
                break

            batch = actionable[start : start + self.concurrency]
            for sku, recommendation, error in self._fetch_batch(fetch, batch):
                self._decide(sku, recommendation, error, table, options, outcome, changed)
                completed += 1
                self._report(progress, len(actionable), completed)

        merged = dict(table)
        merged.update(changed)
        outcome.applied = len(changed)
        outcome.applied_skus = sorted(changed)

        if changed and persist is not None:
            try:
                persist([changed[sku] for sku in sorted(changed)])
            except Exception as exc:
                LOGGER.exception("Bulk apply merged %d policies but saving failed", len(changed))
                outcome.persist_error = str(exc)

        self._record_metrics(outcome)
        LOGGER.info(
            "Bulk apply finished: total=%d applied=%d skipped=%d failed=%d aborted=%s",
            outcome.total,
            outcome.applied,
            len(outcome.skipped),
            len(outcome.failed),
            outcome.aborted,
        )
        return BulkApplyResult(merged=merged, changed=changed, outcome=outcome)

    # ------------------------------------------------------------------
    def _fetch_batch(
        self, fetch: RecommendationFetcher, batch: Sequence[str]
    ) -> Iterable[Tuple[str, Optional[RecommendationResult], Optional[Exception]]]:
        if len(batch) == 1 or self.concurrency == 1:
            return (_fetch_one(fetch, sku) for sku in batch)
        return Parallel(
            n_jobs=min(self.concurrency, len(batch)),
            backend="threading",
            return_as="generator",
        )(delayed(_fetch_one)(fetch, sku) for sku in batch)

    def _decide(
        self,
        sku: str,
        recommendation: Optional[RecommendationResult],
        error: Optional[Exception],
        table: Dict[str, PolicyRecord],
        options: BulkApplyOptions,
        outcome: BulkApplyOutcome,
        changed: Dict[str, PolicyRecord],
    ) -> None:
        if error is not None or recommendation is None:
            message = str(error).strip() if error is not None else ""
            if not isinstance(error, PolicyEngineError):
                LOGGER.warning("Recommendation fetch failed for sku=%s: %r", sku, error)
            outcome.failed.append(SkuReason(sku=sku, reason=message or REASON_FETCH_FAILED))
            return

        result = merge_recommendation(
            table[sku],
            sanitize_recommendation(recommendation),
            options,
            self.deviation_threshold,
        )
        if result.changed:
            changed[sku] = result.record
        else:
            outcome.skipped.append(SkuReason(sku=sku, reason=result.reason))

    @staticmethod
    def _report(progress: Optional[ProgressCallback], total: int, completed: int) -> None:
        if progress is None:
            return
        try:
            progress(BulkApplyProgress(total=total, completed=completed))
        except Exception:
            LOGGER.exception("Bulk apply progress callback failed")

    @staticmethod
    def _record_metrics(outcome: BulkApplyOutcome) -> None:
        BULK_APPLY_SKUS.labels("applied").inc(outcome.applied)
        BULK_APPLY_SKUS.labels("skipped").inc(len(outcome.skipped))
        BULK_APPLY_SKUS.labels("failed").inc(len(outcome.failed))
