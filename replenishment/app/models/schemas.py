r"""replenishment/app/models/schemas.py

Pydantic models used throughout the API.

These models serve as both request payload validators and response
serialisation schemas for the replenishment policy engine.  Policy records are
sanitised on construction: negative quantities clamp to zero, non-finite
numbers become ``None`` and the service level is clamped to ``[50, 99.9]``.
"""

from __future__ import annotations

import math
from datetime import date
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_SERVICE_LEVEL_PERCENT = 50.0
MAX_SERVICE_LEVEL_PERCENT = 99.9
MAX_CORRELATION_RHO = 0.5


def normalize_sku(value: Any) -> str:
    """Return the canonical (trimmed, upper-case) form of a SKU."""

    if value is None:
        return ""
    return str(value).strip().upper()


def to_nullable_number(value: Any) -> Optional[float]:
    """Parse ``value`` as a non-negative number; ``None`` when unusable."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number if number >= 0 else 0.0


def to_non_negative_int(value: Any) -> Optional[int]:
    number = to_nullable_number(value)
    if number is None:
        return None
    return int(round(number))


def clamp_service_level(value: Any) -> Optional[float]:
    number = to_nullable_number(value)
    if number is None:
        return None
    return max(MIN_SERVICE_LEVEL_PERCENT, min(MAX_SERVICE_LEVEL_PERCENT, number))


def clamp_unit_interval(value: Any, upper: float = 1.0) -> Optional[float]:
    number = to_nullable_number(value)
    if number is None:
        return None
    return min(number, upper)


class DemandObservation(BaseModel):
    """One day's outbound quantity for one SKU."""

    model_config = ConfigDict(frozen=True)

    date: date
    sku: str
    quantity: int = Field(..., ge=0, description="Outbound units shipped on the date")


class PolicyRecord(BaseModel):
    """A SKU's ordering policy as persisted in the policy table."""

    sku: str = Field(..., min_length=1, description="Normalised SKU key")
    name: Optional[str] = None
    forecast_demand: Optional[float] = Field(
        None, description="Smoothed mean daily demand"
    )
    demand_std_dev: Optional[float] = Field(
        None, description="Smoothed daily demand standard deviation"
    )
    lead_time_days: Optional[int] = Field(None, description="Whole days from order to receipt")
    service_level_percent: Optional[float] = Field(
        None, description="Target probability (%) of not stocking out during lead time"
    )
    smoothing_alpha: Optional[float] = Field(
        None, description="Per-SKU EWMA factor; falls back to the configured default"
    )
    corr_rho: Optional[float] = Field(
        None, description="Per-SKU demand autocorrelation; falls back to the configured default"
    )
    is_manually_managed: bool = Field(
        False, description="Hand-edited policies are excluded from bulk apply by default"
    )

    @field_validator("sku", mode="before")
    @classmethod
    def _normalise_sku(cls, value: Any) -> str:
        return normalize_sku(value)

    @field_validator("name", mode="before")
    @classmethod
    def _normalise_name(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        return value.strip() or None

    @field_validator("forecast_demand", "demand_std_dev", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> Optional[float]:
        return to_nullable_number(value)

    @field_validator("lead_time_days", mode="before")
    @classmethod
    def _lead_time(cls, value: Any) -> Optional[int]:
        return to_non_negative_int(value)

    @field_validator("service_level_percent", mode="before")
    @classmethod
    def _service_level(cls, value: Any) -> Optional[float]:
        return clamp_service_level(value)

    @field_validator("smoothing_alpha", mode="before")
    @classmethod
    def _alpha(cls, value: Any) -> Optional[float]:
        return clamp_unit_interval(value)

    @field_validator("corr_rho", mode="before")
    @classmethod
    def _rho(cls, value: Any) -> Optional[float]:
        return clamp_unit_interval(value, upper=MAX_CORRELATION_RHO)

    @field_validator("is_manually_managed", mode="before")
    @classmethod
    def _manual_flag(cls, value: Any) -> bool:
        return bool(value) if value is not None else False


class PolicyUpdate(BaseModel):
    """Payload for creating or editing a single policy."""

    name: Optional[str] = None
    forecast_demand: Optional[float] = None
    demand_std_dev: Optional[float] = None
    lead_time_days: Optional[float] = None
    service_level_percent: Optional[float] = None
    smoothing_alpha: Optional[float] = None
    corr_rho: Optional[float] = None
    is_manually_managed: Optional[bool] = Field(
        None, description="Defaults to true for hand edits"
    )


class RecommendationResult(BaseModel):
    """Ephemeral output of a single-SKU recommendation computation."""

    sku: str
    forecast_demand: Optional[float] = None
    demand_std_dev: Optional[float] = None
    lead_time_days: Optional[float] = None
    service_level_percent: Optional[float] = None
    notes: List[str] = Field(default_factory=list)
    insufficient_data: bool = Field(
        False, description="True when no demand history was available"
    )


class WeeklyOutlook(BaseModel):
    week1: int
    week2: int
    week4: int
    week8: int


class PolicyMetrics(BaseModel):
    """Derived ordering figures for one SKU."""

    sku: Optional[str] = None
    z_score: float
    lead_time_variance_factor: float
    safety_stock: int
    reorder_point: int
    weekly_outlook: WeeklyOutlook
    recommended_order_qty: Optional[int] = None
    defaulted_inputs: List[str] = Field(default_factory=list)


class BulkApplyOptions(BaseModel):
    """Reconciliation policy for one bulk apply run."""

    mode: Literal["fill", "overwrite"] = "fill"
    include_lead_time: bool = False
    include_service_level: bool = False
    include_manual: bool = False


class SkuReason(BaseModel):
    sku: str
    reason: str


class BulkApplyOutcome(BaseModel):
    """Summary of a bulk apply run returned to the caller for display."""

    total: int = 0
    applied: int = 0
    applied_skus: List[str] = Field(default_factory=list)
    skipped: List[SkuReason] = Field(default_factory=list)
    failed: List[SkuReason] = Field(default_factory=list)
    aborted: bool = False
    persist_error: Optional[str] = Field(
        None, description="Set when merged policies could not be saved"
    )


class BulkApplyProgress(BaseModel):
    total: int
    completed: int
