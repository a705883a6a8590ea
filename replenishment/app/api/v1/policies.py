r"""replenishment/app/api/v1/policies.py

Routes for the policy table, recommendations and bulk apply."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from ...core.config import PolicyConfig, get_settings, load_policy_config
from ...core.errors import PolicyStoreError
from ...models import schemas
from ...services.movement_history import MovementHistory
from ...services.policy_store import PolicyStore
from ...services.recommendation_service import RecommendationService

LOGGER = logging.getLogger(__name__)

router = APIRouter()

_settings = get_settings()
_service = RecommendationService(
    store=PolicyStore(_settings.policy_store_path),
    history=MovementHistory(data_root=_settings.data_dir),
    config=load_policy_config(_settings.config_dir),
)


def apply_policy_config(config: PolicyConfig) -> None:
    """Swap the constants used by subsequent requests."""

    _service.update_config(config)


def _error_payload(code: str, message: str) -> dict[str, str]:
    """Return a standardised error payload."""

    return {"error": code, "message": message}


def _require_sku(sku: str) -> str:
    key = schemas.normalize_sku(sku)
    if not key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("invalid_sku", "A non-empty SKU is required."),
        )
    return key


def _store_failure(exc: PolicyStoreError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=_error_payload("write_failed", str(exc)),
    )


def _history_unavailable(exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=_error_payload("data_unavailable", str(exc)),
    )


class PolicyListResponse(BaseModel):
    items: List[schemas.PolicyRecord]
    removed: List[str] = Field(default_factory=list)


class BulkSaveRequest(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)


class BulkApplyRequest(schemas.BulkApplyOptions):
    """Bulk apply options plus the SKUs to target."""

    skus: Optional[List[str]] = Field(
        None, description="Target subset; every stored policy when omitted"
    )
    catalog_skus: Optional[List[str]] = Field(
        None, description="Cataloged SKUs; targets outside this set are ignored"
    )
    as_of: Optional[date] = None


class ManualFlagRequest(BaseModel):
    is_manually_managed: bool = True


class RenameRequest(BaseModel):
    new_sku: str
    overwrite: bool = False


class ApplyRecommendationResponse(BaseModel):
    item: schemas.PolicyRecord
    recommendation: schemas.RecommendationResult


@router.get("/policies", response_model=PolicyListResponse)
def list_policies(
    valid_skus: Optional[List[str]] = Query(
        None, description="Cataloged SKUs; policies outside this set are deleted"
    ),
) -> PolicyListResponse:
    """Return every stored policy, pruning orphans when a catalog is given."""

    removed: List[str] = []
    if valid_skus is not None:
        try:
            removed = _service.store.prune(valid_skus)
        except PolicyStoreError as exc:
            raise _store_failure(exc) from exc
    items = sorted(_service.store.list(), key=lambda rec: rec.sku)
    return PolicyListResponse(items=items, removed=removed)


@router.post("/policies/bulk-save")
def bulk_save(body: BulkSaveRequest) -> dict[str, Any]:
    """Replace the whole policy table with the submitted items."""

    LOGGER.info("Bulk save received with %d items", len(body.items))
    try:
        saved = _service.store.replace_all(body.items)
    except PolicyStoreError as exc:
        raise _store_failure(exc) from exc
    return {"success": True, "saved": saved}


@router.post("/policies/bulk-apply", response_model=schemas.BulkApplyOutcome)
def bulk_apply(body: BulkApplyRequest) -> schemas.BulkApplyOutcome:
    """Reconcile fresh recommendations into the policy table."""

    options = schemas.BulkApplyOptions(
        mode=body.mode,
        include_lead_time=body.include_lead_time,
        include_service_level=body.include_service_level,
        include_manual=body.include_manual,
    )
    LOGGER.info(
        "Bulk apply request received: mode=%s targets=%s",
        options.mode,
        len(body.skus) if body.skus is not None else "all",
    )
    return _service.bulk_apply(
        options,
        target_skus=body.skus,
        catalog_skus=body.catalog_skus,
        as_of=body.as_of,
    )


@router.get("/policies/{sku}", response_model=schemas.PolicyRecord)
def get_policy(sku: str) -> schemas.PolicyRecord:
    key = _require_sku(sku)
    record = _service.store.get(key)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("policy_not_found", f"No policy for SKU '{key}'."),
        )
    return record


@router.put("/policies/{sku}", response_model=schemas.PolicyRecord)
def upsert_policy(sku: str, body: schemas.PolicyUpdate, response: Response) -> schemas.PolicyRecord:
    """Create or edit a policy by hand.

    Hand edits mark the policy as manually managed unless the payload sets
    ``is_manually_managed`` explicitly.
    """

    key = _require_sku(sku)
    payload = body.model_dump()
    if payload.get("is_manually_managed") is None:
        payload["is_manually_managed"] = True
    payload["sku"] = key

    existed = _service.store.has(key)
    try:
        saved = _service.store.upsert(payload)
    except PolicyStoreError as exc:
        raise _store_failure(exc) from exc
    response.status_code = status.HTTP_200_OK if existed else status.HTTP_201_CREATED
    return saved


@router.delete("/policies/{sku}")
def delete_policy(sku: str) -> dict[str, Any]:
    key = _require_sku(sku)
    try:
        removed = _service.store.delete([key])
    except PolicyStoreError as exc:
        raise _store_failure(exc) from exc
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("policy_not_found", f"No policy for SKU '{key}'."),
        )
    return {"success": True, "removed": removed}


@router.post("/policies/{sku}/manual", response_model=schemas.PolicyRecord)
def set_manual(sku: str, body: ManualFlagRequest) -> schemas.PolicyRecord:
    """Protect a policy from bulk apply, or hand it back to automation."""

    key = _require_sku(sku)
    try:
        record = _service.store.mark_manual(key, body.is_manually_managed)
    except PolicyStoreError as exc:
        raise _store_failure(exc) from exc
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("policy_not_found", f"No policy for SKU '{key}'."),
        )
    return record


@router.post("/policies/{sku}/rename", response_model=schemas.PolicyRecord)
def rename_policy(sku: str, body: RenameRequest) -> schemas.PolicyRecord:
    """Move a policy to a new SKU key.

    When the new key already holds a policy it is kept, and the old one
    dropped, unless ``overwrite`` is set.
    """

    key = _require_sku(sku)
    target = schemas.normalize_sku(body.new_sku)
    if not target or target == key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("invalid_sku", "The new SKU must be non-empty and differ."),
        )
    try:
        moved = _service.store.rename(key, target, overwrite=body.overwrite)
    except PolicyStoreError as exc:
        raise _store_failure(exc) from exc
    if not moved:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("policy_not_found", f"No policy for SKU '{key}'."),
        )
    LOGGER.info("Policy %s renamed to %s (overwrite=%s)", key, target, body.overwrite)
    return _service.store.get(target)


@router.post("/policies/{sku}/recommendation", response_model=schemas.RecommendationResult)
def recommend(sku: str, as_of: Optional[date] = None) -> schemas.RecommendationResult:
    """Compute a recommendation without persisting it."""

    key = _require_sku(sku)
    try:
        return _service.recommend(key, as_of=as_of)
    except (FileNotFoundError, ValueError) as exc:
        LOGGER.warning("Recommendation unavailable for sku=%s: %s", key, exc)
        raise _history_unavailable(exc) from exc


@router.post("/policies/{sku}/apply-recommendation", response_model=ApplyRecommendationResponse)
def apply_recommendation(sku: str, as_of: Optional[date] = None) -> ApplyRecommendationResponse:
    key = _require_sku(sku)
    try:
        item, recommendation = _service.apply_recommendation(key, as_of=as_of)
    except (FileNotFoundError, ValueError) as exc:
        LOGGER.warning("Recommendation unavailable for sku=%s: %s", key, exc)
        raise _history_unavailable(exc) from exc
    except PolicyStoreError as exc:
        raise _store_failure(exc) from exc
    return ApplyRecommendationResponse(item=item, recommendation=recommendation)


@router.get("/policies/{sku}/metrics", response_model=schemas.PolicyMetrics)
def policy_metrics(
    sku: str,
    available_stock: Optional[float] = Query(None, ge=0),
) -> schemas.PolicyMetrics:
    """Return safety stock, reorder point and outlook for a stored policy."""

    key = _require_sku(sku)
    metrics = _service.compute_metrics(key, available_stock=available_stock)
    if metrics is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("policy_not_found", f"No policy for SKU '{key}'."),
        )
    return metrics
