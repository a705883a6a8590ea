"""API endpoints for reading and updating the policy engine constants."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from typing import Any, Dict, Optional

import yaml
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from ...core.config import (
    POLICY_CONFIG_FILENAME,
    get_settings,
    load_yaml,
    policy_config_from_mapping,
)
from . import policies

LOGGER = logging.getLogger(__name__)

router = APIRouter()

CONFIG_DIR = get_settings().config_dir


def _policy_path() -> str:
    return os.path.join(CONFIG_DIR, POLICY_CONFIG_FILENAME)


def _safe_write_yaml(path: str, payload: Dict[str, Any]) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".yaml", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)
        shutil.move(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


class PolicyConfigUpdate(BaseModel):
    smoothing_alpha: Optional[float] = Field(None, ge=0.0, le=1.0)
    corr_rho: Optional[float] = Field(None, ge=0.0, le=0.5)
    deviation_threshold: Optional[float] = Field(None, ge=0.0, le=10.0)
    ewma_window_days: Optional[int] = Field(None, ge=1, le=730)
    default_lead_time_days: Optional[int] = Field(None, ge=0, le=365)
    default_service_level_percent: Optional[float] = Field(None, ge=50.0, le=99.9)
    bulk_concurrency: Optional[int] = Field(None, ge=1, le=64)


@router.get("/configs/policy")
def get_policy_config() -> Dict[str, Any]:
    """Return the effective constants (file values merged over defaults)."""

    return policy_config_from_mapping(load_yaml(_policy_path())).to_dict()


@router.put("/configs/policy")
def put_policy_config(body: PolicyConfigUpdate) -> Dict[str, Any]:
    path = _policy_path()
    current = load_yaml(path)
    updated = dict(current)
    updated.update(body.model_dump(exclude_none=True))

    if updated != current:
        try:
            _safe_write_yaml(path, updated)
        except OSError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"error": "write_failed", "message": str(exc)},
            ) from exc

    config = policy_config_from_mapping(updated)
    policies.apply_policy_config(config)
    LOGGER.info("Policy configuration updated: %s", config.to_dict())
    return config.to_dict()
