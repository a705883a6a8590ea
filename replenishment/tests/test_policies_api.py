from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
import sys

import pandas as pd
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from replenishment.app.api.v1 import policies
from replenishment.app.core.config import PolicyConfig
from replenishment.app.main import app
from replenishment.app.services.movement_history import MovementHistory
from replenishment.app.services.policy_store import PolicyStore
from replenishment.app.services.recommendation_service import RecommendationService

client = TestClient(app)

AS_OF = date(2024, 6, 30)


@pytest.fixture
def service(monkeypatch, tmp_path: Path) -> RecommendationService:
    start = AS_OF - timedelta(days=89)
    rows = [
        ((start + timedelta(days=i)).isoformat(), sku, 40 if i % 2 == 0 else 60)
        for sku in ("ABC-1", "XYZ-9")
        for i in range(90)
    ]
    pd.DataFrame(rows, columns=["date", "sku", "outbound"]).to_csv(
        tmp_path / "movements.csv", index=False
    )
    svc = RecommendationService(
        store=PolicyStore(tmp_path / "policies.json"),
        history=MovementHistory(data_root=str(tmp_path)),
        config=PolicyConfig(),
    )
    monkeypatch.setattr(policies, "_service", svc)
    return svc


def test_put_creates_then_updates_manual_policy(service: RecommendationService) -> None:
    response = client.put(
        "/api/v1/policies/abc-1",
        json={"name": "Widget", "forecast_demand": 20, "lead_time_days": 7},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["sku"] == "ABC-1"
    assert body["is_manually_managed"] is True

    response = client.put(
        "/api/v1/policies/ABC-1",
        json={"forecast_demand": 25, "is_manually_managed": False},
    )
    assert response.status_code == 200
    assert response.json()["is_manually_managed"] is False

    response = client.get("/api/v1/policies/abc-1")
    assert response.status_code == 200
    assert response.json()["forecast_demand"] == 25


def test_get_unknown_policy_returns_404(service: RecommendationService) -> None:
    response = client.get("/api/v1/policies/NOPE")
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "policy_not_found"


def test_bulk_save_list_and_prune(service: RecommendationService) -> None:
    response = client.post(
        "/api/v1/policies/bulk-save",
        json={"items": [{"sku": "a"}, {"sku": "b", "forecast_demand": 3}, {"sku": "c"}]},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "saved": 3}

    response = client.get("/api/v1/policies")
    assert [item["sku"] for item in response.json()["items"]] == ["A", "B", "C"]

    response = client.get("/api/v1/policies", params={"valid_skus": ["a", "c"]})
    payload = response.json()
    assert payload["removed"] == ["B"]
    assert [item["sku"] for item in payload["items"]] == ["A", "C"]


def test_delete_policy(service: RecommendationService) -> None:
    client.put("/api/v1/policies/DEL-1", json={})

    response = client.delete("/api/v1/policies/del-1")
    assert response.status_code == 200
    assert response.json()["removed"] == ["DEL-1"]

    assert client.delete("/api/v1/policies/DEL-1").status_code == 404


def test_recommendation_does_not_persist(service: RecommendationService) -> None:
    response = client.post(
        "/api/v1/policies/abc-1/recommendation", params={"as_of": AS_OF.isoformat()}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["forecast_demand"] == 50
    assert body["demand_std_dev"] == 10
    assert body["insufficient_data"] is False
    assert not service.store.has("ABC-1")


def test_apply_recommendation_persists(service: RecommendationService) -> None:
    response = client.post(
        "/api/v1/policies/ABC-1/apply-recommendation", params={"as_of": AS_OF.isoformat()}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["item"]["forecast_demand"] == 50
    assert body["recommendation"]["notes"]
    assert service.store.get("ABC-1").demand_std_dev == 10


def test_recommendation_without_history_returns_503(
    monkeypatch, tmp_path: Path, service: RecommendationService
) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.setattr(service, "history", MovementHistory(data_root=str(empty)))

    response = client.post("/api/v1/policies/ABC-1/recommendation")
    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "data_unavailable"


def test_metrics_endpoint(service: RecommendationService) -> None:
    client.put(
        "/api/v1/policies/ABC-1",
        json={
            "forecast_demand": 50,
            "demand_std_dev": 10,
            "lead_time_days": 14,
            "service_level_percent": 95,
        },
    )

    response = client.get("/api/v1/policies/ABC-1/metrics", params={"available_stock": 500})
    assert response.status_code == 200
    body = response.json()
    assert body["safety_stock"] == 69
    assert body["reorder_point"] == 769
    assert body["recommended_order_qty"] == 269
    assert body["weekly_outlook"]["week1"] == 350

    assert client.get("/api/v1/policies/NOPE/metrics").status_code == 404
    bad = client.get("/api/v1/policies/ABC-1/metrics", params={"available_stock": -1})
    assert bad.status_code == 422


def test_bulk_apply_endpoint(service: RecommendationService) -> None:
    client.post(
        "/api/v1/policies/bulk-save",
        json={
            "items": [
                {"sku": "ABC-1"},
                {"sku": "XYZ-9", "forecast_demand": 5, "is_manually_managed": True},
            ]
        },
    )

    response = client.post(
        "/api/v1/policies/bulk-apply",
        json={
            "mode": "fill",
            "include_lead_time": True,
            "skus": ["abc-1", "xyz-9", "gone"],
            "catalog_skus": ["ABC-1", "XYZ-9"],
            "as_of": AS_OF.isoformat(),
        },
    )

    assert response.status_code == 200
    outcome = response.json()
    assert outcome["total"] == 2
    assert outcome["applied_skus"] == ["ABC-1"]
    assert outcome["skipped"][0]["sku"] == "XYZ-9"
    assert outcome["aborted"] is False

    stored = service.store.get("ABC-1")
    assert stored.forecast_demand == 50
    assert stored.lead_time_days == 14
    assert service.store.get("XYZ-9").forecast_demand == 5


def test_bulk_apply_rejects_unknown_mode(service: RecommendationService) -> None:
    response = client.post("/api/v1/policies/bulk-apply", json={"mode": "replace"})
    assert response.status_code == 422


def test_put_rounds_fractional_lead_time(service: RecommendationService) -> None:
    response = client.put("/api/v1/policies/LT-1", json={"lead_time_days": 12.6})
    assert response.status_code == 201
    assert response.json()["lead_time_days"] == 13
    assert service.store.get("LT-1").lead_time_days == 13


def test_manual_flag_route_gates_bulk_apply(service: RecommendationService) -> None:
    client.post("/api/v1/policies/bulk-save", json={"items": [{"sku": "ABC-1"}]})

    response = client.post("/api/v1/policies/abc-1/manual", json={})
    assert response.status_code == 200
    assert response.json()["is_manually_managed"] is True

    outcome = client.post(
        "/api/v1/policies/bulk-apply",
        json={"skus": ["ABC-1"], "as_of": AS_OF.isoformat()},
    ).json()
    assert outcome["applied"] == 0
    assert service.store.get("ABC-1").forecast_demand is None

    response = client.post(
        "/api/v1/policies/ABC-1/manual", json={"is_manually_managed": False}
    )
    assert response.json()["is_manually_managed"] is False
    assert client.post("/api/v1/policies/NOPE/manual", json={}).status_code == 404


def test_rename_route(service: RecommendationService) -> None:
    client.post(
        "/api/v1/policies/bulk-save",
        json={"items": [{"sku": "OLD", "forecast_demand": 7}, {"sku": "KEEP", "forecast_demand": 2}]},
    )

    response = client.post("/api/v1/policies/old/rename", json={"new_sku": "new"})
    assert response.status_code == 200
    assert response.json()["sku"] == "NEW"
    assert response.json()["forecast_demand"] == 7
    assert not service.store.has("OLD")

    response = client.post("/api/v1/policies/NEW/rename", json={"new_sku": "KEEP"})
    assert response.json()["forecast_demand"] == 2
    assert not service.store.has("NEW")

    assert client.post("/api/v1/policies/GONE/rename", json={"new_sku": "X"}).status_code == 404
    assert client.post("/api/v1/policies/KEEP/rename", json={"new_sku": " keep"}).status_code == 400
