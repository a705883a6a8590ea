from __future__ import annotations

import json
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from replenishment.app.core.errors import PolicyStoreError
from replenishment.app.models.schemas import PolicyRecord
from replenishment.app.services.policy_store import PolicyStore


def test_upsert_normalises_and_persists(tmp_path: Path) -> None:
    path = tmp_path / "policies.json"
    store = PolicyStore(path)

    saved = store.upsert(
        {"sku": "  abc-1 ", "forecast_demand": -4, "service_level_percent": 120, "corr_rho": 0.9}
    )

    assert saved.sku == "ABC-1"
    assert saved.forecast_demand == 0
    assert saved.service_level_percent == 99.9
    assert saved.corr_rho == 0.5
    assert store.has("abc-1")
    assert json.loads(path.read_text())[0]["sku"] == "ABC-1"

    reloaded = PolicyStore(path)
    assert reloaded.get("ABC-1") == saved


def test_returned_records_are_detached(tmp_path: Path) -> None:
    store = PolicyStore(tmp_path / "policies.json")
    store.upsert(PolicyRecord(sku="A", forecast_demand=5))

    copy = store.get("a")
    copy.forecast_demand = 99
    assert store.get("A").forecast_demand == 5


def test_upsert_rejects_blank_sku(tmp_path: Path) -> None:
    store = PolicyStore(tmp_path / "policies.json")
    with pytest.raises(ValueError):
        store.upsert({"sku": "   "})


def test_replace_all_keeps_last_duplicate_and_drops_invalid(tmp_path: Path) -> None:
    store = PolicyStore(tmp_path / "policies.json")
    store.upsert(PolicyRecord(sku="OLD"))

    saved = store.replace_all(
        [
            {"sku": "a", "forecast_demand": 1},
            {"sku": "A", "forecast_demand": 2},
            {"sku": ""},
            "not-a-record",
            {"sku": "B"},
        ]
    )

    assert saved == 2
    assert not store.has("OLD")
    assert store.get("A").forecast_demand == 2
    assert [record.sku for record in store.list()] == ["A", "B"]


def test_save_many_merges_without_dropping_others(tmp_path: Path) -> None:
    store = PolicyStore(tmp_path / "policies.json")
    store.replace_all([PolicyRecord(sku="A"), PolicyRecord(sku="B")])

    count = store.save_many([PolicyRecord(sku="b", demand_std_dev=3)])

    assert count == 1
    assert len(store) == 2
    assert store.get("B").demand_std_dev == 3
    assert store.save_many([]) == 0


def test_prune_removes_uncataloged_policies(tmp_path: Path) -> None:
    store = PolicyStore(tmp_path / "policies.json")
    store.replace_all([PolicyRecord(sku=sku) for sku in ("A", "B", "C")])

    removed = store.prune(["a", "c"])

    assert removed == ["B"]
    assert sorted(store.snapshot()) == ["A", "C"]


def test_delete_reports_only_existing(tmp_path: Path) -> None:
    store = PolicyStore(tmp_path / "policies.json")
    store.upsert(PolicyRecord(sku="A"))
    assert store.delete(["a", "missing", ""]) == ["A"]
    assert store.delete(["A"]) == []


def test_rename_moves_policy(tmp_path: Path) -> None:
    store = PolicyStore(tmp_path / "policies.json")
    store.upsert(PolicyRecord(sku="OLD", forecast_demand=7))

    assert store.rename("old", "new") is True
    assert not store.has("OLD")
    assert store.get("NEW").forecast_demand == 7
    assert store.rename("missing", "X") is False
    assert store.rename("NEW", "new") is False


def test_rename_onto_existing_keeps_target_unless_overwrite(tmp_path: Path) -> None:
    store = PolicyStore(tmp_path / "policies.json")
    store.replace_all(
        [PolicyRecord(sku="SRC", forecast_demand=1), PolicyRecord(sku="DST", forecast_demand=2)]
    )

    store.rename("SRC", "DST")
    assert not store.has("SRC")
    assert store.get("DST").forecast_demand == 2

    store.upsert(PolicyRecord(sku="SRC", forecast_demand=1))
    store.rename("SRC", "DST", overwrite=True)
    assert store.get("DST").forecast_demand == 1


def test_mark_manual_toggles_flag(tmp_path: Path) -> None:
    path = tmp_path / "policies.json"
    store = PolicyStore(path)
    store.replace_all([PolicyRecord(sku="A"), PolicyRecord(sku="B")])

    assert store.mark_manual("b").is_manually_managed is True
    assert PolicyStore(path).get("B").is_manually_managed is True
    assert store.get("A").is_manually_managed is False
    assert store.mark_manual("B", False).is_manually_managed is False
    assert store.get("B").is_manually_managed is False
    assert store.mark_manual("missing") is None


def test_unreadable_file_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "policies.json"
    path.write_text("{not json")
    assert len(PolicyStore(path)) == 0

    path.write_text(json.dumps({"sku": "A"}))
    assert len(PolicyStore(path)) == 0


def test_write_failure_raises_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    store = PolicyStore(blocker / "policies.json")

    with pytest.raises(PolicyStoreError):
        store.upsert(PolicyRecord(sku="A"))


def test_fractional_lead_time_is_stored_as_whole_days(tmp_path: Path) -> None:
    path = tmp_path / "policies.json"
    store = PolicyStore(path)

    saved = store.upsert({"sku": "A", "lead_time_days": 12.6})

    assert saved.lead_time_days == 13
    assert isinstance(saved.lead_time_days, int)
    assert json.loads(path.read_text())[0]["lead_time_days"] == 13
    assert store.upsert({"sku": "B", "lead_time_days": -2}).lead_time_days == 0
