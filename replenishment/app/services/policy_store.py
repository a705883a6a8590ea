r"""replenishment/app/services/policy_store.py

File-backed policy table.

Policies are kept in memory keyed by normalised SKU and persisted as a JSON
array.  Every write goes through a temporary file that is moved into place so
a crash never leaves a truncated table behind.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..core.errors import PolicyStoreError
from ..models.schemas import PolicyRecord, normalize_sku

LOGGER = logging.getLogger(__name__)


class PolicyStore:
    """Case-insensitive, JSON-persisted collection of ``PolicyRecord``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._records: Dict[str, PolicyRecord] = {}
        self._load()

    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable policy store at %s: %s", self.path, exc)
            return
        if not isinstance(payload, list):
            LOGGER.warning("Policy store at %s is not a JSON array; starting empty", self.path)
            return

        for entry in payload:
            record = self._coerce(entry)
            if record is not None:
                self._records[record.sku] = record
        LOGGER.info("Loaded %d policies from %s", len(self._records), self.path)

    @staticmethod
    def _coerce(entry: Any) -> Optional[PolicyRecord]:
        if isinstance(entry, PolicyRecord):
            entry = entry.model_dump()
        if not isinstance(entry, dict) or not normalize_sku(entry.get("sku")):
            return None
        try:
            return PolicyRecord.model_validate(entry)
        except ValidationError as exc:
            LOGGER.warning("Skipping invalid policy for sku=%s: %s", entry.get("sku"), exc)
            return None

    def _persist(self) -> None:
        directory = self.path.parent
        payload = [record.model_dump() for record in self._records.values()]
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2)
                shutil.move(tmp_path, self.path)
            finally:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
        except OSError as exc:
            LOGGER.exception("Failed to persist policy store to %s", self.path)
            raise PolicyStoreError(f"Unable to write policy store: {exc}") from exc

    # ------------------------------------------------------------------
    def list(self) -> List[PolicyRecord]:
        with self._lock:
            return [record.model_copy() for record in self._records.values()]

    def snapshot(self) -> Dict[str, PolicyRecord]:
        """Return a detached copy of the table keyed by normalised SKU."""

        with self._lock:
            return {sku: record.model_copy() for sku, record in self._records.items()}

    def get(self, sku: str) -> Optional[PolicyRecord]:
        key = normalize_sku(sku)
        with self._lock:
            record = self._records.get(key)
            return record.model_copy() if record is not None else None

    def has(self, sku: str) -> bool:
        key = normalize_sku(sku)
        with self._lock:
            return bool(key) and key in self._records

    def upsert(self, record: PolicyRecord | Dict[str, Any]) -> PolicyRecord:
        """Insert or replace a single record and persist."""

        sanitized = self._coerce(record)
        if sanitized is None:
            raise ValueError("policy record requires a non-empty sku")
        with self._lock:
            self._records[sanitized.sku] = sanitized
            self._persist()
        return sanitized.model_copy()

    def save_many(self, records: Iterable[PolicyRecord]) -> int:
        """Merge ``records`` into the table with a single write."""

        sanitized = [rec for rec in (self._coerce(r) for r in records) if rec is not None]
        if not sanitized:
            return 0
        with self._lock:
            for record in sanitized:
                self._records[record.sku] = record
            self._persist()
        return len(sanitized)

    def replace_all(self, records: Iterable[PolicyRecord | Dict[str, Any]]) -> int:
        """Replace the whole table; duplicate SKUs keep the last entry."""

        entries: Dict[str, PolicyRecord] = {}
        for raw in records:
            record = self._coerce(raw)
            if record is not None:
                entries[record.sku] = record
        with self._lock:
            self._records = entries
            self._persist()
        return len(entries)

    def delete(self, skus: Iterable[str]) -> List[str]:
        targets = {normalize_sku(sku) for sku in skus} - {""}
        with self._lock:
            removed = [sku for sku in targets if self._records.pop(sku, None) is not None]
            if removed:
                self._persist()
        return sorted(removed)

    def prune(self, valid_skus: Iterable[str]) -> List[str]:
        """Delete policies whose SKU is no longer cataloged."""

        valid = {normalize_sku(sku) for sku in valid_skus}
        with self._lock:
            orphans = [sku for sku in self._records if sku not in valid]
        if orphans:
            LOGGER.info("Pruning %d orphan policies", len(orphans))
        return self.delete(orphans)

    def rename(self, current_sku: str, next_sku: str, *, overwrite: bool = False) -> bool:
        """Move a policy to a new SKU key.

        When the target already exists and ``overwrite`` is false the source
        policy is dropped and the target kept.
        """

        current = normalize_sku(current_sku)
        target = normalize_sku(next_sku)
        if not current or not target or current == target:
            return False
        with self._lock:
            existing = self._records.get(current)
            if existing is None:
                return False
            del self._records[current]
            if target not in self._records or overwrite:
                self._records[target] = existing.model_copy(update={"sku": target})
            self._persist()
        return True

    def mark_manual(self, sku: str, flag: bool = True) -> Optional[PolicyRecord]:
        key = normalize_sku(sku)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if record.is_manually_managed != flag:
                record = record.model_copy(update={"is_manually_managed": flag})
                self._records[key] = record
                self._persist()
            return record.model_copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
