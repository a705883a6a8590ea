r"""replenishment/app/services/movement_history.py

Read-only access to daily outbound movement history.

The history export is a table with ``date``, ``sku`` and ``outbound`` columns.
A Parquet sibling (``movements.parquet``) is preferred over the CSV when both
exist because it loads an order of magnitude faster on large catalogs.
"""

from __future__ import annotations

import logging
import threading
from datetime import date
from pathlib import Path
from typing import List, Optional

import pandas as pd

from ..models.schemas import DemandObservation, normalize_sku

LOGGER = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["date", "sku", "outbound"]


def read_movements(csv_path: str | Path, parquet_path: Optional[str | Path] = None) -> pd.DataFrame:
    """Load the movement table preferring Parquet with CSV fallback.

    Parameters
    ----------
    csv_path:
        Location of the canonical CSV export.
    parquet_path:
        Optional explicit Parquet path. When omitted we look for ``<csv>.parquet``.
    """

    csv_path = Path(csv_path)
    pq_path = Path(parquet_path) if parquet_path is not None else csv_path.with_suffix(".parquet")

    if pq_path.exists():
        frame = pd.read_parquet(pq_path, columns=REQUIRED_COLUMNS)
    elif csv_path.exists():
        frame = pd.read_csv(csv_path, usecols=REQUIRED_COLUMNS, dtype={"sku": str})
    else:
        raise FileNotFoundError(f"Movement history not found at {csv_path}")

    missing = [col for col in REQUIRED_COLUMNS if col not in frame.columns]
    if missing:
        raise ValueError(f"Movement history is missing columns: {missing}")

    frame = frame.copy()
    frame["date"] = pd.to_datetime(frame["date"], errors="coerce").dt.date
    frame["sku"] = frame["sku"].map(normalize_sku)
    frame["outbound"] = pd.to_numeric(frame["outbound"], errors="coerce").fillna(0.0).clip(lower=0.0)
    return frame.dropna(subset=["date"])


class MovementHistory:
    """Daily outbound quantities per SKU backed by a CSV/Parquet export."""

    def __init__(self, data_root: str = "data", filename: str = "movements.csv") -> None:
        self.data_root = Path(data_root)
        self.filename = filename
        self._frame: Optional[pd.DataFrame] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    def _csv_path(self) -> Path:
        return self.data_root / self.filename

    def _movements(self) -> pd.DataFrame:
        with self._lock:
            if self._frame is None:
                self._frame = read_movements(self._csv_path())
                LOGGER.info(
                    "Loaded %d movement rows from %s", len(self._frame), self.data_root
                )
            return self._frame

    def daily_outbound(self, sku: str, start: date, end: date) -> List[DemandObservation]:
        """Return per-day outbound totals for ``sku`` within ``[start, end]``.

        Only days present in the export are returned; callers treat absent
        days as zero demand.
        """

        key = normalize_sku(sku)
        frame = self._movements()
        mask = (frame["sku"] == key) & (frame["date"] >= start) & (frame["date"] <= end)
        subset = frame.loc[mask, ["date", "outbound"]]
        if subset.empty:
            return []

        per_day = subset.groupby("date")["outbound"].sum().sort_index()
        return [
            DemandObservation(date=day, sku=key, quantity=int(round(float(qty))))
            for day, qty in per_day.items()
        ]
