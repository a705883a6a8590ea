from __future__ import annotations

import sys
from collections import defaultdict, deque
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))


@pytest.fixture(autouse=True)
def _reset_request_limits(monkeypatch):
    """Give every test a fresh rate-limit window with auth disabled."""

    from replenishment.app.core import observability as obs

    monkeypatch.setattr(obs.TokenAndRateLimitMiddleware, "_buckets", defaultdict(deque))
    monkeypatch.setattr(obs.TokenAndRateLimitMiddleware, "_token", None)
