r"""replenishment/app/core/observability.py

Request middleware (auth, rate limiting, structured logs) and Prometheus
metrics for the policy engine."""

from __future__ import annotations

import json
import os
import threading
import time
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from .config import get_settings


_REQUEST_COUNTER = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "path", "status"]
)
_LATENCY_HISTOGRAM = Histogram(
    "http_request_latency_seconds", "Request latency", ["method", "path"]
)

BULK_APPLY_SKUS = Counter(
    "policy_bulk_apply_skus_total",
    "SKUs processed by bulk apply, by outcome",
    ["outcome"],
)
RECOMMENDATIONS = Counter(
    "policy_recommendations_total",
    "Single-SKU recommendations computed, by result",
    ["result"],
)


def _route_label(request: Request, fallback: str) -> str:
    """Prefer the route template so per-SKU paths share one label."""

    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template or fallback


class TokenAndRateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing auth, rate limiting, logging, and Prometheus metrics."""

    _lock: threading.Lock = threading.Lock()
    _buckets: dict[str, deque[float]] = defaultdict(deque)
    _per_minute: int = get_settings().rate_limit_per_min
    # Auth stays off under pytest; tests that exercise it patch this attribute.
    _token: str | None = None if os.getenv("PYTEST_CURRENT_TEST") else get_settings().api_token
    _exempt_prefixes: tuple[str, ...] = (
        "/api/v1/health",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        method = request.method
        client_ip = request.client.host if request.client else "unknown"
        request_id = (
            request.headers.get("x-request-id")
            or request.headers.get("request-id")
            or str(uuid.uuid4())
        )
        sku = None
        if path.startswith("/api/v1/policies/"):
            segment = path[len("/api/v1/policies/"):].split("/", 1)[0]
            if segment and segment not in {"bulk-save", "bulk-apply"}:
                sku = segment.upper()

        start_perf = time.perf_counter()
        start_wall = time.time()

        def _finalize(response: Response) -> Response:
            latency = time.perf_counter() - start_perf
            status_code = getattr(response, "status_code", 500)
            path_label = _route_label(request, path)

            _REQUEST_COUNTER.labels(method, path_label, str(status_code)).inc()
            _LATENCY_HISTOGRAM.labels(method, path_label).observe(latency)

            log_payload = {
                "timestamp": datetime.fromtimestamp(start_wall, tz=timezone.utc).isoformat(),
                "path": path,
                "method": method,
                "status": status_code,
                "latency_ms": int(latency * 1000),
                "request_id": request_id,
                "client_ip": client_ip,
                "sku": sku,
            }
            print(json.dumps(log_payload))
            return response

        if self._token and not path.startswith(self._exempt_prefixes):
            auth_header = request.headers.get("authorization", "")
            if auth_header != f"Bearer {self._token}":
                return _finalize(PlainTextResponse("Unauthorized", status_code=401))

        if self._per_minute > 0:
            now = time.time()
            with self._lock:
                window = self._buckets[client_ip]
                while window and now - window[0] > 60.0:
                    window.popleft()
                if len(window) >= self._per_minute:
                    return _finalize(PlainTextResponse("Too Many Requests", status_code=429))
                window.append(now)

        try:
            response = await call_next(request)
        except Exception:
            # Record the failure before the exception propagates.
            _finalize(PlainTextResponse("Internal Server Error", status_code=500))
            raise

        return _finalize(response)


def metrics_endpoint() -> Response:
    """Return Prometheus metrics payload."""

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
