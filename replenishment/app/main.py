r"""replenishment/app/main.py

Main entrypoint for the FastAPI application.

The API exposes the policy table, single-SKU recommendations, derived
ordering metrics and the catalog-wide bulk apply.  Configuration is read from
environment variables (or `.env`) and `configs/policy.yaml`.
"""


import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

BASE_DIR = Path(__file__).resolve().parents[2]  # repo root
load_dotenv(BASE_DIR / ".env")

from .api.v1 import configs, health, policies  # noqa: E402
from .core.config import get_settings  # noqa: E402
from .core.observability import TokenAndRateLimitMiddleware, metrics_endpoint  # noqa: E402

LOGGER = logging.getLogger(__name__)

_settings = get_settings()
LOGGER.info(
    "Policy engine starting: store=%s data_dir=%s config_dir=%s",
    _settings.policy_store_path,
    _settings.data_dir,
    _settings.config_dir,
)

app = FastAPI(title="Replenishment Policy API", version="0.1.0")

origins = [origin.strip() for origin in _settings.cors_origins.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TokenAndRateLimitMiddleware)

app.include_router(health.router, prefix="/api/v1")
app.include_router(policies.router, prefix="/api/v1")
app.include_router(configs.router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
def _root() -> RedirectResponse:
    """Redirect the root path to the interactive docs."""

    return RedirectResponse(url="/docs")


@app.get("/metrics", include_in_schema=False)
async def _metrics() -> Response:
    """Expose Prometheus metrics."""

    return metrics_endpoint()
