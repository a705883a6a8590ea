r"""replenishment/app/api/v1/health.py

Health check endpoints.

Orchestrators and load balancers call `/api/v1/health` to verify that the
service is running; the payload also reports how many policies are loaded.
"""

from fastapi import APIRouter

from . import policies

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, object]:
    """Return a basic health indicator."""
    return {"status": "ok", "policies": len(policies._service.store)}
