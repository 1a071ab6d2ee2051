from __future__ import annotations

from fastapi import APIRouter, Request, Response

from logagg.api.schemas.common import HealthResponse, utc_now
from logagg.api.state import get_state

router = APIRouter(prefix="/api/v1", tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Liveness check; does not touch storage.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/readiness",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse}},
    summary="Readiness check",
    description="Pings MongoDB when it is the storage backend; 503 while it is unreachable.",
    operation_id="readiness_check",
)
def readiness_check(request: Request, response: Response) -> HealthResponse:
    """Report whether storage is reachable."""
    state = get_state(request.app)
    if state.mongo is not None and not state.mongo.ping():
        response.status_code = 503
        return HealthResponse(status="unavailable", message="MongoDB ping failed", timestamp=utc_now())
    return HealthResponse(
        status="ready", message=f"storage backend '{state.config.storage_backend}' reachable", timestamp=utc_now()
    )
