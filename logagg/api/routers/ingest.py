from __future__ import annotations

import asyncio
import json
from typing import Dict

from fastapi import APIRouter, Depends, Request, status

from logagg.api.routers.deps import agent_tenant, app_state, customer_tenant
from logagg.api.schemas.api_keys import TenantContext
from logagg.api.schemas.common import ErrorResponse
from logagg.api.schemas.logs import IngestAccepted
from logagg.api.services.ingestion import BrokerMessage
from logagg.api.state import AppState

router = APIRouter(prefix="/api/v1/ingest", tags=["Ingestion"])


def _attribute_to_caller(body: bytes, org_id: str) -> bytes:
    """Overwrite tenant_id with the authenticated organization; anything unparseable passes through for the normalizer to reject."""
    try:
        doc = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return body
    if not isinstance(doc, dict):
        return body
    doc["tenant_id"] = org_id
    return json.dumps(doc).encode("utf-8")


@router.post(
    "",
    response_model=IngestAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
    summary="Ingest a telemetry sample",
    description=(
        "Accepts one agent telemetry document (same shape as broker messages). "
        "The record is attributed to the organization of the agent key, whatever tenant_id the body carries."
    ),
    operation_id="ingest_sample",
)
async def ingest(
    request: Request,
    ctx: TenantContext = Depends(agent_tenant),
    state: AppState = Depends(app_state),
) -> IngestAccepted:
    """Normalize, store and evaluate one telemetry sample."""
    body = _attribute_to_caller(await request.body(), ctx.organization_id)
    message = BrokerMessage(value=body)
    result = await asyncio.to_thread(state.ingestion.ingest, message)
    return IngestAccepted(
        id=result.log.id,
        organization_id=result.log.organization_id,
        processes=len(result.processes),
        alerts=len(result.alerts),
    )


@router.get(
    "/stats",
    response_model=Dict[str, int],
    summary="Broker ingestion counters",
    description="Messages processed, rejected (validation) and failed (storage/alerting) by the broker consumers.",
    operation_id="ingest_stats",
)
def ingest_stats(
    _: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Dict[str, int]:
    """Return ingestion counters."""
    return state.ingestion.stats.snapshot()
