from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from logagg.api.errors import InvalidInput
from logagg.api.routers.deps import app_state, customer_tenant, page_params
from logagg.api.schemas.api_keys import TenantContext
from logagg.api.schemas.common import ErrorResponse, Page, PageMeta, as_utc
from logagg.api.schemas.logs import LogRecord, ProcessRecord
from logagg.api.state import AppState

router = APIRouter(prefix="/api/v1/logs", tags=["Logs"])


@router.get(
    "",
    response_model=Page[LogRecord],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    summary="List logs",
    description="Newest-first page of the caller's organization's logs, optionally for a single host.",
    operation_id="list_logs",
)
def list_logs(
    host: Optional[str] = Query(default=None, description="Only logs from this host."),
    page: PageMeta = Depends(page_params),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Page[LogRecord]:
    """List logs for the caller's organization."""
    if host:
        items = state.logs.list_by_host(ctx.organization_id, host, page.limit, page.offset)
    else:
        items = state.logs.list_logs(ctx.organization_id, page.limit, page.offset)
    return Page[LogRecord](items=items, total=len(items), meta=page)


@router.get(
    "/range",
    response_model=Page[LogRecord],
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
    summary="List logs in a time range",
    description="Logs whose timestamp falls in [start, end] (inclusive), newest first.",
    operation_id="list_logs_by_time_range",
)
def list_logs_by_time_range(
    start: datetime = Query(..., description="Range start (ISO-8601)."),
    end: datetime = Query(..., description="Range end (ISO-8601)."),
    page: PageMeta = Depends(page_params),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Page[LogRecord]:
    """List logs inside a time window."""
    start, end = as_utc(start), as_utc(end)
    if start > end:
        raise InvalidInput("start must not be after end")
    items = state.logs.list_by_time_range(ctx.organization_id, start, end, page.limit, page.offset)
    return Page[LogRecord](items=items, total=len(items), meta=page)


@router.get(
    "/{log_id}",
    response_model=LogRecord,
    responses={404: {"model": ErrorResponse}},
    summary="Get log",
    description="Fetch one log by id. Logs of other organizations are reported as not found.",
    operation_id="get_log",
)
def get_log(
    log_id: str = Path(..., description="Log id."),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> LogRecord:
    """Get a log by id."""
    return state.logs.get_log(ctx.organization_id, log_id)


@router.get(
    "/{log_id}/processes",
    response_model=List[ProcessRecord],
    responses={404: {"model": ErrorResponse}},
    summary="List processes of a log",
    description="Process snapshot reported together with the given log.",
    operation_id="list_log_processes",
)
def list_log_processes(
    log_id: str = Path(..., description="Log id."),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> List[ProcessRecord]:
    """List the processes stored with a log."""
    return state.logs.list_processes(ctx.organization_id, log_id)
