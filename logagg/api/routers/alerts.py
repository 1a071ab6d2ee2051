from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Path, Query

from logagg.api.errors import InvalidInput
from logagg.api.routers.deps import app_state, customer_tenant, page_params
from logagg.api.schemas.alerts import (
    Alert,
    AlertCounts,
    AlertSeverity,
    AlertStatus,
    AlertStatusUpdate,
    AlertTrends,
)
from logagg.api.schemas.api_keys import TenantContext
from logagg.api.schemas.common import ErrorResponse, Page, PageMeta
from logagg.api.state import AppState

router = APIRouter(prefix="/api/v1/alerts", tags=["Alerts"])

E = TypeVar("E", bound=Enum)


def _parse_enum(kind: Type[E], raw: str, field: str) -> E:
    try:
        return kind(raw.strip().upper())
    except ValueError as exc:
        allowed = ", ".join(m.value for m in kind)
        raise InvalidInput(f"invalid {field} {raw!r}; expected one of {allowed}", meta={"field": field}) from exc


@router.get(
    "",
    response_model=Page[Alert],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    summary="List alerts",
    description="Newest-first page of alerts for the caller's organization, optionally for one source host.",
    operation_id="list_alerts",
)
def list_alerts(
    source: Optional[str] = Query(default=None, description="Only alerts from this source."),
    page: PageMeta = Depends(page_params),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Page[Alert]:
    """List alerts."""
    if source:
        items = state.alerts.list_by_source(ctx.organization_id, source, page.limit, page.offset)
    else:
        items = state.alerts.list_alerts(ctx.organization_id, page.limit, page.offset)
    return Page[Alert](items=items, total=len(items), meta=page)


@router.get(
    "/trends",
    response_model=AlertTrends,
    responses={400: {"model": ErrorResponse}},
    summary="Alert trends",
    description="Counts by severity, status, hour of day and source for alerts created in [start, end]. "
    "Defaults to the 24 hours ending at the next whole minute.",
    operation_id="get_alert_trends",
)
def get_trends(
    start: Optional[datetime] = Query(default=None, description="Window start (ISO-8601)."),
    end: Optional[datetime] = Query(default=None, description="Window end (ISO-8601)."),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> AlertTrends:
    """Aggregate alert trends over a window."""
    start, end = state.alerts.trend_window(start, end)
    key = state.logs.keys.for_alert_trends(ctx.organization_id, start, end)
    return state.logs.read_through(
        key,
        state.config.cache_time_range_ttl_sec,
        lambda: state.alerts.get_trends(ctx.organization_id, start, end),
    )


@router.get(
    "/counts",
    response_model=AlertCounts,
    summary="Alert counts",
    description="Number of alerts per status and per severity; with start and end, also the count created in range.",
    operation_id="get_alert_counts",
)
def get_counts(
    start: Optional[datetime] = Query(default=None, description="Range start (ISO-8601)."),
    end: Optional[datetime] = Query(default=None, description="Range end (ISO-8601)."),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> AlertCounts:
    """Count alerts."""
    org = ctx.organization_id
    in_range = None
    if start is not None and end is not None:
        in_range = state.alerts.count_by_time_range(org, start, end)
    return AlertCounts(
        by_status={s.value: state.alerts.count_by_status(org, s) for s in AlertStatus},
        by_severity={s.value: state.alerts.count_by_severity(org, s) for s in AlertSeverity},
        in_range=in_range,
    )


@router.get(
    "/status/{status}",
    response_model=Page[Alert],
    responses={400: {"model": ErrorResponse}},
    summary="List alerts by status",
    description="Alerts with the given status (OPEN|RESOLVED|IGNORED).",
    operation_id="list_alerts_by_status",
)
def list_by_status(
    status: str = Path(..., description="Alert status."),
    page: PageMeta = Depends(page_params),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Page[Alert]:
    """List alerts with a status."""
    parsed = _parse_enum(AlertStatus, status, "status")
    items = state.alerts.list_by_status(ctx.organization_id, parsed, page.limit, page.offset)
    return Page[Alert](items=items, total=len(items), meta=page)


@router.get(
    "/severity/{severity}",
    response_model=Page[Alert],
    responses={400: {"model": ErrorResponse}},
    summary="List alerts by severity",
    description="Alerts with the given severity (LOW|MEDIUM|HIGH|CRITICAL).",
    operation_id="list_alerts_by_severity",
)
def list_by_severity(
    severity: str = Path(..., description="Alert severity."),
    page: PageMeta = Depends(page_params),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Page[Alert]:
    """List alerts with a severity."""
    parsed = _parse_enum(AlertSeverity, severity, "severity")
    items = state.alerts.list_by_severity(ctx.organization_id, parsed, page.limit, page.offset)
    return Page[Alert](items=items, total=len(items), meta=page)


@router.get(
    "/{alert_id}",
    response_model=Alert,
    responses={404: {"model": ErrorResponse}},
    summary="Get alert",
    description="Fetch one alert by id.",
    operation_id="get_alert",
)
def get_alert(
    alert_id: str = Path(..., description="Alert id."),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Alert:
    """Get an alert."""
    return state.alerts.get_alert(ctx.organization_id, alert_id)


@router.put(
    "/{alert_id}/status",
    response_model=Alert,
    responses={404: {"model": ErrorResponse}},
    summary="Update alert status",
    description="Set an alert's status. Resolving stamps resolved_at.",
    operation_id="update_alert_status",
)
def update_status(
    payload: AlertStatusUpdate,
    alert_id: str = Path(..., description="Alert id."),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Alert:
    """Update an alert's status."""
    updated = state.alerts.update_status(ctx.organization_id, alert_id, payload.status)
    state.logs.invalidate_organization(ctx.organization_id)
    return updated
