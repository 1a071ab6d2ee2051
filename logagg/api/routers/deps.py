"""Shared request dependencies: tenant resolution, key-type guards, rate limiting, paging."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Query, Request, Response

from logagg.api.errors import RateLimited, Unauthorized
from logagg.api.schemas.api_keys import TenantContext
from logagg.api.schemas.common import PageMeta
from logagg.api.services.rate_limiter import SlidingWindowRateLimiter
from logagg.api.services.tenant_authority import require_agent_key, require_customer_key
from logagg.api.state import AppState, get_state


def app_state(request: Request) -> AppState:
    return get_state(request.app)


# PUBLIC_INTERFACE
def get_tenant(
    request: Request,
    response: Response,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key", description="API key (preferred)."),
    api_key: Optional[str] = Query(default=None, description="API key, when a header cannot be set."),
) -> TenantContext:
    """Authenticate the caller's key and expose the resolved organization on the response."""
    state = get_state(request.app)
    ctx = state.api_keys.authenticate(x_api_key or api_key)
    request.state.tenant = ctx
    response.headers["X-Organization-ID"] = ctx.organization_id
    response.headers["X-API-Key-Type"] = ctx.key_type.value
    return ctx


def _admit(limiter: SlidingWindowRateLimiter, identity: str) -> None:
    if not limiter.allow(identity):
        raise RateLimited(
            "rate limit exceeded",
            meta={"retry_after": limiter.retry_after(identity), "limit": limiter.limit},
        )


# PUBLIC_INTERFACE
def rate_limited_tenant(
    request: Request,
    response: Response,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key", description="API key (preferred)."),
    api_key: Optional[str] = Query(default=None, description="API key, when a header cannot be set."),
) -> TenantContext:
    """
    Authenticate, then admit the request through the sliding-window limiter.

    Authenticated callers are limited per API key. Callers whose credential is
    rejected are limited per client address, so guessing keys also hits 429.
    """
    limiter = get_state(request.app).rate_limiter
    try:
        ctx = get_tenant(request, response, x_api_key, api_key)
    except Unauthorized:
        host = request.client.host if request.client else "unknown"
        _admit(limiter, f"ip:{host}")
        raise
    _admit(limiter, f"key:{ctx.key_id}")
    return ctx


def customer_tenant(ctx: TenantContext = Depends(rate_limited_tenant)) -> TenantContext:
    return require_customer_key(ctx)


def agent_tenant(ctx: TenantContext = Depends(rate_limited_tenant)) -> TenantContext:
    return require_agent_key(ctx)


def page_params(
    limit: int = Query(default=50, ge=1, le=1000, description="Page size."),
    offset: int = Query(default=0, ge=0, description="Items to skip."),
) -> PageMeta:
    return PageMeta(limit=limit, offset=offset)
