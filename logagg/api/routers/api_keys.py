from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Path, Response, status

from logagg.api.routers.deps import app_state, customer_tenant, page_params
from logagg.api.schemas.api_keys import APIKeyCreate, APIKeyIssued, APIKeyOut, TenantContext
from logagg.api.schemas.common import ErrorResponse, Page, PageMeta
from logagg.api.state import AppState

router = APIRouter(prefix="/api/v1/api-keys", tags=["API Keys"])


@router.get(
    "",
    response_model=Page[APIKeyOut],
    summary="List API keys",
    description="Keys of the caller's organization, newest first. Hashes are never returned.",
    operation_id="list_api_keys",
)
def list_keys(
    page: PageMeta = Depends(page_params),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Page[APIKeyOut]:
    """List API keys."""
    keys = state.api_keys.list_keys(ctx.organization_id, page.limit, page.offset)
    items = [APIKeyOut.from_key(k) for k in keys]
    return Page[APIKeyOut](items=items, total=len(items), meta=page)


@router.post(
    "",
    response_model=APIKeyIssued,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Issue API key",
    description="Issue a key in the caller's organization. The plaintext key is returned only in this response.",
    operation_id="create_api_key",
)
def create_key(
    payload: APIKeyCreate,
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> APIKeyIssued:
    """Issue an API key."""
    expires_in = timedelta(days=payload.expires_in_days) if payload.expires_in_days else None
    plaintext, key = state.api_keys.generate_key(
        ctx.organization_id,
        payload.name,
        payload.key_type,
        expires_in=expires_in,
        permissions=payload.permissions,
    )
    return APIKeyIssued(key=plaintext, api_key=APIKeyOut.from_key(key))


@router.get(
    "/{key_id}",
    response_model=APIKeyOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get API key",
    description="Fetch one key of the caller's organization.",
    operation_id="get_api_key",
)
def get_key(
    key_id: str = Path(..., description="Key id."),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> APIKeyOut:
    """Get an API key."""
    return APIKeyOut.from_key(state.api_keys.get_key(ctx.organization_id, key_id))


@router.delete(
    "/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Revoke API key",
    description="Revoke a key of the caller's organization; later validations of it fail.",
    operation_id="revoke_api_key",
)
def revoke_key(
    key_id: str = Path(..., description="Key id."),
    ctx: TenantContext = Depends(customer_tenant),
    state: AppState = Depends(app_state),
) -> Response:
    """Revoke an API key."""
    state.api_keys.revoke_key(ctx.organization_id, key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
