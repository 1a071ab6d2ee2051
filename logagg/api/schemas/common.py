from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

# Wall-clock source injected into services so timestamps are testable.
Clock = Callable[[], datetime]

# Interval clock (seconds, monotonic) used by the cache and the rate limiter.
MonotonicClock = Callable[[], float]

T = TypeVar("T")


class HealthResponse(BaseModel):
    """Response model for health endpoints."""

    status: str = Field(..., description="High-level health status string (e.g., 'healthy').")
    message: str = Field(..., description="Human-readable status message.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    detail: str = Field(..., description="Human-readable error details.")
    code: Optional[str] = Field(default=None, description="Optional machine-readable error code.")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata for debugging.")


class PageMeta(BaseModel):
    """Pagination window echoed back to the caller."""

    limit: int = Field(..., ge=1, description="Page size that was applied.")
    offset: int = Field(..., ge=0, description="Number of items skipped.")


class Page(BaseModel, Generic[T]):
    """Envelope for paginated list responses."""

    items: List[T] = Field(..., description="Items in this page.")
    total: int = Field(..., ge=0, description="Number of items returned in this page.")
    meta: PageMeta = Field(..., description="Pagination window.")


# PUBLIC_INTERFACE
def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
