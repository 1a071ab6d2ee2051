from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class APIKeyType(str, Enum):
    """Who a key is issued to: a metric-collection agent or a customer querying data."""

    agent = "agent"
    customer = "customer"


class APIKeyStatus(str, Enum):
    active = "active"
    revoked = "revoked"


class APIKey(BaseModel):
    """Stored credential. Only the hash of the secret is ever kept."""

    id: str = Field(..., description="Key id.")
    organization_id: str = Field(..., description="Organization the key belongs to.")
    key_type: APIKeyType = Field(..., description="agent | customer.")
    key_hash: str = Field(..., description="Hex SHA-256 of the plaintext key.")
    name: str = Field(..., description="Display name.")
    created_at: datetime = Field(..., description="UTC creation timestamp.")
    expires_at: Optional[datetime] = Field(default=None, description="UTC expiry; null means never.")
    last_used_at: Optional[datetime] = Field(default=None, description="UTC time of the last successful validation.")
    status: APIKeyStatus = Field(APIKeyStatus.active, description="active | revoked.")
    permissions: Dict[str, Any] = Field(default_factory=dict, description="Opaque permission blob.")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_usable(self, now: datetime) -> bool:
        return self.status == APIKeyStatus.active and not self.is_expired(now)


class APIKeyOut(BaseModel):
    """Response model for a key; never includes the hash."""

    id: str
    organization_id: str
    key_type: APIKeyType
    name: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    status: APIKeyStatus
    permissions: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_key(cls, key: APIKey) -> "APIKeyOut":
        return cls(**key.model_dump(exclude={"key_hash"}))


class APIKeyCreate(BaseModel):
    """Request body for issuing a key in the caller's organization."""

    name: str = Field(..., description="Display name for the key.")
    key_type: APIKeyType = Field(..., description="agent | customer.")
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=3650, description="Days until expiry; null = never.")
    permissions: Dict[str, Any] = Field(default_factory=dict, description="Opaque permission blob.")


class APIKeyIssued(BaseModel):
    """Response for a newly issued key. The plaintext is returned exactly once."""

    key: str = Field(..., description="Plaintext key; store it now, it cannot be recovered.")
    api_key: APIKeyOut = Field(..., description="Stored key metadata.")


class TenantContext(BaseModel):
    """Request-scoped identity derived from a validated key; basis for every access check."""

    organization_id: str
    key_type: APIKeyType
    key_id: str
