"""API-key authority: resolves a presented credential to an organization identity.

Keys are stored only as hex SHA-256 digests. Validation order is fixed:
unknown digest, then revoked status, then expiry. A successful validation
touches `last_used_at` on a background worker; that write never blocks or
fails the request, and repeated validations of one key while its write is
still queued collapse into that write.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from logagg.api.db.repositories import APIKeyRepository
from logagg.api.errors import Forbidden, KeyExpired, KeyNotFound, KeyRevoked, NotFound, Unauthorized
from logagg.api.schemas.api_keys import APIKey, APIKeyStatus, APIKeyType, TenantContext
from logagg.api.schemas.common import Clock, utc_now

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
def hash_key(plaintext: str) -> str:
    """Return the lowercase hex SHA-256 digest of a plaintext key."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def parse_bootstrap_keys(raw: str) -> List[Tuple[str, APIKeyType, str]]:
    """
    Parse BOOTSTRAP_API_KEYS: comma-separated `org:type:plaintext` triples.

    Malformed entries are logged and skipped.
    """
    out: List[Tuple[str, APIKeyType, str]] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        pieces = part.split(":", 2)
        if len(pieces) != 3 or not all(p.strip() for p in pieces):
            logger.warning("Ignoring malformed bootstrap key entry (expected org:type:key)")
            continue
        org_id, key_type, plaintext = (p.strip() for p in pieces)
        try:
            out.append((org_id, APIKeyType(key_type.lower()), plaintext))
        except ValueError:
            logger.warning("Ignoring bootstrap key for org=%s with unknown type=%s", org_id, key_type)
    return out


class APIKeyService:
    def __init__(
        self,
        repo: APIKeyRepository,
        clock: Clock = utc_now,
        touch_executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._repo = repo
        self._clock = clock
        self._owns_executor = touch_executor is None
        self._touch_executor = touch_executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="apikey-touch")
        # key_id -> latest validation time not yet written; one queued write per key.
        self._pending_touches: Dict[str, datetime] = {}
        self._pending_lock = Lock()

    def close(self) -> None:
        if self._owns_executor:
            self._touch_executor.shutdown(wait=True)

    # ---- validation ----

    # PUBLIC_INTERFACE
    def validate_key(self, key_hash: str) -> APIKey:
        """
        Resolve a key digest to a usable APIKey.

        Raises:
            KeyNotFound: no key has this digest.
            KeyRevoked: the key exists but is not active.
            KeyExpired: the key has an expiry at or before now.
        """
        key = self._repo.get_by_hash(key_hash)
        if key is None:
            raise KeyNotFound("API key not found")
        if key.status != APIKeyStatus.active:
            raise KeyRevoked("API key is not active", meta={"key_id": key.id})

        now = self._clock()
        if key.is_expired(now):
            raise KeyExpired("API key has expired", meta={"key_id": key.id})

        self._schedule_touch(key.id, now)
        return key

    def _schedule_touch(self, key_id: str, at: datetime) -> None:
        with self._pending_lock:
            queued = key_id in self._pending_touches
            self._pending_touches[key_id] = at
        if not queued:
            self._touch_executor.submit(self._touch, key_id)

    def _touch(self, key_id: str) -> None:
        with self._pending_lock:
            at = self._pending_touches.pop(key_id, None)
        if at is None:
            return
        try:
            self._repo.update_last_used(key_id, at)
        except Exception:
            logger.exception("Failed to update last_used_at for key_id=%s", key_id)

    # PUBLIC_INTERFACE
    def authenticate(self, plaintext: Optional[str]) -> TenantContext:
        """Validate a presented plaintext key and return the tenant context it grants."""
        if not plaintext:
            raise Unauthorized("API key is required")
        key = self.validate_key(hash_key(plaintext))
        return TenantContext(organization_id=key.organization_id, key_type=key.key_type, key_id=key.id)

    # ---- key management ----

    # PUBLIC_INTERFACE
    def generate_key(
        self,
        org_id: str,
        name: str,
        key_type: APIKeyType,
        expires_in: Optional[timedelta] = None,
        permissions: Optional[Dict[str, Any]] = None,
        plaintext: Optional[str] = None,
    ) -> Tuple[str, APIKey]:
        """
        Issue a new key for org_id.

        Returns (plaintext, stored key). The plaintext is not recoverable afterwards.
        """
        secret = plaintext or uuid.uuid4().hex
        now = self._clock()
        key = APIKey(
            id=str(uuid.uuid4()),
            organization_id=org_id,
            key_type=key_type,
            key_hash=hash_key(secret),
            name=name,
            created_at=now,
            expires_at=(now + expires_in) if expires_in is not None else None,
            status=APIKeyStatus.active,
            permissions=dict(permissions or {}),
        )
        self._repo.create(key)
        logger.info("Issued %s key id=%s for org=%s", key_type.value, key.id, org_id)
        return secret, key

    def revoke_key(self, org_id: str, key_id: str) -> None:
        if not self._repo.revoke(org_id, key_id):
            raise NotFound("API key not found", meta={"key_id": key_id})
        logger.info("Revoked key id=%s for org=%s", key_id, org_id)

    def get_key(self, org_id: str, key_id: str) -> APIKey:
        key = self._repo.get_by_id(org_id, key_id)
        if key is None:
            raise NotFound("API key not found", meta={"key_id": key_id})
        return key

    def list_keys(self, org_id: str, limit: int = 50, offset: int = 0) -> List[APIKey]:
        return self._repo.list_by_organization(org_id, limit, offset)

    # PUBLIC_INTERFACE
    def seed_bootstrap_keys(self, raw: str) -> int:
        """Store bootstrap keys whose digest is not known yet; returns how many were created."""
        created = 0
        for org_id, key_type, plaintext in parse_bootstrap_keys(raw):
            if self._repo.get_by_hash(hash_key(plaintext)) is not None:
                continue
            self.generate_key(org_id, f"bootstrap-{key_type.value}", key_type, plaintext=plaintext)
            created += 1
        return created


# PUBLIC_INTERFACE
def require_agent_key(ctx: Optional[TenantContext]) -> TenantContext:
    """Pass through an agent-key context; raise Forbidden otherwise."""
    if ctx is None or ctx.key_type != APIKeyType.agent:
        raise Forbidden("agent API key required")
    return ctx


# PUBLIC_INTERFACE
def require_customer_key(ctx: Optional[TenantContext]) -> TenantContext:
    """Pass through a customer-key context; raise Forbidden otherwise."""
    if ctx is None or ctx.key_type != APIKeyType.customer:
        raise Forbidden("customer API key required")
    return ctx
