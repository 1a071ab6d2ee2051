"""Tenant-namespaced in-memory TTL cache used by the query path.

The cache is single-instance and best-effort: nothing here coordinates with
other processes. Isolation between organizations lives entirely in the keys
built by CacheKeyGenerator; `clear()` is global.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any, Dict, Optional, Tuple

from logagg.api.schemas.common import MonotonicClock, as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    # Absolute expiry on the cache clock; None never expires.
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class TTLCache:
    """
    Key -> value store with per-entry TTL.

    - ttl <= 0 means "never expires until deleted or cleared".
    - A get past expiry is a miss and drops the entry (lazy eviction).
    - sweep() drops every expired entry; cache_sweep_loop() calls it periodically.

    A single RLock serializes access to the dict; per-entry locking is not needed
    at the volumes this cache sees.
    """

    def __init__(self, clock: MonotonicClock = time.monotonic):
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}
        self._lock = RLock()

    def get(self, key: str) -> Tuple[Any, bool]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None, False
            if entry.expired(self._clock()):
                del self._store[key]
                return None, False
            return entry.value, True

    def set(self, key: str, value: Any, ttl: float) -> None:
        expires_at = self._clock() + float(ttl) if ttl > 0 else None
        with self._lock:
            self._store[key] = CacheEntry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix; returns how many were dropped."""
        with self._lock:
            doomed = [k for k in self._store if k.startswith(prefix)]
            for k in doomed:
                del self._store[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def sweep(self) -> int:
        """Actively evict expired entries; returns the number removed."""
        now = self._clock()
        with self._lock:
            doomed = [k for k, e in self._store.items() if e.expired(now)]
            for k in doomed:
                del self._store[k]
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


def _escape(part: str) -> str:
    # Organization ids and discriminators are joined with ':'; escape it so
    # "a:b" + "c" can never equal "a" + "b:c".
    return str(part).replace("%", "%25").replace(":", "%3A")


def _ts(value: datetime) -> str:
    return as_utc(value).isoformat()


class CacheKeyGenerator:
    """
    Builds cache keys as namespace:organization:discriminators, always in this order.

    Two organizations asking the same query always get different keys.
    """

    # PUBLIC_INTERFACE
    def org_prefix(self, namespace: str, org_id: str) -> str:
        """Prefix shared by every key of one namespace for one organization."""
        return f"{namespace}:{_escape(org_id)}:"

    def for_log(self, org_id: str, log_id: str) -> str:
        return self.org_prefix("log", org_id) + _escape(log_id)

    def for_log_list(self, org_id: str, limit: int, offset: int) -> str:
        return self.org_prefix("logs", org_id) + f"list:{int(limit)}:{int(offset)}"

    def for_time_range(self, org_id: str, start: datetime, end: datetime, limit: int, offset: int) -> str:
        return self.org_prefix("logs", org_id) + f"range:{_escape(_ts(start))}:{_escape(_ts(end))}:{int(limit)}:{int(offset)}"

    def for_host(self, org_id: str, host: str, limit: int, offset: int) -> str:
        return self.org_prefix("logs", org_id) + f"host:{_escape(host)}:{int(limit)}:{int(offset)}"

    def for_alert_trends(self, org_id: str, start: datetime, end: datetime) -> str:
        return self.org_prefix("alerts", org_id) + f"trends:{_escape(_ts(start))}:{_escape(_ts(end))}"


# PUBLIC_INTERFACE
async def cache_sweep_loop(cache: TTLCache, interval_sec: float, shutdown_event: asyncio.Event) -> None:
    """
    Background loop that evicts expired cache entries every interval_sec.

    Bounds growth from keys that are written once and never read again.
    """
    interval = max(1.0, float(interval_sec))
    logger.info("Cache sweeper started (interval=%ss)", interval)

    while not shutdown_event.is_set():
        try:
            removed = cache.sweep()
            if removed:
                logger.debug("Cache sweep evicted %d entries", removed)
        except Exception:
            logger.exception("Cache sweep failed")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Cache sweeper stopped")
