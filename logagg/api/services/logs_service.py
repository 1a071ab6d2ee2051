from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, List, Optional, Sequence, TypeVar

from logagg.api.db.repositories import LogRepository, ProcessRepository
from logagg.api.errors import NotFound, RepositoryError
from logagg.api.schemas.common import Clock, as_utc, utc_now
from logagg.api.schemas.logs import LogRecord, ProcessRecord
from logagg.api.services.cache import CacheKeyGenerator, TTLCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_ATTEMPTS = 3
STORE_BACKOFF_SEC = 0.1


class LogService:
    """
    Write and read path for LogRecords.

    Writes enrich the record, retry transient storage failures with linear
    backoff, then drop the writing organization's cached reads. Reads go
    through the cache when one is configured.
    """

    def __init__(
        self,
        logs: LogRepository,
        processes: ProcessRepository,
        cache: Optional[TTLCache] = None,
        *,
        environment: str = "production",
        application: str = "log-aggregator",
        component: str = "api",
        cache_ttl_sec: float = 300,
        time_range_ttl_sec: float = 60,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._logs = logs
        self._processes = processes
        self._cache = cache
        self._keys = CacheKeyGenerator()
        self._environment = environment
        self._application = application
        self._component = component
        self._cache_ttl = float(cache_ttl_sec)
        self._time_range_ttl = float(time_range_ttl_sec)
        self._clock = clock
        self._sleep = sleep

    @property
    def keys(self) -> CacheKeyGenerator:
        return self._keys

    def _with_retry(self, operation: str, fn: Callable[[], T]) -> T:
        attempt = 1
        while True:
            try:
                return fn()
            except RepositoryError as exc:
                logger.warning("%s failed (attempt %d/%d): %s", operation, attempt, STORE_ATTEMPTS, exc.detail)
                if attempt >= STORE_ATTEMPTS:
                    raise RepositoryError(
                        operation, f"{operation} failed after {STORE_ATTEMPTS} attempts: {exc.detail}"
                    ) from exc
            self._sleep(STORE_BACKOFF_SEC * attempt)
            attempt += 1

    # PUBLIC_INTERFACE
    def store_log(self, record: LogRecord, processes: Sequence[ProcessRecord] = ()) -> LogRecord:
        """
        Enrich and persist a record with its processes.

        Returns the stored (enriched) record. Raises RepositoryError once retries
        are exhausted.
        """
        enriched = record.enrich(
            environment=self._environment,
            application=self._application,
            component=self._component,
            at=self._clock(),
        )
        self._with_retry("logs.store", lambda: self._logs.store(enriched))
        if processes:
            batch = list(processes)
            self._with_retry("processes.store_batch", lambda: self._processes.store_batch(batch))

        self.invalidate_organization(enriched.organization_id)
        return enriched

    # PUBLIC_INTERFACE
    def invalidate_organization(self, org_id: str) -> None:
        """Drop every cached read belonging to org_id; other organizations keep theirs."""
        if self._cache is None:
            return
        for namespace in ("log", "logs", "alerts"):
            self._cache.invalidate_prefix(self._keys.org_prefix(namespace, org_id))

    # PUBLIC_INTERFACE
    def read_through(self, key: str, ttl: float, loader: Callable[[], T]) -> T:
        """Return the cached value for key, or load, cache and return it."""
        if self._cache is None:
            return loader()
        value, hit = self._cache.get(key)
        if hit:
            return value
        value = loader()
        self._cache.set(key, value, ttl)
        return value

    # ---- reads ----

    def get_log(self, org_id: str, log_id: str) -> LogRecord:
        record = self.read_through(
            self._keys.for_log(org_id, log_id), self._cache_ttl, lambda: self._logs.find_by_id(org_id, log_id)
        )
        if record is None:
            raise NotFound("log not found", meta={"log_id": log_id})
        return record

    def list_logs(self, org_id: str, limit: int, offset: int) -> List[LogRecord]:
        return self.read_through(
            self._keys.for_log_list(org_id, limit, offset),
            self._cache_ttl,
            lambda: self._logs.list(org_id, limit, offset),
        )

    def list_by_time_range(
        self, org_id: str, start: datetime, end: datetime, limit: int, offset: int
    ) -> List[LogRecord]:
        start, end = as_utc(start), as_utc(end)
        return self.read_through(
            self._keys.for_time_range(org_id, start, end, limit, offset),
            self._time_range_ttl,
            lambda: self._logs.list_by_time_range(org_id, start, end, limit, offset),
        )

    def count_by_time_range(self, org_id: str, start: datetime, end: datetime) -> int:
        return self._logs.count_by_time_range(org_id, as_utc(start), as_utc(end))

    def list_by_host(self, org_id: str, host: str, limit: int, offset: int) -> List[LogRecord]:
        return self.read_through(
            self._keys.for_host(org_id, host, limit, offset),
            self._cache_ttl,
            lambda: self._logs.list_by_host(org_id, host, limit, offset),
        )

    def list_processes(self, org_id: str, log_id: str) -> List[ProcessRecord]:
        # The parent lookup keeps another organization's log ids opaque.
        self.get_log(org_id, log_id)
        return self._processes.find_by_log_id(org_id, log_id)
