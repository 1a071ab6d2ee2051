from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from logagg.api.config import BackendConfig
from logagg.api.db.memory import (
    InMemoryAlertRepository,
    InMemoryAPIKeyRepository,
    InMemoryLogRepository,
    InMemoryProcessRepository,
)
from logagg.api.db.mongo import MongoManager
from logagg.api.db.mongo_repositories import (
    MongoAlertRepository,
    MongoAPIKeyRepository,
    MongoLogRepository,
    MongoProcessRepository,
)
from logagg.api.schemas.alerts import AlertThresholds
from logagg.api.schemas.common import Clock, MonotonicClock, utc_now
from logagg.api.services.alert_engine import AlertEngine
from logagg.api.services.cache import TTLCache
from logagg.api.services.ingestion import IngestionHandler, MessageSource, QueueMessageSource
from logagg.api.services.logs_service import LogService
from logagg.api.services.rate_limiter import SlidingWindowRateLimiter
from logagg.api.services.tenant_authority import APIKeyService


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    mongo: Optional[MongoManager]
    logs: LogService
    alerts: AlertEngine
    api_keys: APIKeyService
    ingestion: IngestionHandler
    cache: Optional[TTLCache]
    rate_limiter: SlidingWindowRateLimiter
    message_source: Optional[MessageSource] = None
    ingestion_task: Optional[object] = None  # asyncio.Task, but kept loose to avoid import cycles
    cache_sweep_task: Optional[object] = None  # asyncio.Task for the cache sweeper


# PUBLIC_INTERFACE
def build_state(
    config: BackendConfig,
    *,
    clock: Clock = utc_now,
    monotonic: MonotonicClock = time.monotonic,
    message_source: Optional[MessageSource] = None,
) -> AppState:
    """Wire repositories and services for the configured storage backend."""
    mongo: Optional[MongoManager] = None
    if config.storage_backend == "memory":
        log_repo = InMemoryLogRepository()
        process_repo = InMemoryProcessRepository()
        alert_repo = InMemoryAlertRepository()
        key_repo = InMemoryAPIKeyRepository()
    else:
        mongo = MongoManager(config.mongo_uri, config.mongo_db_name)
        log_repo = MongoLogRepository(mongo)
        process_repo = MongoProcessRepository(mongo)
        alert_repo = MongoAlertRepository(mongo)
        key_repo = MongoAPIKeyRepository(mongo)

    cache = TTLCache(clock=monotonic) if config.cache_enabled else None
    logs = LogService(
        log_repo,
        process_repo,
        cache,
        environment=config.log_env,
        application=config.log_app,
        component=config.log_component,
        cache_ttl_sec=config.cache_ttl_sec,
        time_range_ttl_sec=config.cache_time_range_ttl_sec,
        clock=clock,
    )
    alerts = AlertEngine(
        alert_repo,
        AlertThresholds(
            cpu_usage_percent=config.alert_cpu_threshold,
            memory_usage_percent=config.alert_memory_threshold,
            process_count=config.alert_process_count_threshold,
        ),
        clock=clock,
        system_memory_bytes=config.system_memory_bytes,
        trend_page_limit=config.trend_page_limit,
    )

    if message_source is None and config.ingest_queue_partitions > 0:
        message_source = QueueMessageSource(partitions=config.ingest_queue_partitions)

    return AppState(
        config=config,
        mongo=mongo,
        logs=logs,
        alerts=alerts,
        api_keys=APIKeyService(key_repo, clock=clock),
        ingestion=IngestionHandler(logs, alerts, multi_tenancy_enabled=config.multi_tenancy_enabled, clock=clock),
        cache=cache,
        rate_limiter=SlidingWindowRateLimiter(
            config.rate_limit_requests, config.rate_limit_window_sec, clock=monotonic
        ),
        message_source=message_source,
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, state: AppState) -> None:
    """Attach a built AppState to the app."""
    app.state.state = state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
