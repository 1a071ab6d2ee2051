from __future__ import annotations

import asyncio
import logging
import math
from typing import Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from logagg.api.config import load_config
from logagg.api.errors import LogAggError, RateLimited
from logagg.api.routers import alerts, api_keys, health, ingest, logs
from logagg.api.schemas.common import ErrorResponse
from logagg.api.services.cache import cache_sweep_loop
from logagg.api.services.ingestion import ingestion_loop
from logagg.api.state import AppState, build_state, get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service liveness and readiness."},
    {"name": "Logs", "description": "Tenant-scoped telemetry log queries."},
    {"name": "Alerts", "description": "Threshold alerts, lifecycle and trends."},
    {"name": "Ingestion", "description": "HTTP ingestion of agent telemetry."},
    {"name": "API Keys", "description": "Organization API key management."},
]

logger = logging.getLogger(__name__)


def _allowed_origins(extra: List[str]) -> List[str]:
    # Local dashboard by default, plus configured origins; de-duped in order.
    origins = ["http://localhost:3000", "http://127.0.0.1:3000", *extra]
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


async def _handle_core_error(request: Request, exc: LogAggError) -> JSONResponse:
    """Map core error kinds onto HTTP statuses with the ErrorResponse envelope."""
    headers: Optional[Dict[str, str]] = None
    if isinstance(exc, RateLimited):
        retry_after = float(exc.meta.get("retry_after") or 1.0)
        headers = {"Retry-After": str(max(1, math.ceil(retry_after)))}
    if exc.status_code >= 500:
        logger.error("%s %s failed code=%s: %s", request.method, request.url.path, exc.code, exc.detail)
    body = ErrorResponse(detail=exc.detail, code=exc.code, meta=exc.meta)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"), headers=headers)


async def _stop_task(task: Optional[object], event: Optional[asyncio.Event], name: str) -> None:
    if event is not None:
        event.set()
    if task is not None:
        try:
            await asyncio.wait_for(task, timeout=5.0)  # type: ignore[arg-type]
        except Exception:
            logger.exception("Error stopping %s task", name)


# PUBLIC_INTERFACE
def create_app(state: Optional[AppState] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With no state, configuration is read from env (see logagg.api.config) and
    repositories/services are wired for the configured storage backend.
    """
    if state is None:
        state = build_state(load_config())

    app = FastAPI(
        title="Log Aggregator API",
        description=(
            "Multi-tenant telemetry log aggregator. Agents publish host/process samples which are "
            "normalized into per-organization log records, evaluated against alert thresholds and "
            "exposed through API-key protected, rate-limited queries."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
    )
    init_state(app, state)
    app.add_exception_handler(LogAggError, _handle_core_error)  # type: ignore[arg-type]

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: verify storage, ensure indexes, seed bootstrap keys and start background loops."""
        st = get_state(app)

        if st.mongo is not None:
            # Verify early so misconfigured Mongo doesn't silently break ingestion.
            st.mongo.connect()
            if not st.mongo.ping():
                raise RuntimeError("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")
            st.mongo.init_indexes(log_ttl_seconds=int(st.config.log_retention_ttl_seconds))

        if st.config.bootstrap_api_keys:
            created = st.api_keys.seed_bootstrap_keys(st.config.bootstrap_api_keys)
            logger.info("Seeded %d bootstrap API key(s)", created)

        if st.cache is not None:
            app.state._cache_shutdown = asyncio.Event()
            st.cache_sweep_task = asyncio.create_task(
                cache_sweep_loop(st.cache, st.config.cache_sweep_interval_sec, app.state._cache_shutdown)
            )

        if st.message_source is not None:
            app.state._ingestion_shutdown = asyncio.Event()
            st.ingestion_task = asyncio.create_task(ingestion_loop(st, app.state._ingestion_shutdown))

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop consumers and the cache sweeper, then release storage."""
        st = get_state(app)
        await _stop_task(st.ingestion_task, getattr(app.state, "_ingestion_shutdown", None), "ingestion")
        await _stop_task(st.cache_sweep_task, getattr(app.state, "_cache_shutdown", None), "cache sweep")
        st.api_keys.close()
        if st.mongo is not None:
            st.mongo.close()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(state.config.cors_allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Organization-ID", "X-API-Key-Type", "Retry-After"],
    )

    app.include_router(health.router)
    app.include_router(logs.router)
    app.include_router(alerts.router)
    app.include_router(ingest.router)
    app.include_router(api_keys.router)
    return app


app = create_app()
