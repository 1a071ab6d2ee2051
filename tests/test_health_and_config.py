from __future__ import annotations

import httpx
import pytest

from logagg.api.config import load_config, sanitize_mongo_uri
from logagg.api.main import create_app
from logagg.api.services.ingestion import BrokerMessage
from logagg.api.state import build_state


@pytest.mark.anyio
async def test_health_ok(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/v1/health")
    assert res.status_code == 200
    body = res.json()
    # HealthResponse: {status, message, timestamp}
    assert body.get("status") == "ok"
    assert "timestamp" in body


@pytest.mark.anyio
async def test_readiness_for_memory_backend(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/v1/readiness")
    assert res.status_code == 200
    assert res.json()["status"] == "ready"


@pytest.mark.anyio
async def test_readiness_is_503_when_mongo_is_unreachable(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("STORAGE_BACKEND", "mongo")
    monkeypatch.setenv("BACKEND_MONGO_URI", "mongodb://user:pw@db.invalid:27017")
    state = build_state(load_config())
    monkeypatch.setattr(state.mongo, "ping", lambda timeout_ms=1500: False)

    transport = httpx.ASGITransport(app=create_app(state))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        res = await client.get("/api/v1/readiness")
    state.api_keys.close()

    assert res.status_code == 503
    assert res.json()["status"] == "unavailable"


def test_defaults(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "MULTI_TENANCY_ENABLED",
        "ALERT_CPU_THRESHOLD",
        "ALERT_MEMORY_THRESHOLD",
        "ALERT_PROCESS_COUNT_THRESHOLD",
        "TREND_PAGE_LIMIT",
        "RATE_LIMIT_REQUESTS",
        "RATE_LIMIT_WINDOW_SEC",
        "CACHE_ENABLED",
        "SYSTEM_MEMORY_BYTES",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STORAGE_BACKEND", "memory")

    cfg = load_config()

    assert cfg.multi_tenancy_enabled is True
    assert (cfg.alert_cpu_threshold, cfg.alert_memory_threshold, cfg.alert_process_count_threshold) == (80.0, 85.0, 1000)
    assert cfg.system_memory_bytes == 16 * 1024**3
    assert cfg.trend_page_limit == 1000
    assert (cfg.rate_limit_requests, cfg.rate_limit_window_sec) == (100, 60)
    assert cfg.cache_enabled is True


def test_numeric_settings_are_clamped(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("TREND_PAGE_LIMIT", "999999")
    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "0")
    monkeypatch.setenv("CACHE_SWEEP_INTERVAL_SEC", "not-a-number")

    cfg = load_config()

    assert cfg.trend_page_limit == 10000
    assert cfg.rate_limit_requests == 1
    assert cfg.cache_sweep_interval_sec == 60


def test_mongo_backend_requires_a_valid_uri(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("STORAGE_BACKEND", "mongo")
    monkeypatch.delenv("BACKEND_MONGO_URI", raising=False)
    with pytest.raises(RuntimeError):
        load_config()

    monkeypatch.setenv("BACKEND_MONGO_URI", "postgres://nope")
    with pytest.raises(RuntimeError):
        load_config()

    monkeypatch.setenv("STORAGE_BACKEND", "cassandra")
    with pytest.raises(RuntimeError):
        load_config()


def test_mongo_uri_credentials_are_masked():
    assert sanitize_mongo_uri("mongodb://app:s3cret@db:27017/logagg") == "mongodb://app:***@db:27017/logagg"
    assert sanitize_mongo_uri("mongodb://db:27017") == "mongodb://db:27017"


def test_single_tenant_mode_is_wired_into_ingestion(make_state):
    state = make_state(MULTI_TENANCY_ENABLED="false", CACHE_ENABLED="false")
    assert state.cache is None

    result = state.ingestion.ingest(BrokerMessage(value=b'{"host": {"hostname": "h"}, "metrics": {}}'))
    assert result.log.organization_id == "system"
