from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import datetime, timedelta, timezone

import httpx
import pytest

# The app module builds a default app at import time; keep it off MongoDB.
os.environ.setdefault("STORAGE_BACKEND", "memory")

from logagg.api.config import load_config  # noqa: E402
from logagg.api.main import create_app  # noqa: E402
from logagg.api.schemas.api_keys import APIKeyType  # noqa: E402
from logagg.api.state import AppState, build_state  # noqa: E402

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class ManualClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class ManualMonotonic:
    """Monotonic seconds that only move when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def monotonic() -> ManualMonotonic:
    return ManualMonotonic()


@pytest.fixture
def make_state(
    monkeypatch: pytest.MonkeyPatch, clock: ManualClock, monotonic: ManualMonotonic
) -> Iterator[Callable[..., AppState]]:
    """
    Factory for in-memory AppState instances.

    Keyword arguments are applied as env vars (e.g. RATE_LIMIT_REQUESTS="2")
    before the config is loaded.
    """
    built = []

    def _make(**env: str) -> AppState:
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.delenv("BOOTSTRAP_API_KEYS", raising=False)
        for name, value in env.items():
            monkeypatch.setenv(name, value)
        state = build_state(load_config(), clock=clock, monotonic=monotonic)
        built.append(state)
        return state

    yield _make

    for state in built:
        state.api_keys.close()


@pytest.fixture
def state(make_state: Callable[..., AppState]) -> AppState:
    """Default in-memory state with stock thresholds and limits."""
    return make_state()


@pytest.fixture
def app(state: AppState):
    """FastAPI app bound to the in-memory state."""
    return create_app(state)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def issue_key(state: AppState) -> Callable[..., str]:
    """Issue a key directly through the authority and return its plaintext."""

    def _issue(org_id: str = "acme", key_type: APIKeyType = APIKeyType.customer, **kwargs) -> str:
        plaintext, _ = state.api_keys.generate_key(org_id, f"{org_id}-{key_type.value}", key_type, **kwargs)
        return plaintext

    return _issue


@pytest.fixture
def customer_key(issue_key) -> str:
    return issue_key("acme", APIKeyType.customer)


@pytest.fixture
def agent_key(issue_key) -> str:
    return issue_key("acme", APIKeyType.agent)
