from __future__ import annotations

import asyncio
import json

import pytest

from logagg.api.errors import RepositoryError
from logagg.api.services.ingestion import BrokerMessage, QueueMessageSource, consume_partition, ingestion_loop


def _sample(org: str = "acme", host: str = "h1", cpu: float = 10.0) -> bytes:
    return json.dumps(
        {"tenant_id": org, "host": {"hostname": host}, "metrics": {"cpu_usage": cpu, "memory_usage_percent": 20.0}}
    ).encode("utf-8")


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.mark.anyio
async def test_partition_consumer_skips_malformed_and_commits_everything(state):
    source = QueueMessageSource()
    source.publish(_sample(host="h1"))
    source.publish(b"{broken")
    source.publish(_sample(host="h2"))

    shutdown = asyncio.Event()
    task = asyncio.create_task(consume_partition(source, 0, state.ingestion, shutdown, poll_timeout=0.05))

    await _wait_for(lambda: source.committed(0) == 2)
    shutdown.set()
    await asyncio.wait_for(task, timeout=5.0)

    assert state.ingestion.stats.snapshot() == {"processed": 2, "rejected": 1, "failed": 0}
    hosts = {r.host for r in state.logs.list_logs("acme", 10, 0)}
    assert hosts == {"h1", "h2"}


@pytest.mark.anyio
async def test_storage_failure_is_counted_and_offset_still_advances(state, monkeypatch: pytest.MonkeyPatch):
    def _fail(record):
        raise RepositoryError("logs.store", "connection reset")

    monkeypatch.setattr(state.logs, "_sleep", lambda seconds: None)
    monkeypatch.setattr(state.logs._logs, "store", _fail)

    source = QueueMessageSource()
    source.publish(_sample())

    shutdown = asyncio.Event()
    task = asyncio.create_task(consume_partition(source, 0, state.ingestion, shutdown, poll_timeout=0.05))
    await _wait_for(lambda: source.committed(0) == 0)
    shutdown.set()
    await asyncio.wait_for(task, timeout=5.0)

    assert state.ingestion.stats.snapshot()["failed"] == 1
    assert state.alerts.list_alerts("acme", 10, 0) == []


@pytest.mark.anyio
async def test_shutdown_is_observed_before_the_next_message(state):
    source = QueueMessageSource()
    source.publish(_sample())

    shutdown = asyncio.Event()
    shutdown.set()
    await asyncio.wait_for(consume_partition(source, 0, state.ingestion, shutdown, poll_timeout=0.05), timeout=5.0)

    assert source.committed(0) is None
    assert state.ingestion.stats.snapshot()["processed"] == 0


@pytest.mark.anyio
async def test_ingestion_loop_consumes_all_partitions_in_order(make_state):
    state = make_state(INGEST_QUEUE_PARTITIONS="2")
    source = state.message_source
    assert isinstance(source, QueueMessageSource)
    assert source.partitions() == [0, 1]

    for i in range(3):
        source.publish(_sample(host=f"p0-{i}"), partition=0)
        source.publish(_sample(host=f"p1-{i}", cpu=99.0), partition=1)

    shutdown = asyncio.Event()
    task = asyncio.create_task(ingestion_loop(state, shutdown))
    await _wait_for(lambda: source.committed(0) == 2 and source.committed(1) == 2)
    shutdown.set()
    await asyncio.wait_for(task, timeout=5.0)

    assert state.ingestion.stats.snapshot()["processed"] == 6
    # Every partition-1 sample crossed the CPU threshold.
    assert sorted(a.source for a in state.alerts.list_alerts("acme", 10, 0)) == ["p1-0", "p1-1", "p1-2"]


@pytest.mark.parametrize("literal", [b"NaN", b"Infinity"])
def test_non_finite_cpu_is_counted_as_rejected(state, literal: bytes):
    raw = b'{"tenant_id": "acme", "host": {"hostname": "h1"}, "metrics": {"cpu_usage": ' + literal + b"}}"

    state.ingestion.handle(BrokerMessage(value=raw, topic="telemetry", partition=0, offset=1))

    assert state.ingestion.stats.snapshot() == {"processed": 0, "rejected": 1, "failed": 0}
    assert state.alerts.list_alerts("acme", 10, 0) == []
