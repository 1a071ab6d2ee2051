"""Ingestion: broker message -> validated LogRecord (+ ProcessRecords) -> storage and alerting.

Agents publish one JSON document per sample:

    {
      "tenant_id": "acme",
      "api_key": "...",                      # ignored here; the broker is trusted
      "host": {"hostname": "h1"},
      "metrics": {"cpu_usage": 12.5, "memory_usage_percent": 40.1},
      "processes": {"total_count": 2, "total_cpu_percent": 3.0,
                    "total_memory_usage": 1024,
                    "list": [{"name": "nginx", "pid": 10, "cpu_percent": 1.5,
                              "memory_usage": 512, "status": "running"}, ...]},
      "level": "INFO",
      "metadata": {...}
    }

The decoded document is handled as a WireValue and every field is pulled out
with isinstance checks; nothing reaches a model until it has the right shape.
Messages that fail validation are logged and skipped so one bad message
never stalls its partition.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import queue
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Tuple

from logagg.api.errors import IngestionError, InvalidHostFormat, InvalidProcessesFormat, MalformedPayload
from logagg.api.schemas.alerts import Alert
from logagg.api.schemas.common import Clock, as_utc, utc_now
from logagg.api.schemas.logs import LogLevel, LogRecord, ProcessRecord, WireValue

if TYPE_CHECKING:
    from logagg.api.services.alert_engine import AlertEngine
    from logagg.api.services.logs_service import LogService
    from logagg.api.state import AppState

logger = logging.getLogger(__name__)

SYSTEM_ORGANIZATION_ID = "system"

# Record ids are uuid5(namespace, "topic:partition:offset") so a redelivered
# message maps onto the record it already produced.
RECORD_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "logagg/ingest/record")

_LEVEL_ALIASES = {"WARNING": LogLevel.warn}


@dataclass(frozen=True)
class BrokerMessage:
    """One delivery from the broker; coordinates are absent for HTTP submissions."""

    value: bytes
    key: Optional[bytes] = None
    topic: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None
    timestamp: Optional[datetime] = None

    @property
    def has_coordinates(self) -> bool:
        return self.topic is not None and self.partition is not None and self.offset is not None


class MessageSource(Protocol):
    """Partitioned, ordered message supply (a Kafka-style consumer group member)."""

    def partitions(self) -> List[int]:
        ...

    def poll(self, partition: int, timeout: float) -> Optional[BrokerMessage]:
        """Block up to timeout seconds for the next message of partition; None when nothing arrived."""
        ...

    def commit(self, message: BrokerMessage) -> None:
        ...


@dataclass(frozen=True)
class NormalizedMessage:
    log: LogRecord
    processes: List[ProcessRecord]


# ---- WireValue field extraction ----


def _is_number(v: WireValue) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _is_int(v: WireValue) -> bool:
    if isinstance(v, bool):
        return False
    return isinstance(v, int) or (isinstance(v, float) and v.is_integer())


def _optional_number(obj: Dict[str, WireValue], name: str, error: type) -> Optional[float]:
    v = obj.get(name)
    if v is None:
        return None
    # json accepts NaN/Infinity literals and overflowing exponents.
    if not _is_number(v) or not math.isfinite(v) or v < 0:
        raise error(f"{name} must be a finite non-negative number", meta={"field": name})
    return float(v)


def _optional_int(obj: Dict[str, WireValue], name: str, error: type) -> Optional[int]:
    v = obj.get(name)
    if v is None:
        return None
    if not _is_int(v) or v < 0:
        raise error(f"{name} must be a non-negative integer", meta={"field": name})
    return int(v)


def _decode(value: bytes) -> Dict[str, WireValue]:
    try:
        doc = json.loads(value.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise MalformedPayload("message is not valid UTF-8") from exc
    except json.JSONDecodeError as exc:
        raise MalformedPayload(f"message is not valid JSON: {exc.msg}", meta={"pos": exc.pos}) from exc
    if not isinstance(doc, dict):
        raise MalformedPayload("message must be a JSON object")
    return doc


def _organization(doc: Dict[str, WireValue], multi_tenancy_enabled: bool) -> str:
    if not multi_tenancy_enabled:
        return SYSTEM_ORGANIZATION_ID
    tenant = doc.get("tenant_id")
    if not isinstance(tenant, str) or not tenant.strip():
        raise InvalidHostFormat("tenant_id is required", meta={"field": "tenant_id"})
    return tenant.strip()


def _hostname(doc: Dict[str, WireValue]) -> str:
    host = doc.get("host")
    if not isinstance(host, dict):
        raise InvalidHostFormat("host must be an object", meta={"field": "host"})
    hostname = host.get("hostname")
    if not isinstance(hostname, str) or not hostname.strip():
        raise InvalidHostFormat("host.hostname is required", meta={"field": "host.hostname"})
    return hostname.strip()


def _level(doc: Dict[str, WireValue]) -> LogLevel:
    raw = doc.get("level")
    if raw is None:
        return LogLevel.lowest()
    if not isinstance(raw, str):
        raise MalformedPayload("level must be a string", meta={"field": "level"})
    name = raw.strip().upper()
    if name in _LEVEL_ALIASES:
        return _LEVEL_ALIASES[name]
    try:
        return LogLevel(name)
    except ValueError as exc:
        raise MalformedPayload(f"unknown level {raw!r}", meta={"field": "level"}) from exc


def _process_entry(entry: WireValue, index: int) -> Dict[str, Any]:
    if not isinstance(entry, dict):
        raise InvalidProcessesFormat(f"processes[{index}] must be an object", meta={"index": index})
    name = entry.get("name")
    if not isinstance(name, str):
        raise InvalidProcessesFormat(f"processes[{index}].name must be a string", meta={"index": index})
    pid = _optional_int(entry, "pid", InvalidProcessesFormat)
    if pid is None:
        raise InvalidProcessesFormat(f"processes[{index}].pid is required", meta={"index": index})
    status = entry.get("status", "")
    if status is None:
        status = ""
    if not isinstance(status, str):
        raise InvalidProcessesFormat(f"processes[{index}].status must be a string", meta={"index": index})
    return {
        "name": name,
        "pid": pid,
        "cpu_percent": _optional_number(entry, "cpu_percent", InvalidProcessesFormat) or 0.0,
        "memory_usage": _optional_int(entry, "memory_usage", InvalidProcessesFormat) or 0,
        "status": status,
    }


def _processes(doc: Dict[str, WireValue]) -> Tuple[List[Dict[str, Any]], Optional[int], Optional[float], Optional[int]]:
    """Return (entries, total_count, total_cpu_percent, total_memory_usage); totals are None when not sent."""
    raw = doc.get("processes")
    if raw is None:
        return [], None, None, None

    if isinstance(raw, list):
        return [_process_entry(e, i) for i, e in enumerate(raw)], None, None, None

    if not isinstance(raw, dict):
        raise InvalidProcessesFormat("processes must be an object or an array")

    items = raw.get("list")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise InvalidProcessesFormat("processes.list must be an array")
    entries = [_process_entry(e, i) for i, e in enumerate(items)]
    return (
        entries,
        _optional_int(raw, "total_count", InvalidProcessesFormat),
        _optional_number(raw, "total_cpu_percent", InvalidProcessesFormat),
        _optional_int(raw, "total_memory_usage", InvalidProcessesFormat),
    )


def _record_id(message: BrokerMessage) -> str:
    if message.has_coordinates:
        return str(uuid.uuid5(RECORD_ID_NAMESPACE, f"{message.topic}:{message.partition}:{message.offset}"))
    return str(uuid.uuid4())


# PUBLIC_INTERFACE
def normalize_message(
    message: BrokerMessage,
    *,
    multi_tenancy_enabled: bool = True,
    clock: Clock = utc_now,
) -> NormalizedMessage:
    """
    Turn one broker message into a LogRecord plus its ProcessRecords.

    Raises:
        MalformedPayload: not JSON, not an object, missing/invalid metrics, bad level or metadata.
        InvalidHostFormat: missing tenant id, missing hostname, or host not an object.
        InvalidProcessesFormat: processes block or an entry of the wrong shape.
    """
    doc = _decode(message.value)

    org_id = _organization(doc, multi_tenancy_enabled)
    hostname = _hostname(doc)

    metrics = doc.get("metrics")
    if not isinstance(metrics, dict):
        raise MalformedPayload("metrics must be an object", meta={"field": "metrics"})
    cpu_usage = _optional_number(metrics, "cpu_usage", MalformedPayload)
    memory_percent = _optional_number(metrics, "memory_usage_percent", MalformedPayload)

    level = _level(doc)

    extra = doc.get("metadata")
    if extra is not None and not isinstance(extra, dict):
        raise MalformedPayload("metadata must be an object", meta={"field": "metadata"})

    entries, total_count, total_cpu, total_memory = _processes(doc)

    if total_count is None:
        total_count = len(entries)
    if total_cpu is None:
        if entries:
            total_cpu = sum(e["cpu_percent"] for e in entries)
            if not math.isfinite(total_cpu):
                raise InvalidProcessesFormat("sum of processes cpu_percent is not finite")
        else:
            total_cpu = cpu_usage or 0.0
    if total_memory is None:
        total_memory = sum(e["memory_usage"] for e in entries)

    timestamp = as_utc(message.timestamp) if message.timestamp is not None else clock()
    metadata: Dict[str, Any] = dict(extra or {})
    metadata["metrics"] = dict(metrics)

    record = LogRecord(
        id=_record_id(message),
        organization_id=org_id,
        timestamp=timestamp,
        host=hostname,
        message=f"CPU Usage: {cpu_usage or 0.0:.2f}%, Memory Usage: {memory_percent or 0.0:.2f}%",
        level=level,
        metadata=metadata,
        process_count=total_count,
        total_cpu_percent=total_cpu,
        total_memory_usage=total_memory,
    )
    processes = [
        ProcessRecord(id=str(uuid.uuid4()), log_id=record.id, organization_id=org_id, timestamp=timestamp, **e)
        for e in entries
    ]
    return NormalizedMessage(log=record, processes=processes)


# ---- handler ----


@dataclass
class IngestionStats:
    processed: int = 0
    rejected: int = 0
    failed: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def incr(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {"processed": self.processed, "rejected": self.rejected, "failed": self.failed}


@dataclass(frozen=True)
class IngestResult:
    log: LogRecord
    processes: List[ProcessRecord]
    alerts: List[Alert]


class IngestionHandler:
    """Normalize -> store log -> store processes -> evaluate alerts, for one message at a time."""

    def __init__(
        self,
        logs: "LogService",
        alerts: "AlertEngine",
        *,
        multi_tenancy_enabled: bool = True,
        clock: Clock = utc_now,
    ):
        self._logs = logs
        self._alerts = alerts
        self._multi_tenancy_enabled = multi_tenancy_enabled
        self._clock = clock
        self.stats = IngestionStats()

    # PUBLIC_INTERFACE
    def ingest(self, message: BrokerMessage) -> IngestResult:
        """Run the full pipeline for one message, raising on the first failure."""
        normalized = normalize_message(
            message, multi_tenancy_enabled=self._multi_tenancy_enabled, clock=self._clock
        )
        stored = self._logs.store_log(normalized.log, normalized.processes)
        raised = self._alerts.process_record(stored)
        if raised:
            self._logs.invalidate_organization(stored.organization_id)
        return IngestResult(log=stored, processes=normalized.processes, alerts=raised)

    # PUBLIC_INTERFACE
    def handle(self, message: BrokerMessage) -> bool:
        """
        Broker-facing entry point: never raises.

        Returns True when the message was fully processed. Validation failures
        and storage/alerting failures are logged, counted and skipped.
        """
        try:
            self.ingest(message)
        except IngestionError as exc:
            self.stats.incr("rejected")
            logger.warning(
                "Rejected message topic=%s partition=%s offset=%s code=%s: %s",
                message.topic,
                message.partition,
                message.offset,
                exc.code,
                exc.detail,
            )
            return False
        except Exception:
            self.stats.incr("failed")
            logger.exception(
                "Failed to handle message topic=%s partition=%s offset=%s",
                message.topic,
                message.partition,
                message.offset,
            )
            return False
        self.stats.incr("processed")
        return True


# ---- in-process source ----


class QueueMessageSource:
    """
    In-process MessageSource backed by one FIFO queue per partition.

    Used when the service runs without an external broker and by tests;
    `publish` assigns topic/partition/offset coordinates like a broker would.
    """

    def __init__(self, topic: str = "telemetry", partitions: int = 1):
        self._topic = topic
        self._queues: Dict[int, "queue.Queue[BrokerMessage]"] = {p: queue.Queue() for p in range(max(1, partitions))}
        self._next_offset: Dict[int, int] = {p: 0 for p in self._queues}
        self._committed: Dict[int, int] = {}
        self._lock = Lock()

    def partitions(self) -> List[int]:
        return sorted(self._queues)

    def publish(self, value: bytes, partition: int = 0, key: Optional[bytes] = None) -> BrokerMessage:
        with self._lock:
            offset = self._next_offset[partition]
            self._next_offset[partition] = offset + 1
            message = BrokerMessage(
                value=value, key=key, topic=self._topic, partition=partition, offset=offset, timestamp=utc_now()
            )
            self._queues[partition].put(message)
        return message

    def poll(self, partition: int, timeout: float) -> Optional[BrokerMessage]:
        try:
            return self._queues[partition].get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None

    def commit(self, message: BrokerMessage) -> None:
        if message.partition is None or message.offset is None:
            return
        with self._lock:
            self._committed[message.partition] = message.offset

    def committed(self, partition: int) -> Optional[int]:
        with self._lock:
            return self._committed.get(partition)


# ---- consumption loops ----


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking storage/broker calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


# PUBLIC_INTERFACE
async def consume_partition(
    source: MessageSource,
    partition: int,
    handler: IngestionHandler,
    shutdown_event: asyncio.Event,
    poll_timeout: float = 1.0,
) -> None:
    """
    Consume one partition in order until shutdown_event is set.

    Each message is handled to completion, then committed, before the next
    poll; the shutdown event is checked between messages.
    """
    logger.info("Partition consumer started (partition=%s)", partition)

    while not shutdown_event.is_set():
        try:
            message = await _run_in_thread(source.poll, partition, poll_timeout)
        except Exception:
            logger.exception("Poll failed for partition=%s", partition)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=max(0.1, poll_timeout))
            except asyncio.TimeoutError:
                pass
            continue

        if message is None:
            continue

        await _run_in_thread(handler.handle, message)

        try:
            await _run_in_thread(source.commit, message)
        except Exception:
            logger.exception("Commit failed partition=%s offset=%s", message.partition, message.offset)

    logger.info("Partition consumer stopped (partition=%s)", partition)


# PUBLIC_INTERFACE
async def ingestion_loop(state: "AppState", shutdown_event: asyncio.Event) -> None:
    """Start one consumer per partition of the configured source and wait for all of them."""
    source = state.message_source
    if source is None:
        logger.info("No message source configured; broker ingestion disabled")
        return

    partitions = await _run_in_thread(source.partitions)
    logger.info("Ingestion loop started (partitions=%s)", partitions)

    tasks = [
        asyncio.create_task(consume_partition(source, p, state.ingestion, shutdown_event)) for p in partitions
    ]
    try:
        await asyncio.gather(*tasks)
    finally:
        logger.info("Ingestion loop stopped stats=%s", state.ingestion.stats.snapshot())
