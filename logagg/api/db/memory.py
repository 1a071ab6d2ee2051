"""In-memory repository implementations.

Suitable for tests and single-process development (STORAGE_BACKEND=memory)
where persistence is not required. Each repository guards its list with a
lock because the ingestion loop and request handlers share it.
"""

from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from logagg.api.schemas.alerts import Alert, AlertSeverity, AlertStatus
from logagg.api.schemas.api_keys import APIKey, APIKeyStatus
from logagg.api.schemas.logs import LogRecord, ProcessRecord

T = TypeVar("T")


def _paginate(items: List[T], limit: int, offset: int) -> List[T]:
    if offset >= len(items):
        return []
    return items[offset : offset + max(0, limit)]


def _in_range(ts: datetime, start: datetime, end: datetime) -> bool:
    return start <= ts <= end


class InMemoryLogRepository:
    def __init__(self) -> None:
        self._logs: Dict[str, LogRecord] = {}
        self._lock = RLock()

    def store(self, record: LogRecord) -> None:
        with self._lock:
            # Upsert by id so redelivered messages keep a single record.
            self._logs[record.id] = record

    def store_batch(self, records: List[LogRecord]) -> None:
        with self._lock:
            for record in records:
                self._logs[record.id] = record

    def _select(self, org_id: str, pred: Callable[[LogRecord], bool]) -> List[LogRecord]:
        with self._lock:
            rows = [r for r in self._logs.values() if r.organization_id == org_id and pred(r)]
        return sorted(rows, key=lambda r: r.timestamp, reverse=True)

    def find_by_id(self, org_id: str, log_id: str) -> Optional[LogRecord]:
        with self._lock:
            record = self._logs.get(log_id)
        if record is None or record.organization_id != org_id:
            return None
        return record

    def list(self, org_id: str, limit: int, offset: int) -> List[LogRecord]:
        return _paginate(self._select(org_id, lambda r: True), limit, offset)

    def list_by_time_range(
        self, org_id: str, start: datetime, end: datetime, limit: int, offset: int
    ) -> List[LogRecord]:
        rows = self._select(org_id, lambda r: _in_range(r.timestamp, start, end))
        return _paginate(rows, limit, offset)

    def count_by_time_range(self, org_id: str, start: datetime, end: datetime) -> int:
        return len(self._select(org_id, lambda r: _in_range(r.timestamp, start, end)))

    def list_by_host(self, org_id: str, host: str, limit: int, offset: int) -> List[LogRecord]:
        return _paginate(self._select(org_id, lambda r: r.host == host), limit, offset)


class InMemoryProcessRepository:
    def __init__(self) -> None:
        self._processes: List[ProcessRecord] = []
        self._lock = RLock()

    def store_batch(self, processes: List[ProcessRecord]) -> None:
        with self._lock:
            self._processes.extend(processes)

    def find_by_log_id(self, org_id: str, log_id: str) -> List[ProcessRecord]:
        with self._lock:
            return [p for p in self._processes if p.organization_id == org_id and p.log_id == log_id]


class InMemoryAlertRepository:
    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}
        self._lock = RLock()

    def store(self, alert: Alert) -> None:
        with self._lock:
            self._alerts[alert.id] = alert

    def update(self, alert: Alert) -> None:
        with self._lock:
            self._alerts[alert.id] = alert

    def _select(self, org_id: str, pred: Callable[[Alert], bool]) -> List[Alert]:
        with self._lock:
            rows = [a for a in self._alerts.values() if a.organization_id == org_id and pred(a)]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    def find_by_id(self, org_id: str, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
        if alert is None or alert.organization_id != org_id:
            return None
        return alert

    def list(self, org_id: str, limit: int, offset: int) -> List[Alert]:
        return _paginate(self._select(org_id, lambda a: True), limit, offset)

    def find_by_status(self, org_id: str, status: AlertStatus, limit: int, offset: int) -> List[Alert]:
        return _paginate(self._select(org_id, lambda a: a.status == status), limit, offset)

    def find_by_severity(self, org_id: str, severity: AlertSeverity, limit: int, offset: int) -> List[Alert]:
        return _paginate(self._select(org_id, lambda a: a.severity == severity), limit, offset)

    def find_by_source(self, org_id: str, source: str, limit: int, offset: int) -> List[Alert]:
        return _paginate(self._select(org_id, lambda a: a.source == source), limit, offset)

    def list_by_time_range(
        self, org_id: str, start: datetime, end: datetime, limit: int, offset: int
    ) -> List[Alert]:
        rows = self._select(org_id, lambda a: _in_range(a.created_at, start, end))
        return _paginate(rows, limit, offset)

    def count_by_status(self, org_id: str, status: AlertStatus) -> int:
        return len(self._select(org_id, lambda a: a.status == status))

    def count_by_severity(self, org_id: str, severity: AlertSeverity) -> int:
        return len(self._select(org_id, lambda a: a.severity == severity))

    def count_by_time_range(self, org_id: str, start: datetime, end: datetime) -> int:
        return len(self._select(org_id, lambda a: _in_range(a.created_at, start, end)))


class InMemoryAPIKeyRepository:
    def __init__(self, keys: Iterable[APIKey] = ()) -> None:
        self._keys: Dict[str, APIKey] = {k.id: k for k in keys}
        self._lock = RLock()

    def create(self, key: APIKey) -> None:
        with self._lock:
            self._keys[key.id] = key

    def get_by_id(self, org_id: str, key_id: str) -> Optional[APIKey]:
        with self._lock:
            key = self._keys.get(key_id)
        if key is None or key.organization_id != org_id:
            return None
        return key

    def get_by_hash(self, key_hash: str) -> Optional[APIKey]:
        with self._lock:
            for key in self._keys.values():
                if key.key_hash == key_hash:
                    return key
        return None

    def list_by_organization(self, org_id: str, limit: int, offset: int) -> List[APIKey]:
        with self._lock:
            rows = [k for k in self._keys.values() if k.organization_id == org_id]
        rows.sort(key=lambda k: k.created_at, reverse=True)
        return _paginate(rows, limit, offset)

    def update_last_used(self, key_id: str, at: datetime) -> None:
        with self._lock:
            key = self._keys.get(key_id)
            if key is not None:
                self._keys[key_id] = key.model_copy(update={"last_used_at": at})

    def revoke(self, org_id: str, key_id: str) -> bool:
        with self._lock:
            key = self._keys.get(key_id)
            if key is None or key.organization_id != org_id:
                return False
            self._keys[key_id] = key.model_copy(update={"status": APIKeyStatus.revoked})
            return True
