"""Repository contracts the core depends on.

Every query takes the organization id as its leading filter; the only
unscoped lookup is `APIKeyRepository.get_by_hash`, which is how the
organization of a request is established in the first place.

Implementations:
- db/mongo_repositories.py (MongoDB, production)
- db/memory.py (in-process, STORAGE_BACKEND=memory and tests)
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from logagg.api.schemas.alerts import Alert, AlertSeverity, AlertStatus
from logagg.api.schemas.api_keys import APIKey
from logagg.api.schemas.logs import LogRecord, ProcessRecord


class LogRepository(Protocol):
    def store(self, record: LogRecord) -> None: ...

    def store_batch(self, records: List[LogRecord]) -> None: ...

    def find_by_id(self, org_id: str, log_id: str) -> Optional[LogRecord]: ...

    def list(self, org_id: str, limit: int, offset: int) -> List[LogRecord]: ...

    def list_by_time_range(
        self, org_id: str, start: datetime, end: datetime, limit: int, offset: int
    ) -> List[LogRecord]: ...

    def count_by_time_range(self, org_id: str, start: datetime, end: datetime) -> int: ...

    def list_by_host(self, org_id: str, host: str, limit: int, offset: int) -> List[LogRecord]: ...


class ProcessRepository(Protocol):
    def store_batch(self, processes: List[ProcessRecord]) -> None: ...

    def find_by_log_id(self, org_id: str, log_id: str) -> List[ProcessRecord]: ...


class AlertRepository(Protocol):
    def store(self, alert: Alert) -> None: ...

    def update(self, alert: Alert) -> None: ...

    def find_by_id(self, org_id: str, alert_id: str) -> Optional[Alert]: ...

    def list(self, org_id: str, limit: int, offset: int) -> List[Alert]: ...

    def find_by_status(self, org_id: str, status: AlertStatus, limit: int, offset: int) -> List[Alert]: ...

    def find_by_severity(self, org_id: str, severity: AlertSeverity, limit: int, offset: int) -> List[Alert]: ...

    def find_by_source(self, org_id: str, source: str, limit: int, offset: int) -> List[Alert]: ...

    def list_by_time_range(
        self, org_id: str, start: datetime, end: datetime, limit: int, offset: int
    ) -> List[Alert]: ...

    def count_by_status(self, org_id: str, status: AlertStatus) -> int: ...

    def count_by_severity(self, org_id: str, severity: AlertSeverity) -> int: ...

    def count_by_time_range(self, org_id: str, start: datetime, end: datetime) -> int: ...


class APIKeyRepository(Protocol):
    def create(self, key: APIKey) -> None: ...

    def get_by_id(self, org_id: str, key_id: str) -> Optional[APIKey]: ...

    def get_by_hash(self, key_hash: str) -> Optional[APIKey]: ...

    def list_by_organization(self, org_id: str, limit: int, offset: int) -> List[APIKey]: ...

    def update_last_used(self, key_id: str, at: datetime) -> None: ...

    def revoke(self, org_id: str, key_id: str) -> bool: ...
