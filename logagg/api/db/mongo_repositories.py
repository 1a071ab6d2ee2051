from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from logagg.api.db.mongo import MongoManager
from logagg.api.errors import RepositoryError
from logagg.api.schemas.alerts import Alert, AlertSeverity, AlertStatus
from logagg.api.schemas.api_keys import APIKey, APIKeyStatus, APIKeyType
from logagg.api.schemas.logs import LogLevel, LogRecord, ProcessRecord


@contextmanager
def _wrap(operation: str) -> Iterator[None]:
    """Re-raise driver errors as RepositoryError carrying the operation name."""
    try:
        yield
    except PyMongoError as exc:
        raise RepositoryError(operation, f"{operation} failed: {exc}") from exc


def _page(cursor, limit: int, offset: int):
    return cursor.skip(max(0, int(offset))).limit(max(1, int(limit)))


# ---- Logs ----


def _log_to_doc(record: LogRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "organizationId": record.organization_id,
        "timestamp": record.timestamp,
        "host": record.host,
        "message": record.message,
        "level": record.level.value,
        "metadata": record.metadata,
        "processCount": record.process_count,
        "totalCpuPercent": record.total_cpu_percent,
        "totalMemoryUsage": record.total_memory_usage,
        "environment": record.environment,
        "application": record.application,
        "component": record.component,
        "correlationId": record.correlation_id,
        "tags": list(record.tags),
        "enrichedAt": record.enriched_at,
    }


def _doc_to_log(doc: dict) -> LogRecord:
    return LogRecord(
        id=doc["id"],
        organization_id=doc["organizationId"],
        timestamp=doc["timestamp"],
        host=doc["host"],
        message=doc.get("message", ""),
        level=LogLevel(doc.get("level", LogLevel.lowest().value)),
        metadata=doc.get("metadata") or {},
        process_count=int(doc.get("processCount", 0)),
        total_cpu_percent=float(doc.get("totalCpuPercent", 0.0)),
        total_memory_usage=int(doc.get("totalMemoryUsage", 0)),
        environment=doc.get("environment"),
        application=doc.get("application"),
        component=doc.get("component"),
        correlation_id=doc.get("correlationId"),
        tags=list(doc.get("tags") or []),
        enriched_at=doc.get("enrichedAt"),
    )


class MongoLogRepository:
    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def store(self, record: LogRecord) -> None:
        cols = self._mongo.collections()
        with _wrap("logs.store"):
            # Upsert by id: a redelivered message maps to the same record.
            cols.logs.replace_one({"id": record.id}, _log_to_doc(record), upsert=True)

    def store_batch(self, records: List[LogRecord]) -> None:
        for record in records:
            self.store(record)

    def find_by_id(self, org_id: str, log_id: str) -> Optional[LogRecord]:
        cols = self._mongo.collections()
        with _wrap("logs.find_by_id"):
            doc = cols.logs.find_one({"organizationId": org_id, "id": log_id}, projection={"_id": 0})
        return _doc_to_log(doc) if doc else None

    def _find(self, query: Dict[str, Any], limit: int, offset: int, operation: str) -> List[LogRecord]:
        cols = self._mongo.collections()
        with _wrap(operation):
            docs = list(_page(cols.logs.find(query, projection={"_id": 0}).sort("timestamp", DESCENDING), limit, offset))
        return [_doc_to_log(d) for d in docs]

    def list(self, org_id: str, limit: int, offset: int) -> List[LogRecord]:
        return self._find({"organizationId": org_id}, limit, offset, "logs.list")

    def list_by_time_range(
        self, org_id: str, start: datetime, end: datetime, limit: int, offset: int
    ) -> List[LogRecord]:
        q = {"organizationId": org_id, "timestamp": {"$gte": start, "$lte": end}}
        return self._find(q, limit, offset, "logs.list_by_time_range")

    def count_by_time_range(self, org_id: str, start: datetime, end: datetime) -> int:
        cols = self._mongo.collections()
        with _wrap("logs.count_by_time_range"):
            return int(
                cols.logs.count_documents({"organizationId": org_id, "timestamp": {"$gte": start, "$lte": end}})
            )

    def list_by_host(self, org_id: str, host: str, limit: int, offset: int) -> List[LogRecord]:
        return self._find({"organizationId": org_id, "host": host}, limit, offset, "logs.list_by_host")


# ---- Processes ----


def _process_to_doc(p: ProcessRecord) -> Dict[str, Any]:
    return {
        "id": p.id,
        "logId": p.log_id,
        "organizationId": p.organization_id,
        "name": p.name,
        "pid": p.pid,
        "cpuPercent": p.cpu_percent,
        "memoryUsage": p.memory_usage,
        "status": p.status,
        "timestamp": p.timestamp,
    }


def _doc_to_process(doc: dict) -> ProcessRecord:
    return ProcessRecord(
        id=doc["id"],
        log_id=doc["logId"],
        organization_id=doc["organizationId"],
        name=doc.get("name", ""),
        pid=int(doc.get("pid", 0)),
        cpu_percent=float(doc.get("cpuPercent", 0.0)),
        memory_usage=int(doc.get("memoryUsage", 0)),
        status=doc.get("status", ""),
        timestamp=doc["timestamp"],
    )


class MongoProcessRepository:
    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def store_batch(self, processes: List[ProcessRecord]) -> None:
        if not processes:
            return
        cols = self._mongo.collections()
        with _wrap("processes.store_batch"):
            cols.processes.insert_many([_process_to_doc(p) for p in processes], ordered=True)

    def find_by_log_id(self, org_id: str, log_id: str) -> List[ProcessRecord]:
        cols = self._mongo.collections()
        with _wrap("processes.find_by_log_id"):
            docs = list(cols.processes.find({"organizationId": org_id, "logId": log_id}, projection={"_id": 0}))
        return [_doc_to_process(d) for d in docs]


# ---- Alerts ----


def _alert_to_doc(a: Alert) -> Dict[str, Any]:
    return {
        "id": a.id,
        "organizationId": a.organization_id,
        "title": a.title,
        "description": a.description,
        "severity": a.severity.value,
        "status": a.status.value,
        "source": a.source,
        "createdAt": a.created_at,
        "updatedAt": a.updated_at,
        "resolvedAt": a.resolved_at,
        "relatedLogs": list(a.related_logs),
        "metadata": a.metadata,
    }


def _doc_to_alert(doc: dict) -> Alert:
    return Alert(
        id=doc["id"],
        organization_id=doc["organizationId"],
        title=doc.get("title", ""),
        description=doc.get("description", ""),
        severity=AlertSeverity(doc["severity"]),
        status=AlertStatus(doc.get("status", AlertStatus.open.value)),
        source=doc.get("source", ""),
        created_at=doc["createdAt"],
        updated_at=doc["updatedAt"],
        resolved_at=doc.get("resolvedAt"),
        related_logs=list(doc.get("relatedLogs") or []),
        metadata=doc.get("metadata") or {},
    )


class MongoAlertRepository:
    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def store(self, alert: Alert) -> None:
        cols = self._mongo.collections()
        with _wrap("alerts.store"):
            cols.alerts.insert_one(_alert_to_doc(alert))

    def update(self, alert: Alert) -> None:
        cols = self._mongo.collections()
        with _wrap("alerts.update"):
            cols.alerts.replace_one(
                {"organizationId": alert.organization_id, "id": alert.id}, _alert_to_doc(alert), upsert=False
            )

    def find_by_id(self, org_id: str, alert_id: str) -> Optional[Alert]:
        cols = self._mongo.collections()
        with _wrap("alerts.find_by_id"):
            doc = cols.alerts.find_one({"organizationId": org_id, "id": alert_id}, projection={"_id": 0})
        return _doc_to_alert(doc) if doc else None

    def _find(self, query: Dict[str, Any], limit: int, offset: int, operation: str) -> List[Alert]:
        cols = self._mongo.collections()
        with _wrap(operation):
            docs = list(_page(cols.alerts.find(query, projection={"_id": 0}).sort("createdAt", DESCENDING), limit, offset))
        return [_doc_to_alert(d) for d in docs]

    def _count(self, query: Dict[str, Any], operation: str) -> int:
        cols = self._mongo.collections()
        with _wrap(operation):
            return int(cols.alerts.count_documents(query))

    def list(self, org_id: str, limit: int, offset: int) -> List[Alert]:
        return self._find({"organizationId": org_id}, limit, offset, "alerts.list")

    def find_by_status(self, org_id: str, status: AlertStatus, limit: int, offset: int) -> List[Alert]:
        return self._find({"organizationId": org_id, "status": status.value}, limit, offset, "alerts.find_by_status")

    def find_by_severity(self, org_id: str, severity: AlertSeverity, limit: int, offset: int) -> List[Alert]:
        q = {"organizationId": org_id, "severity": severity.value}
        return self._find(q, limit, offset, "alerts.find_by_severity")

    def find_by_source(self, org_id: str, source: str, limit: int, offset: int) -> List[Alert]:
        return self._find({"organizationId": org_id, "source": source}, limit, offset, "alerts.find_by_source")

    def list_by_time_range(
        self, org_id: str, start: datetime, end: datetime, limit: int, offset: int
    ) -> List[Alert]:
        q = {"organizationId": org_id, "createdAt": {"$gte": start, "$lte": end}}
        return self._find(q, limit, offset, "alerts.list_by_time_range")

    def count_by_status(self, org_id: str, status: AlertStatus) -> int:
        return self._count({"organizationId": org_id, "status": status.value}, "alerts.count_by_status")

    def count_by_severity(self, org_id: str, severity: AlertSeverity) -> int:
        return self._count({"organizationId": org_id, "severity": severity.value}, "alerts.count_by_severity")

    def count_by_time_range(self, org_id: str, start: datetime, end: datetime) -> int:
        q = {"organizationId": org_id, "createdAt": {"$gte": start, "$lte": end}}
        return self._count(q, "alerts.count_by_time_range")


# ---- API keys ----


def _key_to_doc(k: APIKey) -> Dict[str, Any]:
    return {
        "id": k.id,
        "organizationId": k.organization_id,
        "keyType": k.key_type.value,
        "keyHash": k.key_hash,
        "name": k.name,
        "createdAt": k.created_at,
        "expiresAt": k.expires_at,
        "lastUsedAt": k.last_used_at,
        "status": k.status.value,
        "permissions": k.permissions,
    }


def _doc_to_key(doc: dict) -> APIKey:
    return APIKey(
        id=doc["id"],
        organization_id=doc["organizationId"],
        key_type=APIKeyType(doc["keyType"]),
        key_hash=doc["keyHash"],
        name=doc.get("name", ""),
        created_at=doc["createdAt"],
        expires_at=doc.get("expiresAt"),
        last_used_at=doc.get("lastUsedAt"),
        status=APIKeyStatus(doc.get("status", APIKeyStatus.active.value)),
        permissions=doc.get("permissions") or {},
    )


class MongoAPIKeyRepository:
    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def create(self, key: APIKey) -> None:
        cols = self._mongo.collections()
        with _wrap("api_keys.create"):
            cols.api_keys.insert_one(_key_to_doc(key))

    def get_by_id(self, org_id: str, key_id: str) -> Optional[APIKey]:
        cols = self._mongo.collections()
        with _wrap("api_keys.get_by_id"):
            doc = cols.api_keys.find_one({"organizationId": org_id, "id": key_id}, projection={"_id": 0})
        return _doc_to_key(doc) if doc else None

    def get_by_hash(self, key_hash: str) -> Optional[APIKey]:
        cols = self._mongo.collections()
        with _wrap("api_keys.get_by_hash"):
            doc = cols.api_keys.find_one({"keyHash": key_hash}, projection={"_id": 0})
        return _doc_to_key(doc) if doc else None

    def list_by_organization(self, org_id: str, limit: int, offset: int) -> List[APIKey]:
        cols = self._mongo.collections()
        with _wrap("api_keys.list_by_organization"):
            cursor = cols.api_keys.find({"organizationId": org_id}, projection={"_id": 0}).sort("createdAt", DESCENDING)
            docs = list(_page(cursor, limit, offset))
        return [_doc_to_key(d) for d in docs]

    def update_last_used(self, key_id: str, at: datetime) -> None:
        cols = self._mongo.collections()
        with _wrap("api_keys.update_last_used"):
            cols.api_keys.update_one({"id": key_id}, {"$set": {"lastUsedAt": at}})

    def revoke(self, org_id: str, key_id: str) -> bool:
        cols = self._mongo.collections()
        with _wrap("api_keys.revoke"):
            res = cols.api_keys.update_one(
                {"organizationId": org_id, "id": key_id}, {"$set": {"status": APIKeyStatus.revoked.value}}
            )
        return res.matched_count > 0
