from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


DEFAULT_DB_NAME = "logagg"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    logs: Collection
    processes: Collection
    alerts: Collection
    api_keys: Collection


class MongoManager:
    """
    MongoDB connection manager.

    Maintains one MongoClient for the service's storage DB. The client is created
    lazily so constructing the manager never touches the network.
    """

    def __init__(self, mongo_uri: str, db_name: str = DEFAULT_DB_NAME):
        self._mongo_uri = mongo_uri
        self._db_name = db_name
        self._client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._client = MongoClient(self._mongo_uri, connect=True, tz_aware=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB; used by startup validation and the readiness endpoint."""
        try:
            if self._client is None:
                self.connect()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False

    def close(self) -> None:
        """Close the Mongo client."""
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except PyMongoError:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def db(self) -> Database:
        """Return the storage database handle."""
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.db()
        return MongoCollections(
            logs=db["logs"],
            processes=db["processes"],
            alerts=db["alerts"],
            api_keys=db["api_keys"],
        )

    def init_indexes(self, *, log_ttl_seconds: int = 0) -> None:
        """
        Create required indexes (idempotent).

        log_ttl_seconds == 0 disables the retention TTL index on logs.timestamp;
        retention is otherwise left to whoever administers the database.
        """
        cols = self.collections()

        # ---- Logs ----
        # Every query is organization-scoped first.
        cols.logs.create_index([("id", ASCENDING)], unique=True, name="idx_logs_id")
        cols.logs.create_index(
            [("organizationId", ASCENDING), ("timestamp", DESCENDING)], name="idx_logs_org_timestamp"
        )
        cols.logs.create_index(
            [("organizationId", ASCENDING), ("host", ASCENDING), ("timestamp", DESCENDING)],
            name="idx_logs_org_host_timestamp",
        )
        if int(log_ttl_seconds) > 0:
            cols.logs.create_index(
                [("timestamp", ASCENDING)],
                name="ttl_logs_timestamp",
                expireAfterSeconds=int(log_ttl_seconds),
            )

        # ---- Processes ----
        cols.processes.create_index([("organizationId", ASCENDING), ("logId", ASCENDING)], name="idx_processes_org_log")

        # ---- Alerts ----
        cols.alerts.create_index([("id", ASCENDING)], unique=True, name="idx_alerts_id")
        cols.alerts.create_index(
            [("organizationId", ASCENDING), ("createdAt", DESCENDING)], name="idx_alerts_org_createdAt_desc"
        )
        cols.alerts.create_index([("organizationId", ASCENDING), ("status", ASCENDING)], name="idx_alerts_org_status")
        cols.alerts.create_index(
            [("organizationId", ASCENDING), ("severity", ASCENDING)], name="idx_alerts_org_severity"
        )
        cols.alerts.create_index([("organizationId", ASCENDING), ("source", ASCENDING)], name="idx_alerts_org_source")

        # ---- API keys ----
        cols.api_keys.create_index([("id", ASCENDING)], unique=True, name="idx_api_keys_id")
        cols.api_keys.create_index([("keyHash", ASCENDING)], unique=True, name="idx_api_keys_hash")
        cols.api_keys.create_index(
            [("organizationId", ASCENDING), ("createdAt", DESCENDING)], name="idx_api_keys_org_createdAt_desc"
        )
