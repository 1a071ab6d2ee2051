"""Threshold alerting over ingested LogRecords, plus alert lifecycle and trends.

Each record is checked against three independent ceilings (CPU percent,
memory percent of total system memory, process count). Crossing a ceiling
strictly produces one OPEN alert sourced at the record's host.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from logagg.api.db.repositories import AlertRepository
from logagg.api.errors import InvalidInput, NotFound, RepositoryError
from logagg.api.schemas.alerts import Alert, AlertSeverity, AlertStatus, AlertThresholds, AlertTrends
from logagg.api.schemas.common import Clock, as_utc, utc_now
from logagg.api.schemas.logs import LogRecord

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_MEMORY_BYTES = 16 * 1024 * 1024 * 1024
DEFAULT_TREND_PAGE_LIMIT = 1000
DEFAULT_TREND_SPAN = timedelta(hours=24)
DEFAULT_TREND_END_STEP = timedelta(minutes=1)


class AlertEngine:
    def __init__(
        self,
        repo: AlertRepository,
        thresholds: AlertThresholds | None = None,
        clock: Clock = utc_now,
        system_memory_bytes: int = DEFAULT_SYSTEM_MEMORY_BYTES,
        trend_page_limit: int = DEFAULT_TREND_PAGE_LIMIT,
    ):
        self._repo = repo
        self._thresholds = thresholds or AlertThresholds()
        self._thresholds_lock = Lock()
        self._clock = clock
        self._system_memory_bytes = max(1, int(system_memory_bytes))
        self._trend_page_limit = max(1, int(trend_page_limit))

    @property
    def thresholds(self) -> AlertThresholds:
        with self._thresholds_lock:
            return self._thresholds

    # PUBLIC_INTERFACE
    def set_thresholds(self, thresholds: AlertThresholds) -> None:
        """Replace the active thresholds; affects records evaluated afterwards."""
        with self._thresholds_lock:
            self._thresholds = thresholds
        logger.info(
            "Alert thresholds set cpu=%.2f memory=%.2f process_count=%d",
            thresholds.cpu_usage_percent,
            thresholds.memory_usage_percent,
            thresholds.process_count,
        )

    def _new_alert(
        self,
        record: LogRecord,
        now: datetime,
        title: str,
        description: str,
        severity: AlertSeverity,
        metadata: Dict[str, Any],
    ) -> Alert:
        return Alert(
            id=str(uuid.uuid4()),
            organization_id=record.organization_id,
            title=title,
            description=description,
            severity=severity,
            status=AlertStatus.open,
            source=record.host,
            created_at=now,
            updated_at=now,
            related_logs=[record.id],
            metadata=metadata,
        )

    # PUBLIC_INTERFACE
    def evaluate(self, record: LogRecord) -> List[Alert]:
        """Return the alerts this record triggers (possibly none). The record is not modified."""
        t = self.thresholds
        now = self._clock()
        alerts: List[Alert] = []

        cpu = float(record.total_cpu_percent)
        if cpu > t.cpu_usage_percent:
            alerts.append(
                self._new_alert(
                    record,
                    now,
                    f"High CPU Usage on {record.host}",
                    f"CPU usage is {cpu:.2f}%, which exceeds the threshold of {t.cpu_usage_percent:.2f}%",
                    AlertSeverity.high,
                    {"cpu_usage": cpu, "threshold": t.cpu_usage_percent},
                )
            )

        memory_percent = float(record.total_memory_usage) / float(self._system_memory_bytes) * 100.0
        if memory_percent > t.memory_usage_percent:
            alerts.append(
                self._new_alert(
                    record,
                    now,
                    f"High Memory Usage on {record.host}",
                    f"Memory usage is {memory_percent:.2f}%, which exceeds the threshold of {t.memory_usage_percent:.2f}%",
                    AlertSeverity.high,
                    {"memory_usage": memory_percent, "threshold": t.memory_usage_percent},
                )
            )

        if record.process_count > t.process_count:
            alerts.append(
                self._new_alert(
                    record,
                    now,
                    f"High Process Count on {record.host}",
                    f"Process count is {record.process_count}, which exceeds the threshold of {t.process_count}",
                    AlertSeverity.medium,
                    {"process_count": record.process_count, "threshold": t.process_count},
                )
            )

        return alerts

    # PUBLIC_INTERFACE
    def process_record(self, record: LogRecord) -> List[Alert]:
        """
        Evaluate a record and persist the resulting alerts in order.

        The first store failure aborts the remaining stores; alerts stored before
        it stay stored.
        """
        alerts = self.evaluate(record)
        for alert in alerts:
            try:
                self._repo.store(alert)
            except RepositoryError:
                logger.error("Failed to store alert for log_id=%s org=%s", record.id, record.organization_id)
                raise
            except Exception as exc:
                raise RepositoryError("alerts.store", str(exc)) from exc
        if alerts:
            logger.info("Raised %d alert(s) for host=%s org=%s", len(alerts), record.host, record.organization_id)
        return alerts

    # ---- lifecycle ----

    def get_alert(self, org_id: str, alert_id: str) -> Alert:
        alert = self._repo.find_by_id(org_id, alert_id)
        if alert is None:
            raise NotFound("alert not found", meta={"alert_id": alert_id})
        return alert

    # PUBLIC_INTERFACE
    def update_status(self, org_id: str, alert_id: str, status: AlertStatus) -> Alert:
        """
        Set an alert's status.

        Any status may move to any other. RESOLVED also stamps resolved_at; other
        statuses leave resolved_at as it was.
        """
        alert = self.get_alert(org_id, alert_id)
        now = self._clock()
        update: Dict[str, Any] = {"status": status, "updated_at": now}
        if status == AlertStatus.resolved:
            update["resolved_at"] = now
        updated = alert.model_copy(update=update)
        self._repo.update(updated)
        return updated

    # ---- queries (organization-scoped) ----

    def list_alerts(self, org_id: str, limit: int, offset: int) -> List[Alert]:
        return self._repo.list(org_id, limit, offset)

    def list_by_status(self, org_id: str, status: AlertStatus, limit: int, offset: int) -> List[Alert]:
        return self._repo.find_by_status(org_id, status, limit, offset)

    def list_by_severity(self, org_id: str, severity: AlertSeverity, limit: int, offset: int) -> List[Alert]:
        return self._repo.find_by_severity(org_id, severity, limit, offset)

    def list_by_source(self, org_id: str, source: str, limit: int, offset: int) -> List[Alert]:
        return self._repo.find_by_source(org_id, source, limit, offset)

    def list_by_time_range(self, org_id: str, start: datetime, end: datetime, limit: int, offset: int) -> List[Alert]:
        start, end = _check_range(start, end)
        return self._repo.list_by_time_range(org_id, start, end, limit, offset)

    def count_by_status(self, org_id: str, status: AlertStatus) -> int:
        return self._repo.count_by_status(org_id, status)

    def count_by_severity(self, org_id: str, severity: AlertSeverity) -> int:
        return self._repo.count_by_severity(org_id, severity)

    def count_by_time_range(self, org_id: str, start: datetime, end: datetime) -> int:
        start, end = _check_range(start, end)
        return self._repo.count_by_time_range(org_id, start, end)

    def trend_window(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Tuple[datetime, datetime]:
        """
        Resolve an optional [start, end] into a concrete UTC window.

        A missing end is the start of the next minute, so repeated default
        requests share one window; a missing start is 24 hours before end.
        """
        if end is None:
            end = self._clock().replace(second=0, microsecond=0) + DEFAULT_TREND_END_STEP
        end = as_utc(end)
        if start is None:
            start = end - DEFAULT_TREND_SPAN
        return _check_range(start, end)

    # PUBLIC_INTERFACE
    def get_trends(self, org_id: str, start: datetime, end: datetime) -> AlertTrends:
        """
        Aggregate the alerts created in [start, end] for one organization.

        Reads at most `trend_page_limit` alerts; `truncated` reports whether the
        window held more than that.
        """
        start, end = _check_range(start, end)
        alerts = self._repo.list_by_time_range(org_id, start, end, self._trend_page_limit, 0)

        truncated = False
        if len(alerts) >= self._trend_page_limit:
            truncated = self._repo.count_by_time_range(org_id, start, end) > len(alerts)

        by_severity = Counter(a.severity.value for a in alerts)
        by_status = Counter(a.status.value for a in alerts)
        by_hour = Counter(as_utc(a.created_at).strftime("%H:00") for a in alerts)
        by_source = Counter(a.source for a in alerts)

        return AlertTrends(
            start=start,
            end=end,
            total_alerts=len(alerts),
            alerts_by_severity=dict(by_severity),
            alerts_by_status=dict(by_status),
            time_distribution=dict(sorted(by_hour.items())),
            top_sources=dict(by_source.most_common()),
            truncated=truncated,
        )


def _check_range(start: datetime, end: datetime):
    start, end = as_utc(start), as_utc(end)
    if start > end:
        raise InvalidInput("start must not be after end", meta={"start": start.isoformat(), "end": end.isoformat()})
    return start, end
