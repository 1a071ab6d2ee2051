from __future__ import annotations

from datetime import timedelta

import pytest

from logagg.api.db.memory import InMemoryAlertRepository
from logagg.api.errors import InvalidInput, NotFound, RepositoryError
from logagg.api.schemas.alerts import AlertSeverity, AlertStatus, AlertThresholds
from logagg.api.schemas.logs import LogRecord
from logagg.api.services.alert_engine import DEFAULT_SYSTEM_MEMORY_BYTES, AlertEngine


class CountingAlertRepository(InMemoryAlertRepository):
    def __init__(self, fail_on_store: int = 0):
        super().__init__()
        self.store_calls = 0
        self._fail_on_store = fail_on_store

    def store(self, alert) -> None:
        self.store_calls += 1
        if self._fail_on_store and self.store_calls == self._fail_on_store:
            raise RepositoryError("alerts.store", "write failed")
        super().store(alert)


def _record(clock, **overrides) -> LogRecord:
    fields = dict(id="log-1", organization_id="acme", timestamp=clock(), host="h1")
    fields.update(overrides)
    return LogRecord(**fields)


@pytest.fixture
def repo() -> CountingAlertRepository:
    return CountingAlertRepository()


@pytest.fixture
def engine(repo, clock) -> AlertEngine:
    return AlertEngine(repo, clock=clock)


def test_cpu_over_threshold_yields_one_high_alert(engine, clock):
    record = _record(clock, total_cpu_percent=90.0)

    alerts = engine.evaluate(record)

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.severity == AlertSeverity.high
    assert alert.status == AlertStatus.open
    assert alert.related_logs == [record.id]
    assert alert.organization_id == "acme"
    assert alert.source == "h1"
    assert alert.title == "High CPU Usage on h1"
    assert alert.description == "CPU usage is 90.00%, which exceeds the threshold of 80.00%"
    assert alert.metadata == {"cpu_usage": 90.0, "threshold": 80.0}


def test_record_below_thresholds_yields_nothing_and_stores_nothing(engine, repo, clock):
    record = _record(clock, total_cpu_percent=80.0, process_count=1000, total_memory_usage=1024)

    assert engine.process_record(record) == []
    assert repo.store_calls == 0


def test_all_three_checks_are_independent(engine, clock):
    record = _record(
        clock,
        total_cpu_percent=99.0,
        total_memory_usage=int(DEFAULT_SYSTEM_MEMORY_BYTES * 0.9),
        process_count=1500,
    )

    alerts = engine.evaluate(record)

    assert [a.title for a in alerts] == [
        "High CPU Usage on h1",
        "High Memory Usage on h1",
        "High Process Count on h1",
    ]
    assert [a.severity for a in alerts] == [AlertSeverity.high, AlertSeverity.high, AlertSeverity.medium]
    assert alerts[1].metadata["memory_usage"] == pytest.approx(90.0)
    assert alerts[2].description == "Process count is 1500, which exceeds the threshold of 1000"


def test_evaluate_does_not_mutate_the_record(engine, clock):
    record = _record(clock, total_cpu_percent=95.0)
    before = record.model_dump()
    engine.evaluate(record)
    assert record.model_dump() == before


def test_process_record_persists_in_order(engine, repo, clock):
    record = _record(clock, total_cpu_percent=95.0, process_count=2000)

    alerts = engine.process_record(record)

    assert repo.store_calls == 2
    assert {a.id for a in engine.list_alerts("acme", 10, 0)} == {a.id for a in alerts}


def test_first_store_failure_aborts_and_keeps_earlier_alerts(clock):
    repo = CountingAlertRepository(fail_on_store=2)
    engine = AlertEngine(repo, clock=clock)
    record = _record(clock, total_cpu_percent=95.0, process_count=2000, total_memory_usage=DEFAULT_SYSTEM_MEMORY_BYTES)

    with pytest.raises(RepositoryError):
        engine.process_record(record)

    assert repo.store_calls == 2
    stored = engine.list_alerts("acme", 10, 0)
    assert [a.title for a in stored] == ["High CPU Usage on h1"]


def test_resolving_stamps_resolved_at_with_clock(engine, clock):
    [alert] = engine.process_record(_record(clock, total_cpu_percent=95.0))
    clock.advance(minutes=5)

    resolved = engine.update_status("acme", alert.id, AlertStatus.resolved)

    assert resolved.status == AlertStatus.resolved
    assert resolved.resolved_at == clock()
    assert resolved.updated_at == clock()
    assert resolved.created_at == alert.created_at
    assert engine.get_alert("acme", alert.id).resolved_at == clock()


def test_reopening_keeps_resolved_at(engine, clock):
    [alert] = engine.process_record(_record(clock, total_cpu_percent=95.0))
    resolved = engine.update_status("acme", alert.id, AlertStatus.resolved)
    clock.advance(minutes=1)

    reopened = engine.update_status("acme", alert.id, AlertStatus.open)

    assert reopened.status == AlertStatus.open
    assert reopened.resolved_at == resolved.resolved_at
    assert reopened.updated_at == clock()


def test_update_status_of_unknown_or_foreign_alert_is_not_found(engine, clock):
    [alert] = engine.process_record(_record(clock, total_cpu_percent=95.0))

    with pytest.raises(NotFound):
        engine.update_status("acme", "missing", AlertStatus.ignored)
    with pytest.raises(NotFound):
        engine.update_status("globex", alert.id, AlertStatus.ignored)


def test_set_thresholds_applies_to_later_records(engine, clock):
    engine.set_thresholds(AlertThresholds(cpu_usage_percent=95.0))
    assert engine.evaluate(_record(clock, total_cpu_percent=90.0)) == []
    assert len(engine.evaluate(_record(clock, total_cpu_percent=96.0))) == 1


def test_queries_and_counts_are_organization_scoped(engine, clock):
    engine.process_record(_record(clock, total_cpu_percent=95.0))
    engine.process_record(_record(clock, id="log-2", host="h2", process_count=5000))
    engine.process_record(_record(clock, id="log-3", organization_id="globex", total_cpu_percent=95.0))

    assert engine.count_by_severity("acme", AlertSeverity.high) == 1
    assert engine.count_by_severity("acme", AlertSeverity.medium) == 1
    assert engine.count_by_status("acme", AlertStatus.open) == 2
    assert engine.count_by_status("globex", AlertStatus.open) == 1
    assert [a.source for a in engine.list_by_source("acme", "h2", 10, 0)] == ["h2"]
    assert len(engine.list_by_severity("acme", AlertSeverity.high, 10, 0)) == 1
    assert engine.count_by_time_range("acme", clock() - timedelta(minutes=1), clock()) == 2


def test_trends_aggregate_window(engine, repo, clock):
    engine.process_record(_record(clock, total_cpu_percent=95.0))
    clock.advance(hours=1)
    [second] = engine.process_record(_record(clock, id="log-2", host="h2", process_count=5000))
    engine.update_status("acme", second.id, AlertStatus.resolved)
    engine.process_record(_record(clock, id="log-3", organization_id="globex", total_cpu_percent=95.0))

    trends = engine.get_trends("acme", clock() - timedelta(hours=2), clock())

    assert trends.total_alerts == 2
    assert trends.alerts_by_severity == {"HIGH": 1, "MEDIUM": 1}
    assert trends.alerts_by_status == {"OPEN": 1, "RESOLVED": 1}
    assert trends.time_distribution == {"12:00": 1, "13:00": 1}
    assert trends.top_sources == {"h1": 1, "h2": 1}
    assert trends.truncated is False


def test_trends_reads_at_most_the_page_bound(repo, clock):
    engine = AlertEngine(repo, clock=clock, trend_page_limit=2)
    for i in range(3):
        engine.process_record(_record(clock, id=f"log-{i}", total_cpu_percent=95.0))

    trends = engine.get_trends("acme", clock() - timedelta(hours=1), clock())

    assert trends.total_alerts == 2
    assert trends.truncated is True


def test_trends_reject_inverted_window(engine, clock):
    with pytest.raises(InvalidInput):
        engine.get_trends("acme", clock(), clock() - timedelta(seconds=1))


def test_default_trend_window_is_stable_within_a_minute(engine, clock):
    clock.advance(seconds=25)
    start, end = engine.trend_window()
    assert end == clock().replace(second=0) + timedelta(minutes=1)
    assert end - start == timedelta(hours=24)

    clock.advance(seconds=30)
    assert engine.trend_window() == (start, end)

    clock.advance(seconds=10)
    assert engine.trend_window()[1] == end + timedelta(minutes=1)


def test_trend_window_keeps_explicit_bounds(engine, clock):
    start = clock() - timedelta(hours=2)
    assert engine.trend_window(start, clock()) == (start, clock())
    with pytest.raises(InvalidInput):
        engine.trend_window(clock(), start)
