from __future__ import annotations

from sqlalchemy import create_engine, text

from app.db import monitoring
from conftest import MONDAY, local
from scripts import db_metrics


def test_instrument_engine_emits_pool_status(monkeypatch) -> None:
    emitted: list[tuple[str, dict[str, object]]] = []

    def record(event_name: str, **payload: object) -> None:
        emitted.append((event_name, payload))

    monkeypatch.setattr(monitoring, "_TELEMETRY_INTERVAL", 0)
    monkeypatch.setattr(monitoring, "emit_event", record)

    engine = create_engine("sqlite:///:memory:")
    try:
        monitoring.instrument_engine(engine)
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        assert emitted
        event_name, payload = emitted[0]
        assert event_name == "db_pool_status"
        assert payload["dialect"] == "sqlite"
        assert payload["connects"] >= 1
    finally:
        engine.dispose()


def test_pool_snapshot_counts_checkouts(monkeypatch) -> None:
    monkeypatch.setattr(monitoring, "emit_event", lambda *_, **__: None)
    engine = create_engine("sqlite:///:memory:")
    try:
        monitoring.instrument_engine(engine)
        monitoring.instrument_engine(engine)
        for _ in range(2):
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        snapshot = monitoring.get_pool_snapshot(engine)
        assert snapshot["checkouts"] == 2
        assert snapshot["checkins"] == 2
        assert snapshot["in_use"] == 0
    finally:
        engine.dispose()


def test_db_metrics_reports_stuck_mark_backlog(planner, add_assignment) -> None:
    first = add_assignment("Fractions")
    second = add_assignment("Spelling")
    planner.rescheduler.mark_stuck(first.id, day=MONDAY, now=local(MONDAY, 9))
    planner.rescheduler.mark_stuck(second.id, day=MONDAY, now=local(MONDAY, 11))

    report = db_metrics.collect(now=local(MONDAY, 10))

    assert report["pending_stuck_marks"] == 2
    assert report["overdue_stuck_marks"] == 1
    assert report["pool"]["checkouts"] >= 1
