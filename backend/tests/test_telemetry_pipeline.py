from __future__ import annotations

from app import telemetry_pipeline
from app.db.session import session_scope
from app.repositories import audit_events
from app.side_effects import LoggingParentNotifier
from app.telemetry import emit_event

from conftest import MONDAY, local


def _recent(student_id=None):
    with session_scope(commit=False) as session:
        return audit_events.recent(session, student_id=student_id)


def test_monitored_events_are_persisted(database) -> None:
    telemetry_pipeline.install()

    emit_event("stuck_mark_committed", student_id="alex", assignment_id="a-1", committed_at=local(MONDAY, 9))
    emit_event("block_status_set", student_id="alex", status="complete")

    [record] = _recent("alex")
    assert record.event_type == "stuck_mark_committed"
    assert record.payload["assignment_id"] == "a-1"
    assert record.payload["committed_at"].startswith("2026-09-14T09:00")


def test_stuck_flow_leaves_an_audit_trail(planner, timers, add_assignment) -> None:
    telemetry_pipeline.install()
    item = add_assignment("Spelling")
    planner.rescheduler.mark_stuck(item.id, reason="tired", day=MONDAY, now=local(MONDAY, 9))

    timers.fire(item.id)

    [record] = _recent("alex")
    assert record.event_type == "stuck_mark_committed"
    assert record.payload["assignment_id"] == item.id
    assert record.payload["notify_parent"] is True


def test_sync_summary_is_audited_without_a_student(planner) -> None:
    telemetry_pipeline.install()

    planner.reconciler.reconcile([{"student_id": "alex", "title": "Essay"}])

    [record] = _recent()
    assert record.event_type == "sync_completed"
    assert record.student_id is None
    assert record.payload["inserted"] == 1


def test_logging_notifier_is_audited(database) -> None:
    telemetry_pipeline.install()
    LoggingParentNotifier("parent@example.com").notify_stuck("alex", "a-9", "stuck on fractions")

    [record] = _recent("alex")
    assert record.event_type == "parent_notified"
    assert record.payload["has_parent_email"] is True
