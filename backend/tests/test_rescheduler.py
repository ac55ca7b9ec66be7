from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional

import pytest

from app.db.session import session_scope
from app.errors import ConflictError, ValidationError
from app.repositories import StuckMarkRepository, assignments, bible_curriculum, preferences, stuck_marks
from app.rescheduler import ReschedulingEngine, StuckTimerRegistry
from app.schedule_models import BibleReading, PendingStuckMark, TransitionMeta

from conftest import FRIDAY, MONDAY, NEXT_MONDAY, TUESDAY, WEDNESDAY, local


def _reload(assignment_id: str):
    with session_scope(commit=False) as session:
        return assignments.get(session, assignment_id)


def test_need_more_time_moves_to_a_later_slot_the_same_day(planner, add_assignment, events) -> None:
    item = add_assignment("Fractions", scheduled_date=MONDAY, scheduled_block_number=1)

    result = planner.rescheduler.need_more_time(
        "alex", MONDAY, assignment_id=item.id, elapsed_minutes=30, now=local(MONDAY, 8, 40)
    )

    assert (result.to_date, result.to_block_number) == (MONDAY, 3)
    assert not result.rolled_over
    assert result.assignment.completion_status == "pending"
    assert result.assignment.time_spent_minutes == 30

    blocks = planner.compose("alex", MONDAY)
    assert blocks[1].status == "overtime"
    assert blocks[1].assignment_id is None
    assert blocks[3].assignment_id == item.id
    assert "assignment_rescheduled" in [event.name for event in events]


def test_need_more_time_spills_to_the_next_school_days_backlog(planner, add_assignment) -> None:
    item = add_assignment("Book report", scheduled_date=MONDAY, scheduled_block_number=3)
    add_assignment("Backlog filler", priority="A")

    result = planner.rescheduler.need_more_time("alex", MONDAY, assignment_id=item.id, now=local(MONDAY, 14))

    assert (result.to_date, result.to_block_number) == (TUESDAY, None)
    assert result.rolled_over
    stored = _reload(item.id)
    assert (stored.scheduled_date, stored.scheduled_block_number) == (TUESDAY, None)
    assert stored.is_backlogged

    monday = planner.compose("alex", MONDAY)
    assert monday[3].status == "overtime"
    assert monday[3].assignment_id is None
    assert item.id not in {block.assignment_id for block in monday}
    tuesday = planner.compose("alex", TUESDAY)
    assert tuesday[1].assignment_id == item.id
    assert not tuesday[1].is_explicit_placement


def test_friday_overflow_skips_the_weekend(planner, add_assignment) -> None:
    item = add_assignment("Weekly quiz")

    result = planner.rescheduler.need_more_time("alex", FRIDAY, assignment_id=item.id, now=local(FRIDAY, 15))

    assert (result.to_date, result.to_block_number) == (NEXT_MONDAY, None)
    assert planner.compose("alex", NEXT_MONDAY)[1].assignment_id == item.id


def test_saturday_is_used_when_the_student_allows_it(planner, add_assignment) -> None:
    saturday = FRIDAY + timedelta(days=1)
    planner.replace_template(
        "alex",
        [{"weekday": "Saturday", "block_number": 1, "start_time": "09:00", "end_time": "10:00", "block_type": "assignment"}],
    )
    with session_scope() as session:
        preferences.set_allow_saturday(session, "alex", True)
    item = add_assignment("Catch-up")

    result = planner.rescheduler.need_more_time("alex", FRIDAY, assignment_id=item.id, now=local(FRIDAY, 15))

    assert result.to_date == saturday
    assert planner.compose("alex", saturday)[0].assignment_id == item.id


def test_work_from_a_past_day_lands_later_today(planner, add_assignment) -> None:
    item = add_assignment("Essay", scheduled_date=MONDAY, scheduled_block_number=3)

    result = planner.rescheduler.need_more_time("alex", MONDAY, assignment_id=item.id, now=local(TUESDAY, 8))

    assert (result.from_date, result.from_block_number) == (MONDAY, 3)
    assert (result.to_date, result.to_block_number) == (TUESDAY, 1)
    assert planner.compose("alex", TUESDAY)[1].assignment_id == item.id


def test_work_from_a_past_day_never_moves_to_another_past_day(planner, add_assignment) -> None:
    item = add_assignment("Essay", scheduled_date=MONDAY, scheduled_block_number=3)

    result = planner.rescheduler.need_more_time("alex", MONDAY, assignment_id=item.id, now=local(WEDNESDAY, 10))

    assert result.to_date is not None and result.to_date > WEDNESDAY
    assert result.to_block_number is None
    assert planner.compose("alex", TUESDAY)[1].assignment_id != item.id
    # Thursday and Friday have no assignment slots; the backlog carries over to the next Monday.
    assert planner.compose("alex", NEXT_MONDAY)[1].assignment_id == item.id


def test_need_more_time_rejects_stale_and_finished_work(planner, add_assignment) -> None:
    item = add_assignment("Science", scheduled_date=MONDAY, scheduled_block_number=1)
    planner.completion.transition(item.id, "in_progress")

    with pytest.raises(ConflictError):
        planner.rescheduler.need_more_time(
            "alex", MONDAY, assignment_id=item.id, expected_version=item.version, now=local(MONDAY, 8, 40)
        )

    planner.completion.transition(item.id, "completed")
    with pytest.raises(ValidationError):
        planner.rescheduler.need_more_time("alex", MONDAY, assignment_id=item.id, now=local(MONDAY, 8, 40))
    with pytest.raises(ValidationError):
        planner.rescheduler.need_more_time("alex", MONDAY)


def test_need_more_time_on_bible_block_closes_it_and_advances(planner) -> None:
    with session_scope() as session:
        bible_curriculum.replace_curriculum(
            session,
            [
                BibleReading(week_number=1, day_of_week=1, title="Mark 1"),
                BibleReading(week_number=1, day_of_week=2, title="Mark 2"),
            ],
        )
    bible, math = planner.compose("alex", MONDAY)[:2]

    result = planner.rescheduler.need_more_time("alex", MONDAY, template_block_id=bible.template_block_id)

    assert result.kind == "bible"
    assert result.next_reading is not None and result.next_reading.title == "Mark 2"
    assert planner.compose("alex", MONDAY)[0].status == "complete"
    with pytest.raises(ValidationError):
        planner.rescheduler.need_more_time("alex", MONDAY, template_block_id=math.template_block_id)


def test_stuck_mark_waits_for_the_undo_window(planner, timers, add_assignment) -> None:
    item = add_assignment("Long division", scheduled_date=MONDAY, scheduled_block_number=1)

    mark = planner.rescheduler.mark_stuck(item.id, reason="step 4", now=local(MONDAY, 9))
    again = planner.rescheduler.mark_stuck(item.id, reason="step 4", now=local(MONDAY, 9))

    assert again.id == mark.id
    assert mark.state == "pending"
    assert (mark.date, mark.block_number) == (MONDAY, 1)
    assert timers.pending_keys() == [item.id]
    assert timers.scheduled[item.id][0] == 15.0
    assert _reload(item.id).completion_status == "pending"
    assert [pending.id for pending in planner.rescheduler.pending_marks("alex", MONDAY)] == [mark.id]


def test_cancel_before_commit_leaves_assignment_alone(planner, timers, notifier, add_assignment, events) -> None:
    item = add_assignment("Map skills")
    planner.rescheduler.mark_stuck(item.id, day=MONDAY, now=local(MONDAY, 9))

    assert planner.rescheduler.cancel_stuck(item.id)
    assert planner.rescheduler.commit_stuck(item.id) is None
    assert not planner.rescheduler.cancel_stuck(item.id)

    assert item.id in timers.cancelled
    assert _reload(item.id).completion_status == "pending"
    assert notifier.notices == []
    assert "stuck_mark_cancelled" in [event.name for event in events]


def test_timer_commit_marks_stuck_and_notifies(planner, timers, notifier, add_assignment) -> None:
    item = add_assignment("Cursive", scheduled_date=MONDAY, scheduled_block_number=1)
    mark = planner.rescheduler.mark_stuck(item.id, reason="hand hurts", now=local(MONDAY, 9))

    result = timers.fire(item.id)

    assert result is not None
    assert result.assignment.completion_status == "stuck"
    assert notifier.notices == [("alex", item.id, "hand hurts")]
    assert planner.compose("alex", MONDAY)[1].status == "stuck"
    assert not planner.rescheduler.cancel_stuck(item.id)
    with session_scope(commit=False) as session:
        assert stuck_marks.get(session, mark.id).state == "committed"


def test_commit_after_completion_cancels_the_mark(planner, timers, add_assignment) -> None:
    item = add_assignment("Vocabulary")
    mark = planner.rescheduler.mark_stuck(item.id, day=MONDAY, now=local(MONDAY, 9))
    planner.completion.transition(item.id, "completed")

    assert timers.fire(item.id) is None

    assert _reload(item.id).completion_status == "completed"
    with session_scope(commit=False) as session:
        assert stuck_marks.get(session, mark.id).state == "cancelled"


def test_marking_completed_work_is_rejected(planner, add_assignment) -> None:
    item = add_assignment("Done already")
    planner.completion.transition(item.id, "completed", TransitionMeta())

    with pytest.raises(ValidationError):
        planner.rescheduler.mark_stuck(item.id)


def test_sweeper_commits_only_elapsed_marks(planner, notifier, add_assignment) -> None:
    item = add_assignment("History timeline")
    planner.rescheduler.mark_stuck(item.id, notify_parent=False, day=MONDAY, now=local(MONDAY, 9))

    assert planner.rescheduler.process_due_marks(local(MONDAY, 9) + timedelta(seconds=5)) == []
    committed = planner.rescheduler.process_due_marks(local(MONDAY, 9, 1))

    assert [result.assignment.id for result in committed] == [item.id]
    assert notifier.notices == []
    assert planner.rescheduler.pending_marks("alex", MONDAY) == []


def test_timer_registry_fires_and_forgets() -> None:
    registry = StuckTimerRegistry()
    fired = threading.Event()
    seen = []

    def callback(key: str) -> None:
        seen.append(key)
        fired.set()

    registry.schedule("a-1", 0.01, callback)
    assert fired.wait(2)
    assert seen == ["a-1"]
    assert registry.pending_keys() == []

    registry.schedule("a-2", 60, callback)
    registry.cancel("a-2")
    assert registry.pending_keys() == []


def test_single_slot_day_spills_algebra_to_tuesday(planner, add_assignment) -> None:
    planner.replace_template(
        "alex",
        [{"weekday": "Monday", "block_number": 1, "start_time": "09:00", "end_time": "09:30", "block_type": "assignment"}],
    )
    algebra = add_assignment("Algebra")
    [slot] = planner.compose("alex", MONDAY)
    assert slot.assignment_id == algebra.id
    with session_scope(commit=False) as session:
        before = len(assignments.list_for_student(session, "alex"))

    result = planner.rescheduler.need_more_time(
        "alex", MONDAY, assignment_id=algebra.id, block_number=slot.block_number, now=local(MONDAY, 9, 20)
    )

    assert (result.from_date, result.from_block_number) == (MONDAY, 1)
    assert (result.to_date, result.to_block_number) == (TUESDAY, None)
    stored = _reload(algebra.id)
    assert (stored.scheduled_date, stored.scheduled_block_number) == (TUESDAY, None)
    [monday] = planner.compose("alex", MONDAY)
    assert monday.assignment_id is None
    assert planner.compose("alex", TUESDAY) == []
    [next_monday] = planner.compose("alex", NEXT_MONDAY)
    assert next_monday.assignment_id == algebra.id
    with session_scope(commit=False) as session:
        assert len(assignments.list_for_student(session, "alex")) == before


def test_cancel_after_the_commit_claimed_the_mark_changes_nothing(planner, notifier, add_assignment, events) -> None:
    item = add_assignment("Long division", scheduled_date=MONDAY, scheduled_block_number=1)
    mark = planner.rescheduler.mark_stuck(item.id, reason="step 4", now=local(MONDAY, 9))
    with session_scope() as session:
        assert stuck_marks.claim(session, mark.id, "committed")

    assert not planner.rescheduler.cancel_stuck(item.id)
    assert planner.rescheduler.commit_stuck(item.id) is None

    with session_scope(commit=False) as session:
        assert stuck_marks.get(session, mark.id).state == "committed"
    assert "stuck_mark_cancelled" not in [event.name for event in events]
    assert notifier.notices == []


class _SnapshotMarks(StuckMarkRepository):
    """Hands back a mark as it looked before a concurrent cancel landed."""

    def __init__(self, snapshot: PendingStuckMark) -> None:
        self.snapshot = snapshot

    def find_pending(self, session, assignment_id: str) -> Optional[PendingStuckMark]:
        return self.snapshot if assignment_id == self.snapshot.assignment_id else None


def test_commit_that_read_a_pending_mark_loses_to_a_cancel(planner, timers, notifier, add_assignment, events) -> None:
    item = add_assignment("Map skills", scheduled_date=MONDAY, scheduled_block_number=1)
    mark = planner.rescheduler.mark_stuck(item.id, reason="lost", now=local(MONDAY, 9))
    late_committer = ReschedulingEngine(planner.completion, timers=timers, mark_store=_SnapshotMarks(mark))

    assert planner.rescheduler.cancel_stuck(item.id)
    assert late_committer.commit_stuck(item.id) is None

    stored = _reload(item.id)
    assert stored.completion_status == "pending"
    assert stored.version == item.version
    assert notifier.notices == []
    with session_scope(commit=False) as session:
        assert stuck_marks.get(session, mark.id).state == "cancelled"
    assert "stuck_mark_committed" not in [event.name for event in events]
