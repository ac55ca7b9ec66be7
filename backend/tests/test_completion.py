from __future__ import annotations

import pytest

from app.db.session import session_scope
from app.errors import ConflictError, NotFoundError, ValidationError
from app.planner import build_planner
from app.config import get_settings
from app.repositories import assignments, bible_curriculum
from app.schedule_models import BibleReading, TransitionMeta

from conftest import MONDAY, TUESDAY, RecordingNotifier


def _reload(assignment_id: str):
    with session_scope(commit=False) as session:
        return assignments.get(session, assignment_id)


def _statuses(planner) -> dict:
    return {status.template_block_id: status.status for status in planner.completion.block_statuses("alex", MONDAY)}


def test_completing_a_placed_assignment_mirrors_status_and_awards_points(planner, ledger, add_assignment, events) -> None:
    placed = add_assignment("Long division", estimated_minutes=40, scheduled_date=MONDAY, scheduled_block_number=1)

    result = planner.completion.transition(placed.id, "completed", TransitionMeta(elapsed_minutes=25))

    assert result.changed
    assert result.previous_status == "pending"
    assert result.assignment.completion_status == "completed"
    assert result.assignment.version == placed.version + 1
    assert result.assignment.time_spent_minutes == 25
    assert result.minutes_delta == 15
    assert ledger.awards == [("alex", 10, "Completed Long division")]
    assert {effect.kind: effect.status for effect in result.side_effects} == {
        "block_status": "applied",
        "points": "dispatched",
    }

    slot = planner.compose("alex", MONDAY)[1]
    assert slot.assignment_id == placed.id
    assert slot.status == "complete"
    assert _statuses(planner) == {slot.template_block_id: "complete"}
    assert [event.name for event in events] == ["assignment_transitioned"]


def test_floating_assignment_is_pinned_to_the_slot_it_was_worked_in(planner, add_assignment) -> None:
    floating = add_assignment("Spelling")
    slot = planner.compose("alex", MONDAY)[1]
    assert slot.assignment_id == floating.id

    planner.completion.transition(
        floating.id,
        "in_progress",
        TransitionMeta(slot_date=MONDAY, block_number=slot.block_number),
    )

    stored = _reload(floating.id)
    assert stored.scheduled_date == MONDAY
    assert stored.scheduled_block_number == 1
    assert planner.compose("alex", MONDAY)[1].is_explicit_placement
    assert _statuses(planner) == {slot.template_block_id: "in_progress"}


def test_same_status_is_a_no_op(planner, ledger, add_assignment) -> None:
    item = add_assignment("Reading log")

    result = planner.completion.transition(item.id, "pending")

    assert not result.changed
    assert result.side_effects == []
    assert _reload(item.id).version == item.version
    assert ledger.awards == []


def test_disallowed_transition_leaves_state_untouched(planner, add_assignment) -> None:
    item = add_assignment("Timeline")

    with pytest.raises(ValidationError):
        planner.completion.transition(item.id, "needs_more_time")
    with pytest.raises(ValidationError):
        planner.completion.transition(item.id, "archived")

    stored = _reload(item.id)
    assert stored.completion_status == "pending"
    assert stored.version == item.version


def test_completed_only_reopens_explicitly(planner, add_assignment) -> None:
    item = add_assignment("Poem recital")
    planner.completion.transition(item.id, "completed")

    with pytest.raises(ValidationError):
        planner.completion.transition(item.id, "pending")
    with pytest.raises(ValidationError):
        planner.completion.transition(item.id, "stuck", TransitionMeta(reopen=True))

    reopened = planner.completion.transition(item.id, "pending", TransitionMeta(reopen=True))
    assert reopened.assignment.completion_status == "pending"


def test_stale_version_fails_without_writing(planner, add_assignment) -> None:
    item = add_assignment("Science notebook")
    planner.completion.transition(item.id, "in_progress")

    with pytest.raises(ConflictError) as excinfo:
        planner.completion.transition(item.id, "completed", TransitionMeta(expected_version=item.version))

    assert excinfo.value.current_version == item.version + 1
    assert _reload(item.id).completion_status == "in_progress"


def test_second_writer_with_the_same_read_loses(planner, add_assignment) -> None:
    item = add_assignment("Shared worksheet")
    meta = TransitionMeta(expected_version=item.version)

    first = planner.completion.transition(item.id, "completed", meta)
    with pytest.raises(ConflictError):
        planner.completion.transition(item.id, "stuck", meta)

    assert first.assignment.completion_status == "completed"
    assert _reload(item.id).completion_status == "completed"


def test_unknown_assignment_is_not_found(planner) -> None:
    with pytest.raises(NotFoundError):
        planner.completion.transition("missing", "completed")


def test_stuck_with_help_notifies_parent(planner, notifier, add_assignment) -> None:
    item = add_assignment("Chemistry lab")

    result = planner.completion.transition(
        item.id, "stuck", TransitionMeta(needs_help=True, reason="confused by step 3")
    )

    assert notifier.notices == [("alex", item.id, "confused by step 3")]
    assert [effect.kind for effect in result.side_effects] == ["notification"]


def test_side_effect_failure_does_not_undo_the_transition(database, ledger, add_assignment, events) -> None:
    failing = build_planner(get_settings(), ledger=ledger, notifier=RecordingNotifier(fail=True))
    item = add_assignment("Geometry proof")

    result = failing.completion.transition(item.id, "stuck", TransitionMeta(needs_help=True))

    assert _reload(item.id).completion_status == "stuck"
    [effect] = result.side_effects
    assert effect.status == "failed"
    assert "mail relay down" in (effect.error or "")
    assert "side_effect_failed" in [event.name for event in events]


def test_complete_bible_block_advances_reading_once_per_day(planner) -> None:
    with session_scope() as session:
        bible_curriculum.replace_curriculum(
            session,
            [
                BibleReading(week_number=1, day_of_week=1, title="Psalm 1"),
                BibleReading(week_number=1, day_of_week=2, title="Psalm 2"),
                BibleReading(week_number=2, day_of_week=1, title="Psalm 3"),
            ],
        )
    bible = planner.compose("alex", MONDAY)[0]

    planner.completion.complete_block("alex", MONDAY, bible.template_block_id)
    planner.completion.complete_block("alex", MONDAY, bible.template_block_id)

    monday = planner.compose("alex", MONDAY)[0]
    assert monday.status == "complete"
    assert monday.reading_title == "Psalm 1"
    assert planner.compose("alex", TUESDAY)[0].reading_title == "Psalm 2"


def test_complete_block_rejects_assignment_slots_and_wrong_days(planner) -> None:
    blocks = planner.compose("alex", MONDAY)

    with pytest.raises(ValidationError):
        planner.completion.complete_block("alex", MONDAY, blocks[1].template_block_id)
    with pytest.raises(ValidationError):
        planner.completion.set_block_status("alex", TUESDAY, blocks[2].template_block_id, "complete")
    with pytest.raises(NotFoundError):
        planner.completion.set_block_status("sam", MONDAY, blocks[2].template_block_id, "complete")
    with pytest.raises(ValidationError):
        planner.completion.set_block_status("alex", MONDAY, blocks[2].template_block_id, "done")


def test_floating_work_is_not_pinned_into_an_occupied_slot(planner, add_assignment) -> None:
    owner = add_assignment("Long division", scheduled_date=MONDAY, scheduled_block_number=1)
    floating = add_assignment("Spelling")

    result = planner.completion.transition(
        floating.id, "in_progress", TransitionMeta(slot_date=MONDAY, block_number=1)
    )

    assert result.assignment.completion_status == "in_progress"
    stored = _reload(floating.id)
    assert (stored.scheduled_date, stored.scheduled_block_number) == (None, None)
    assert planner.compose("alex", MONDAY)[1].assignment_id == owner.id


def test_store_refuses_two_assignments_in_one_slot(planner, add_assignment) -> None:
    add_assignment("Long division", scheduled_date=MONDAY, scheduled_block_number=1)
    floating = add_assignment("Spelling")

    with pytest.raises(ConflictError):
        with session_scope() as session:
            assignments.update(
                session,
                floating.id,
                {"scheduled_date": MONDAY, "scheduled_block_number": 1},
                floating.version,
            )
    with pytest.raises(ConflictError):
        add_assignment("Copywork", scheduled_date=MONDAY, scheduled_block_number=1)

    stored = _reload(floating.id)
    assert stored.scheduled_date is None
    assert stored.version == floating.version
