"""Assignment status lifecycle and the side effects each transition produces."""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, ContextManager, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from .block_composer import BlockComposer
from .db.session import session_scope
from .errors import ConflictError, NotFoundError, ValidationError
from .repositories.assignments import AssignmentRepository, assignments
from .repositories.bible import bible_curriculum
from .repositories.block_statuses import BlockStatusRepository, block_statuses
from .repositories.templates import TemplateRepository, templates
from .schedule_models import (
    ASSIGNMENT_BLOCK,
    BIBLE_BLOCK,
    Assignment,
    BlockStatus,
    SideEffect,
    TemplateBlock,
    TransitionMeta,
    TransitionResult,
    normalize_student_id,
)
from .side_effects import CurriculumPointer, SideEffectDispatcher
from .telemetry import emit_event

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]

COMPLETION_STATUSES: FrozenSet[str] = frozenset(
    {"pending", "in_progress", "completed", "stuck", "needs_more_time"}
)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"in_progress", "completed", "stuck"}),
    "in_progress": frozenset({"pending", "completed", "stuck", "needs_more_time"}),
    "needs_more_time": frozenset({"pending", "completed"}),
    "stuck": frozenset({"pending", "completed"}),
    "completed": frozenset(),
}

# Only reachable from ``completed`` when the caller passes ``reopen``.
REOPEN_TARGETS: FrozenSet[str] = frozenset({"pending", "in_progress"})

BLOCK_STATUS_MIRROR: Dict[str, str] = {
    "completed": "complete",
    "stuck": "stuck",
    "needs_more_time": "overtime",
}


def mirrored_block_status(status: str) -> str:
    return BLOCK_STATUS_MIRROR.get(status, "in_progress")


class CompletionStateMachine:
    def __init__(
        self,
        composer: BlockComposer,
        dispatcher: SideEffectDispatcher,
        *,
        completion_points: int = 10,
        retry_limit: int = 3,
        session_factory: SessionFactory = session_scope,
        curriculum: CurriculumPointer = bible_curriculum,
        assignment_store: AssignmentRepository = assignments,
        status_store: BlockStatusRepository = block_statuses,
        template_store: TemplateRepository = templates,
    ) -> None:
        self.composer = composer
        self.dispatcher = dispatcher
        self.completion_points = completion_points
        self.retry_limit = max(retry_limit, 1)
        self._session_factory = session_factory
        self._curriculum = curriculum
        self._assignments = assignment_store
        self._statuses = status_store
        self._templates = template_store

    def transition(
        self,
        assignment_id: str,
        new_status: str,
        meta: Optional[TransitionMeta] = None,
    ) -> TransitionResult:
        """Move an assignment to ``new_status`` and dispatch the resulting side effects.

        With ``meta.expected_version`` a stale read fails fast with
        ``ConflictError``; without it a lost race is re-read and retried up to
        ``retry_limit`` times before the conflict surfaces.
        """
        meta = meta or TransitionMeta()
        attempts = 1 if meta.expected_version is not None else self.retry_limit
        for attempt in range(1, attempts + 1):
            try:
                with self._session_factory() as session:
                    result = self.apply_transition(session, assignment_id, new_status, meta)
            except ConflictError:
                if attempt >= attempts:
                    raise
                logger.info(
                    "Conflict transitioning assignment=%s to %s; retry %d/%d",
                    assignment_id,
                    new_status,
                    attempt,
                    attempts - 1,
                )
                continue
            return self._finish(assignment_id, new_status, result)
        raise ConflictError(f"Assignment '{assignment_id}' could not be moved to {new_status}.")

    def _finish(self, assignment_id: str, new_status: str, result: TransitionResult) -> TransitionResult:
        if result.changed:
            result.side_effects = self.dispatcher.dispatch(result.side_effects)
            emit_event(
                "assignment_transitioned",
                student_id=result.assignment.student_id,
                assignment_id=assignment_id,
                from_status=result.previous_status,
                to_status=new_status,
                version=result.assignment.version,
            )
        return result

    def apply_transition(
        self,
        session: Session,
        assignment_id: str,
        new_status: str,
        meta: TransitionMeta,
    ) -> TransitionResult:
        """Validate and write one transition inside ``session``; side effects are returned queued."""
        if new_status not in COMPLETION_STATUSES:
            raise ValidationError(f"Unknown completion status '{new_status}'.")
        if meta.elapsed_minutes < 0:
            raise ValidationError("elapsed_minutes cannot be negative.")

        assignment = self._assignments.get(session, assignment_id)
        if meta.expected_version is not None and meta.expected_version != assignment.version:
            raise ConflictError(
                f"Assignment '{assignment_id}' is at version {assignment.version}, "
                f"not {meta.expected_version}.",
                current_version=assignment.version,
            )

        previous = assignment.completion_status
        if previous == new_status:
            return TransitionResult(assignment=assignment, previous_status=previous, changed=False)
        self._check_allowed(previous, new_status, reopen=meta.reopen)

        fields: Dict[str, object] = {"completion_status": new_status}
        if meta.elapsed_minutes:
            fields["time_spent_minutes"] = assignment.time_spent_minutes + meta.elapsed_minutes

        slot = self._owning_slot(session, assignment, meta, fields)
        updated = self._assignments.update(session, assignment_id, fields, assignment.version)

        effects: List[SideEffect] = []
        if slot is not None:
            slot_date, template_block = slot
            mirror = mirrored_block_status(new_status)
            self._statuses.upsert(session, updated.student_id, slot_date, template_block.id or "", mirror)
            effects.append(
                SideEffect(
                    kind="block_status",
                    status="applied",
                    detail={
                        "student_id": updated.student_id,
                        "date": slot_date.isoformat(),
                        "template_block_id": template_block.id,
                        "status": mirror,
                    },
                )
            )
        if new_status == "completed" and self.completion_points > 0:
            effects.append(
                SideEffect(
                    kind="points",
                    detail={
                        "student_id": updated.student_id,
                        "points": self.completion_points,
                        "reason": f"Completed {updated.title}",
                    },
                )
            )
        if new_status == "stuck" and meta.needs_help:
            effects.append(
                SideEffect(
                    kind="notification",
                    detail={
                        "student_id": updated.student_id,
                        "assignment_id": assignment_id,
                        "reason": meta.reason,
                    },
                )
            )

        minutes_delta = None
        if new_status == "completed":
            minutes_delta = assignment.estimated_minutes - meta.elapsed_minutes

        return TransitionResult(
            assignment=updated,
            previous_status=previous,
            side_effects=effects,
            minutes_delta=minutes_delta,
        )

    def set_block_status(
        self,
        student_id: str,
        day: date,
        template_block_id: str,
        status: str,
    ) -> BlockStatus:
        """Record a status for any template block on ``day``, creating the row on first use."""
        student = normalize_student_id(student_id)
        with self._session_factory() as session:
            self._require_slot(session, student, day, template_block_id)
            result = self._statuses.upsert(session, student, day, template_block_id, status)
        emit_event(
            "block_status_set",
            student_id=student,
            date=day,
            template_block_id=template_block_id,
            status=status,
        )
        return result

    def complete_block(self, student_id: str, day: date, template_block_id: str) -> BlockStatus:
        """Complete a Bible or fixed block; a Bible block advances the reading pointer once per day."""
        student = normalize_student_id(student_id)
        with self._session_factory() as session:
            slot = self._require_slot(session, student, day, template_block_id)
            if slot.block_type == ASSIGNMENT_BLOCK:
                raise ValidationError("Assignment blocks complete through their assignment's transition.")
            result = self._statuses.upsert(session, student, day, template_block_id, "complete")
            if slot.block_type == BIBLE_BLOCK:
                self._curriculum.advance(session, student, day)
        emit_event(
            "block_completed",
            student_id=student,
            date=day,
            template_block_id=template_block_id,
            block_type=slot.block_type,
        )
        return result

    def block_statuses(self, student_id: str, day: date) -> List[BlockStatus]:
        with self._session_factory() as session:
            return self._statuses.list_for_date(session, student_id, day)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_allowed(self, previous: str, new_status: str, *, reopen: bool) -> None:
        if previous == "completed":
            if reopen and new_status in REOPEN_TARGETS:
                return
            raise ValidationError(
                f"Completed assignments can only move to {sorted(REOPEN_TARGETS)} with reopen set."
            )
        if new_status not in ALLOWED_TRANSITIONS[previous]:
            raise ValidationError(f"Transition {previous} -> {new_status} is not allowed.")

    def _owning_slot(
        self,
        session: Session,
        assignment: Assignment,
        meta: TransitionMeta,
        fields: Dict[str, object],
    ) -> Optional[Tuple[date, TemplateBlock]]:
        """Template slot whose BlockStatus mirrors this assignment.

        A floating or backlogged assignment worked from a fallback slot is
        pinned to that slot when the caller names it and nothing else is
        placed there.
        """
        if assignment.is_placed:
            slot_date = assignment.scheduled_date
            block_number = assignment.scheduled_block_number
        elif meta.slot_date is not None and meta.block_number is not None:
            slot_date = meta.slot_date
            block_number = meta.block_number
        else:
            return None

        template_block = next(
            (
                block
                for block in self.composer.assignment_slots(session, assignment.student_id, slot_date)
                if block.block_number == block_number
            ),
            None,
        )
        if template_block is None:
            return None

        if not assignment.is_placed:
            occupied = self._assignments.occupied_block_numbers(session, assignment.student_id, slot_date)
            if block_number in occupied:
                logger.info(
                    "Slot %s/%s already holds another assignment; %s stays floating",
                    slot_date.isoformat(),
                    block_number,
                    assignment.id,
                )
                return None
            fields["scheduled_date"] = slot_date
            fields["scheduled_block_number"] = block_number
        return slot_date, template_block

    def _require_slot(
        self, session: Session, student: str, day: date, template_block_id: str
    ) -> TemplateBlock:
        slot = self._templates.get(session, template_block_id)
        if slot.student_id != student:
            raise NotFoundError(f"Template block '{template_block_id}' does not belong to {student}.")
        if slot.weekday != self.composer.calendar.weekday_of(day):
            raise ValidationError(
                f"Template block '{template_block_id}' is a {slot.weekday} block, not {day.isoformat()}."
            )
        return slot


__all__ = [
    "ALLOWED_TRANSITIONS",
    "BLOCK_STATUS_MIRROR",
    "COMPLETION_STATUSES",
    "CompletionStateMachine",
    "REOPEN_TARGETS",
    "mirrored_block_status",
]
