"""Need-more-time relocation and the two-phase stuck mark with its undo window."""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .block_composer import SETTLED_BLOCK_STATUSES, BlockComposer
from .completion import CompletionStateMachine, SessionFactory
from .db.session import session_scope
from .errors import ConflictError, NotFoundError, ValidationError
from .repositories.assignments import AssignmentRepository, assignments
from .repositories.bible import bible_curriculum
from .repositories.block_statuses import BlockStatusRepository, block_statuses
from .repositories.preferences import PreferenceRepository, preferences
from .repositories.stuck_marks import StuckMarkRepository, stuck_marks
from .repositories.templates import TemplateRepository, templates
from .schedule_models import (
    BIBLE_BLOCK,
    Assignment,
    NeedMoreTimeResult,
    PendingStuckMark,
    SideEffect,
    TemplateBlock,
    TransitionMeta,
    TransitionResult,
    normalize_student_id,
)
from .side_effects import CurriculumPointer
from .telemetry import emit_event

logger = logging.getLogger(__name__)

RELOCATABLE_STATUSES = frozenset({"pending", "in_progress", "needs_more_time", "stuck"})


class StuckTimerRegistry:
    """In-process delayed commits keyed by assignment id.

    Losing a timer (process restart) is recovered by ``process_due_marks``; the
    timer is only a latency optimisation over that sweep.
    """

    def __init__(self) -> None:
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule(self, key: str, delay_seconds: float, callback: Callable[[str], object]) -> None:
        def fire() -> None:
            with self._lock:
                self._timers.pop(key, None)
            try:
                callback(key)
            except Exception:  # noqa: BLE001
                logger.exception("Delayed stuck commit failed for assignment=%s", key)

        timer = threading.Timer(max(delay_seconds, 0.0), fire)
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            self._timers[key] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def cancel(self, key: str) -> None:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def pending_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)


class ReschedulingEngine:
    def __init__(
        self,
        completion: CompletionStateMachine,
        *,
        stuck_undo_seconds: float = 15.0,
        retry_limit: int = 3,
        timers: Optional[StuckTimerRegistry] = None,
        session_factory: SessionFactory = session_scope,
        curriculum: CurriculumPointer = bible_curriculum,
        assignment_store: AssignmentRepository = assignments,
        status_store: BlockStatusRepository = block_statuses,
        mark_store: StuckMarkRepository = stuck_marks,
        template_store: TemplateRepository = templates,
        preference_store: PreferenceRepository = preferences,
    ) -> None:
        self.completion = completion
        self.composer: BlockComposer = completion.composer
        self.calendar = self.composer.calendar
        self.stuck_undo_seconds = stuck_undo_seconds
        self.retry_limit = max(retry_limit, 1)
        self.timers = timers if timers is not None else StuckTimerRegistry()
        self._session_factory = session_factory
        self._curriculum = curriculum
        self._assignments = assignment_store
        self._statuses = status_store
        self._marks = mark_store
        self._templates = template_store
        self._preferences = preference_store

    # ------------------------------------------------------------------
    # Need more time
    # ------------------------------------------------------------------

    def need_more_time(
        self,
        student_id: str,
        day: date,
        *,
        assignment_id: Optional[str] = None,
        template_block_id: Optional[str] = None,
        block_number: Optional[int] = None,
        elapsed_minutes: int = 0,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> NeedMoreTimeResult:
        """Give an assignment more time, or close out a Bible block.

        The assignment moves to the first free slot later today, or onto the
        next school day's backlog when today has none left. The move is one
        write: the old slot is released and the new placement stored together,
        or nothing changes.
        """
        student = normalize_student_id(student_id)
        if elapsed_minutes < 0:
            raise ValidationError("elapsed_minutes cannot be negative.")
        if assignment_id is None and template_block_id is None:
            raise ValidationError("need_more_time requires an assignment or a template block.")

        if assignment_id is None:
            return self._bible_need_more_time(student, day, template_block_id or "")

        attempts = 1 if expected_version is not None else self.retry_limit
        for attempt in range(1, attempts + 1):
            try:
                with self._session_factory() as session:
                    result = self._relocate(
                        session,
                        student,
                        day,
                        assignment_id,
                        block_number=block_number,
                        elapsed_minutes=elapsed_minutes,
                        expected_version=expected_version,
                        now=now or self.calendar.now(),
                    )
            except ConflictError:
                if attempt >= attempts:
                    raise
                logger.info("Conflict relocating assignment=%s; retry %d", assignment_id, attempt)
                continue
            emit_event(
                "assignment_rescheduled",
                student_id=student,
                assignment_id=assignment_id,
                from_date=result.from_date,
                from_block_number=result.from_block_number,
                to_date=result.to_date,
                to_block_number=result.to_block_number,
                rolled_over=result.rolled_over,
            )
            return result
        raise ConflictError(f"Assignment '{assignment_id}' could not be relocated.")

    def _relocate(
        self,
        session: Session,
        student: str,
        day: date,
        assignment_id: str,
        *,
        block_number: Optional[int],
        elapsed_minutes: int,
        expected_version: Optional[int],
        now: datetime,
    ) -> NeedMoreTimeResult:
        assignment = self._assignments.get(session, assignment_id)
        if assignment.student_id != student:
            raise NotFoundError(f"Assignment '{assignment_id}' does not belong to {student}.")
        if expected_version is not None and expected_version != assignment.version:
            raise ConflictError(
                f"Assignment '{assignment_id}' is at version {assignment.version}, not {expected_version}.",
                current_version=assignment.version,
            )
        if assignment.completion_status not in RELOCATABLE_STATUSES:
            raise ValidationError(
                f"Assignment '{assignment_id}' is {assignment.completion_status} and cannot be rescheduled."
            )

        from_date = assignment.scheduled_date or day
        from_number = assignment.scheduled_block_number
        if from_number is None:
            from_number = block_number

        to_date, to_slot = self._find_target(session, assignment, from_date, from_number, now)
        to_number = to_slot.block_number if to_slot is not None else None

        effects: List[SideEffect] = []
        origin = self._slot(session, student, from_date, from_number)
        if origin is not None:
            self._statuses.upsert(session, student, from_date, origin.id or "", "overtime")
            effects.append(
                SideEffect(
                    kind="block_status",
                    status="applied",
                    detail={
                        "student_id": student,
                        "date": from_date.isoformat(),
                        "template_block_id": origin.id,
                        "status": "overtime",
                    },
                )
            )

        fields: Dict[str, object] = {
            "completion_status": "pending",
            "scheduled_date": to_date,
            "scheduled_block_number": to_number,
        }
        if elapsed_minutes:
            fields["time_spent_minutes"] = assignment.time_spent_minutes + elapsed_minutes
        updated = self._assignments.update(session, assignment_id, fields, assignment.version)

        logger.info(
            "Relocated assignment=%s from %s/%s to %s/%s",
            assignment_id,
            from_date.isoformat(),
            from_number,
            to_date.isoformat(),
            "backlog" if to_number is None else to_number,
        )
        return NeedMoreTimeResult(
            kind="assignment",
            assignment=updated,
            from_date=from_date,
            from_block_number=from_number,
            to_date=to_date,
            to_block_number=to_number,
            rolled_over=to_date != from_date,
            side_effects=effects,
        )

    def _find_target(
        self,
        session: Session,
        assignment: Assignment,
        from_date: date,
        from_number: Optional[int],
        now: datetime,
    ) -> Tuple[date, Optional[TemplateBlock]]:
        """First free slot later today in school time, else the next school day's backlog.

        Work on a past date is pulled forward to today; nothing is ever placed
        before ``now``.
        """
        student = assignment.student_id
        base = max(from_date, self.calendar.today(now))
        floor = now
        origin = self._slot(session, student, from_date, from_number) if base == from_date else None
        if origin is not None:
            floor = max(floor, self.calendar.compose_instant(base, origin.start_time))

        for slot in self._free_slots(session, student, base, assignment.id):
            if origin is not None and slot.block_number == origin.block_number:
                continue
            if self.calendar.compose_instant(base, slot.start_time) > floor:
                return base, slot

        allow_saturday = self._preferences.allows_saturday(session, student)
        return self.calendar.next_school_day(base, allow_saturday=allow_saturday), None

    def _free_slots(
        self, session: Session, student: str, day: date, assignment_id: Optional[str]
    ) -> List[TemplateBlock]:
        occupied = self._assignments.occupied_block_numbers(session, student, day, exclude_id=assignment_id)
        statuses = self._statuses.get_map(session, student, day)
        return [
            slot
            for slot in self.composer.assignment_slots(session, student, day)
            if slot.block_number not in occupied
            and statuses.get(slot.id or "", "pending") not in SETTLED_BLOCK_STATUSES
        ]

    def _slot(
        self, session: Session, student: str, day: date, block_number: Optional[int]
    ) -> Optional[TemplateBlock]:
        if block_number is None:
            return None
        for slot in self.composer.assignment_slots(session, student, day):
            if slot.block_number == block_number:
                return slot
        return None

    def _bible_need_more_time(self, student: str, day: date, template_block_id: str) -> NeedMoreTimeResult:
        with self._session_factory() as session:
            slot = self._templates.get(session, template_block_id)
            if slot.student_id != student:
                raise NotFoundError(f"Template block '{template_block_id}' does not belong to {student}.")
            if slot.block_type != BIBLE_BLOCK:
                raise ValidationError("Only Bible blocks can take more time without an assignment.")
            self._statuses.upsert(session, student, day, template_block_id, "complete")
            next_reading = self._curriculum.advance(session, student, day)

        emit_event(
            "bible_block_closed",
            student_id=student,
            date=day,
            next_reading=next_reading.title if next_reading else None,
        )
        return NeedMoreTimeResult(
            kind="bible",
            from_date=day,
            from_block_number=slot.block_number,
            next_reading=next_reading,
            side_effects=[
                SideEffect(
                    kind="block_status",
                    status="applied",
                    detail={
                        "student_id": student,
                        "date": day.isoformat(),
                        "template_block_id": template_block_id,
                        "status": "complete",
                    },
                ),
                SideEffect(
                    kind="curriculum",
                    status="applied",
                    detail={
                        "student_id": student,
                        "next_reading": next_reading.title if next_reading else None,
                    },
                ),
            ],
        )

    # ------------------------------------------------------------------
    # Stuck
    # ------------------------------------------------------------------

    def mark_stuck(
        self,
        assignment_id: str,
        *,
        reason: str = "",
        notify_parent: bool = True,
        day: Optional[date] = None,
        block_number: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> PendingStuckMark:
        """Phase one: record a pending mark and arm the undo-window timer.

        The assignment row is untouched until the mark commits. Marking an
        assignment that already has a pending mark returns that mark.
        """
        now = now or self.calendar.now()
        created = False
        with self._session_factory() as session:
            assignment = self._assignments.get(session, assignment_id)
            if assignment.completion_status == "completed":
                raise ValidationError(f"Assignment '{assignment_id}' is already completed.")
            mark = self._marks.find_pending(session, assignment_id)
            if mark is None:
                try:
                    mark = self._marks.create(
                        session,
                        assignment_id=assignment_id,
                        student_id=assignment.student_id,
                        day=assignment.scheduled_date or day or self.calendar.today(now),
                        block_number=(
                            assignment.scheduled_block_number
                            if assignment.scheduled_block_number is not None
                            else block_number
                        ),
                        reason=reason,
                        notify_parent=notify_parent,
                        commit_at=now + timedelta(seconds=self.stuck_undo_seconds),
                    )
                    created = True
                except ConflictError:
                    mark = self._marks.find_pending(session, assignment_id)
                    if mark is None:
                        raise

        if created:
            self.timers.schedule(assignment_id, self.stuck_undo_seconds, self.commit_stuck)
            emit_event(
                "stuck_mark_created",
                student_id=mark.student_id,
                assignment_id=assignment_id,
                commit_at=mark.commit_at,
                notify_parent=notify_parent,
            )
        return mark

    def cancel_stuck(self, assignment_id: str) -> bool:
        """Undo a pending mark. ``False`` means the commit already won."""
        with self._session_factory() as session:
            mark = self._marks.find_pending(session, assignment_id)
            cancelled = mark is not None and self._marks.claim(session, mark.id, "cancelled")
        self.timers.cancel(assignment_id)
        if cancelled and mark is not None:
            emit_event(
                "stuck_mark_cancelled",
                student_id=mark.student_id,
                assignment_id=assignment_id,
                mark_id=mark.id,
            )
        return cancelled

    def commit_stuck(self, assignment_id: str) -> Optional[TransitionResult]:
        """Phase two: claim the pending mark and apply the stuck transition atomically.

        Returns ``None`` when there was nothing to commit (cancelled, already
        committed, or the assignment moved somewhere stuck cannot follow).
        """
        result: Optional[TransitionResult] = None
        mark: Optional[PendingStuckMark] = None
        for attempt in range(1, self.retry_limit + 1):
            try:
                with self._session_factory() as session:
                    mark = self._marks.find_pending(session, assignment_id)
                    if mark is None or not self._marks.claim(session, mark.id, "committed"):
                        return None
                    meta = TransitionMeta(
                        slot_date=mark.date,
                        block_number=mark.block_number,
                        needs_help=mark.notify_parent,
                        reason=mark.reason,
                    )
                    try:
                        with session.begin_nested():
                            result = self.completion.apply_transition(session, assignment_id, "stuck", meta)
                    except (ValidationError, NotFoundError) as exc:
                        logger.warning("Stuck mark %s dropped: %s", mark.id, exc)
                        self._marks.set_state(session, mark.id, "cancelled")
                        result = None
                break
            except ConflictError:
                if attempt >= self.retry_limit:
                    raise
                logger.info("Conflict committing stuck mark for assignment=%s; retry %d", assignment_id, attempt)

        self.timers.cancel(assignment_id)
        if result is None or mark is None:
            return None
        if result.changed:
            result.side_effects = self.completion.dispatcher.dispatch(result.side_effects)
        emit_event(
            "stuck_mark_committed",
            student_id=mark.student_id,
            assignment_id=assignment_id,
            mark_id=mark.id,
            notify_parent=mark.notify_parent,
        )
        return result

    def process_due_marks(self, now: Optional[datetime] = None) -> List[TransitionResult]:
        """Commit every pending mark whose undo window has elapsed."""
        now = now or self.calendar.now()
        with self._session_factory() as session:
            due = self._marks.list_due(session, now)
        results: List[TransitionResult] = []
        for mark in due:
            committed = self.commit_stuck(mark.assignment_id)
            if committed is not None:
                results.append(committed)
        if due:
            logger.info("Processed %d due stuck marks, committed %d", len(due), len(results))
        return results

    def pending_marks(self, student_id: str, day: date) -> List[PendingStuckMark]:
        with self._session_factory() as session:
            return self._marks.list_pending_for_date(session, student_id, day)


__all__ = ["RELOCATABLE_STATUSES", "ReschedulingEngine", "StuckTimerRegistry"]
