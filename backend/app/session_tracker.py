"""Guided-mode cursor over a composed day."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable, List, Optional, Set

from .block_composer import BlockComposer
from .cache.session_cache import GuidedSessionCache, guided_sessions
from .completion import SessionFactory
from .db.session import session_scope
from .errors import NotFoundError, ValidationError
from .repositories.stuck_marks import StuckMarkRepository, stuck_marks
from .schedule_models import GuidedSession, ScheduleBlock, normalize_student_id
from .telemetry import emit_event

logger = logging.getLogger(__name__)

TERMINAL_BLOCK_STATUSES = frozenset({"complete", "overtime"})
TERMINAL_ASSIGNMENT_STATUSES = frozenset({"completed", "stuck"})


def is_terminal_for_positioning(block: ScheduleBlock, marked_assignment_ids: Set[str]) -> bool:
    if block.status in TERMINAL_BLOCK_STATUSES:
        return True
    if block.kind != "assignment":
        return False
    if block.assignment_id is None:
        return True
    if block.assignment_status in TERMINAL_ASSIGNMENT_STATUSES:
        return True
    return block.assignment_id in marked_assignment_ids


class SessionTracker:
    """Keeps one resumable cursor per student.

    The stored index is never trusted: every resume re-composes the day and
    repositions on the first block that still needs work. Only the timer and
    the locally observed completed set carry over, and only within the same
    school-local date.
    """

    def __init__(
        self,
        composer: BlockComposer,
        *,
        store: GuidedSessionCache = guided_sessions,
        session_factory: SessionFactory = session_scope,
        mark_store: StuckMarkRepository = stuck_marks,
    ) -> None:
        self.composer = composer
        self.calendar = composer.calendar
        self._store = store
        self._session_factory = session_factory
        self._marks = mark_store

    def start(self, student_id: str, *, now: Optional[datetime] = None) -> GuidedSession:
        student = normalize_student_id(student_id)
        now = now or self.calendar.now()
        today = self.calendar.today(now)
        blocks, index = self._position(student, today)
        session = GuidedSession(
            student_id=student,
            date=today,
            current_block_index=index,
            current_block_id=blocks[index].block_id if index < len(blocks) else None,
            time_remaining_seconds=blocks[index].estimated_minutes * 60 if index < len(blocks) else 0,
            last_saved_at=now,
            day_complete=index >= len(blocks),
        )
        if session.day_complete:
            self._store.invalidate(student)
        else:
            self._store.set(session)
        emit_event("guided_session_started", student_id=student, date=today, block_index=index)
        return session

    def resume(
        self,
        student_id: str,
        *,
        snapshot: Optional[GuidedSession] = None,
        now: Optional[datetime] = None,
    ) -> Optional[GuidedSession]:
        """Rebuild the cursor from canonical state; ``None`` when there is nothing to resume."""
        student = normalize_student_id(student_id)
        now = now or self.calendar.now()
        today = self.calendar.today(now)
        previous = snapshot if snapshot is not None else self._store.get(student)
        if previous is None:
            return None
        if previous.student_id != student:
            raise ValidationError("Session snapshot belongs to another student.")
        if previous.date != today or self.calendar.local_date(previous.last_saved_at) != today:
            logger.info("Discarding guided session for student=%s from %s", student, previous.date.isoformat())
            self._store.invalidate(student)
            return None

        blocks, index = self._position(student, today)
        if index >= len(blocks):
            self._store.invalidate(student)
            emit_event("guided_session_finished", student_id=student, date=today)
            return previous.model_copy(
                update={
                    "current_block_index": len(blocks),
                    "current_block_id": None,
                    "time_remaining_seconds": 0,
                    "last_saved_at": now,
                    "day_complete": True,
                }
            )

        block = blocks[index]
        if block.block_id == previous.current_block_id:
            remaining = previous.time_remaining_seconds
        else:
            remaining = block.estimated_minutes * 60
        session = previous.model_copy(
            update={
                "current_block_index": index,
                "current_block_id": block.block_id,
                "time_remaining_seconds": remaining,
                "last_saved_at": now,
                "day_complete": False,
            }
        )
        self._store.set(session)
        return session

    def checkpoint(
        self,
        student_id: str,
        *,
        time_remaining_seconds: int,
        completed_block_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> GuidedSession:
        """Persist the client's timer and completed set for the current cursor."""
        if time_remaining_seconds < 0:
            raise ValidationError("time_remaining_seconds cannot be negative.")
        student = normalize_student_id(student_id)
        current = self._store.get(student)
        if current is None:
            raise NotFoundError(f"No guided session for {student}.")
        session = current.model_copy(
            update={
                "time_remaining_seconds": time_remaining_seconds,
                "completed_block_ids": current.completed_block_ids | set(completed_block_ids),
                "last_saved_at": now or self.calendar.now(),
            }
        )
        self._store.set(session)
        return session

    def exit(self, student_id: str) -> None:
        student = normalize_student_id(student_id)
        self._store.invalidate(student)
        emit_event("guided_session_exited", student_id=student)

    def _position(self, student: str, day: date) -> tuple[List[ScheduleBlock], int]:
        with self._session_factory() as session:
            blocks = self.composer.compose(session, student, day)
            marked = {mark.assignment_id for mark in self._marks.list_pending_for_date(session, student, day)}
        for index, block in enumerate(blocks):
            if not is_terminal_for_positioning(block, marked):
                return blocks, index
        return blocks, len(blocks)


__all__ = ["SessionTracker", "is_terminal_for_positioning"]
