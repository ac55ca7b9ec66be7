"""Compose a student's ordered day from the weekly template and assignment store."""

from __future__ import annotations

import logging
from datetime import date
from itertools import chain
from typing import Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

from .repositories.assignments import AssignmentRepository, assignments
from .repositories.bible import bible_curriculum
from .repositories.block_statuses import BlockStatusRepository, block_statuses
from .repositories.templates import TemplateRepository, templates
from .schedule_models import (
    ASSIGNMENT_BLOCK,
    BIBLE_BLOCK,
    Assignment,
    ScheduleBlock,
    TemplateBlock,
    block_type_label,
    normalize_student_id,
)
from .school_calendar import SchoolCalendar
from .side_effects import CurriculumPointer

logger = logging.getLogger(__name__)

# Slots in these states keep whatever they showed; the backlog never refills them.
SETTLED_BLOCK_STATUSES = frozenset({"complete", "overtime", "stuck"})


class BlockComposer:
    """Instantiates the template for one date into an ordered block sequence.

    Reads only. Given the same stored state, two calls return equal sequences.
    """

    def __init__(
        self,
        calendar: SchoolCalendar,
        *,
        bible_minutes: int = 20,
        curriculum: CurriculumPointer = bible_curriculum,
        template_store: TemplateRepository = templates,
        assignment_store: AssignmentRepository = assignments,
        status_store: BlockStatusRepository = block_statuses,
    ) -> None:
        self.calendar = calendar
        self.bible_minutes = bible_minutes
        self._curriculum = curriculum
        self._templates = template_store
        self._assignments = assignment_store
        self._statuses = status_store

    def compose(self, session: Session, student_id: str, day: date) -> List[ScheduleBlock]:
        student = normalize_student_id(student_id)
        weekday = self.calendar.weekday_of(day)
        template = self._templates.list_blocks(session, student, weekday)
        if not template:
            logger.debug("No template for student=%s weekday=%s", student, weekday)
            return []

        statuses = self._statuses.get_map(session, student, day)
        placed = self._placements(session, student, day, template)
        backlog: Iterator[Assignment] = chain(
            self._assignments.list_backlog(session, student, day),
            self._assignments.list_unscheduled_by_student(session, student),
        )

        blocks: List[ScheduleBlock] = []
        for slot in sorted(template, key=lambda block: (block.start_time, block.block_number)):
            status = statuses.get(slot.id or "", "pending")
            if slot.block_type == BIBLE_BLOCK:
                blocks.append(self._bible_block(session, student, day, slot, status))
            elif slot.block_type == ASSIGNMENT_BLOCK:
                explicit = placed.get(slot.block_number)
                assignment = explicit
                if assignment is None and status not in SETTLED_BLOCK_STATUSES:
                    assignment = next(backlog, None)
                blocks.append(
                    self._assignment_block(slot, status, assignment, is_explicit=explicit is not None)
                )
            else:
                blocks.append(
                    ScheduleBlock(
                        block_id=slot.id or "",
                        kind="fixed",
                        template_block_id=slot.id or "",
                        block_number=slot.block_number,
                        start_time=slot.start_time,
                        end_time=slot.end_time,
                        estimated_minutes=slot.duration_minutes(),
                        subject=slot.subject or block_type_label(slot.block_type),
                        block_type_label=block_type_label(slot.block_type),
                        status=status,  # type: ignore[arg-type]
                    )
                )
        return blocks

    def assignment_slots(self, session: Session, student_id: str, day: date) -> List[TemplateBlock]:
        """Assignment-type template slots for ``day`` in start-time order."""
        weekday = self.calendar.weekday_of(day)
        slots = [
            block
            for block in self._templates.list_blocks(session, student_id, weekday)
            if block.block_type == ASSIGNMENT_BLOCK
        ]
        return sorted(slots, key=lambda block: (block.start_time, block.block_number))

    def _placements(
        self,
        session: Session,
        student: str,
        day: date,
        template: List[TemplateBlock],
    ) -> Dict[int, Assignment]:
        slot_numbers = {block.block_number for block in template if block.block_type == ASSIGNMENT_BLOCK}
        placed: Dict[int, Assignment] = {}
        for assignment in self._assignments.list_by_student_date(session, student, day):
            number = assignment.scheduled_block_number
            if number is None:
                continue
            if number not in slot_numbers:
                logger.warning(
                    "Assignment %s for student=%s on %s references block %s with no assignment slot; excluded",
                    assignment.id,
                    student,
                    day.isoformat(),
                    number,
                )
                continue
            placed[number] = assignment
        return placed

    def _bible_block(
        self, session: Session, student: str, day: date, slot: TemplateBlock, status: str
    ) -> ScheduleBlock:
        reading = self._curriculum.current_reading(session, student, day)
        return ScheduleBlock(
            block_id=slot.id or "",
            kind="bible",
            template_block_id=slot.id or "",
            block_number=slot.block_number,
            start_time=slot.start_time,
            end_time=slot.end_time,
            estimated_minutes=self.bible_minutes,
            subject=slot.subject or "Bible",
            block_type_label=block_type_label(BIBLE_BLOCK),
            status=status,  # type: ignore[arg-type]
            reading_title=reading.title if reading else None,
        )

    def _assignment_block(
        self,
        slot: TemplateBlock,
        status: str,
        assignment: Optional[Assignment],
        *,
        is_explicit: bool,
    ) -> ScheduleBlock:
        template_id = slot.id or ""
        if assignment is None:
            return ScheduleBlock(
                block_id=template_id,
                kind="assignment",
                template_block_id=template_id,
                block_number=slot.block_number,
                start_time=slot.start_time,
                end_time=slot.end_time,
                estimated_minutes=slot.duration_minutes(),
                subject=slot.subject,
                block_type_label=block_type_label(ASSIGNMENT_BLOCK),
                status=status,  # type: ignore[arg-type]
            )
        return ScheduleBlock(
            block_id=f"{template_id}:{assignment.id}",
            kind="assignment",
            template_block_id=template_id,
            block_number=slot.block_number,
            start_time=slot.start_time,
            end_time=slot.end_time,
            estimated_minutes=assignment.estimated_minutes,
            subject=assignment.subject or slot.subject,
            block_type_label=block_type_label(ASSIGNMENT_BLOCK),
            status=status,  # type: ignore[arg-type]
            assignment_id=assignment.id,
            assignment_title=assignment.title,
            assignment_status=assignment.completion_status,
            is_explicit_placement=is_explicit,
        )


__all__ = ["BlockComposer", "SETTLED_BLOCK_STATUSES"]
