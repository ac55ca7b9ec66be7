"""Assignment store with optimistic version checks."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.base import utcnow
from ..db.models import AssignmentModel
from ..errors import ConflictError, NotFoundError, ValidationError
from ..schedule_models import Assignment, as_utc, normalize_student_id, normalize_title

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "subject",
        "course_name",
        "instructions",
        "due_date",
        "estimated_minutes",
        "priority",
        "completion_status",
        "scheduled_date",
        "scheduled_block_number",
        "source_key",
        "source_course_id",
        "time_spent_minutes",
        "notes",
    }
)

_PRIORITY_RANK = case(
    (AssignmentModel.priority == "A", 0),
    (AssignmentModel.priority == "B", 1),
    else_=2,
)


class AssignmentRepository:
    """Durable assignment records.

    Every write bumps ``version``; ``update`` only succeeds against the version
    the caller read, so two writers racing on one row cannot both win.
    """

    def get(self, session: Session, assignment_id: str) -> Assignment:
        model = session.get(AssignmentModel, assignment_id, populate_existing=True)
        if model is None:
            raise NotFoundError(f"Assignment '{assignment_id}' does not exist.")
        return self._to_domain(model)

    def find(self, session: Session, student_id: str, title: str) -> Optional[Assignment]:
        """Look up an imported assignment by natural key ``(student, normalized title)``."""
        stmt = select(AssignmentModel).where(
            AssignmentModel.student_id == normalize_student_id(student_id),
            AssignmentModel.normalized_title == normalize_title(title),
            AssignmentModel.provenance == "imported",
        )
        model = session.execute(stmt).scalar_one_or_none()
        return self._to_domain(model) if model is not None else None

    def insert(self, session: Session, assignment: Assignment) -> Assignment:
        title = assignment.title.strip()
        if not title:
            raise ValidationError("Assignment title cannot be empty.")
        model = AssignmentModel(
            student_id=normalize_student_id(assignment.student_id),
            title=title,
            normalized_title=normalize_title(title),
            subject=assignment.subject,
            course_name=assignment.course_name,
            instructions=assignment.instructions,
            due_date=as_utc(assignment.due_date),
            estimated_minutes=assignment.estimated_minutes,
            priority=assignment.priority,
            completion_status=assignment.completion_status,
            scheduled_date=assignment.scheduled_date,
            scheduled_block_number=assignment.scheduled_block_number,
            provenance=assignment.provenance,
            source_key=assignment.source_key,
            source_course_id=assignment.source_course_id,
            time_spent_minutes=assignment.time_spent_minutes,
            notes=assignment.notes,
            version=1,
        )
        if assignment.id:
            model.id = assignment.id
        try:
            with session.begin_nested():
                session.add(model)
                session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                f"Assignment '{title}' collides with an existing record for {model.student_id}."
            ) from exc
        return self._to_domain(model)

    def update(
        self,
        session: Session,
        assignment_id: str,
        fields: Dict[str, Any],
        expected_version: int,
    ) -> Assignment:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not updatable: {sorted(unknown)}")

        values = dict(fields)
        if "title" in values:
            title = str(values["title"]).strip()
            if not title:
                raise ValidationError("Assignment title cannot be empty.")
            values["title"] = title
            values["normalized_title"] = normalize_title(title)
        if "due_date" in values:
            values["due_date"] = as_utc(values["due_date"])
        values["version"] = expected_version + 1
        values["updated_at"] = utcnow()

        stmt = (
            update(AssignmentModel)
            .where(
                AssignmentModel.id == assignment_id,
                AssignmentModel.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            with session.begin_nested():
                result = session.execute(stmt)
        except IntegrityError as exc:
            raise ConflictError(
                f"Update of assignment '{assignment_id}' violates a uniqueness constraint."
            ) from exc

        if result.rowcount == 0:
            current = session.execute(
                select(AssignmentModel.version).where(AssignmentModel.id == assignment_id)
            ).scalar_one_or_none()
            if current is None:
                raise NotFoundError(f"Assignment '{assignment_id}' does not exist.")
            raise ConflictError(
                f"Assignment '{assignment_id}' changed concurrently "
                f"(expected version {expected_version}, found {current}).",
                current_version=current,
            )
        return self.get(session, assignment_id)

    def list_by_student_date(self, session: Session, student_id: str, day: date) -> List[Assignment]:
        stmt = (
            select(AssignmentModel)
            .where(
                AssignmentModel.student_id == normalize_student_id(student_id),
                AssignmentModel.scheduled_date == day,
            )
            .order_by(AssignmentModel.scheduled_block_number)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def list_unscheduled_by_student(self, session: Session, student_id: str) -> List[Assignment]:
        """Floating pending work in fallback order: priority, due date (undated last), creation."""
        stmt = (
            select(AssignmentModel)
            .where(
                AssignmentModel.student_id == normalize_student_id(student_id),
                AssignmentModel.scheduled_date.is_(None),
                AssignmentModel.completion_status == "pending",
            )
            .order_by(
                _PRIORITY_RANK,
                AssignmentModel.due_date.is_(None),
                AssignmentModel.due_date,
                AssignmentModel.created_at,
                AssignmentModel.id,
            )
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def list_backlog(self, session: Session, student_id: str, day: date) -> List[Assignment]:
        """Pending work pushed onto ``day`` or an earlier date without a slot, oldest date first.

        Backlog from a day that had no free slot carries forward until a slot takes it.
        """
        stmt = (
            select(AssignmentModel)
            .where(
                AssignmentModel.student_id == normalize_student_id(student_id),
                AssignmentModel.scheduled_date <= day,
                AssignmentModel.scheduled_block_number.is_(None),
                AssignmentModel.completion_status == "pending",
            )
            .order_by(
                AssignmentModel.scheduled_date,
                _PRIORITY_RANK,
                AssignmentModel.due_date.is_(None),
                AssignmentModel.due_date,
                AssignmentModel.created_at,
                AssignmentModel.id,
            )
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def list_for_student(self, session: Session, student_id: str) -> List[Assignment]:
        stmt = (
            select(AssignmentModel)
            .where(AssignmentModel.student_id == normalize_student_id(student_id))
            .order_by(AssignmentModel.created_at, AssignmentModel.id)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def occupied_block_numbers(
        self,
        session: Session,
        student_id: str,
        day: date,
        *,
        exclude_id: Optional[str] = None,
    ) -> set[int]:
        stmt = select(AssignmentModel.scheduled_block_number).where(
            AssignmentModel.student_id == normalize_student_id(student_id),
            AssignmentModel.scheduled_date == day,
        )
        if exclude_id is not None:
            stmt = stmt.where(AssignmentModel.id != exclude_id)
        return {number for number in session.execute(stmt).scalars() if number is not None}

    def _to_domain(self, model: AssignmentModel) -> Assignment:
        return Assignment(
            id=model.id,
            student_id=model.student_id,
            title=model.title,
            subject=model.subject,
            course_name=model.course_name,
            instructions=model.instructions,
            due_date=as_utc(model.due_date),
            estimated_minutes=model.estimated_minutes,
            priority=model.priority,  # type: ignore[arg-type]
            completion_status=model.completion_status,  # type: ignore[arg-type]
            scheduled_date=model.scheduled_date,
            scheduled_block_number=model.scheduled_block_number,
            provenance=model.provenance,  # type: ignore[arg-type]
            source_key=model.source_key,
            source_course_id=model.source_course_id,
            time_spent_minutes=model.time_spent_minutes,
            notes=model.notes,
            version=model.version,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


assignments = AssignmentRepository()

__all__ = ["AssignmentRepository", "UPDATABLE_FIELDS", "assignments"]
