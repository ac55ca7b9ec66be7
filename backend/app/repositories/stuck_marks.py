"""Pending stuck marks and their compare-and-set state changes."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.base import utcnow
from ..db.models import PendingStuckMarkModel
from ..errors import ConflictError, NotFoundError
from ..schedule_models import PendingStuckMark, as_utc, normalize_student_id


class StuckMarkRepository:
    def create(
        self,
        session: Session,
        *,
        assignment_id: str,
        student_id: str,
        day: date,
        block_number: Optional[int],
        reason: str,
        notify_parent: bool,
        commit_at: datetime,
    ) -> PendingStuckMark:
        model = PendingStuckMarkModel(
            assignment_id=assignment_id,
            student_id=normalize_student_id(student_id),
            day=day,
            block_number=block_number,
            reason=reason,
            notify_parent=notify_parent,
            state="pending",
            commit_at=as_utc(commit_at),
        )
        try:
            with session.begin_nested():
                session.add(model)
                session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Assignment '{assignment_id}' already has a pending stuck mark.") from exc
        return self._to_domain(model)

    def get(self, session: Session, mark_id: str) -> PendingStuckMark:
        model = session.get(PendingStuckMarkModel, mark_id, populate_existing=True)
        if model is None:
            raise NotFoundError(f"Stuck mark '{mark_id}' does not exist.")
        return self._to_domain(model)

    def find_pending(self, session: Session, assignment_id: str) -> Optional[PendingStuckMark]:
        stmt = select(PendingStuckMarkModel).where(
            PendingStuckMarkModel.assignment_id == assignment_id,
            PendingStuckMarkModel.state == "pending",
        )
        model = session.execute(stmt).scalar_one_or_none()
        return self._to_domain(model) if model is not None else None

    def list_pending_for_date(self, session: Session, student_id: str, day: date) -> List[PendingStuckMark]:
        stmt = (
            select(PendingStuckMarkModel)
            .where(
                PendingStuckMarkModel.student_id == normalize_student_id(student_id),
                PendingStuckMarkModel.day == day,
                PendingStuckMarkModel.state == "pending",
            )
            .order_by(PendingStuckMarkModel.created_at)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def list_due(self, session: Session, now: datetime) -> List[PendingStuckMark]:
        stmt = (
            select(PendingStuckMarkModel)
            .where(
                PendingStuckMarkModel.state == "pending",
                PendingStuckMarkModel.commit_at <= as_utc(now),
            )
            .order_by(PendingStuckMarkModel.commit_at)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def claim(self, session: Session, mark_id: str, new_state: str) -> bool:
        """Move a mark out of ``pending``; only the first caller sees ``True``."""
        stmt = (
            update(PendingStuckMarkModel)
            .where(
                PendingStuckMarkModel.id == mark_id,
                PendingStuckMarkModel.state == "pending",
            )
            .values(state=new_state, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount == 1

    def set_state(self, session: Session, mark_id: str, new_state: str) -> None:
        """Overwrite the state of a mark the caller has already claimed."""
        session.execute(
            update(PendingStuckMarkModel)
            .where(PendingStuckMarkModel.id == mark_id)
            .values(state=new_state, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def _to_domain(self, model: PendingStuckMarkModel) -> PendingStuckMark:
        return PendingStuckMark(
            id=model.id,
            assignment_id=model.assignment_id,
            student_id=model.student_id,
            date=model.day,
            block_number=model.block_number,
            reason=model.reason,
            notify_parent=model.notify_parent,
            state=model.state,  # type: ignore[arg-type]
            created_at=as_utc(model.created_at),
            commit_at=as_utc(model.commit_at),
            resolved_at=as_utc(model.resolved_at),
        )


stuck_marks = StuckMarkRepository()

__all__ = ["StuckMarkRepository", "stuck_marks"]
