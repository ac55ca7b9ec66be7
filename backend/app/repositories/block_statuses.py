"""Per-date completion rows for template blocks."""

from __future__ import annotations

from datetime import date
from typing import Dict, List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models import BlockStatusModel
from ..errors import ValidationError
from ..schedule_models import BlockStatus, as_utc, normalize_student_id

VALID_BLOCK_STATUSES = ("pending", "in_progress", "complete", "stuck", "overtime")


class BlockStatusRepository:
    def get_map(self, session: Session, student_id: str, day: date) -> Dict[str, str]:
        """Map template block id to status for one student and date."""
        stmt = select(BlockStatusModel.template_block_id, BlockStatusModel.status).where(
            BlockStatusModel.student_id == normalize_student_id(student_id),
            BlockStatusModel.day == day,
        )
        return {template_block_id: status for template_block_id, status in session.execute(stmt)}

    def list_for_date(self, session: Session, student_id: str, day: date) -> List[BlockStatus]:
        stmt = (
            select(BlockStatusModel)
            .where(
                BlockStatusModel.student_id == normalize_student_id(student_id),
                BlockStatusModel.day == day,
            )
            .order_by(BlockStatusModel.id)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def upsert(
        self,
        session: Session,
        student_id: str,
        day: date,
        template_block_id: str,
        status: str,
    ) -> BlockStatus:
        """Create the row lazily on first interaction, otherwise overwrite its status."""
        if status not in VALID_BLOCK_STATUSES:
            raise ValidationError(f"Unknown block status '{status}'.")
        normalized = normalize_student_id(student_id)
        model = self._find(session, normalized, day, template_block_id)
        if model is None:
            model = BlockStatusModel(
                student_id=normalized,
                day=day,
                template_block_id=template_block_id,
                status=status,
            )
            try:
                with session.begin_nested():
                    session.add(model)
                    session.flush()
            except IntegrityError:
                # Another writer created the row first; take theirs and overwrite.
                model = self._find(session, normalized, day, template_block_id)
                if model is None:
                    raise
                model.status = status
                session.flush()
        else:
            model.status = status
            session.flush()
        return self._to_domain(model)

    def _find(
        self, session: Session, student_id: str, day: date, template_block_id: str
    ) -> BlockStatusModel | None:
        stmt = select(BlockStatusModel).where(
            BlockStatusModel.student_id == student_id,
            BlockStatusModel.day == day,
            BlockStatusModel.template_block_id == template_block_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    def _to_domain(self, model: BlockStatusModel) -> BlockStatus:
        return BlockStatus(
            student_id=model.student_id,
            date=model.day,
            template_block_id=model.template_block_id,
            status=model.status,  # type: ignore[arg-type]
            updated_at=as_utc(model.updated_at),
        )


block_statuses = BlockStatusRepository()

__all__ = ["BlockStatusRepository", "VALID_BLOCK_STATUSES", "block_statuses"]
