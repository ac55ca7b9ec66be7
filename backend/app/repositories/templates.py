"""Weekly schedule template store."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import TemplateBlockModel
from ..errors import NotFoundError, ValidationError
from ..schedule_models import TemplateBlock, normalize_student_id
from ..school_calendar import normalize_weekday

logger = logging.getLogger(__name__)

TemplateInput = Union[TemplateBlock, Mapping[str, Any]]


class TemplateRepository:
    """Read access for the composer plus whole-template replacement for admins."""

    def list_blocks(self, session: Session, student_id: str, weekday: str) -> List[TemplateBlock]:
        stmt = (
            select(TemplateBlockModel)
            .where(
                TemplateBlockModel.student_id == normalize_student_id(student_id),
                TemplateBlockModel.weekday == normalize_weekday(weekday),
            )
            .order_by(TemplateBlockModel.start_time, TemplateBlockModel.block_number)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def list_for_student(self, session: Session, student_id: str) -> List[TemplateBlock]:
        stmt = (
            select(TemplateBlockModel)
            .where(TemplateBlockModel.student_id == normalize_student_id(student_id))
            .order_by(
                TemplateBlockModel.weekday,
                TemplateBlockModel.start_time,
                TemplateBlockModel.block_number,
            )
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def get(self, session: Session, template_block_id: str) -> TemplateBlock:
        model = session.get(TemplateBlockModel, template_block_id)
        if model is None:
            raise NotFoundError(f"Template block '{template_block_id}' does not exist.")
        return self._to_domain(model)

    def replace_for_student(
        self,
        session: Session,
        student_id: str,
        blocks: Iterable[TemplateInput],
    ) -> List[TemplateBlock]:
        """Replace a student's weekly template in place.

        Slots are matched on ``(weekday, block_number)`` so template block ids,
        and the block statuses hanging off them, survive a re-seed.
        """
        normalized = normalize_student_id(student_id)
        incoming = [self._coerce(normalized, block) for block in blocks]
        self._validate(incoming)

        existing: Dict[Tuple[str, int], TemplateBlockModel] = {
            (model.weekday, model.block_number): model
            for model in session.execute(
                select(TemplateBlockModel).where(TemplateBlockModel.student_id == normalized)
            ).scalars()
        }

        for block in incoming:
            model = existing.pop((block.weekday, block.block_number), None)
            if model is None:
                model = TemplateBlockModel(
                    student_id=normalized,
                    weekday=block.weekday,
                    block_number=block.block_number,
                )
                session.add(model)
            model.start_time = block.start_time
            model.end_time = block.end_time
            model.subject = block.subject
            model.block_type = block.block_type

        for stale in existing.values():
            session.delete(stale)

        session.flush()
        logger.info(
            "Replaced template for student=%s blocks=%d removed=%d",
            normalized,
            len(incoming),
            len(existing),
        )
        return self.list_for_student(session, normalized)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _coerce(self, student_id: str, block: TemplateInput) -> TemplateBlock:
        payload = block.model_dump() if isinstance(block, TemplateBlock) else dict(block)
        payload["student_id"] = student_id
        try:
            return TemplateBlock.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid template block: {exc}") from exc

    def _validate(self, blocks: List[TemplateBlock]) -> None:
        by_weekday: Dict[str, List[TemplateBlock]] = defaultdict(list)
        for block in blocks:
            by_weekday[block.weekday].append(block)

        for weekday, day_blocks in by_weekday.items():
            numbers = [block.block_number for block in day_blocks]
            if len(numbers) != len(set(numbers)):
                raise ValidationError(f"Duplicate block numbers on {weekday}.")
            ordered = sorted(day_blocks, key=lambda block: (block.start_time, block.end_time))
            for earlier, later in zip(ordered, ordered[1:]):
                if earlier.overlaps(later):
                    raise ValidationError(
                        f"Blocks {earlier.block_number} and {later.block_number} overlap on {weekday}."
                    )

    def _to_domain(self, model: TemplateBlockModel) -> TemplateBlock:
        return TemplateBlock(
            id=model.id,
            student_id=model.student_id,
            weekday=model.weekday,
            block_number=model.block_number,
            start_time=model.start_time,
            end_time=model.end_time,
            subject=model.subject,
            block_type=model.block_type,
        )


templates = TemplateRepository()

__all__ = ["TemplateRepository", "templates"]
