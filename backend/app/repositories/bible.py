"""Bible curriculum readings and per-student reading pointer."""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..db.models import BiblePositionModel, BibleReadingModel
from ..schedule_models import BibleReading, normalize_student_id

logger = logging.getLogger(__name__)

DAILY_READING = "daily_reading"
MEMORY_VERSE = "memory_verse"


class BibleRepository:
    """Sequential reading plan keyed by ``(week_number, day_of_week)``."""

    def replace_curriculum(self, session: Session, readings: Iterable[BibleReading]) -> int:
        session.execute(delete(BibleReadingModel))
        count = 0
        for reading in readings:
            session.add(
                BibleReadingModel(
                    week_number=reading.week_number,
                    day_of_week=reading.day_of_week,
                    reading_type=DAILY_READING,
                    title=reading.title,
                )
            )
            if reading.memory_verse:
                existing = session.execute(
                    select(BibleReadingModel).where(
                        BibleReadingModel.week_number == reading.week_number,
                        BibleReadingModel.reading_type == MEMORY_VERSE,
                    )
                ).scalar_one_or_none()
                if existing is None:
                    session.add(
                        BibleReadingModel(
                            week_number=reading.week_number,
                            day_of_week=None,
                            reading_type=MEMORY_VERSE,
                            title=reading.memory_verse,
                        )
                    )
            session.flush()
            count += 1
        return count

    def current_reading(self, session: Session, student_id: str, day: date) -> Optional[BibleReading]:
        """Reading shown on ``day``.

        Once the pointer has advanced on ``day`` the reading completed that day
        is returned, so the composed day keeps a stable label. A pointer that
        sits on a gap resolves to the next existing reading; past the end of
        the plan this returns ``None``.
        """
        position = self._position(session, normalize_student_id(student_id))
        if (
            position is not None
            and position.last_advanced_on == day
            and position.last_completed_reading_id is not None
        ):
            completed = session.get(BibleReadingModel, position.last_completed_reading_id)
            if completed is not None:
                return self._to_domain(session, completed)

        week = position.current_week if position else 1
        day_of_week = position.current_day if position else 1
        model = self._reading_at_or_after(session, week, day_of_week)
        return self._to_domain(session, model) if model is not None else None

    def advance(self, session: Session, student_id: str, day: date) -> Optional[BibleReading]:
        """Complete the reading at the pointer and move to the next one.

        Advancing twice on the same ``day`` is a no-op so a Bible block can only
        ever consume one reading per date.
        """
        normalized = normalize_student_id(student_id)
        position = self._ensure_position(session, normalized)
        if position.last_advanced_on == day:
            return self._next_reading(session, position)

        current = self._reading_at_or_after(session, position.current_week, position.current_day)
        if current is None:
            logger.info("Bible curriculum exhausted for student=%s", normalized)
            return None

        next_week, next_day = current.week_number, (current.day_of_week or 0) + 1
        if self._reading_at(session, next_week, next_day) is None:
            next_week, next_day = current.week_number + 1, 1

        position.current_week = next_week
        position.current_day = next_day
        position.last_advanced_on = day
        position.last_completed_reading_id = current.id
        session.flush()
        logger.debug(
            "Advanced Bible pointer student=%s to week=%d day=%d", normalized, next_week, next_day
        )
        return self._next_reading(session, position)

    def list_readings(self, session: Session) -> List[BibleReading]:
        stmt = (
            select(BibleReadingModel)
            .where(BibleReadingModel.reading_type == DAILY_READING)
            .order_by(BibleReadingModel.week_number, BibleReadingModel.day_of_week)
        )
        return [self._to_domain(session, model) for model in session.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _position(self, session: Session, student_id: str) -> Optional[BiblePositionModel]:
        return session.get(BiblePositionModel, student_id)

    def _ensure_position(self, session: Session, student_id: str) -> BiblePositionModel:
        model = self._position(session, student_id)
        if model is None:
            model = BiblePositionModel(student_id=student_id, current_week=1, current_day=1)
            session.add(model)
            session.flush()
        return model

    def _next_reading(self, session: Session, position: BiblePositionModel) -> Optional[BibleReading]:
        model = self._reading_at_or_after(session, position.current_week, position.current_day)
        return self._to_domain(session, model) if model is not None else None

    def _reading_at(self, session: Session, week: int, day_of_week: int) -> Optional[BibleReadingModel]:
        stmt = select(BibleReadingModel).where(
            BibleReadingModel.week_number == week,
            BibleReadingModel.day_of_week == day_of_week,
            BibleReadingModel.reading_type == DAILY_READING,
        )
        return session.execute(stmt).scalar_one_or_none()

    def _reading_at_or_after(
        self, session: Session, week: int, day_of_week: int
    ) -> Optional[BibleReadingModel]:
        exact = self._reading_at(session, week, day_of_week)
        if exact is not None:
            return exact
        stmt = (
            select(BibleReadingModel)
            .where(
                BibleReadingModel.reading_type == DAILY_READING,
                (BibleReadingModel.week_number > week)
                | (
                    (BibleReadingModel.week_number == week)
                    & (BibleReadingModel.day_of_week > day_of_week)
                ),
            )
            .order_by(BibleReadingModel.week_number, BibleReadingModel.day_of_week)
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def _to_domain(self, session: Session, model: BibleReadingModel) -> BibleReading:
        memory_verse = session.execute(
            select(BibleReadingModel.title).where(
                BibleReadingModel.week_number == model.week_number,
                BibleReadingModel.reading_type == MEMORY_VERSE,
            )
        ).scalar_one_or_none()
        return BibleReading(
            id=model.id,
            week_number=model.week_number,
            day_of_week=model.day_of_week or 1,
            title=model.title,
            memory_verse=memory_verse,
        )


bible_curriculum = BibleRepository()

__all__ = ["BibleRepository", "DAILY_READING", "MEMORY_VERSE", "bible_curriculum"]
