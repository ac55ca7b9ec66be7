"""Points ledger rows awarded on assignment completion."""

from __future__ import annotations

from typing import List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db.models import PointsLedgerEntryModel
from ..schedule_models import normalize_student_id


class PointsLedgerRepository:
    def record(self, session: Session, student_id: str, points: int, reason: str) -> None:
        session.add(
            PointsLedgerEntryModel(
                student_id=normalize_student_id(student_id),
                points=points,
                reason=reason,
            )
        )
        session.flush()

    def total(self, session: Session, student_id: str) -> int:
        stmt = select(func.coalesce(func.sum(PointsLedgerEntryModel.points), 0)).where(
            PointsLedgerEntryModel.student_id == normalize_student_id(student_id)
        )
        return int(session.execute(stmt).scalar_one())

    def reasons(self, session: Session, student_id: str) -> List[str]:
        stmt = (
            select(PointsLedgerEntryModel.reason)
            .where(PointsLedgerEntryModel.student_id == normalize_student_id(student_id))
            .order_by(PointsLedgerEntryModel.id)
        )
        return list(session.execute(stmt).scalars())


points_ledger = PointsLedgerRepository()

__all__ = ["PointsLedgerRepository", "points_ledger"]
