"""Per-student scheduling preferences."""

from __future__ import annotations

from sqlalchemy.orm import Session

from ..db.models import StudentPreferenceModel
from ..schedule_models import normalize_student_id


class PreferenceRepository:
    def allows_saturday(self, session: Session, student_id: str) -> bool:
        model = session.get(StudentPreferenceModel, normalize_student_id(student_id))
        return bool(model and model.allow_saturday)

    def set_allow_saturday(self, session: Session, student_id: str, enabled: bool) -> None:
        normalized = normalize_student_id(student_id)
        model = session.get(StudentPreferenceModel, normalized)
        if model is None:
            model = StudentPreferenceModel(student_id=normalized)
            session.add(model)
        model.allow_saturday = enabled
        session.flush()


preferences = PreferenceRepository()

__all__ = ["PreferenceRepository", "preferences"]
