"""Audit trail for monitored telemetry events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import AuditEventModel
from ..schedule_models import as_utc


@dataclass(frozen=True)
class AuditRecord:
    event_type: str
    student_id: Optional[str]
    payload: Dict[str, Any]
    created_at: datetime


class AuditRepository:
    def record(
        self,
        session: Session,
        event_type: str,
        payload: Dict[str, Any],
        *,
        student_id: Optional[str] = None,
        actor: str = "system",
    ) -> None:
        session.add(
            AuditEventModel(
                student_id=student_id,
                event_type=event_type,
                payload=payload,
                actor=actor,
            )
        )

    def recent(
        self,
        session: Session,
        *,
        student_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditRecord]:
        stmt = select(AuditEventModel).order_by(AuditEventModel.created_at.desc()).limit(limit)
        if student_id is not None:
            stmt = stmt.where(AuditEventModel.student_id == student_id)
        return [
            AuditRecord(
                event_type=model.event_type,
                student_id=model.student_id,
                payload=dict(model.payload or {}),
                created_at=as_utc(model.created_at),  # type: ignore[arg-type]
            )
            for model in session.execute(stmt).scalars()
        ]


audit_events = AuditRepository()

__all__ = ["AuditRecord", "AuditRepository", "audit_events"]
