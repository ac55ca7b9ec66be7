"""Collaborators notified after a state change commits, and the dispatcher that calls them."""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, List, Optional, Protocol

from sqlalchemy.orm import Session

from .db.session import session_scope
from .errors import DownstreamSideEffectError
from .repositories.ledger import points_ledger
from .schedule_models import BibleReading, SideEffect
from .telemetry import emit_event

logger = logging.getLogger(__name__)


class PointsLedger(Protocol):
    def award(self, student_id: str, points: int, reason: str) -> None:  # pragma: no cover - protocol definition
        ...


class ParentNotifier(Protocol):
    def notify_stuck(self, student_id: str, assignment_id: str, reason: str) -> None:  # pragma: no cover - protocol definition
        ...


class CurriculumPointer(Protocol):
    """Bible reading pointer. Runs inside the caller's transaction."""

    def advance(self, session: Session, student_id: str, day: date) -> Optional[BibleReading]:  # pragma: no cover
        ...

    def current_reading(self, session: Session, student_id: str, day: date) -> Optional[BibleReading]:  # pragma: no cover
        ...


class DatabasePointsLedger:
    """Writes one ``points_ledger`` row per award in its own transaction."""

    def award(self, student_id: str, points: int, reason: str) -> None:
        with session_scope() as session:
            points_ledger.record(session, student_id, points, reason)
        logger.info("Awarded %d points to student=%s (%s)", points, student_id, reason)

    def total(self, student_id: str) -> int:
        with session_scope(commit=False) as session:
            return points_ledger.total(session, student_id)


class LoggingParentNotifier:
    def __init__(self, parent_email: Optional[str] = None) -> None:
        self._parent_email = parent_email

    def notify_stuck(self, student_id: str, assignment_id: str, reason: str) -> None:
        logger.warning(
            "Student %s is stuck on assignment %s: %s",
            student_id,
            assignment_id,
            reason or "no reason given",
        )
        emit_event(
            "parent_notified",
            student_id=student_id,
            assignment_id=assignment_id,
            reason=reason,
            has_parent_email=bool(self._parent_email),
        )


class SideEffectDispatcher:
    """Runs queued side effects once the owning transaction has committed.

    Collaborator failures are logged and recorded on the effect; they never
    propagate, since the state change they follow is already durable.
    """

    def __init__(self, ledger: PointsLedger, notifier: ParentNotifier) -> None:
        self._ledger = ledger
        self._notifier = notifier

    def dispatch(self, effects: Iterable[SideEffect]) -> List[SideEffect]:
        results: List[SideEffect] = []
        for effect in effects:
            if effect.status != "queued":
                results.append(effect)
                continue
            try:
                self._run(effect)
            except Exception as exc:  # noqa: BLE001
                error = DownstreamSideEffectError(effect.kind, exc)
                logger.error("%s", error, exc_info=exc)
                emit_event(
                    "side_effect_failed",
                    kind=effect.kind,
                    student_id=effect.detail.get("student_id"),
                    error=str(exc),
                )
                results.append(effect.model_copy(update={"status": "failed", "error": str(error)}))
            else:
                results.append(effect.model_copy(update={"status": "dispatched"}))
        return results

    def _run(self, effect: SideEffect) -> None:
        detail = effect.detail
        if effect.kind == "points":
            self._ledger.award(detail["student_id"], int(detail["points"]), str(detail.get("reason", "")))
        elif effect.kind == "notification":
            self._notifier.notify_stuck(
                detail["student_id"], detail["assignment_id"], str(detail.get("reason", ""))
            )
        else:
            raise ValueError(f"Side effect kind '{effect.kind}' cannot be dispatched")


__all__ = [
    "CurriculumPointer",
    "DatabasePointsLedger",
    "LoggingParentNotifier",
    "ParentNotifier",
    "PointsLedger",
    "SideEffectDispatcher",
]
