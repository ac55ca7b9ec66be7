"""Wires the scheduling engine together from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from functools import lru_cache
from typing import Iterable, List, Optional

from . import telemetry_pipeline
from .block_composer import BlockComposer
from .completion import CompletionStateMachine
from .config import Settings, get_settings
from .db.session import session_scope
from .rescheduler import ReschedulingEngine, StuckTimerRegistry
from .repositories.templates import TemplateInput, templates
from .schedule_models import ScheduleBlock, TemplateBlock
from .school_calendar import SchoolCalendar
from .session_tracker import SessionTracker
from .side_effects import (
    DatabasePointsLedger,
    LoggingParentNotifier,
    ParentNotifier,
    PointsLedger,
    SideEffectDispatcher,
)
from .sync_reconciler import SyncReconciler

logger = logging.getLogger(__name__)


@dataclass
class StudyPlanner:
    calendar: SchoolCalendar
    composer: BlockComposer
    completion: CompletionStateMachine
    rescheduler: ReschedulingEngine
    reconciler: SyncReconciler
    tracker: SessionTracker

    def compose(self, student_id: str, day: date) -> List[ScheduleBlock]:
        with session_scope(commit=False) as session:
            return self.composer.compose(session, student_id, day)

    def replace_template(self, student_id: str, blocks: Iterable[TemplateInput]) -> List[TemplateBlock]:
        with session_scope() as session:
            return templates.replace_for_student(session, student_id, blocks)

    def shutdown(self) -> None:
        self.rescheduler.timers.cancel_all()


def build_planner(
    settings: Settings,
    *,
    ledger: Optional[PointsLedger] = None,
    notifier: Optional[ParentNotifier] = None,
    timers: Optional[StuckTimerRegistry] = None,
) -> StudyPlanner:
    calendar = SchoolCalendar(settings.school_timezone)
    dispatcher = SideEffectDispatcher(
        ledger or DatabasePointsLedger(),
        notifier or LoggingParentNotifier(settings.parent_email),
    )
    composer = BlockComposer(calendar, bible_minutes=settings.bible_block_minutes)
    completion = CompletionStateMachine(
        composer,
        dispatcher,
        completion_points=settings.completion_points,
        retry_limit=settings.conflict_retry_limit,
    )
    rescheduler = ReschedulingEngine(
        completion,
        stuck_undo_seconds=settings.stuck_undo_seconds,
        retry_limit=settings.conflict_retry_limit,
        timers=timers,
    )
    reconciler = SyncReconciler(
        calendar,
        skip_patterns=settings.sync_skip_patterns,
        school_year_start=settings.school_year_start,
        retry_limit=settings.conflict_retry_limit,
    )
    tracker = SessionTracker(composer)
    logger.info(
        "Planner ready (timezone=%s, stuck undo=%ss)",
        settings.school_timezone,
        settings.stuck_undo_seconds,
    )
    return StudyPlanner(
        calendar=calendar,
        composer=composer,
        completion=completion,
        rescheduler=rescheduler,
        reconciler=reconciler,
        tracker=tracker,
    )


@lru_cache
def get_planner() -> StudyPlanner:
    telemetry_pipeline.install()
    return build_planner(get_settings())


__all__ = ["StudyPlanner", "build_planner", "get_planner"]
