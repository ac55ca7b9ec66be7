"""Merge upstream coursework records into the assignment store."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, Iterable, Literal, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .completion import SessionFactory
from .db.session import session_scope
from .errors import ConflictError, StudyFlowError
from .repositories.assignments import AssignmentRepository, assignments
from .schedule_models import (
    Assignment,
    ExternalAssignment,
    SyncFailure,
    SyncReport,
    as_utc,
    normalize_student_id,
)
from .school_calendar import SchoolCalendar
from .telemetry import emit_event

logger = logging.getLogger(__name__)

SourceRecord = Union[ExternalAssignment, Mapping[str, Any]]
Outcome = Literal["inserted", "updated", "unchanged"]

# Fields the upstream feed owns. Everything else on an assignment belongs to the student.
SOURCE_OWNED_FIELDS = ("due_date", "source_key", "source_course_id", "course_name", "subject")


class SyncReconciler:
    """Idempotent upsert of external records keyed by ``(student, normalized title)``.

    Each record commits on its own, so one bad record never takes its siblings
    down with it.
    """

    def __init__(
        self,
        calendar: SchoolCalendar,
        *,
        skip_patterns: Sequence[str] = (),
        school_year_start: Optional[date] = None,
        retry_limit: int = 3,
        session_factory: SessionFactory = session_scope,
        assignment_store: AssignmentRepository = assignments,
    ) -> None:
        self.calendar = calendar
        self.skip_patterns = tuple(pattern.lower() for pattern in skip_patterns if pattern.strip())
        self.school_year_start = school_year_start
        self.retry_limit = max(retry_limit, 1)
        self._session_factory = session_factory
        self._assignments = assignment_store

    def reconcile(self, records: Iterable[SourceRecord]) -> SyncReport:
        report = SyncReport()
        for index, raw in enumerate(records):
            try:
                record = raw if isinstance(raw, ExternalAssignment) else ExternalAssignment.model_validate(raw)
                record = record.model_copy(update={"student_id": normalize_student_id(record.student_id)})
            except (PydanticValidationError, StudyFlowError, TypeError) as exc:
                report.failures.append(self._failure(index, raw, exc))
                logger.warning("Skipping malformed sync record #%d: %s", index, exc)
                continue

            skip_reason = self.skip_reason(record)
            if skip_reason is not None:
                report.skipped += 1
                logger.debug("Skipping sync record '%s': %s", record.title, skip_reason)
                continue

            try:
                outcome = self._apply_with_retry(record)
            except (StudyFlowError, SQLAlchemyError) as exc:
                report.failures.append(self._failure(index, raw, exc))
                logger.error("Sync record '%s' for student=%s failed: %s", record.title, record.student_id, exc)
                continue

            if outcome == "inserted":
                report.inserted += 1
            elif outcome == "updated":
                report.updated += 1
            else:
                report.unchanged += 1

        emit_event(
            "sync_completed",
            inserted=report.inserted,
            updated=report.updated,
            unchanged=report.unchanged,
            skipped=report.skipped,
            failed=len(report.failures),
        )
        return report

    def skip_reason(self, record: ExternalAssignment) -> Optional[str]:
        """Why a record is filtered out (administrative, continuation, out of term), if it is."""
        title = record.title.lower()
        for pattern in self.skip_patterns:
            if pattern in title:
                return f"title matches '{pattern}'"
        if self.school_year_start is not None and record.due_at is not None:
            due_day = self.calendar.local_date(record.due_at)
            school_year_end = self.school_year_start + timedelta(days=365)
            if due_day < self.school_year_start or due_day >= school_year_end:
                return f"due {due_day.isoformat()} outside the school year"
        return None

    def _apply_with_retry(self, record: ExternalAssignment) -> Outcome:
        for attempt in range(1, self.retry_limit + 1):
            try:
                with self._session_factory() as session:
                    return self._upsert(session, record)
            except ConflictError:
                # A concurrent sync inserted or touched the row; re-read and merge into it.
                if attempt >= self.retry_limit:
                    raise
                logger.info("Conflict syncing '%s'; retry %d", record.title, attempt)
        raise ConflictError(f"Could not merge '{record.title}' after {self.retry_limit} attempts.")

    def _upsert(self, session: Session, record: ExternalAssignment) -> Outcome:
        existing = self._assignments.find(session, record.student_id, record.title)
        if existing is None:
            self._assignments.insert(
                session,
                Assignment(
                    student_id=record.student_id,
                    title=record.title,
                    subject=record.course or "",
                    course_name=record.course,
                    instructions=record.instructions,
                    due_date=as_utc(record.due_at),
                    provenance="imported",
                    source_key=record.source_id,
                    source_course_id=record.source_course_id,
                ),
            )
            return "inserted"

        changes = self._source_changes(existing, record)
        if not changes:
            return "unchanged"
        self._assignments.update(session, existing.id or "", changes, existing.version)
        return "updated"

    def _source_changes(self, existing: Assignment, record: ExternalAssignment) -> Dict[str, Any]:
        desired: Dict[str, Any] = {
            "due_date": as_utc(record.due_at),
            "source_key": record.source_id,
            "source_course_id": record.source_course_id,
        }
        # A record without a course keeps whatever label an earlier sync stored.
        if record.course:
            desired["course_name"] = record.course
            desired["subject"] = record.course
        current = {field: getattr(existing, field) for field in SOURCE_OWNED_FIELDS}
        current["due_date"] = as_utc(existing.due_date)
        return {field: value for field, value in desired.items() if current[field] != value}

    def _failure(self, index: int, raw: SourceRecord, exc: BaseException) -> SyncFailure:
        if isinstance(raw, ExternalAssignment):
            title, source_id = raw.title, raw.source_id
        elif isinstance(raw, Mapping):
            title = raw.get("title") if isinstance(raw.get("title"), str) else None
            source_value = raw.get("source_id")
            source_id = str(source_value) if source_value is not None else None
        else:
            title, source_id = None, None
        return SyncFailure(index=index, title=title, source_id=source_id, error=str(exc))


__all__ = ["SOURCE_OWNED_FIELDS", "SyncReconciler"]
