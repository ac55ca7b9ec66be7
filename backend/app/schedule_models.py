"""Domain models for templates, assignments, composed blocks and sync batches."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import PartialBatchError, ValidationError
from .school_calendar import normalize_weekday

CompletionStatus = Literal["pending", "in_progress", "completed", "stuck", "needs_more_time"]
BlockStatusValue = Literal["pending", "in_progress", "complete", "stuck", "overtime"]
Priority = Literal["A", "B", "C"]
Provenance = Literal["imported", "local", "derived"]
BlockKind = Literal["bible", "fixed", "assignment"]
StuckMarkState = Literal["pending", "committed", "cancelled"]

BIBLE_BLOCK = "bible"
ASSIGNMENT_BLOCK = "assignment"

BLOCK_TYPE_LABELS: Dict[str, str] = {
    "bible": "Bible",
    "assignment": "Assignment",
    "travel": "Travel",
    "lunch": "Lunch",
    "movement": "Movement",
    "coop": "Co-op",
    "prep_load": "Prep/Load",
}

_BLOCK_TYPE_ALIASES: Dict[str, str] = {
    "co-op": "coop",
    "co_op": "coop",
    "prep/load": "prep_load",
    "prep-load": "prep_load",
}


def normalize_student_id(student_id: str) -> str:
    normalized = (student_id or "").strip().lower()
    if not normalized:
        raise ValidationError("Student id cannot be empty.")
    return normalized


def normalize_title(title: str) -> str:
    """Natural-key form of an assignment title: casefolded, single-spaced."""
    return " ".join(title.split()).casefold()


def normalize_block_type(value: str) -> str:
    candidate = value.strip().lower()
    return _BLOCK_TYPE_ALIASES.get(candidate, candidate)


def block_type_label(block_type: str) -> str:
    return BLOCK_TYPE_LABELS.get(block_type, block_type.replace("_", " ").title())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TemplateBlock(BaseModel):
    """One recurring weekly slot of a student's template."""

    id: Optional[str] = None
    student_id: str
    weekday: str
    block_number: int = Field(ge=0)
    start_time: time
    end_time: time
    subject: str = ""
    block_type: str

    @field_validator("weekday")
    @classmethod
    def _weekday(cls, value: str) -> str:
        return normalize_weekday(value)

    @field_validator("block_type")
    @classmethod
    def _block_type(cls, value: str) -> str:
        normalized = normalize_block_type(value)
        if not normalized:
            raise ValueError("block_type cannot be empty")
        return normalized

    @model_validator(mode="after")
    def _ordered_times(self) -> "TemplateBlock":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def is_fixed(self) -> bool:
        return self.block_type not in (BIBLE_BLOCK, ASSIGNMENT_BLOCK)

    def duration_minutes(self) -> int:
        start = self.start_time.hour * 60 + self.start_time.minute
        end = self.end_time.hour * 60 + self.end_time.minute
        return end - start

    def overlaps(self, other: "TemplateBlock") -> bool:
        return self.start_time < other.end_time and other.start_time < self.end_time


class Assignment(BaseModel):
    id: Optional[str] = None
    student_id: str
    title: str
    subject: str = ""
    course_name: Optional[str] = None
    instructions: Optional[str] = None
    due_date: Optional[datetime] = None
    estimated_minutes: int = Field(default=30, ge=0)
    priority: Priority = "B"
    completion_status: CompletionStatus = "pending"
    scheduled_date: Optional[date] = None
    scheduled_block_number: Optional[int] = None
    provenance: Provenance = "local"
    source_key: Optional[str] = None
    source_course_id: Optional[str] = None
    time_spent_minutes: int = Field(default=0, ge=0)
    notes: str = ""
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _block_needs_date(self) -> "Assignment":
        # A date without a block number is that day's backlog; a block number needs a date.
        if self.scheduled_block_number is not None and self.scheduled_date is None:
            raise ValueError("scheduled_block_number requires scheduled_date")
        return self

    @property
    def is_placed(self) -> bool:
        return self.scheduled_block_number is not None

    @property
    def is_backlogged(self) -> bool:
        return self.scheduled_date is not None and self.scheduled_block_number is None


class ScheduleBlock(BaseModel):
    """Derived view of one slot on a composed day. Never persisted."""

    block_id: str
    kind: BlockKind
    template_block_id: str
    block_number: int
    start_time: time
    end_time: time
    estimated_minutes: int
    subject: str
    block_type_label: str
    status: BlockStatusValue = "pending"
    assignment_id: Optional[str] = None
    assignment_title: Optional[str] = None
    assignment_status: Optional[CompletionStatus] = None
    is_explicit_placement: bool = False
    reading_title: Optional[str] = None


class BlockStatus(BaseModel):
    student_id: str
    date: date
    template_block_id: str
    status: BlockStatusValue
    updated_at: Optional[datetime] = None


class BibleReading(BaseModel):
    id: Optional[int] = None
    week_number: int = Field(ge=1)
    day_of_week: int = Field(ge=1)
    title: str
    memory_verse: Optional[str] = None


class PendingStuckMark(BaseModel):
    id: str
    assignment_id: str
    student_id: str
    date: date
    block_number: Optional[int] = None
    reason: str = ""
    notify_parent: bool = True
    state: StuckMarkState = "pending"
    created_at: datetime
    commit_at: datetime
    resolved_at: Optional[datetime] = None


class GuidedSession(BaseModel):
    """Resumable cursor over one student's composed day."""

    student_id: str
    date: date
    current_block_index: int = 0
    current_block_id: Optional[str] = None
    time_remaining_seconds: int = Field(default=0, ge=0)
    completed_block_ids: Set[str] = Field(default_factory=set)
    last_saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    day_complete: bool = False


class ExternalAssignment(BaseModel):
    """One record pulled from the upstream coursework feed."""

    student_id: str
    title: str
    course: Optional[str] = None
    due_at: Optional[datetime] = None
    source_id: Optional[str] = None
    source_course_id: Optional[str] = None
    instructions: Optional[str] = None

    @field_validator("student_id", "title")
    @classmethod
    def _required_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @field_validator("source_id", "source_course_id", mode="before")
    @classmethod
    def _identifier_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class SyncFailure(BaseModel):
    index: int
    title: Optional[str] = None
    source_id: Optional[str] = None
    error: str


class SyncReport(BaseModel):
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failures: List[SyncFailure] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.unchanged + self.skipped + len(self.failures)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialBatchError(self)


class TransitionMeta(BaseModel):
    """Caller-supplied context for a status transition."""

    slot_date: Optional[date] = None
    block_number: Optional[int] = None
    elapsed_minutes: int = 0
    needs_help: bool = False
    reason: str = ""
    reopen: bool = False
    expected_version: Optional[int] = None


class SideEffect(BaseModel):
    kind: Literal["points", "notification", "block_status", "curriculum"]
    detail: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["applied", "queued", "dispatched", "failed"] = "queued"
    error: Optional[str] = None


class TransitionResult(BaseModel):
    assignment: Assignment
    previous_status: CompletionStatus
    changed: bool = True
    side_effects: List[SideEffect] = Field(default_factory=list)
    minutes_delta: Optional[int] = None


class NeedMoreTimeResult(BaseModel):
    kind: Literal["assignment", "bible"]
    assignment: Optional[Assignment] = None
    from_date: date
    from_block_number: Optional[int] = None
    to_date: Optional[date] = None
    to_block_number: Optional[int] = None
    rolled_over: bool = False
    next_reading: Optional[BibleReading] = None
    side_effects: List[SideEffect] = Field(default_factory=list)


__all__ = [
    "ASSIGNMENT_BLOCK",
    "Assignment",
    "BIBLE_BLOCK",
    "BLOCK_TYPE_LABELS",
    "BibleReading",
    "BlockStatus",
    "BlockStatusValue",
    "CompletionStatus",
    "ExternalAssignment",
    "GuidedSession",
    "NeedMoreTimeResult",
    "PendingStuckMark",
    "ScheduleBlock",
    "SideEffect",
    "SyncFailure",
    "SyncReport",
    "TemplateBlock",
    "TransitionMeta",
    "TransitionResult",
    "as_utc",
    "block_type_label",
    "normalize_block_type",
    "normalize_student_id",
    "normalize_title",
]
