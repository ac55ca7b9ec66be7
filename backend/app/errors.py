"""Error taxonomy shared by the scheduling engine and the sync reconciler."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .schedule_models import SyncReport


class StudyFlowError(Exception):
    """Base class for engine errors."""


class ValidationError(StudyFlowError):
    """Malformed input or a disallowed transition. Nothing was written."""


class NotFoundError(StudyFlowError):
    """A referenced assignment, template block or mark does not exist."""


class ConflictError(StudyFlowError):
    """A concurrent write won the race; re-read and retry against current state."""

    def __init__(self, message: str, *, current_version: Optional[int] = None) -> None:
        super().__init__(message)
        self.current_version = current_version


class PartialBatchError(StudyFlowError):
    """Some records in a sync batch failed; the rest were applied."""

    def __init__(self, report: "SyncReport") -> None:
        super().__init__(
            f"{len(report.failures)} of {report.total} sync records failed "
            f"(inserted={report.inserted}, updated={report.updated}, unchanged={report.unchanged})"
        )
        self.report = report


class DownstreamSideEffectError(StudyFlowError):
    """A points or notification collaborator failed after the state change committed."""

    def __init__(self, kind: str, cause: BaseException) -> None:
        super().__init__(f"{kind} side effect failed: {cause}")
        self.kind = kind
        self.cause = cause


__all__ = [
    "ConflictError",
    "DownstreamSideEffectError",
    "NotFoundError",
    "PartialBatchError",
    "StudyFlowError",
    "ValidationError",
]
