"""Process-local store for guided-mode session cursors."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Dict, Optional

from ..schedule_models import GuidedSession, normalize_student_id


@dataclass
class _SessionEntry:
    session: GuidedSession
    stored_at: datetime


class GuidedSessionCache:
    """One cursor per student. Values are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._entries: Dict[str, _SessionEntry] = {}
        self._lock = RLock()

    def get(self, student_id: str) -> Optional[GuidedSession]:
        key = normalize_student_id(student_id)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return entry.session.model_copy(deep=True)

    def set(self, session: GuidedSession) -> None:
        key = normalize_student_id(session.student_id)
        with self._lock:
            self._entries[key] = _SessionEntry(
                session=session.model_copy(deep=True),
                stored_at=datetime.now(timezone.utc),
            )

    def invalidate(self, student_id: str) -> None:
        key = normalize_student_id(student_id)
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


guided_sessions = GuidedSessionCache()

__all__ = ["GuidedSessionCache", "guided_sessions"]
