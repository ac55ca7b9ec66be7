from __future__ import annotations

from datetime import date, datetime, time
from typing import Callable, Dict, List, Tuple
from zoneinfo import ZoneInfo

import pytest

from app.cache import guided_sessions
from app.config import get_settings
from app.db.base import Base
from app.db.session import dispose_engine, get_engine, session_scope
from app.planner import StudyPlanner, build_planner
from app.repositories import assignments
from app.schedule_models import Assignment
from app.telemetry import TelemetryEvent, clear_listeners, register_listener

SCHOOL_TZ = ZoneInfo("America/New_York")
MONDAY = date(2026, 9, 14)
TUESDAY = date(2026, 9, 15)
WEDNESDAY = date(2026, 9, 16)
FRIDAY = date(2026, 9, 18)
NEXT_MONDAY = date(2026, 9, 21)

WEEKLY_TEMPLATE = [
    {"weekday": "Monday", "block_number": 0, "start_time": "08:00", "end_time": "08:20", "block_type": "bible"},
    {
        "weekday": "Monday",
        "block_number": 1,
        "start_time": "08:30",
        "end_time": "09:15",
        "block_type": "assignment",
        "subject": "Math",
    },
    {"weekday": "Monday", "block_number": 2, "start_time": "12:00", "end_time": "12:45", "block_type": "lunch"},
    {
        "weekday": "Monday",
        "block_number": 3,
        "start_time": "13:00",
        "end_time": "13:45",
        "block_type": "assignment",
        "subject": "Reading",
    },
    {"weekday": "Tuesday", "block_number": 0, "start_time": "08:00", "end_time": "08:20", "block_type": "bible"},
    {
        "weekday": "Tuesday",
        "block_number": 1,
        "start_time": "08:30",
        "end_time": "09:15",
        "block_type": "assignment",
    },
]


def local(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=SCHOOL_TZ)


class RecordingLedger:
    def __init__(self) -> None:
        self.awards: List[Tuple[str, int, str]] = []

    def award(self, student_id: str, points: int, reason: str) -> None:
        self.awards.append((student_id, points, reason))


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.notices: List[Tuple[str, str, str]] = []

    def notify_stuck(self, student_id: str, assignment_id: str, reason: str) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.notices.append((student_id, assignment_id, reason))


class ManualTimers:
    """Records scheduled commits instead of starting threads."""

    def __init__(self) -> None:
        self.scheduled: Dict[str, Tuple[float, Callable[[str], object]]] = {}
        self.cancelled: List[str] = []

    def schedule(self, key: str, delay_seconds: float, callback: Callable[[str], object]) -> None:
        self.scheduled[key] = (delay_seconds, callback)

    def cancel(self, key: str) -> None:
        self.cancelled.append(key)
        self.scheduled.pop(key, None)

    def cancel_all(self) -> None:
        self.scheduled.clear()

    def pending_keys(self) -> List[str]:
        return sorted(self.scheduled)

    def fire(self, key: str) -> object:
        _, callback = self.scheduled.pop(key)
        return callback(key)


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("STUDYFLOW_DATABASE_URL", f"sqlite:///{tmp_path / 'studyflow.sqlite'}")
    get_settings.cache_clear()
    dispose_engine()
    Base.metadata.create_all(get_engine())
    clear_listeners()
    guided_sessions.clear()
    yield
    clear_listeners()
    guided_sessions.clear()
    dispose_engine()
    get_settings.cache_clear()


@pytest.fixture
def events(database) -> List[TelemetryEvent]:
    captured: List[TelemetryEvent] = []

    def record(event: TelemetryEvent) -> None:
        if event.name != "db_pool_status":
            captured.append(event)

    register_listener(record)
    return captured


@pytest.fixture
def ledger() -> RecordingLedger:
    return RecordingLedger()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def timers() -> ManualTimers:
    return ManualTimers()


@pytest.fixture
def planner(database, ledger, notifier, timers) -> StudyPlanner:
    planner = build_planner(get_settings(), ledger=ledger, notifier=notifier, timers=timers)
    planner.replace_template("alex", WEEKLY_TEMPLATE)
    yield planner
    planner.shutdown()


@pytest.fixture
def add_assignment(database) -> Callable[..., Assignment]:
    def _add(title: str, **fields) -> Assignment:
        with session_scope() as session:
            student_id = fields.pop("student_id", "alex")
            return assignments.insert(session, Assignment(student_id=student_id, title=title, **fields))

    return _add
