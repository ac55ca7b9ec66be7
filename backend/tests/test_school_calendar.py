from __future__ import annotations

from datetime import date, datetime, time, timezone

import pytest

from app.errors import ValidationError
from app.school_calendar import SchoolCalendar, normalize_weekday


def test_weekday_uses_the_date_not_the_process_timezone() -> None:
    calendar = SchoolCalendar("America/New_York")
    assert calendar.weekday_of(date(2026, 9, 14)) == "Monday"
    assert calendar.weekday_of(date(2026, 9, 20)) == "Sunday"


def test_late_evening_utc_instant_is_still_the_previous_school_day() -> None:
    calendar = SchoolCalendar("America/New_York")
    # 02:30 UTC on Tuesday is 22:30 on Monday in New York.
    instant = datetime(2026, 9, 15, 2, 30, tzinfo=timezone.utc)
    assert calendar.today(instant) == date(2026, 9, 14)


def test_naive_instants_are_treated_as_utc() -> None:
    calendar = SchoolCalendar("America/New_York")
    assert calendar.local_date(datetime(2026, 9, 15, 2, 30)) == date(2026, 9, 14)


def test_compose_instant_is_school_local() -> None:
    calendar = SchoolCalendar("America/New_York")
    instant = calendar.compose_instant(date(2026, 9, 14), time(8, 30))
    assert instant.astimezone(timezone.utc).hour == 12


def test_next_school_day_skips_weekend_unless_saturday_allowed() -> None:
    calendar = SchoolCalendar()
    friday = date(2026, 9, 18)
    assert calendar.next_school_day(friday) == date(2026, 9, 21)
    assert calendar.next_school_day(friday, allow_saturday=True) == date(2026, 9, 19)
    assert calendar.next_school_day(date(2026, 9, 19), allow_saturday=True) == date(2026, 9, 21)


def test_sunday_is_never_a_school_day() -> None:
    calendar = SchoolCalendar()
    assert not calendar.is_school_day(date(2026, 9, 20), allow_saturday=True)


def test_unknown_timezone_is_rejected() -> None:
    with pytest.raises(ValidationError):
        SchoolCalendar("Mars/Olympus_Mons")


@pytest.mark.parametrize("raw", ["monday", " Monday ", "MON"])
def test_normalize_weekday_accepts_common_spellings(raw: str) -> None:
    assert normalize_weekday(raw) == "Monday"


def test_normalize_weekday_rejects_garbage() -> None:
    with pytest.raises(ValidationError):
        normalize_weekday("Funday")
