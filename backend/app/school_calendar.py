"""School-local calendar arithmetic.

Every weekday, "today" and slot instant used by the engine is derived through a
``SchoolCalendar`` so that composing the same date yields the same weekday no
matter which timezone the process runs in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

WEEKDAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


def normalize_weekday(value: str) -> str:
    candidate = value.strip().lower()
    for name in WEEKDAY_NAMES:
        if name.lower() == candidate or name[:3].lower() == candidate:
            return name
    raise ValidationError(f"Unknown weekday '{value}'.")


@dataclass(frozen=True)
class SchoolCalendar:
    timezone_name: str = "America/New_York"
    zone: ZoneInfo = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        try:
            zone = ZoneInfo(self.timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(f"Unknown school timezone '{self.timezone_name}'.") from exc
        object.__setattr__(self, "zone", zone)

    def weekday_of(self, day: date) -> str:
        return WEEKDAY_NAMES[day.weekday()]

    def local_date(self, instant: datetime) -> date:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.zone).date()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self, now: Optional[datetime] = None) -> date:
        return self.local_date(now or self.now())

    def compose_instant(self, day: date, at: time) -> datetime:
        """Return the aware instant for ``at`` on ``day`` in school-local time."""
        return datetime.combine(day, at, tzinfo=self.zone)

    def is_school_day(self, day: date, *, allow_saturday: bool = False) -> bool:
        weekday = day.weekday()
        if weekday == 6:
            return False
        if weekday == 5:
            return allow_saturday
        return True

    def next_school_day(self, day: date, *, allow_saturday: bool = False) -> date:
        candidate = day + timedelta(days=1)
        while not self.is_school_day(candidate, allow_saturday=allow_saturday):
            candidate += timedelta(days=1)
        return candidate


__all__ = ["SchoolCalendar", "WEEKDAY_NAMES", "normalize_weekday"]
