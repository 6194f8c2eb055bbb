from __future__ import annotations

import datetime
import enum
import itertools
import math
from dataclasses import dataclass, field
from typing import Collection, Iterable, Optional, Tuple, Union


AXIS_START_MINUTES = 9 * 60
AXIS_END_MINUTES = 22 * 60
DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

TimeValue = Union[datetime.time, str, None]


def parse_time(value: TimeValue) -> Optional[datetime.time]:
    """Return a ``datetime.time`` for ``HH:MM``/``HH:MM:SS`` strings, or None when blank."""
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.time().replace(microsecond=0)
    if isinstance(value, datetime.time):
        return value.replace(microsecond=0)
    text = str(value).strip()
    if not text:
        return None
    parts = text.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time value: {value!r}")
    try:
        numbers = [int(part) for part in parts]
    except ValueError as exc:
        raise ValueError(f"Invalid time value: {value!r}") from exc
    return datetime.time(*numbers)


def format_time(value: TimeValue) -> str:
    parsed = parse_time(value)
    if parsed is None:
        return ""
    return parsed.strftime("%H:%M")


def minutes_since_midnight(value: datetime.time) -> int:
    return value.hour * 60 + value.minute


def to_axis_fraction(value: TimeValue) -> float:
    """Map a time of day onto the 09:00-22:00 display axis (09:00 -> 0.0, 22:00 -> 1.0).

    Times outside the axis map outside [0, 1]; callers clamp when painting.
    """
    parsed = parse_time(value)
    if parsed is None:
        return 0.0
    span = AXIS_END_MINUTES - AXIS_START_MINUTES
    return (minutes_since_midnight(parsed) - AXIS_START_MINUTES) / span


def bar_geometry(start: TimeValue, end: TimeValue) -> Tuple[float, float]:
    """Return ``(left, width)`` axis fractions for an interval."""
    left = to_axis_fraction(start)
    return left, to_axis_fraction(end) - left


def clamp_fraction(value: float) -> float:
    return min(1.0, max(0.0, value))


def round_hours(raw_hours: float) -> float:
    # Half-up to one decimal, matching Math.round(x * 10) / 10.
    return math.floor(raw_hours * 10 + 0.5) / 10


def derive_hours(start: TimeValue, end: TimeValue) -> Optional[float]:
    """Hours between two same-day times rounded to one decimal, or None if incomplete."""
    start_time = parse_time(start)
    end_time = parse_time(end)
    if start_time is None or end_time is None:
        return None
    if end_time <= start_time:
        return None
    seconds = (end_time.hour * 3600 + end_time.minute * 60 + end_time.second) - (
        start_time.hour * 3600 + start_time.minute * 60 + start_time.second
    )
    return round_hours(seconds / 3600)


def format_hours(value: float) -> str:
    return f"{value:.1f}h"


@dataclass
class ScheduleEntry:
    """Planned interval of one employee on one date."""

    employee_id: str
    date: datetime.date
    start_time: Optional[datetime.time] = None
    end_time: Optional[datetime.time] = None

    @property
    def hours(self) -> Optional[float]:
        return derive_hours(self.start_time, self.end_time)

    @property
    def key(self) -> Tuple[str, datetime.date]:
        return (self.employee_id, self.date)

    @property
    def is_complete(self) -> bool:
        hours = self.hours
        return hours is not None and hours > 0


@dataclass
class DiaryEntry:
    """Actual interval logged by an employee, with the diary reflection fields."""

    employee_id: str
    date: datetime.date
    start_time: Optional[datetime.time] = None
    end_time: Optional[datetime.time] = None
    check_clean: bool = False
    check_training: bool = False
    check_list: bool = False
    out_content: Optional[str] = None
    exemplary_content: Optional[str] = None
    memorable_customer: Optional[str] = None
    suggestions: Optional[str] = None

    @property
    def hours(self) -> Optional[float]:
        return derive_hours(self.start_time, self.end_time)

    @property
    def key(self) -> Tuple[str, datetime.date]:
        return (self.employee_id, self.date)


@dataclass(frozen=True)
class PersistedEmployee:
    id: str
    name: str
    branch: Optional[str] = None
    user_type: Optional[str] = None

    is_temporary = False

    @property
    def key(self) -> str:
        return self.id


_ephemeral_ids = itertools.count(1)


@dataclass(frozen=True)
class EphemeralEmployee:
    """Ad hoc staff shown for the current session only; never written to the database."""

    name: str
    branch: Optional[str] = None
    local_id: str = field(default_factory=lambda: f"parttime_{next(_ephemeral_ids)}")
    user_type: Optional[str] = "part-time"

    is_temporary = True

    @property
    def key(self) -> str:
        return self.local_id


Employee = Union[PersistedEmployee, EphemeralEmployee]


@dataclass(frozen=True)
class WeekWindow:
    monday: datetime.date

    def __post_init__(self) -> None:
        if self.monday.weekday() != 0:
            raise ValueError("WeekWindow must start on a Monday.")

    @classmethod
    def containing(cls, value: datetime.date) -> "WeekWindow":
        if isinstance(value, datetime.datetime):
            value = value.date()
        return cls(value - datetime.timedelta(days=value.weekday()))

    @property
    def dates(self) -> list[datetime.date]:
        return [self.monday + datetime.timedelta(days=offset) for offset in range(7)]

    @property
    def sunday(self) -> datetime.date:
        return self.monday + datetime.timedelta(days=6)

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, datetime.date):
            return False
        return self.monday <= value <= self.sunday

    def shift(self, weeks: int) -> "WeekWindow":
        return WeekWindow(self.monday + datetime.timedelta(weeks=weeks))

    def fetch_range(self) -> Tuple[datetime.date, datetime.date]:
        # One day of padding on each side for rows stored around timezone boundaries.
        return (
            self.monday - datetime.timedelta(days=1),
            self.monday + datetime.timedelta(days=7),
        )

    @property
    def label(self) -> str:
        return f"{self.monday.isoformat()} ~ {self.sunday.isoformat()}"


def sum_hours(entries: Iterable) -> float:
    total = 0.0
    for entry in entries:
        hours = entry.hours
        if hours:
            total += hours
    return total


def _shown(entries: Iterable, employee_ids: Optional[Collection]) -> Iterable:
    if employee_ids is None:
        return entries
    return (entry for entry in entries if entry.employee_id in employee_ids)


def daily_total(entries: Iterable, date: datetime.date, employee_ids: Optional[Collection] = None) -> float:
    """Hours on ``date``, limited to ``employee_ids`` when given (the rows on screen)."""
    return sum_hours(entry for entry in _shown(entries, employee_ids) if entry.date == date)


def weekly_total(entries: Iterable, employee_id: str, week: WeekWindow) -> float:
    return sum_hours(
        entry for entry in entries if entry.employee_id == employee_id and entry.date in week
    )


def week_grand_total(entries: Iterable, week: WeekWindow, employee_ids: Optional[Collection] = None) -> float:
    return sum_hours(entry for entry in _shown(entries, employee_ids) if entry.date in week)


class ScheduleStatus(enum.Enum):
    NO_PLAN = "no_plan"
    PLANNED_LATER = "planned_later"
    ON_TRACK = "on_track"
    BEHIND = "behind"


STATUS_LABELS = {
    ScheduleStatus.NO_PLAN: "No plan",
    ScheduleStatus.PLANNED_LATER: "Planned later",
    ScheduleStatus.ON_TRACK: "On track",
    ScheduleStatus.BEHIND: "Behind",
}


def classify_status(
    planned_until_today: float,
    planned_future: float,
    actual_until_today: float,
) -> ScheduleStatus:
    if planned_until_today == 0 and planned_future == 0:
        return ScheduleStatus.NO_PLAN
    if planned_until_today == 0 and planned_future > 0:
        return ScheduleStatus.PLANNED_LATER
    if actual_until_today >= planned_until_today:
        return ScheduleStatus.ON_TRACK
    return ScheduleStatus.BEHIND


def employee_status(
    employee_id: str,
    week: WeekWindow,
    planned: Iterable[ScheduleEntry],
    actual: Iterable[DiaryEntry],
    today: datetime.date,
) -> ScheduleStatus:
    planned = [entry for entry in planned if entry.employee_id == employee_id and entry.date in week]
    actual = [entry for entry in actual if entry.employee_id == employee_id and entry.date in week]
    planned_until_today = sum_hours(entry for entry in planned if entry.date <= today)
    planned_future = sum_hours(entry for entry in planned if entry.date > today)
    actual_until_today = sum_hours(entry for entry in actual if entry.date <= today)
    return classify_status(planned_until_today, planned_future, actual_until_today)
