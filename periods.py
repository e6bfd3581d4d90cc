import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional, TypeVar, Union

PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
_PERIOD_RE = re.compile(PERIOD_PATTERN)

DateLike = TypeVar("DateLike", date, datetime)


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(value: DateLike, months: int, *, desired_day: Optional[int] = None) -> DateLike:
    """Move ``value`` by whole calendar months.

    The day of month is ``desired_day`` (defaulting to the day of ``value``)
    snapped to the last day of the target month when that month is shorter.
    """
    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    day = min(desired_day or value.day, days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def advance(
    value: DateLike,
    frequency: Union[Frequency, str],
    *,
    anchor_day: Optional[int] = None,
) -> DateLike:
    """Return the next occurrence after ``value`` for ``frequency``.

    Monthly and yearly steps keep ``anchor_day`` where the target month has
    it and clamp to the month end otherwise, so Jan 31 steps to Feb 29 in a
    leap year and back to Mar 31 afterwards.
    """
    frequency = Frequency(frequency)
    if frequency == Frequency.daily:
        return value + timedelta(days=1)
    if frequency == Frequency.weekly:
        return value + timedelta(weeks=1)
    if frequency == Frequency.monthly:
        return add_months(value, 1, desired_day=anchor_day)
    return add_months(value, 12, desired_day=anchor_day)


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    start = datetime(year, month, 1)
    last_day = date(year, month, days_in_month(year, month))
    end = datetime.combine(last_day, time(23, 59, 59))
    return start, end


def period_key(value: Union[date, datetime]) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def parse_period(key: str) -> tuple[int, int]:
    if not key or not _PERIOD_RE.fullmatch(key):
        raise ValueError("Invalid period format, expected YYYY-MM")
    year, month = key.split("-")
    return int(year), int(month)


def shift_month(year: int, month: int, count: int) -> tuple[int, int]:
    month_index = (year * 12) + (month - 1) + count
    return month_index // 12, (month_index % 12) + 1


@dataclass(frozen=True)
class Period:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError("Month must be between 1 and 12")

    @classmethod
    def from_key(cls, key: str) -> "Period":
        year, month = parse_period(key)
        return cls(year, month)

    @classmethod
    def containing(cls, value: Union[date, datetime]) -> "Period":
        return cls(value.year, value.month)

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def bounds(self) -> tuple[datetime, datetime]:
        return month_bounds(self.year, self.month)

    def shifted(self, count: int) -> "Period":
        return Period(*shift_month(self.year, self.month, count))

    def previous(self) -> "Period":
        return self.shifted(-1)
