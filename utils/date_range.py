"""
Day-granularity date helpers for rental periods.

Every conversion anchors to the UTC calendar date so a booking made from a
browser in another timezone never shifts by a day. Ranges are half-open
``[start, end)`` with ``end`` the day after the return day: the car is out
on the return day, so the next rental can start the day after.
"""
from datetime import date, datetime, timedelta, timezone
from typing import NamedTuple, Union

DateLike = Union[str, date, datetime]


class DateRange(NamedTuple):
    start: str
    end: str  # exclusive

    @property
    def days(self) -> int:
        return (date.fromisoformat(self.end) - date.fromisoformat(self.start)).days

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}


def _parse(value: DateLike) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise TypeError(f"Unsupported date value: {value!r}")

    text = value.strip()
    if len(text) == 10:
        return date.fromisoformat(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _parse(datetime.fromisoformat(text))


def to_day_string(value: DateLike) -> str:
    """Return the ``YYYY-MM-DD`` UTC calendar day of a date, datetime or ISO string."""
    return _parse(value).isoformat()


def add_days(day: DateLike, n: int) -> str:
    return (_parse(day) + timedelta(days=n)).isoformat()


def ranges_overlap(start_a, end_a, start_b, end_b) -> bool:
    # ISO day strings sort the same way as the dates they name
    return start_a < end_b and start_b < end_a


def normalize(pickup_date: DateLike, return_date: DateLike) -> DateRange:
    """
    Convert an inclusive pickup/return pair into the half-open form.

    The return day is occupied, so ``end`` is the day after it. A same-day
    rental becomes ``[d, d+1)``.
    """
    return DateRange(to_day_string(pickup_date), add_days(to_day_string(return_date), 1))


def rental_days(pickup_date: DateLike, return_date: DateLike) -> int:
    """Number of billable days; a same-day rental counts as one."""
    days = (_parse(return_date) - _parse(pickup_date)).days
    return max(days, 1)


def today_utc(now: float = None) -> str:
    if now is None:
        return datetime.now(timezone.utc).date().isoformat()
    return datetime.fromtimestamp(now, tz=timezone.utc).date().isoformat()
