"""
Month-to-date window calculation.

Every provider query uses the same UTC calendar-month interval
``[first of month, first of next month)`` so totals stay comparable.
"""

import re
from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, model_validator

_MONTH_SELECTOR = re.compile(r"^(\d{4})-(\d{2})$")


class MonthWindow(BaseModel):
    """A UTC calendar-month interval, inclusive start and exclusive end."""

    model_config = {"frozen": True}

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def validate_boundaries(self):
        for value in (self.start, self.end):
            if value.tzinfo is None or value.utcoffset() != timezone.utc.utcoffset(None):
                raise ValueError("Window boundaries must be timezone-aware UTC datetimes")
            if value.day != 1 or value.time() != datetime.min.time():
                raise ValueError(f"Window boundary {value.isoformat()} is not a month start")
        if self.end <= self.start:
            raise ValueError("Window end must be after window start")
        return self

    @property
    def start_date(self) -> str:
        """First day of the window as ``YYYY-MM-DD``."""
        return self.start.date().isoformat()

    @property
    def end_date(self) -> str:
        """First day after the window as ``YYYY-MM-DD``."""
        return self.end.date().isoformat()

    @property
    def month_slug(self) -> str:
        return f"{self.start.year:04d}-{self.start.month:02d}"

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def contains(self, value: datetime | date) -> bool:
        """Check whether a day or instant falls inside the window."""
        if isinstance(value, datetime):
            instant = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return self.start <= instant.astimezone(timezone.utc) < self.end
        return self.start.date() <= value < self.end.date()

    def to_dict(self) -> dict[str, Any]:
        return {
            "timezone": "UTC",
            "startUtc": self.start.isoformat().replace("+00:00", "Z"),
            "endExclusiveUtc": self.end.isoformat().replace("+00:00", "Z"),
        }


def _first_of_month(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _window_for(year: int, month: int) -> MonthWindow:
    if month == 12:
        end = _first_of_month(year + 1, 1)
    else:
        end = _first_of_month(year, month + 1)
    return MonthWindow(start=_first_of_month(year, month), end=end)


def month_window(reference: datetime | date | None = None) -> MonthWindow:
    """
    Return the UTC month window containing ``reference``.

    Args:
        reference: Instant or day to locate; defaults to now. Naive datetimes
            are interpreted as UTC, aware ones are converted to UTC.
    """
    if reference is None:
        reference = datetime.now(timezone.utc)
    if isinstance(reference, datetime):
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        reference = reference.astimezone(timezone.utc)
    return _window_for(reference.year, reference.month)


def month_window_for(selector: str) -> MonthWindow:
    """
    Return the window for an explicit ``YYYY-MM`` selector.

    Raises:
        ValueError: If the selector is malformed or names an invalid month
    """
    match = _MONTH_SELECTOR.match(selector.strip()) if selector else None
    if not match:
        raise ValueError(f"Invalid month selector '{selector}', expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1:
        raise ValueError(f"Invalid month selector '{selector}', month must be 01-12")
    return _window_for(year, month)


def resolve_window(month: str | None = None) -> MonthWindow:
    """Window for ``month`` when given, otherwise the current UTC month."""
    if month:
        return month_window_for(month)
    return month_window()
