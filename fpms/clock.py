"""Time helpers.

All instants are stored and compared as naive UTC datetimes.
"""

from datetime import date, datetime, time, timezone
from typing import Optional, Union

from dateutil import parser as date_parser
from dateutil import tz

from fpms.errors import ValidationError

Instant = Union[datetime, date, str]


def utcnow() -> datetime:
    """Current instant as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC; naive input is taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(tz.UTC).replace(tzinfo=None)


def coerce_instant(value: Optional[Instant], end_of_day: bool = False, label: str = "date") -> Optional[datetime]:
    """Parse a window boundary.

    Accepts datetimes, dates and ISO-8601 strings. A bare date is the start
    of that day, or its last microsecond when ``end_of_day`` is set.

    Raises:
        ValidationError: If a string cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min)
    if isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError) as e:
            raise ValidationError(f"Invalid {label}: {value!r}") from e
        if end_of_day and len(value.strip()) == 10:
            parsed = datetime.combine(parsed.date(), time.max)
        return to_utc(parsed)
    raise ValidationError(f"Invalid {label}: {value!r}")


__all__ = ["Instant", "utcnow", "to_utc", "coerce_instant"]
