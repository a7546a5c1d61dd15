"""Date helpers shared by the ledger and the settlement calculator."""

from __future__ import annotations

import datetime as dt
import re

from .errors import ValidationError

_MONTH = re.compile(r"^(\d{4})-(\d{2})$")
_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


def parse_timestamp(value: str | dt.date | dt.datetime | None) -> dt.datetime | None:
    """Return a naive datetime for an ISO date/timestamp, or ``None``.

    Timestamps carrying an offset keep their wall-clock time; the offset is
    dropped so rows written by different clients compare consistently.
    """

    if value is None:
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        parsed = dt.datetime.combine(value, dt.time())
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # fromisoformat on 3.10 only takes 3 or 6 fraction digits
        text = _FRACTION.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text, count=1)
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    return parsed.replace(tzinfo=None)


def combine_date_time(date: str | dt.date, time: str | dt.time = "10:00") -> dt.datetime:
    """Combine the date and time fields of the scheduling form."""

    try:
        day = date if isinstance(date, dt.date) else dt.date.fromisoformat(str(date).strip())
        clock = time if isinstance(time, dt.time) else dt.time.fromisoformat(str(time).strip())
    except ValueError as exc:
        raise ValidationError("Session date or time is not valid") from exc
    return dt.datetime.combine(day, clock.replace(tzinfo=None))


def parse_month(month: str) -> tuple[int, int]:
    """Split a ``YYYY-MM`` string into ``(year, month)``."""

    match = _MONTH.match(str(month or "").strip())
    if not match:
        raise ValidationError("Month must use the YYYY-MM format")
    year, number = int(match.group(1)), int(match.group(2))
    if not 1 <= number <= 12:
        raise ValidationError("Month must use the YYYY-MM format")
    return year, number


def current_month(today: dt.date | None = None) -> str:
    today = today or dt.date.today()
    return f"{today.year:04d}-{today.month:02d}"


def recent_months(count: int = 12, today: dt.date | None = None) -> list[str]:
    """Return the current month and the ``count - 1`` before it, newest first."""

    today = today or dt.date.today()
    year, month = today.year, today.month
    months = []
    for _ in range(count):
        months.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return months


def in_month(value: str | dt.date | dt.datetime | None, year: int, month: int) -> bool:
    parsed = parse_timestamp(value)
    return parsed is not None and parsed.year == year and parsed.month == month
