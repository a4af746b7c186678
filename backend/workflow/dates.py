"""Due-date normalisation for create/update parameters.

Planners write due dates the way users say them ("friday", "tomorrow 9am").
The todo server wants ISO-8601 timestamps. Dates are computed in UTC.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional

import structlog

from core.utils import utc_now

logger = structlog.get_logger(__name__)

_WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

_END_OF_DAY = time(23, 59, 59, 999000)


def next_weekday(start: datetime, weekday: int) -> datetime:
    """Next occurrence of ``weekday`` strictly after ``start``'s date."""
    days_ahead = weekday - start.weekday()
    if days_ahead <= 0:
        days_ahead += 7
    return start + timedelta(days=days_ahead)


def to_iso(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse(text: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(text.strip())
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%d.%m.%Y", "%B %d %Y", "%b %d %Y", "%B %d, %Y", "%b %d, %Y"):
        try:
            return datetime.strptime(text.strip(), fmt)
        except ValueError:
            continue
    return None


def _has_time_of_day(text: str) -> bool:
    return ":" in text or "am" in text or "pm" in text


def normalize_due_date(due: str, now: Optional[datetime] = None) -> str:
    """Convert a free-text due date to an ISO timestamp.

    - strings that already look like ISO timestamps (``T`` and ``Z``) are kept
    - weekday names map to the next such day, ``tomorrow``/``today`` as expected
    - anything else is parsed; unparseable text becomes the end of today
    - without a time of day the result is the end of that day
    """
    lowered = due.lower()
    if "t" in lowered and "z" in lowered:
        return due

    now = now or utc_now()
    target: Optional[datetime] = None

    for name, weekday in _WEEKDAYS.items():
        if name in lowered:
            target = next_weekday(now, weekday)
            break
    else:
        if "tomorrow" in lowered:
            target = now + timedelta(days=1)
        elif "today" in lowered:
            target = now
        else:
            target = _parse(due)
            if target is None:
                logger.warning("Unparseable due date, using end of today", due=due)
                return to_iso(datetime.combine(now.date(), _END_OF_DAY, tzinfo=timezone.utc))

    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)

    if not _has_time_of_day(lowered):
        target = datetime.combine(target.date(), _END_OF_DAY, tzinfo=target.tzinfo)

    return to_iso(target)


def fix_due_dates(parameters: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    """Copy of ``parameters`` with a string ``due`` normalised."""
    due = parameters.get("due")
    if not isinstance(due, str) or not due:
        return dict(parameters)
    fixed = dict(parameters)
    fixed["due"] = normalize_due_date(due, now=now)
    if fixed["due"] != due:
        logger.info("Fixed date format", original=due, fixed=fixed["due"])
    return fixed
