import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import dateparser

from taskmail.errors import InvalidScheduleError

logger = logging.getLogger("taskmail.clock")

_FIXED_FORMATS = ("%Y-%m-%d", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M:%S")


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return dt as an aware UTC datetime. SQLite hands back naive values, which are stored as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_zone(name: Optional[str]) -> ZoneInfo:
    key = (name or "").strip()
    if not key:
        raise InvalidScheduleError("Timezone is required")
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidScheduleError(f"Unknown timezone: {name}") from e


def _localize(naive: datetime, tz: ZoneInfo) -> datetime:
    candidate = naive.replace(tzinfo=tz)
    # Wall times inside a DST gap don't survive the round trip.
    roundtrip = candidate.astimezone(timezone.utc).astimezone(tz)
    if roundtrip.replace(tzinfo=None) != naive:
        raise InvalidScheduleError(f"{naive.isoformat()} does not exist in timezone {tz.key}")
    return candidate


def _parse_text(text: str, tz: ZoneInfo, now: Optional[datetime]) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00") if text.endswith("Z") else text)
    except ValueError:
        pass

    for fmt in _FIXED_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    settings: dict[str, Any] = {
        "TIMEZONE": tz.key,
        "RETURN_AS_TIMEZONE_AWARE": True,
        "PREFER_DATES_FROM": "future",
    }
    if now is not None:
        settings["RELATIVE_BASE"] = now.astimezone(tz).replace(tzinfo=None)
    try:
        return dateparser.parse(text, settings=settings)
    except Exception as e:
        logger.debug("dateparser failed for %r: %s", text, e)
        return None


def resolve_instant(value: Any, tz_name: str, *, now: Optional[datetime] = None) -> datetime:
    """Resolve a user-supplied target time into a canonical UTC instant.

    Accepts datetimes, epoch seconds and strings (ISO-8601, a few fixed formats,
    then natural language such as "tomorrow 9am" or "in 5 minutes"). Naive values
    are interpreted in ``tz_name``.

    Raises InvalidScheduleError when the value cannot be resolved.
    """
    tz = get_zone(tz_name)

    if value is None or isinstance(value, bool):
        raise InvalidScheduleError("Invalid execution date format")

    if isinstance(value, datetime):
        dt: Optional[datetime] = value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise InvalidScheduleError("Invalid execution date format") from e
    elif isinstance(value, str) and value.strip():
        dt = _parse_text(value.strip(), tz, now)
    else:
        dt = None

    if dt is None:
        raise InvalidScheduleError("Invalid execution date format")

    if dt.tzinfo is None:
        dt = _localize(dt, tz)
    return dt.astimezone(timezone.utc)
