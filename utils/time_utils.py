import re
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

DEFAULT_WAIT = timedelta(minutes=5)

_ISO_DURATION = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
_SHORT_DURATION = re.compile(r"^(\d+)\s*(s|m|h|d|w)$")
_SHORT_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def utcnow() -> datetime:
    """Returns the current time in UTC, timezone aware."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Naive datetimes coming back from a backend are assumed to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_local(dt: datetime, tz_name: str) -> datetime:
    return ensure_aware(dt).astimezone(ZoneInfo(tz_name))


def parse_clock(value: Any) -> time:
    """Parses 'HH:MM' or 'HH:MM:SS' into a time of day."""
    if isinstance(value, time):
        return value
    parts = [int(p) for p in str(value).strip().split(":")]
    while len(parts) < 3:
        parts.append(0)
    return time(parts[0], parts[1], parts[2])


def parse_duration(value: Any) -> Optional[timedelta]:
    """
    Parses a wait duration. Accepts ISO-8601 ('P1D', 'PT5M', 'P1DT2H'),
    shorthand ('30s', '5m', '24h', '2d') or a bare number of minutes.
    Returns None if the value can't be understood.
    """
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(minutes=value)

    text = str(value).strip()
    if not text:
        return None

    match = _ISO_DURATION.match(text.upper())
    if match and text.upper() != "P" and text.upper() != "PT":
        parts = {k: int(v) for k, v in match.groupdict().items() if v}
        if parts:
            return timedelta(**parts)

    match = _SHORT_DURATION.match(text.lower())
    if match:
        return timedelta(**{_SHORT_UNITS[match.group(2)]: int(match.group(1))})

    try:
        return timedelta(minutes=float(text))
    except ValueError:
        return None


def wait_until(config: Dict[str, Any], now: datetime) -> datetime:
    """Computes when a Wait node should resume, from its config."""
    until = config.get("until")
    if until:
        try:
            target = ensure_aware(datetime.fromisoformat(str(until).replace("Z", "+00:00")))
            return max(target, now)
        except ValueError:
            pass

    delay = parse_duration(config.get("duration") or config.get("delay"))
    if delay is None or delay < timedelta(0):
        delay = DEFAULT_WAIT
    return now + delay
