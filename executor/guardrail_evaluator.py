"""
Guardrail evaluation for time-sensitive actions (email / SMS / call).

Pure functions: no I/O, the caller supplies the settings, the current time and
the contact's message count for the business-local day. A guardrail never
drops an action, it only pushes it to a later, allowed moment.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from models.settings import BusinessAutomationSettings, HoursWindow
from utils.time_utils import ensure_aware, parse_clock


class GuardrailDecision(BaseModel):
    allowed: bool
    defer_until: Optional[datetime] = None
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "GuardrailDecision":
        return cls(allowed=True)

    @classmethod
    def defer(cls, until: datetime, reason: str) -> "GuardrailDecision":
        return cls(allowed=False, defer_until=until, reason=reason)


def local_day(settings: BusinessAutomationSettings, now: datetime) -> date:
    """The business-local calendar day rate limits are counted against."""
    return ensure_aware(now).astimezone(ZoneInfo(settings.timezone)).date()


def _in_window(t: time, start: time, end: time) -> bool:
    if start == end:
        return False
    if start < end:
        return start <= t < end
    # window wraps midnight, e.g. 22:00 - 08:00
    return t >= start or t < end


def _is_business_day(settings: BusinessAutomationSettings, d: date) -> bool:
    return d.isoweekday() in settings.business_days


def _at(d: date, t: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(d, t, tzinfo=tz).astimezone(timezone.utc)


def _next_occurrence(local_now: datetime, t: time) -> date:
    """Date of the first `t` strictly after local_now."""
    if datetime.combine(local_now.date(), t, tzinfo=local_now.tzinfo) > local_now:
        return local_now.date()
    return local_now.date() + timedelta(days=1)


def _skip_to_business_day(settings: BusinessAutomationSettings, d: date) -> date:
    if not settings.business_days:
        return d
    for _ in range(7):
        if _is_business_day(settings, d):
            return d
        d += timedelta(days=1)
    return d


def _next_business_start(settings: BusinessAutomationSettings, local_now: datetime, tz: ZoneInfo) -> datetime:
    start = parse_clock(settings.business_hours.start)
    d = _skip_to_business_day(settings, _next_occurrence(local_now, start))
    return _at(d, start, tz)


def _next_day_start(settings: BusinessAutomationSettings, local_now: datetime, tz: ZoneInfo) -> datetime:
    d = local_now.date() + timedelta(days=1)
    if settings.business_hours.enabled:
        d = _skip_to_business_day(settings, d)
        return _at(d, parse_clock(settings.business_hours.start), tz)
    return _at(d, time(0, 0), tz)


def _within_business_hours(settings: BusinessAutomationSettings, local_now: datetime) -> bool:
    window: HoursWindow = settings.business_hours
    if settings.business_days and not _is_business_day(settings, local_now.date()):
        return False
    return _in_window(local_now.time(), parse_clock(window.start), parse_clock(window.end))


def evaluate_guardrails(
    settings: BusinessAutomationSettings,
    now: datetime,
    messages_today: int,
) -> GuardrailDecision:
    """
    Rules, first match wins:
      1. quiet hours      -> defer until quiet hours end
      2. business hours   -> defer until the next business-hours start
      3. daily rate limit -> defer until the start of the next business day
      4. otherwise allow
    """
    tz = ZoneInfo(settings.timezone)
    local_now = ensure_aware(now).astimezone(tz)

    quiet = settings.quiet_hours
    if quiet.enabled:
        q_start, q_end = parse_clock(quiet.start), parse_clock(quiet.end)
        if _in_window(local_now.time(), q_start, q_end):
            until = _at(_next_occurrence(local_now, q_end), q_end, tz)
            return GuardrailDecision.defer(until, "quiet_hours")

    if settings.business_hours.enabled and not _within_business_hours(settings, local_now):
        return GuardrailDecision.defer(_next_business_start(settings, local_now, tz), "outside_business_hours")

    limit = settings.rate_limit.max_per_contact_per_day
    if limit > 0 and messages_today >= limit:
        return GuardrailDecision.defer(_next_day_start(settings, local_now, tz), "rate_limited")

    return GuardrailDecision.allow()
