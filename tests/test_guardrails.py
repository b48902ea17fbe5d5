import pytest
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from executor.guardrail_evaluator import evaluate_guardrails, local_day
from models.settings import BusinessAutomationSettings, HoursWindow, RateLimit


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def settings(**kwargs):
    return BusinessAutomationSettings(business_id="biz-1", **kwargs)


def test_quiet_hours_defer_late_evening_sms_to_next_morning():
    s = settings(quiet_hours=HoursWindow(enabled=True, start="22:00", end="08:00"))

    decision = evaluate_guardrails(s, utc(2026, 3, 4, 23, 0), messages_today=0)

    assert not decision.allowed
    assert decision.reason == "quiet_hours"
    assert decision.defer_until == utc(2026, 3, 5, 8, 0)


def test_quiet_hours_after_midnight_defer_to_same_morning():
    s = settings(quiet_hours=HoursWindow(enabled=True, start="22:00", end="08:00"))

    decision = evaluate_guardrails(s, utc(2026, 3, 5, 2, 30), messages_today=0)

    assert decision.defer_until == utc(2026, 3, 5, 8, 0)


def test_quiet_hours_end_is_exclusive():
    s = settings(quiet_hours=HoursWindow(enabled=True, start="22:00", end="08:00"))
    assert evaluate_guardrails(s, utc(2026, 3, 5, 8, 0), messages_today=0).allowed
    assert not evaluate_guardrails(s, utc(2026, 3, 4, 22, 0), messages_today=0).allowed


def test_outside_business_hours_defers_to_next_start():
    s = settings(business_hours=HoursWindow(enabled=True, start="09:00", end="17:00"))

    decision = evaluate_guardrails(s, utc(2026, 3, 4, 18, 0), messages_today=0)

    assert decision.reason == "outside_business_hours"
    assert decision.defer_until == utc(2026, 3, 5, 9, 0)


def test_before_business_hours_defers_to_same_day_start():
    s = settings(business_hours=HoursWindow(enabled=True, start="09:00", end="17:00"))
    decision = evaluate_guardrails(s, utc(2026, 3, 4, 7, 15), messages_today=0)
    assert decision.defer_until == utc(2026, 3, 4, 9, 0)


def test_friday_evening_skips_weekend():
    s = settings(business_hours=HoursWindow(enabled=True, start="09:00", end="17:00"))

    # 2026-03-06 is a Friday
    decision = evaluate_guardrails(s, utc(2026, 3, 6, 17, 30), messages_today=0)

    assert decision.defer_until == utc(2026, 3, 9, 9, 0)


def test_saturday_inside_clock_hours_is_still_outside_business_days():
    s = settings(business_hours=HoursWindow(enabled=True, start="09:00", end="17:00"))
    decision = evaluate_guardrails(s, utc(2026, 3, 7, 11, 0), messages_today=0)
    assert decision.reason == "outside_business_hours"
    assert decision.defer_until == utc(2026, 3, 9, 9, 0)


def test_business_hours_use_business_timezone():
    s = settings(
        timezone="America/New_York",
        business_hours=HoursWindow(enabled=True, start="09:00", end="17:00"),
    )

    # 13:00 UTC is 08:00 in New York (EST, before the DST switch)
    decision = evaluate_guardrails(s, utc(2026, 3, 4, 13, 0), messages_today=0)

    assert decision.defer_until == datetime(2026, 3, 4, 9, 0, tzinfo=ZoneInfo("America/New_York"))
    assert decision.defer_until.tzinfo == timezone.utc


def test_rate_limit_defers_to_next_day():
    s = settings(rate_limit=RateLimit(max_per_contact_per_day=3))

    assert evaluate_guardrails(s, utc(2026, 3, 4, 12, 0), messages_today=2).allowed

    decision = evaluate_guardrails(s, utc(2026, 3, 4, 12, 0), messages_today=3)
    assert decision.reason == "rate_limited"
    assert decision.defer_until == utc(2026, 3, 5, 0, 0)


def test_rate_limit_with_business_hours_defers_to_next_business_start():
    s = settings(
        business_hours=HoursWindow(enabled=True, start="09:00", end="17:00"),
        rate_limit=RateLimit(max_per_contact_per_day=1),
    )
    decision = evaluate_guardrails(s, utc(2026, 3, 6, 10, 0), messages_today=1)
    assert decision.defer_until == utc(2026, 3, 9, 9, 0)


def test_zero_rate_limit_means_unlimited():
    s = settings(rate_limit=RateLimit(max_per_contact_per_day=0))
    assert evaluate_guardrails(s, utc(2026, 3, 4, 12, 0), messages_today=500).allowed


def test_quiet_hours_checked_before_rate_limit():
    s = settings(
        quiet_hours=HoursWindow(enabled=True, start="22:00", end="08:00"),
        rate_limit=RateLimit(max_per_contact_per_day=1),
    )
    decision = evaluate_guardrails(s, utc(2026, 3, 4, 23, 0), messages_today=10)
    assert decision.reason == "quiet_hours"


def test_allowed_when_every_rule_passes():
    s = settings(
        business_hours=HoursWindow(enabled=True, start="09:00", end="17:00"),
        quiet_hours=HoursWindow(enabled=True, start="21:00", end="08:00"),
    )
    decision = evaluate_guardrails(s, utc(2026, 3, 4, 12, 0), messages_today=0)
    assert decision.allowed
    assert decision.defer_until is None


def test_local_day_follows_business_timezone():
    s = settings(timezone="Asia/Tokyo")
    # 20:00 UTC on the 4th is already the 5th in Tokyo
    assert local_day(s, utc(2026, 3, 4, 20, 0)).isoformat() == "2026-03-05"


def test_invalid_clock_string_is_rejected():
    with pytest.raises(ValueError):
        HoursWindow(enabled=True, start="25:00", end="08:00")
