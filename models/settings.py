from pydantic import BaseModel, Field, field_validator
from typing import List

from utils.time_utils import parse_clock


class HoursWindow(BaseModel):
    enabled: bool = False
    start: str = "09:00"
    end: str = "17:00"

    @field_validator("start", "end")
    @classmethod
    def _valid_clock(cls, value: str) -> str:
        parse_clock(value)
        return value


class RateLimit(BaseModel):
    max_per_contact_per_day: int = 5


class BusinessAutomationSettings(BaseModel):
    business_id: str
    automations_enabled: bool = True
    timezone: str = "UTC"
    # ISO weekdays, 1 = Monday ... 7 = Sunday
    business_days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    business_hours: HoursWindow = Field(default_factory=HoursWindow)
    quiet_hours: HoursWindow = Field(default_factory=lambda: HoursWindow(enabled=False, start="21:00", end="08:00"))
    rate_limit: RateLimit = Field(default_factory=RateLimit)
    dedupe_window_minutes: int = 60
