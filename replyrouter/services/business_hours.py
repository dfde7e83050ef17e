"""Per-tenant business hours.

Stored as JSON at ``bizhours:{biz}``; tenants without a stored schedule get
the default of 09:00-18:00 every day in Asia/Bangkok.  A message outside
hours is still answered: the off-hours note is handed to the pipeline and
the agent prompt.
"""

from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import redis
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class DaySchedule(BaseModel):
    day: str
    open: str = Field("09:00", pattern=_HHMM)
    close: str = Field("18:00", pattern=_HHMM)
    active: bool = True


class BusinessHours(BaseModel):
    enabled: bool = True
    timezone: str = "Asia/Bangkok"
    off_hours_message: str = (
        "ขณะนี้อยู่นอกเวลาทำการ (09:00–18:00 น.) หากลูกค้าต้องการติดต่อทีมงานโดยตรง "
        "ให้แจ้งว่าทีมงานจะติดต่อกลับในวันทำการถัดไป แต่คุณยังสามารถช่วยตอบคำถามทั่วไปได้ตามปกติครับ"
    )
    schedule: list[DaySchedule] = Field(default_factory=lambda: [DaySchedule(day=d) for d in _DAYS])

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value


class BusinessHoursStatus(BaseModel):
    is_open: bool
    day_name: str = ""
    current_time: str = ""
    open_time: str = "09:00"
    close_time: str = "18:00"
    off_hours_note: str | None = None


def check_business_hours(hours: BusinessHours, now: datetime | None = None) -> BusinessHoursStatus:
    """Evaluate ``hours`` at ``now`` (default: current time).

    Open means ``open <= HH:MM < close`` on an active schedule day, compared
    as zero-padded strings in the schedule's timezone.
    """
    if not hours.enabled:
        return BusinessHoursStatus(is_open=True)

    local = (now or datetime.now(ZoneInfo("UTC"))).astimezone(ZoneInfo(hours.timezone))
    day_name = local.strftime("%A")
    current = local.strftime("%H:%M")
    today = next((s for s in hours.schedule if s.day.lower() == day_name.lower()), None)

    if today is None or not today.active:
        is_open, open_time, close_time = False, "09:00", "18:00"
    else:
        is_open = today.open <= current < today.close
        open_time, close_time = today.open, today.close

    return BusinessHoursStatus(
        is_open=is_open,
        day_name=day_name,
        current_time=current,
        open_time=open_time,
        close_time=close_time,
        off_hours_note=None if is_open else hours.off_hours_message,
    )


class BusinessHoursStore:
    def __init__(self, client: redis.Redis | None) -> None:
        self._redis = client

    def get(self, business_id: str) -> BusinessHours:
        """Stored hours, or the default on a miss or store failure."""
        if self._redis is None:
            return BusinessHours()
        try:
            raw = self._redis.get(f"bizhours:{business_id}")
        except redis.RedisError:
            logger.warning("Business hours lookup failed for %s; using default", business_id)
            return BusinessHours()
        if not raw:
            return BusinessHours()
        try:
            return BusinessHours.model_validate_json(raw)
        except ValidationError:
            logger.warning("Stored business hours for %s are invalid; using default", business_id)
            return BusinessHours()

    def put(self, business_id: str, hours: BusinessHours) -> None:
        if self._redis is None:
            raise RuntimeError("Business hours cannot be saved without a Redis store")
        self._redis.set(f"bizhours:{business_id}", hours.model_dump_json())
