"""Per-account calendar settings: time zone, booking window, opening hours."""

from __future__ import annotations

import logging
import math
import re
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

log = logging.getLogger("chatbooking.models.calendar")

DEFAULT_TIME_ZONE = "Europe/Berlin"
DEFAULT_BOOKING_WINDOW_DAYS = 30
DEFAULT_SLOT_DURATION_MINUTES = 60

WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

DEFAULT_HOURS: dict[str, list[str]] = {
    "mon": ["07:00-21:00"],
    "tue": ["07:00-21:00"],
    "wed": ["07:00-21:00"],
    "thu": ["07:00-21:00"],
    "fri": ["07:00-21:00"],
    "sat": ["08:00-18:00"],
    "sun": [],
}

_RANGE_RE = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")


def parse_range(value: str) -> tuple[int, int] | None:
    """``"07:00-21:00"`` → minutes since midnight ``(420, 1260)``."""
    match = _RANGE_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        return None
    sh, sm, eh, em = (int(g) for g in match.groups())
    start, end = sh * 60 + sm, eh * 60 + em
    if sh > 24 or eh > 24 or sm > 59 or em > 59 or start >= end or end > 24 * 60:
        return None
    return start, end


def _clamp(value: Any, fallback: int, low: int, high: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return fallback
    if not isinstance(value, (int, float)) or math.isnan(value) or math.isinf(value):
        return fallback
    return min(max(int(math.floor(value)), low), high)


def _sanitize_hours(hours: Any) -> dict[str, list[str]]:
    hours = hours if isinstance(hours, dict) else {}
    sanitized: dict[str, list[str]] = {}
    for day in WEEKDAY_KEYS:
        ranges = hours.get(day)
        if not isinstance(ranges, list):
            ranges = DEFAULT_HOURS[day]
        sanitized[day] = [r.strip() for r in ranges if isinstance(r, str) and parse_range(r)]
    return sanitized


def _sanitize_time_zone(value: Any) -> str:
    name = value.strip() if isinstance(value, str) else ""
    if not name:
        return DEFAULT_TIME_ZONE
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown time zone %r, using %s", name, DEFAULT_TIME_ZONE)
        return DEFAULT_TIME_ZONE
    return name


class CalendarSettings(BaseModel):
    """Normalized calendar settings.

    Every construction path goes through ``normalize``: numbers are clamped
    (window 1-90 days, slot 15-240 minutes), malformed hour ranges are
    dropped, and missing values fall back to the defaults.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    time_zone: str = DEFAULT_TIME_ZONE
    booking_window_days: int = DEFAULT_BOOKING_WINDOW_DAYS
    slot_duration_minutes: int = DEFAULT_SLOT_DURATION_MINUTES
    hours: dict[str, list[str]] = DEFAULT_HOURS

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            data = {}

        def pick(camel: str, snake: str) -> Any:
            return data.get(camel, data.get(snake))

        return {
            "time_zone": _sanitize_time_zone(pick("timeZone", "time_zone")),
            "booking_window_days": _clamp(
                pick("bookingWindowDays", "booking_window_days"), DEFAULT_BOOKING_WINDOW_DAYS, 1, 90
            ),
            "slot_duration_minutes": _clamp(
                pick("slotDurationMinutes", "slot_duration_minutes"),
                DEFAULT_SLOT_DURATION_MINUTES,
                15,
                240,
            ),
            "hours": _sanitize_hours(data.get("hours", DEFAULT_HOURS)),
        }

    @classmethod
    def normalize(cls, raw: dict | None = None) -> "CalendarSettings":
        return cls.model_validate(raw or {})

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    def open_ranges(self, weekday: int) -> list[tuple[int, int]]:
        """Opening ranges in minutes for ``date.weekday()`` (Monday is 0)."""
        ranges = [parse_range(r) for r in self.hours.get(WEEKDAY_KEYS[weekday], [])]
        return sorted(r for r in ranges if r)
