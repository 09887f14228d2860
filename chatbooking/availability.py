"""Slot availability against a calendar's busy intervals.

A requested ``(date, time)`` is free when ``[start, start + slot)`` overlaps
no busy interval.  When it is taken, up to three alternatives are proposed
from the account's opening hours.  Busy intervals come from a short-lived
read-through cache in front of the provider's free/busy query.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time as _time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from chatbooking.calendar_providers.base import BusyInterval, CalendarProvider
from chatbooking.config import settings
from chatbooking.context import TurnContext
from chatbooking.models.calendar import CalendarSettings

logger = logging.getLogger("chatbooking.availability")

SUGGESTION_LIMIT = 3
FREEBUSY_WINDOW_DAYS = 7
AVAILABILITY_ERROR = "availability_error"

CacheKey = tuple[str, str, str, str, str]


@dataclass(frozen=True)
class SlotSuggestion:
    date: str  # YYYY-MM-DD
    time: str  # HH:MM


@dataclass
class AvailabilityResult:
    available: bool
    suggestions: list[SlotSuggestion] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


# ── Time zone conversion ──────────────────────────────────────


def zoned_to_utc(day: date, wall: time, time_zone: str) -> datetime:
    """Interpret ``day`` + ``wall`` as local time in *time_zone*; return aware UTC.

    The offset is found by fixed-point iteration: read the wall time as if it
    were UTC, measure the zone's offset at that instant, subtract it, and
    measure again.  If the two offsets differ (the wall time is near a DST
    switch) the larger offset wins, so a wall time inside the skipped
    spring-forward hour resolves one hour early (02:30 becomes 01:30 standard
    time).
    """
    tz = ZoneInfo(time_zone)
    guess = datetime.combine(day, wall).replace(tzinfo=timezone.utc)
    offset = guess.astimezone(tz).utcoffset() or timedelta(0)
    adjusted = guess - offset
    offset_after = adjusted.astimezone(tz).utcoffset() or timedelta(0)
    if offset_after != offset:
        adjusted = guess - max(offset, offset_after)
    return adjusted


def _parse_clock(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


def _format_minutes(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def _overlaps(start: datetime, end: datetime, busy: list[BusyInterval]) -> bool:
    return any(b.overlaps(start, end) for b in busy)


# ── Cache ─────────────────────────────────────────────────────


class AvailabilityCache:
    """Thread-safe TTL cache of busy intervals, bounded by entry count.

    Entries are keyed by ``(account, calendar, timeMin, timeMax, timeZone)``.
    Expired entries are dropped on access; the least recently used entry is
    evicted when the cache is full.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = _time.monotonic,
    ) -> None:
        self._ttl = settings.availability_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._max_entries = max_entries or settings.availability_cache_max_entries
        self._clock = clock
        # key → (expires_at, busy intervals)
        self._store: OrderedDict[CacheKey, tuple[float, list[BusyInterval]]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[list[BusyInterval]]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, busy = entry
            if expires_at <= self._clock():
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return list(busy)

    def put(self, key: CacheKey, busy: list[BusyInterval]) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            self._store.pop(key, None)
            while len(self._store) >= self._max_entries:
                evicted, _ = self._store.popitem(last=False)
                logger.debug("Availability cache: evicted %s", evicted)
            self._store[key] = (self._clock() + self._ttl, list(busy))

    def invalidate_account(self, account_id: str, calendar_id: str | None = None) -> int:
        """Drop every entry of *account_id* (optionally only one calendar)."""
        with self._lock:
            keys = [
                k
                for k in self._store
                if k[0] == account_id and (calendar_id is None or k[1] == calendar_id)
            ]
            for key in keys:
                del self._store[key]
            return len(keys)

    def __len__(self) -> int:
        return len(self._store)


# ── Resolver ──────────────────────────────────────────────────


class AvailabilityResolver:
    """Decides whether a slot is free and proposes alternatives when it is not."""

    def __init__(
        self,
        cache: AvailabilityCache | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._cache = cache if cache is not None else AvailabilityCache()
        self._timeout = timeout_seconds or settings.calendar_timeout_seconds

    @property
    def cache(self) -> AvailabilityCache:
        return self._cache

    async def busy_intervals(
        self,
        ctx: TurnContext,
        provider: CalendarProvider,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> list[BusyInterval]:
        """Cached free/busy lookup.  Provider errors and timeouts propagate."""
        key: CacheKey = (
            ctx.account_id,
            calendar_id,
            time_min.isoformat(),
            time_max.isoformat(),
            time_zone,
        )
        cached = self._cache.get(key)
        if cached is not None:
            ctx.logger("chatbooking.availability").debug("Busy intervals served from cache")
            return cached

        busy = await asyncio.wait_for(
            provider.free_busy(calendar_id, time_min, time_max, time_zone),
            timeout=self._timeout,
        )
        self._cache.put(key, busy)
        return busy

    async def check(
        self,
        ctx: TurnContext,
        provider: CalendarProvider,
        calendar_id: str,
        slot_date: str,
        slot_time: str,
        calendar: CalendarSettings,
        time_zone: str | None = None,
    ) -> AvailabilityResult:
        """Check ``slot_date`` (ISO) at ``slot_time`` (``HH:MM``) in the account zone."""
        log = ctx.logger("chatbooking.availability")
        zone = time_zone or calendar.time_zone
        try:
            day = date.fromisoformat(slot_date)
            wall = _parse_clock(slot_time)
            window_days = min(calendar.booking_window_days, FREEBUSY_WINDOW_DAYS)
            time_min = zoned_to_utc(day, time(0, 0), zone)
            time_max = zoned_to_utc(day + timedelta(days=window_days), time(23, 59), zone)

            busy = await self.busy_intervals(ctx, provider, calendar_id, time_min, time_max, zone)

            start = zoned_to_utc(day, wall, zone)
            end = start + timedelta(minutes=calendar.slot_duration_minutes)
            if not _overlaps(start, end, busy):
                log.info("Slot %s %s is available", slot_date, slot_time)
                return AvailabilityResult(available=True)

            suggestions = suggest_slots(day, wall, zone, calendar, busy, window_days)
            log.info(
                "Slot %s %s is busy, %d suggestion(s)", slot_date, slot_time, len(suggestions)
            )
            return AvailabilityResult(available=False, suggestions=suggestions)
        except Exception as e:
            log.warning("Availability check failed: %s: %s", type(e).__name__, e)
            return AvailabilityResult(available=False, error=AVAILABILITY_ERROR)


def suggest_slots(
    day: date,
    wall: time,
    time_zone: str,
    calendar: CalendarSettings,
    busy: list[BusyInterval],
    range_days: int,
    limit: int = SUGGESTION_LIMIT,
) -> list[SlotSuggestion]:
    """First *limit* free slots from the opening hours, in chronological order.

    Days ``day .. day + range_days - 1`` are scanned; on the requested day
    only times strictly after *wall* are considered.
    """
    requested = wall.hour * 60 + wall.minute
    step = calendar.slot_duration_minutes
    suggestions: list[SlotSuggestion] = []

    for offset in range(range_days):
        current = day + timedelta(days=offset)
        # Overlapping ranges may yield the same start twice
        candidates: set[int] = set()
        for range_start, range_end in calendar.open_ranges(current.weekday()):
            candidates.update(range(range_start, range_end - step + 1, step))
        for minutes in sorted(candidates):
            if offset == 0 and minutes <= requested:
                continue
            label = _format_minutes(minutes)
            start = zoned_to_utc(current, _parse_clock(label), time_zone)
            if not _overlaps(start, start + timedelta(minutes=step), busy):
                suggestions.append(SlotSuggestion(date=current.isoformat(), time=label))
                if len(suggestions) >= limit:
                    return suggestions
    return suggestions
