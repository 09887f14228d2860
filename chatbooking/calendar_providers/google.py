"""Google Calendar provider implementation.

Talks to the Calendar API v3 either with a bearer access token handed over
by the host (per-account OAuth) or with a service account whose JSON key
path is read from ``GOOGLE_SERVICE_ACCOUNT_JSON``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any

from google.oauth2.credentials import Credentials as AccessTokenCredentials
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from chatbooking.errors import CalendarError

from .base import BusyInterval, CalendarProvider, CreatedEvent

logger = logging.getLogger("chatbooking.calendar_providers.google")

SCOPES = ["https://www.googleapis.com/auth/calendar"]


def _parse_rfc3339(value: str) -> datetime:
    # Python < 3.11 fromisoformat does not accept a trailing "Z"
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    def __init__(self, credentials: Any = None, service_account_path: str | None = None) -> None:
        if credentials is None:
            sa_path = service_account_path or os.environ.get("GOOGLE_SERVICE_ACCOUNT_JSON", "")
            if not sa_path:
                raise ValueError(
                    "Google credentials must be provided via an access token, a "
                    "service account path or the GOOGLE_SERVICE_ACCOUNT_JSON env var."
                )
            credentials = Credentials.from_service_account_file(sa_path, scopes=SCOPES)
        self._credentials = credentials
        self._service = build("calendar", "v3", credentials=credentials, cache_discovery=False)

    @classmethod
    def from_access_token(cls, access_token: str) -> "GoogleCalendarProvider":
        return cls(credentials=AccessTokenCredentials(token=access_token))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def _execute(self, request, what: str) -> Any:
        try:
            return await self._run_in_executor(request.execute)
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            raise CalendarError(f"Google Calendar {what} failed: {e}", status_code=status) from e
        except OSError as e:
            raise CalendarError(f"Google Calendar {what} failed: {e}") from e

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def free_busy(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> list[BusyInterval]:
        """Query the freebusy endpoint for a single calendar."""
        body = {
            "timeMin": self._to_rfc3339(time_min),
            "timeMax": self._to_rfc3339(time_max),
            "timeZone": time_zone,
            "items": [{"id": calendar_id}],
        }
        response = await self._execute(self._service.freebusy().query(body=body), "freebusy")

        calendar = response.get("calendars", {}).get(calendar_id, {})
        if calendar.get("errors"):
            reason = calendar["errors"][0].get("reason", "unknown")
            raise CalendarError(f"Google Calendar freebusy failed for calendar: {reason}")

        busy = [
            BusyInterval(start=_parse_rfc3339(b["start"]), end=_parse_rfc3339(b["end"]))
            for b in calendar.get("busy", [])
        ]
        busy.sort(key=lambda b: b.start)
        return busy

    async def create_event(
        self,
        summary: str,
        description: str,
        start: datetime,
        duration_minutes: int,
        time_zone: str,
        calendar_id: str,
    ) -> CreatedEvent:
        """Insert an event; naive ``start`` values are wall-clock time in ``time_zone``."""
        end = start + timedelta(minutes=duration_minutes)
        body: dict[str, Any] = {
            "summary": summary,
            "start": {"dateTime": start.isoformat(), "timeZone": time_zone},
            "end": {"dateTime": end.isoformat(), "timeZone": time_zone},
        }
        if description:
            body["description"] = description

        result = await self._execute(
            self._service.events().insert(calendarId=calendar_id, body=body), "event insert"
        )
        logger.info("Created event %s on calendar %s", result["id"], calendar_id)
        return CreatedEvent(
            id=result["id"],
            html_link=result.get("htmlLink", ""),
            calendar_id=calendar_id,
            time_zone=result.get("start", {}).get("timeZone", time_zone),
        )

    async def delete_event(self, event_id: str, calendar_id: str) -> None:
        """Delete an event from Google Calendar."""
        try:
            await self._execute(
                self._service.events().delete(calendarId=calendar_id, eventId=event_id),
                "event delete",
            )
        except CalendarError as e:
            if e.status_code in (404, 410):
                logger.info("Event %s on calendar %s was already gone", event_id, calendar_id)
                return
            raise
        logger.info("Deleted event %s on calendar %s", event_id, calendar_id)
