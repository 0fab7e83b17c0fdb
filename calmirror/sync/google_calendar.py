"""Google Calendar API wrapper."""

import logging
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calmirror.config import get_settings
from calmirror.sync.models import CalendarEvent

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


class CalendarAccessError(Exception):
    """A calendar could not be read or written (missing, deleted or forbidden)."""

    def __init__(self, calendar_id: str, message: str):
        super().__init__(f"{calendar_id}: {message}")
        self.calendar_id = calendar_id


def _parse_event_time(value: dict, default_tz: str) -> tuple[datetime, bool, Optional[str]]:
    """Turn a Google start/end object into (aware datetime, all_day, time zone)."""
    time_zone = value.get("timeZone")

    if "date" in value:
        tz = ZoneInfo(time_zone or default_tz)
        day = date.fromisoformat(value["date"])
        return datetime.combine(day, time.min, tzinfo=tz), True, time_zone

    raw = value["dateTime"]
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    moment = datetime.fromisoformat(raw)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=ZoneInfo(time_zone or default_tz))
    return moment, False, time_zone


def _format_event_time(moment: datetime, all_day: bool, time_zone: Optional[str]) -> dict:
    if all_day:
        return {"date": moment.date().isoformat()}
    return {"dateTime": moment.isoformat(), "timeZone": time_zone or "UTC"}


class GoogleCalendarClient:
    """Wrapper around Google Calendar API."""

    def __init__(self, credentials: Credentials):
        """Initialize with OAuth credentials for the running principal."""
        self.credentials = credentials
        self.service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
        self.settings = get_settings()

    @classmethod
    def from_token_file(cls, path: str) -> "GoogleCalendarClient":
        """Build a client from an authorized-user token JSON file."""
        credentials = Credentials.from_authorized_user_file(path, SCOPES)
        return cls(credentials)

    def _to_event(self, calendar_id: str, item: dict) -> CalendarEvent:
        default_tz = self.settings.default_time_zone
        start, all_day, time_zone = _parse_event_time(item["start"], default_tz)
        end, _, _ = _parse_event_time(item["end"], default_tz)
        return CalendarEvent(
            id=item["id"],
            calendar_id=calendar_id,
            title=item.get("summary", ""),
            start=start,
            end=end,
            all_day=all_day,
            time_zone=time_zone,
            description=item.get("description", ""),
            location=item.get("location", ""),
        )

    def list_calendars(self) -> list[dict]:
        """List all calendars the user has access to as {id, display_name}."""
        calendars = []
        page_token = None

        while True:
            request_params = {}
            if page_token:
                request_params["pageToken"] = page_token
            result = self.service.calendarList().list(**request_params).execute()

            for item in result.get("items", []):
                calendars.append({
                    "id": item["id"],
                    "display_name": item.get("summaryOverride") or item.get("summary") or item["id"],
                })

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return calendars

    def get_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: int = 2500,
    ) -> list[CalendarEvent]:
        """
        List events overlapping [time_min, time_max).

        Recurring events are expanded into their instances and cancelled
        events are dropped.
        """
        request_params = {
            "calendarId": calendar_id,
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "maxResults": max_results,
            "singleEvents": True,
            "orderBy": "startTime",
        }

        events = []
        page_token = None

        try:
            while True:
                if page_token:
                    request_params["pageToken"] = page_token

                result = self.service.events().list(**request_params).execute()
                for item in result.get("items", []):
                    if item.get("status") == "cancelled":
                        continue
                    events.append(self._to_event(calendar_id, item))

                page_token = result.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            if e.resp.status in (403, 404):
                raise CalendarAccessError(calendar_id, f"cannot list events (HTTP {e.resp.status})") from e
            raise

        return events

    def create_event(
        self,
        calendar_id: str,
        title: str,
        start: datetime,
        end: datetime,
        description: str = "",
        location: str = "",
        all_day: bool = False,
        time_zone: Optional[str] = None,
    ) -> CalendarEvent:
        """Create an event on a calendar."""
        body = {
            "summary": title,
            "description": description,
            "location": location,
            "start": _format_event_time(start, all_day, time_zone),
            "end": _format_event_time(end, all_day, time_zone),
        }

        try:
            created = self.service.events().insert(
                calendarId=calendar_id,
                body=body,
                sendNotifications=False,
            ).execute()
        except HttpError as e:
            if e.resp.status in (403, 404):
                raise CalendarAccessError(calendar_id, f"cannot create event (HTTP {e.resp.status})") from e
            raise

        return self._to_event(calendar_id, created)

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event."""
        try:
            self.service.events().delete(
                calendarId=calendar_id,
                eventId=event_id,
                sendNotifications=False,
            ).execute()
            return True
        except HttpError as e:
            if e.resp.status in (404, 410):
                # Already deleted
                return True
            if e.resp.status == 403:
                raise CalendarAccessError(calendar_id, "cannot delete event (HTTP 403)") from e
            raise

    def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: str,
        expiration: datetime,
    ) -> dict:
        """Open a push notification channel for changes to a calendar's events."""
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": token,
            "expiration": str(int(expiration.timestamp() * 1000)),
        }
        return self.service.events().watch(calendarId=calendar_id, body=body).execute()

    def stop_channel(self, channel_id: str, resource_id: str) -> bool:
        """Stop a push notification channel."""
        try:
            self.service.channels().stop(
                body={"id": channel_id, "resourceId": resource_id}
            ).execute()
            return True
        except HttpError as e:
            # 404 is OK - channel might already be stopped
            if e.resp.status == 404:
                return True
            raise


def get_calendar_gateway() -> GoogleCalendarClient:
    """Create the calendar gateway for the configured principal."""
    settings = get_settings()
    return GoogleCalendarClient.from_token_file(settings.google_token_file)
