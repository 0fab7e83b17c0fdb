"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["GOOGLE_TOKEN_FILE"] = "/nonexistent/google-token.json"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["ENABLE_WEBHOOKS"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"


class FakeCalendarGateway:
    """In-memory stand-in for GoogleCalendarClient."""

    def __init__(self):
        self.calendars: dict[str, dict] = {}
        self.inaccessible: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.channels: dict[str, dict] = {}
        self._ids = count(1)

    def add_calendar(self, calendar_id: str, display_name: Optional[str] = None) -> None:
        self.calendars.setdefault(
            calendar_id, {"display_name": display_name or calendar_id, "events": {}}
        )

    def add_event(
        self,
        calendar_id: str,
        title: str,
        start: datetime,
        end: Optional[datetime] = None,
        description: str = "",
        location: str = "",
    ):
        from calmirror.sync.models import CalendarEvent

        self.add_calendar(calendar_id)
        event = CalendarEvent(
            id=f"evt-{next(self._ids)}",
            calendar_id=calendar_id,
            title=title,
            start=start,
            end=end or start + timedelta(minutes=30),
            description=description,
            location=location,
        )
        self.calendars[calendar_id]["events"][event.id] = event
        return event

    def events(self, calendar_id: str) -> list:
        return sorted(
            self.calendars[calendar_id]["events"].values(),
            key=lambda event: (event.start, event.title),
        )

    def titles(self, calendar_id: str) -> list[str]:
        return [event.title for event in self.events(calendar_id)]

    def _check(self, calendar_id: str) -> None:
        from calmirror.sync.google_calendar import CalendarAccessError

        if calendar_id in self.inaccessible or calendar_id not in self.calendars:
            raise CalendarAccessError(calendar_id, "calendar not found")

    def list_calendars(self) -> list[dict]:
        self.calls.append(("list_calendars", ""))
        return [
            {"id": cal_id, "display_name": cal["display_name"]}
            for cal_id, cal in self.calendars.items()
        ]

    def get_events(self, calendar_id, time_min, time_max):
        self.calls.append(("get_events", calendar_id))
        self._check(calendar_id)
        return [
            event for event in self.events(calendar_id)
            if event.start < time_max and event.end > time_min
        ]

    def create_event(
        self,
        calendar_id,
        title,
        start,
        end,
        description="",
        location="",
        all_day=False,
        time_zone=None,
    ):
        self.calls.append(("create_event", calendar_id))
        self._check(calendar_id)
        return self.add_event(calendar_id, title, start, end, description, location)

    def delete_event(self, calendar_id, event_id):
        self.calls.append(("delete_event", calendar_id))
        self._check(calendar_id)
        self.calendars[calendar_id]["events"].pop(event_id, None)
        return True

    def watch_events(self, calendar_id, channel_id, address, token, expiration):
        self.calls.append(("watch_events", calendar_id))
        self._check(calendar_id)
        self.channels[channel_id] = {"calendar_id": calendar_id, "address": address, "token": token}
        return {"id": channel_id, "resourceId": f"res-{calendar_id}"}

    def stop_channel(self, channel_id, resource_id):
        self.calls.append(("stop_channel", channel_id))
        self.channels.pop(channel_id, None)
        return True


@pytest.fixture
def gateway():
    """Fake calendar gateway with two empty calendars."""
    fake = FakeCalendarGateway()
    fake.add_calendar("a@example.com", "Alpha")
    fake.add_calendar("b@example.com", "Bravo")
    return fake


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from calmirror.database import get_database, close_database, init_schema
    import calmirror.database as db_module

    # Reset the global connection
    db_module._db_connection = None

    # Create in-memory database
    db = await get_database()
    await init_schema(db)

    yield db

    await close_database()
    db_module._db_connection = None


@pytest.fixture
def configure_sync(test_db):
    """Store a sync configuration through the settings store."""
    import json

    from calmirror.database import set_setting

    async def _configure(
        sources: list[str],
        destinations: list[str],
        days_ahead: int = 60,
        prefix: str = "* ",
        enabled: bool = True,
    ) -> None:
        await set_setting("sync_enabled", "true" if enabled else "false")
        await set_setting("source_calendars", json.dumps(sources))
        await set_setting(
            "destination_calendars",
            json.dumps([{"id": dest, "mirror_external_names": True} for dest in destinations]),
        )
        await set_setting("days_ahead", str(days_ahead))
        await set_setting("clone_prefix", prefix)

    return _configure


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    from calmirror.main import app

    with TestClient(app) as c:
        yield c
