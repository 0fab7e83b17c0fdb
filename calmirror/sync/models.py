"""Value types shared by the sync engine, the gateway and the API."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Keeps now + days_ahead well inside datetime range
MAX_DAYS_AHEAD = 3650


class ConfigurationError(Exception):
    """Stored settings cannot be turned into a runnable sync configuration."""


class SyncStatus(str, Enum):
    """Outcome of a sync or cleanup invocation."""
    SUCCESS = "success"
    NOOP = "noop"
    ALREADY_RUNNING = "already_running"
    CONFIGURATION_ERROR = "configuration_error"
    FAILED = "failed"


def is_clone(title: Optional[str], prefix: str) -> bool:
    """Check whether an event title carries the clone prefix.

    An empty prefix matches every title. That is a hazard of prefix tagging,
    not something this check tries to correct.
    """
    return (title or "").startswith(prefix)


class DestinationCalendar(BaseModel):
    """A calendar that receives clones."""
    model_config = ConfigDict(frozen=True)

    id: str
    mirror_external_names: bool = True


class SyncConfiguration(BaseModel):
    """Validated view over the stored settings, immutable for one run."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    source_calendar_ids: frozenset[str] = frozenset()
    destination_calendars: tuple[DestinationCalendar, ...] = ()
    days_ahead: int = Field(default=60, ge=0, le=MAX_DAYS_AHEAD)
    clone_prefix: str = "* "
    last_sync_at: Optional[datetime] = None

    @property
    def destination_ids(self) -> list[str]:
        return [dest.id for dest in self.destination_calendars]

    def require_runnable(self) -> None:
        """Raise ConfigurationError if an enabled sync has nothing to work with."""
        if not self.enabled:
            return
        if not self.source_calendar_ids:
            raise ConfigurationError("Sync is enabled but no source calendars are selected")
        if not self.destination_calendars:
            raise ConfigurationError("Sync is enabled but no destination calendars are selected")


class SyncWindow(BaseModel):
    """Half-open range [start, end) a run operates on."""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


class CalendarEvent(BaseModel):
    """An event as returned by the calendar gateway."""
    id: str
    calendar_id: str
    title: str = ""
    start: datetime
    end: datetime
    all_day: bool = False
    time_zone: Optional[str] = None
    description: str = ""
    location: str = ""


class SyncResult(BaseModel):
    """Structured outcome returned to whoever invoked the engine."""
    status: SyncStatus
    summary: str
    mode: Optional[str] = None
    hint: Optional[str] = None
    clones_deleted: int = 0
    clones_created: int = 0
    destinations_processed: int = 0
    calendars_written: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
