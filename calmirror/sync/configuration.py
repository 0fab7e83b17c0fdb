"""Loading and saving the sync configuration through the settings store."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from calmirror.config import get_settings
from calmirror.database import get_setting, set_setting
from calmirror.sync.models import (
    MAX_DAYS_AHEAD,
    ConfigurationError,
    DestinationCalendar,
    SyncConfiguration,
)

logger = logging.getLogger(__name__)

KEY_ENABLED = "sync_enabled"
KEY_SOURCES = "source_calendars"
KEY_DESTINATIONS = "destination_calendars"
KEY_DAYS_AHEAD = "days_ahead"
KEY_CLONE_PREFIX = "clone_prefix"
KEY_LAST_SYNC_AT = "last_sync_at"
KEY_QUIET_CALENDARS = "quiet_calendars"


def _parse_json_list(key: str, raw: Optional[str]) -> list[Any]:
    if raw is None or raw == "":
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Setting '{key}' is not valid JSON: {e}") from e
    if not isinstance(value, list):
        raise ConfigurationError(f"Setting '{key}' must be a JSON list")
    return value


def _parse_sources(raw: Optional[str]) -> frozenset[str]:
    items = _parse_json_list(KEY_SOURCES, raw)
    if not all(isinstance(item, str) for item in items):
        raise ConfigurationError(f"Setting '{KEY_SOURCES}' must contain calendar ids")
    return frozenset(items)


def _parse_destinations(raw: Optional[str]) -> tuple[DestinationCalendar, ...]:
    destinations: list[DestinationCalendar] = []
    seen: set[str] = set()

    for item in _parse_json_list(KEY_DESTINATIONS, raw):
        if isinstance(item, str):
            item = {"id": item}
        if not isinstance(item, dict) or not isinstance(item.get("id"), str):
            raise ConfigurationError(
                f"Setting '{KEY_DESTINATIONS}' entries need a string 'id'"
            )
        if item["id"] in seen:
            continue
        seen.add(item["id"])
        destinations.append(DestinationCalendar(
            id=item["id"],
            mirror_external_names=bool(item.get("mirror_external_names", True)),
        ))

    return tuple(destinations)


def _parse_days_ahead(raw: Optional[str]) -> int:
    if raw is None or raw == "":
        return get_settings().default_days_ahead
    try:
        days = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Setting '{KEY_DAYS_AHEAD}' must be an integer, got {raw!r}") from e
    if not 0 <= days <= MAX_DAYS_AHEAD:
        raise ConfigurationError(
            f"Setting '{KEY_DAYS_AHEAD}' must be between 0 and {MAX_DAYS_AHEAD}, got {days}"
        )
    return days


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.warning(f"Ignoring unreadable {KEY_LAST_SYNC_AT} value: {raw!r}")
        return None


async def load_sync_configuration(validate: bool = True) -> SyncConfiguration:
    """
    Read the current settings into an immutable SyncConfiguration.

    With validate=True an enabled configuration lacking sources or
    destinations raises ConfigurationError. Malformed stored values always do.
    """
    settings = get_settings()

    prefix = await get_setting(KEY_CLONE_PREFIX)
    if prefix is None:
        prefix = settings.default_clone_prefix

    try:
        config = SyncConfiguration(
            enabled=(await get_setting(KEY_ENABLED)) == "true",
            source_calendar_ids=_parse_sources(await get_setting(KEY_SOURCES)),
            destination_calendars=_parse_destinations(await get_setting(KEY_DESTINATIONS)),
            days_ahead=_parse_days_ahead(await get_setting(KEY_DAYS_AHEAD)),
            clone_prefix=prefix,
            last_sync_at=_parse_timestamp(await get_setting(KEY_LAST_SYNC_AT)),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sync configuration: {e}") from e

    if validate:
        config.require_runnable()
    return config


async def set_sync_enabled(enabled: bool) -> None:
    await set_setting(KEY_ENABLED, "true" if enabled else "false")


async def set_days_ahead(days: int) -> None:
    if not 0 <= days <= MAX_DAYS_AHEAD:
        raise ConfigurationError(f"days_ahead must be between 0 and {MAX_DAYS_AHEAD}, got {days}")
    await set_setting(KEY_DAYS_AHEAD, str(days))


async def set_clone_prefix(prefix: str) -> None:
    if not prefix:
        logger.warning("Clone prefix set to an empty string; every event will look like a clone")
    await set_setting(KEY_CLONE_PREFIX, prefix)


async def set_source_calendar(calendar_id: str, enabled: bool) -> list[str]:
    """Add or remove a source calendar. Returns the stored list."""
    sources = _parse_json_list(KEY_SOURCES, await get_setting(KEY_SOURCES))

    if enabled and calendar_id not in sources:
        sources.append(calendar_id)
    elif not enabled:
        sources = [source for source in sources if source != calendar_id]

    await set_setting(KEY_SOURCES, json.dumps(sources))
    return sources


async def set_destination_calendar(
    calendar_id: str,
    enabled: bool,
    mirror_external_names: bool = True,
) -> list[dict]:
    """Add, update or remove a destination calendar. Returns the stored list."""
    destinations = [
        dest.model_dump()
        for dest in _parse_destinations(await get_setting(KEY_DESTINATIONS))
    ]

    if enabled:
        for dest in destinations:
            if dest["id"] == calendar_id:
                dest["mirror_external_names"] = mirror_external_names
                break
        else:
            destinations.append({
                "id": calendar_id,
                "mirror_external_names": mirror_external_names,
            })
    else:
        destinations = [dest for dest in destinations if dest["id"] != calendar_id]

    await set_setting(KEY_DESTINATIONS, json.dumps(destinations))
    return destinations


async def record_last_sync(moment: datetime) -> None:
    await set_setting(KEY_LAST_SYNC_AT, moment.isoformat())


async def _load_quiet_calendars() -> dict[str, str]:
    raw = await get_setting(KEY_QUIET_CALENDARS)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring unreadable {KEY_QUIET_CALENDARS} value")
        return {}
    return value if isinstance(value, dict) else {}


async def mark_calendars_quiet(calendar_ids: list[str], until: datetime) -> None:
    """
    Remember calendars the engine just wrote clones into.

    Push notifications for them are ignored until `until`, so a run is not
    retriggered by its own writes.
    """
    now = datetime.now(timezone.utc)
    quiet = {}
    for calendar_id, deadline in (await _load_quiet_calendars()).items():
        expires = _parse_timestamp(deadline)
        if expires is not None and expires > now:
            quiet[calendar_id] = deadline
    for calendar_id in calendar_ids:
        quiet[calendar_id] = until.isoformat()
    await set_setting(KEY_QUIET_CALENDARS, json.dumps(quiet))


async def is_calendar_quiet(calendar_id: str, now: Optional[datetime] = None) -> bool:
    """Whether changes to a calendar are still attributed to the last run."""
    if now is None:
        now = datetime.now(timezone.utc)
    deadline = _parse_timestamp((await _load_quiet_calendars()).get(calendar_id))
    return deadline is not None and now < deadline
