"""Settings API: the JSON counterpart of the sync settings panel."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from calmirror.sync.configuration import (
    load_sync_configuration,
    set_clone_prefix,
    set_days_ahead,
    set_destination_calendar,
    set_source_calendar,
    set_sync_enabled,
)
from calmirror.sync.models import MAX_DAYS_AHEAD, ConfigurationError, DestinationCalendar, SyncResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/settings", tags=["settings"])


class SettingsResponse(BaseModel):
    """Current sync settings."""
    enabled: bool
    days_ahead: int
    clone_prefix: str
    source_calendars: list[str]
    destination_calendars: list[DestinationCalendar]
    last_sync_at: Optional[datetime] = None
    cleanup: Optional[SyncResult] = None


class SettingsUpdate(BaseModel):
    """Partial settings update."""
    enabled: Optional[bool] = None
    days_ahead: Optional[int] = Field(default=None, ge=0, le=MAX_DAYS_AHEAD)
    clone_prefix: Optional[str] = Field(default=None, min_length=1)


class SourceToggle(BaseModel):
    enabled: bool


class DestinationToggle(BaseModel):
    enabled: bool
    mirror_external_names: bool = True


async def _current_settings(cleanup: Optional[SyncResult] = None) -> SettingsResponse:
    try:
        config = await load_sync_configuration(validate=False)
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Stored settings are invalid: {e}",
        )

    return SettingsResponse(
        enabled=config.enabled,
        days_ahead=config.days_ahead,
        clone_prefix=config.clone_prefix,
        source_calendars=sorted(config.source_calendar_ids),
        destination_calendars=list(config.destination_calendars),
        last_sync_at=config.last_sync_at,
        cleanup=cleanup,
    )


@router.get("", response_model=SettingsResponse)
async def get_settings_view():
    """Get the current sync settings."""
    return await _current_settings()


@router.patch("", response_model=SettingsResponse)
async def update_settings(update: SettingsUpdate):
    """
    Update sync settings.

    Shrinking days_ahead removes clones that now fall outside the window.
    """
    cleanup = None

    if update.days_ahead is not None:
        try:
            old_days = (await load_sync_configuration(validate=False)).days_ahead
        except ConfigurationError as e:
            logger.warning(f"Replacing unreadable settings, skipping cleanup: {e}")
            old_days = None

        await set_days_ahead(update.days_ahead)

        if old_days is not None and update.days_ahead < old_days:
            from calmirror.sync.engine import cleanup_beyond_window
            cleanup = await cleanup_beyond_window(old_days, update.days_ahead)

    if update.clone_prefix is not None:
        await set_clone_prefix(update.clone_prefix)

    if update.enabled is not None:
        await set_sync_enabled(update.enabled)
        logger.info(f"Sync {'enabled' if update.enabled else 'disabled'}")

    return await _current_settings(cleanup)


@router.put("/sources/{calendar_id}", response_model=SettingsResponse)
async def toggle_source_calendar(calendar_id: str, toggle: SourceToggle):
    """Select or deselect a calendar to sync from."""
    await set_source_calendar(calendar_id, toggle.enabled)

    # Push channels follow the source list while sync is on
    config = await load_sync_configuration(validate=False)
    if config.enabled:
        from calmirror.api.webhooks import register_source_webhooks
        from calmirror.config import get_settings
        from calmirror.utils.tasks import create_background_task

        if get_settings().enable_webhooks:
            create_background_task(register_source_webhooks(), "refresh_source_webhooks")

    return await _current_settings()


@router.put("/destinations/{calendar_id}", response_model=SettingsResponse)
async def toggle_destination_calendar(calendar_id: str, toggle: DestinationToggle):
    """Select or deselect a calendar to sync to."""
    await set_destination_calendar(
        calendar_id,
        toggle.enabled,
        mirror_external_names=toggle.mirror_external_names,
    )
    return await _current_settings()
