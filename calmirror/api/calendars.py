"""Calendar listing API endpoints."""

import logging

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from calmirror.sync.configuration import load_sync_configuration
from calmirror.sync.google_calendar import get_calendar_gateway

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendars", tags=["calendars"])


class CalendarResponse(BaseModel):
    """A calendar visible to the running principal."""
    id: str
    display_name: str
    is_source: bool = False
    is_destination: bool = False


@router.get("", response_model=list[CalendarResponse])
async def list_calendars():
    """List the user's calendars, sorted by name, flagged with their sync role."""
    try:
        calendars = get_calendar_gateway().list_calendars()
    except Exception as e:
        logger.error(f"Failed to list calendars: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not list calendars"
        )

    config = await load_sync_configuration(validate=False)
    destination_ids = set(config.destination_ids)

    return sorted(
        (
            CalendarResponse(
                id=cal["id"],
                display_name=cal["display_name"],
                is_source=cal["id"] in config.source_calendar_ids,
                is_destination=cal["id"] in destination_ids,
            )
            for cal in calendars
        ),
        key=lambda cal: cal.display_name.lower(),
    )
