"""Sync status and control API endpoints."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from calmirror.database import get_database
from calmirror.sync.configuration import load_sync_configuration
from calmirror.sync.engine import cleanup_beyond_window, run_sync
from calmirror.sync.lock import SYNC_JOB_NAME, is_job_locked
from calmirror.sync.models import MAX_DAYS_AHEAD, ConfigurationError, SyncResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class SyncStatusResponse(BaseModel):
    """Overall sync status."""
    enabled: bool
    running: bool
    last_sync: Optional[str] = None
    source_calendars: int = 0
    destination_calendars: int = 0
    configuration_error: Optional[str] = None


class SyncLogEntry(BaseModel):
    """Sync log entry."""
    id: int
    action: str
    status: str
    calendar_id: Optional[str] = None
    details: Optional[dict] = None
    created_at: str


class SyncLogResponse(BaseModel):
    """Sync log response."""
    entries: list[SyncLogEntry]
    total: int
    page: int
    page_size: int


class CleanupRequest(BaseModel):
    """Explicit window-shrink cleanup."""
    old_days: int = Field(ge=0, le=MAX_DAYS_AHEAD)
    new_days: int = Field(ge=0, le=MAX_DAYS_AHEAD)


class RunSyncRequest(BaseModel):
    """Optional changed-calendar hint for a manual run."""
    calendar_id: Optional[str] = None


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status():
    """Get overall sync status."""
    running = await is_job_locked(SYNC_JOB_NAME)

    try:
        config = await load_sync_configuration(validate=False)
    except ConfigurationError as e:
        return SyncStatusResponse(enabled=False, running=running, configuration_error=str(e))

    problem = None
    try:
        config.require_runnable()
    except ConfigurationError as e:
        problem = str(e)

    return SyncStatusResponse(
        enabled=config.enabled,
        running=running,
        last_sync=config.last_sync_at.isoformat() if config.last_sync_at else None,
        source_calendars=len(config.source_calendar_ids),
        destination_calendars=len(config.destination_calendars),
        configuration_error=problem,
    )


@router.get("/log", response_model=SyncLogResponse)
async def get_sync_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    status_filter: Optional[str] = None,
):
    """Get sync activity log."""
    db = await get_database()

    query = "SELECT * FROM sync_log"
    params: list = []

    if status_filter:
        query += " WHERE status = ?"
        params.append(status_filter)

    count_query = query.replace("SELECT *", "SELECT COUNT(*)")
    cursor = await db.execute(count_query, params)
    total = (await cursor.fetchone())[0]

    query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([page_size, (page - 1) * page_size])

    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()

    entries = [
        SyncLogEntry(
            id=row["id"],
            action=row["action"],
            status=row["status"],
            calendar_id=row["calendar_id"],
            details=json.loads(row["details"]) if row["details"] else None,
            created_at=row["created_at"],
        )
        for row in rows
    ]

    return SyncLogResponse(
        entries=entries,
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("", response_model=SyncResult)
async def sync_now(request: Optional[RunSyncRequest] = None):
    """Run a sync immediately and report its outcome."""
    hint = request.calendar_id if request else None
    return await run_sync(hint=hint)


@router.post("/cleanup", response_model=SyncResult)
async def cleanup_now(request: CleanupRequest):
    """Remove clones between new_days and old_days from every destination."""
    return await cleanup_beyond_window(request.old_days, request.new_days)
