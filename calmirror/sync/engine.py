"""Core sync engine.

Every run tears down the clones a destination calendar holds inside the sync
window and recreates them from the current state of the source calendars.
Clones are recognised only by their title prefix, so there is no per-event
bookkeeping to keep consistent between runs.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from calmirror.config import get_settings
from calmirror.database import log_sync_action
from calmirror.sync.configuration import (
    load_sync_configuration,
    mark_calendars_quiet,
    record_last_sync,
)
from calmirror.sync.google_calendar import get_calendar_gateway
from calmirror.sync.lock import SYNC_JOB_NAME, job_lock
from calmirror.sync.models import (
    MAX_DAYS_AHEAD,
    CalendarEvent,
    ConfigurationError,
    SyncConfiguration,
    SyncResult,
    SyncStatus,
    SyncWindow,
    is_clone,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_sync_window(days_ahead: int, now: Optional[datetime] = None) -> SyncWindow:
    """Return the window [now, now + days_ahead days)."""
    if now is None:
        now = _utcnow()
    return SyncWindow(start=now, end=now + timedelta(days=days_ahead))


def _summarize(result: SyncResult) -> str:
    label = (result.mode or "sync").capitalize()
    summary = (
        f"{label} completed: {result.clones_deleted} clone(s) removed, "
        f"{result.clones_created} created across "
        f"{result.destinations_processed} destination calendar(s)"
    )
    if result.errors:
        summary += f" with {len(result.errors)} error(s)"
    return summary


async def _record_outcome(action: str, result: SyncResult, calendar_id: Optional[str] = None) -> None:
    """Write the outcome to the audit log without letting a log failure escape."""
    try:
        await log_sync_action(
            action,
            result.status.value,
            details=result.model_dump(mode="json", exclude={"status"}),
            calendar_id=calendar_id,
        )
    except Exception as e:
        logger.exception(f"Failed to record {action} outcome: {e}")


async def _quiet_written_calendars(result: SyncResult) -> None:
    """Ignore push notifications caused by this run's own clone writes for a while."""
    if not result.calendars_written:
        return
    until = _utcnow() + timedelta(seconds=get_settings().webhook_quiet_seconds)
    try:
        await mark_calendars_quiet(result.calendars_written, until)
    except Exception as e:
        logger.exception(f"Failed to record calendars written by the run: {e}")


def _source_events(
    gateway,
    source_id: str,
    config: SyncConfiguration,
    window: SyncWindow,
    result: SyncResult,
    cache: dict[str, list[CalendarEvent]],
) -> list[CalendarEvent]:
    """Events of a source calendar eligible for cloning, fetched once per run."""
    if source_id in cache:
        return cache[source_id]

    try:
        events = gateway.get_events(source_id, window.start, window.end)
    except Exception as e:
        logger.error(f"Cannot read source calendar {source_id}: {e}")
        result.errors.append(f"source:{source_id}:{type(e).__name__}")
        events = []

    # Never mirror a mirror, and never create a clone that starts outside the window
    eligible = [
        event for event in events
        if not is_clone(event.title, config.clone_prefix) and window.contains(event.start)
    ]
    cache[source_id] = eligible
    return eligible


def _rebuild_destination(
    gateway,
    destination_id: str,
    source_ids: Iterable[str],
    config: SyncConfiguration,
    window: SyncWindow,
    result: SyncResult,
    cache: dict[str, list[CalendarEvent]],
) -> None:
    """Delete every clone in the destination, then clone the given sources into it."""
    prefix = config.clone_prefix

    try:
        existing = gateway.get_events(destination_id, window.start, window.end)
    except Exception as e:
        logger.error(f"Cannot read destination calendar {destination_id}: {e}")
        result.errors.append(f"destination:{destination_id}:{type(e).__name__}")
        return

    clones = [event for event in existing if is_clone(event.title, prefix)]
    for clone in clones:
        try:
            gateway.delete_event(destination_id, clone.id)
            result.clones_deleted += 1
        except Exception as e:
            logger.error(f"Failed to delete clone {clone.id} from {destination_id}: {e}")
            result.errors.append(f"delete:{destination_id}:{type(e).__name__}")

    created = 0
    for source_id in source_ids:
        if source_id == destination_id:
            continue

        for event in _source_events(gateway, source_id, config, window, result, cache):
            try:
                gateway.create_event(
                    destination_id,
                    prefix + event.title,
                    event.start,
                    event.end,
                    description=event.description,
                    location=event.location,
                    all_day=event.all_day,
                    time_zone=event.time_zone,
                )
                created += 1
            except Exception as e:
                logger.error(
                    f"Failed to clone event {event.id} from {source_id} into {destination_id}: {e}"
                )
                result.errors.append(f"create:{destination_id}:{type(e).__name__}")

    result.clones_created += created
    result.destinations_processed += 1
    if (clones or created) and destination_id not in result.calendars_written:
        result.calendars_written.append(destination_id)
    logger.info(
        f"Rebuilt destination {destination_id}: removed {len(clones)} clone(s), created {created}"
    )


def full_sync(
    config: SyncConfiguration,
    window: SyncWindow,
    gateway,
    result: Optional[SyncResult] = None,
) -> SyncResult:
    """
    Rebuild clones in every destination calendar from every source calendar.

    A clone of an event already in progress still overlaps the window, so it
    is deleted, but its source starts before the window and is not cloned
    again. Ongoing meetings lose their mirror until they end.
    """
    if result is None:
        result = SyncResult(status=SyncStatus.SUCCESS, summary="", mode="full")

    if window.is_empty:
        logger.info("Sync window is empty, nothing to do")
        return result

    source_ids = sorted(config.source_calendar_ids)
    cache: dict[str, list[CalendarEvent]] = {}

    for destination in config.destination_calendars:
        _rebuild_destination(gateway, destination.id, source_ids, config, window, result, cache)

    return result


def targeted_sync(
    config: SyncConfiguration,
    window: SyncWindow,
    gateway,
    source_id: str,
    result: Optional[SyncResult] = None,
) -> SyncResult:
    """
    Rebuild clones in every destination calendar from a single source.

    Clones in a destination that came from other sources are removed and not
    regenerated; the prefix cannot tell which source a clone came from.
    Clones of events already in progress are dropped the same way as in
    full_sync.
    """
    if result is None:
        result = SyncResult(status=SyncStatus.SUCCESS, summary="", mode="targeted", hint=source_id)

    if source_id not in config.source_calendar_ids:
        logger.info(f"Calendar {source_id} is not a source calendar, nothing to do")
        return result

    if window.is_empty:
        logger.info("Sync window is empty, nothing to do")
        return result

    cache: dict[str, list[CalendarEvent]] = {}

    for destination in config.destination_calendars:
        if destination.id == source_id:
            continue
        _rebuild_destination(gateway, destination.id, [source_id], config, window, result, cache)

    return result


async def _run_locked(hint: Optional[str], gateway, started_at: datetime) -> SyncResult:
    try:
        config = await load_sync_configuration()
    except ConfigurationError as e:
        logger.error(f"Sync configuration rejected: {e}")
        result = SyncResult(
            status=SyncStatus.CONFIGURATION_ERROR,
            summary=str(e),
            hint=hint,
            started_at=started_at,
            finished_at=_utcnow(),
        )
        await _record_outcome("sync", result)
        return result

    if not config.enabled:
        logger.info("Sync is disabled, skipping")
        return SyncResult(
            status=SyncStatus.NOOP,
            summary="Sync is disabled",
            hint=hint,
            started_at=started_at,
            finished_at=_utcnow(),
        )

    if not config.clone_prefix:
        logger.warning("Clone prefix is empty; every event in a destination calendar counts as a clone")

    window = compute_sync_window(config.days_ahead, now=started_at)
    if gateway is None:
        gateway = get_calendar_gateway()

    logger.info(
        f"Starting sync: {len(config.source_calendar_ids)} source(s), "
        f"{len(config.destination_calendars)} destination(s), "
        f"window {window.start.isoformat()} -> {window.end.isoformat()}, "
        f"prefix {config.clone_prefix!r}"
    )

    if hint and hint in config.source_calendar_ids:
        result = SyncResult(
            status=SyncStatus.SUCCESS, summary="", mode="targeted", hint=hint, started_at=started_at
        )
        targeted_sync(config, window, gateway, hint, result)
    else:
        if hint:
            logger.info(f"Change hint {hint} is not a source calendar, running full sync")
        result = SyncResult(
            status=SyncStatus.SUCCESS, summary="", mode="full", hint=hint, started_at=started_at
        )
        full_sync(config, window, gateway, result)

    result.finished_at = _utcnow()
    result.summary = _summarize(result)

    await record_last_sync(result.finished_at)
    await _quiet_written_calendars(result)
    await _record_outcome(
        f"{result.mode}_sync", result, calendar_id=hint if result.mode == "targeted" else None
    )

    logger.info(result.summary)
    return result


async def run_sync(hint: Optional[str] = None, gateway=None) -> SyncResult:
    """
    Single entry point for every trigger.

    hint is the id of a calendar known to have changed. When it names a
    source calendar only that source is resynced; otherwise all of them are.
    Overlapping invocations return ALREADY_RUNNING without touching any
    calendar. Never raises.
    """
    started_at = _utcnow()

    try:
        async with job_lock(SYNC_JOB_NAME) as acquired:
            if not acquired:
                logger.info("Sync already running, skipping")
                return SyncResult(
                    status=SyncStatus.ALREADY_RUNNING,
                    summary="Sync already running; skipped",
                    hint=hint,
                    started_at=started_at,
                    finished_at=_utcnow(),
                )
            return await _run_locked(hint, gateway, started_at)
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        result = SyncResult(
            status=SyncStatus.FAILED,
            summary=f"Sync failed: {e}",
            hint=hint,
            errors=[f"run:{type(e).__name__}"],
            started_at=started_at,
            finished_at=_utcnow(),
        )
        await _record_outcome("sync", result)
        return result


async def cleanup_beyond_window(
    old_days: Optional[int] = None,
    new_days: Optional[int] = None,
    gateway=None,
) -> SyncResult:
    """
    Delete clones that a shrunken window no longer covers.

    Removes clone-tagged events starting in [now+new_days, now+old_days) from
    every destination calendar. new_days defaults to the configured
    days_ahead. Nothing is recreated. Never raises.
    """
    started_at = _utcnow()

    def _finish(status: SyncStatus, summary: str) -> SyncResult:
        return SyncResult(
            status=status,
            summary=summary,
            mode="cleanup",
            started_at=started_at,
            finished_at=_utcnow(),
        )

    try:
        config = await load_sync_configuration(validate=False)
        if new_days is None:
            new_days = config.days_ahead

        for days in (old_days, new_days):
            if days is not None and not 0 <= days <= MAX_DAYS_AHEAD:
                raise ConfigurationError(
                    f"Window sizes must be between 0 and {MAX_DAYS_AHEAD} "
                    f"(old={old_days}, new={new_days})"
                )
        if old_days is None or old_days <= new_days:
            return _finish(SyncStatus.NOOP, "Sync window did not shrink; nothing to clean up")
        if not config.destination_calendars:
            logger.info("No destination calendars configured for cleanup")
            return _finish(SyncStatus.NOOP, "No destination calendars configured")

        range_start = started_at + timedelta(days=new_days)
        range_end = started_at + timedelta(days=old_days)
        if gateway is None:
            gateway = get_calendar_gateway()

        logger.info(f"Cleaning clones from {range_start.isoformat()} to {range_end.isoformat()}")

        result = _finish(SyncStatus.SUCCESS, "")
        for destination in config.destination_calendars:
            try:
                events = gateway.get_events(destination.id, range_start, range_end)
            except Exception as e:
                logger.error(f"Cannot read destination calendar {destination.id} for cleanup: {e}")
                result.errors.append(f"destination:{destination.id}:{type(e).__name__}")
                continue

            deleted = 0
            for event in events:
                if not is_clone(event.title, config.clone_prefix):
                    continue
                if not range_start <= event.start < range_end:
                    continue
                try:
                    gateway.delete_event(destination.id, event.id)
                    result.clones_deleted += 1
                    deleted += 1
                    logger.info(f"Deleted obsolete clone {event.title!r} from {destination.id}")
                except Exception as e:
                    logger.error(f"Failed to delete clone {event.id} from {destination.id}: {e}")
                    result.errors.append(f"delete:{destination.id}:{type(e).__name__}")

            result.destinations_processed += 1
            if deleted:
                result.calendars_written.append(destination.id)

        result.finished_at = _utcnow()
        result.summary = _summarize(result)
        await _quiet_written_calendars(result)

    except ConfigurationError as e:
        logger.error(f"Cleanup rejected: {e}")
        result = _finish(SyncStatus.CONFIGURATION_ERROR, str(e))
    except Exception as e:
        logger.exception(f"Cleanup failed: {e}")
        result = _finish(SyncStatus.FAILED, f"Cleanup failed: {e}")
        result.errors.append(f"run:{type(e).__name__}")

    await _record_outcome("cleanup", result)
    return result
