"""Tests for cleanup_beyond_window."""

from datetime import timedelta

import pytest

from calmirror.sync.models import SyncStatus

A = "a@example.com"
B = "b@example.com"


@pytest.mark.asyncio
async def test_removes_only_clones_in_the_dropped_range(gateway, configure_sync, now):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], [B], days_ahead=7)
    gateway.add_event(B, "* Inside new window", now + timedelta(days=3))
    gateway.add_event(B, "* Dropped", now + timedelta(days=10))
    gateway.add_event(B, "* Also dropped", now + timedelta(days=29))
    gateway.add_event(B, "* Past old window", now + timedelta(days=40))
    gateway.add_event(B, "Organic", now + timedelta(days=10))

    result = await cleanup_beyond_window(old_days=30, new_days=7, gateway=gateway)

    assert result.status == SyncStatus.SUCCESS
    assert result.mode == "cleanup"
    assert result.clones_deleted == 2
    assert gateway.titles(B) == ["* Inside new window", "Organic", "* Past old window"]


@pytest.mark.asyncio
async def test_new_days_defaults_to_configured_window(gateway, configure_sync, now):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], [B], days_ahead=14)
    gateway.add_event(B, "* Keep", now + timedelta(days=13))
    gateway.add_event(B, "* Drop", now + timedelta(days=20))

    result = await cleanup_beyond_window(old_days=60, gateway=gateway)

    assert result.status == SyncStatus.SUCCESS
    assert gateway.titles(B) == ["* Keep"]


@pytest.mark.asyncio
async def test_source_calendars_are_not_cleaned(gateway, configure_sync, now):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], [B], days_ahead=7)
    gateway.add_event(A, "* Looks like a clone", now + timedelta(days=10))

    await cleanup_beyond_window(old_days=30, new_days=7, gateway=gateway)

    assert gateway.titles(A) == ["* Looks like a clone"]
    assert ("get_events", A) not in gateway.calls


@pytest.mark.asyncio
@pytest.mark.parametrize("old_days,new_days", [(7, 7), (7, 30), (None, 7)])
async def test_window_that_did_not_shrink_is_noop(gateway, configure_sync, now, old_days, new_days):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], [B], days_ahead=7)
    gateway.add_event(B, "* Clone", now + timedelta(days=10))

    result = await cleanup_beyond_window(old_days=old_days, new_days=new_days, gateway=gateway)

    assert result.status == SyncStatus.NOOP
    assert gateway.calls == []
    assert gateway.titles(B) == ["* Clone"]


@pytest.mark.asyncio
async def test_negative_window_is_configuration_error(gateway, configure_sync):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], [B])

    result = await cleanup_beyond_window(old_days=30, new_days=-1, gateway=gateway)

    assert result.status == SyncStatus.CONFIGURATION_ERROR
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_no_destinations_is_noop(gateway, configure_sync):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], [], enabled=False)

    result = await cleanup_beyond_window(old_days=30, new_days=7, gateway=gateway)

    assert result.status == SyncStatus.NOOP
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_inaccessible_destination_is_recorded(gateway, configure_sync, now):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], ["gone@example.com", B], days_ahead=7)
    gateway.add_event(B, "* Dropped", now + timedelta(days=10))

    result = await cleanup_beyond_window(old_days=30, new_days=7, gateway=gateway)

    assert result.status == SyncStatus.SUCCESS
    assert result.errors == ["destination:gone@example.com:CalendarAccessError"]
    assert gateway.titles(B) == []


@pytest.mark.asyncio
async def test_cleanup_is_logged(gateway, configure_sync, now):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], [B], days_ahead=7)

    await cleanup_beyond_window(old_days=30, new_days=7, gateway=gateway)

    assert await _logged_actions() == [("cleanup", "success")]


async def _logged_actions():
    from calmirror.database import get_database

    db = await get_database()
    cursor = await db.execute("SELECT action, status FROM sync_log")
    return [tuple(row) for row in await cursor.fetchall()]


@pytest.mark.asyncio
async def test_oversized_old_window_is_configuration_error(gateway, configure_sync):
    from calmirror.sync.engine import cleanup_beyond_window

    await configure_sync([A], [B], days_ahead=7)

    result = await cleanup_beyond_window(old_days=10**9, new_days=7, gateway=gateway)

    assert result.status == SyncStatus.CONFIGURATION_ERROR
    assert gateway.calls == []
