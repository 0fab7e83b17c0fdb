"""Tests for the persisted single-run guard."""

import asyncio
from datetime import datetime, timedelta

import pytest

from calmirror.sync.models import DestinationCalendar, SyncConfiguration, SyncStatus


@pytest.mark.asyncio
async def test_acquire_and_release(test_db):
    from calmirror.sync.lock import acquire_job_lock, is_job_locked, release_job_lock

    assert await acquire_job_lock("demo") is True
    assert await is_job_locked("demo") is True
    assert await acquire_job_lock("demo") is False

    await release_job_lock("demo")

    assert await is_job_locked("demo") is False
    assert await acquire_job_lock("demo") is True


@pytest.mark.asyncio
async def test_locks_are_per_job_name(test_db):
    from calmirror.sync.lock import acquire_job_lock

    assert await acquire_job_lock("first") is True
    assert await acquire_job_lock("second") is True


@pytest.mark.asyncio
async def test_stale_lock_is_reclaimed(test_db):
    from calmirror.sync.lock import acquire_job_lock

    stale = (datetime.utcnow() - timedelta(minutes=45)).isoformat()
    await test_db.execute(
        "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
        ("demo", stale, "crashed-host:1"),
    )
    await test_db.commit()

    assert await acquire_job_lock("demo", timeout_minutes=30) is True

    cursor = await test_db.execute("SELECT locked_by FROM job_locks WHERE job_name = 'demo'")
    row = await cursor.fetchone()
    assert row["locked_by"] != "crashed-host:1"


@pytest.mark.asyncio
async def test_fresh_lock_is_not_reclaimed(test_db):
    from calmirror.sync.lock import acquire_job_lock

    recent = (datetime.utcnow() - timedelta(minutes=5)).isoformat()
    await test_db.execute(
        "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
        ("demo", recent, "other-host:1"),
    )
    await test_db.commit()

    assert await acquire_job_lock("demo", timeout_minutes=30) is False


@pytest.mark.asyncio
async def test_job_lock_releases_on_exception(test_db):
    from calmirror.sync.lock import is_job_locked, job_lock

    with pytest.raises(RuntimeError):
        async with job_lock("demo") as acquired:
            assert acquired is True
            raise RuntimeError("boom")

    assert await is_job_locked("demo") is False


@pytest.mark.asyncio
async def test_job_lock_does_not_release_someone_elses_lock(test_db):
    from calmirror.sync.lock import acquire_job_lock, is_job_locked, job_lock

    assert await acquire_job_lock("demo") is True

    async with job_lock("demo") as acquired:
        assert acquired is False

    assert await is_job_locked("demo") is True


@pytest.mark.asyncio
async def test_run_sync_while_locked_touches_nothing(gateway, configure_sync):
    from calmirror.sync.engine import run_sync
    from calmirror.sync.lock import SYNC_JOB_NAME, acquire_job_lock

    await configure_sync(["a@example.com"], ["b@example.com"])
    await acquire_job_lock(SYNC_JOB_NAME)

    result = await run_sync(gateway=gateway)

    assert result.status == SyncStatus.ALREADY_RUNNING
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_overlapping_runs_are_mutually_exclusive(gateway, test_db, monkeypatch):
    from calmirror.sync.engine import run_sync
    from calmirror.sync.lock import SYNC_JOB_NAME, is_job_locked

    entered = asyncio.Event()
    proceed = asyncio.Event()

    async def slow_config(validate=True):
        entered.set()
        await proceed.wait()
        return SyncConfiguration(
            enabled=True,
            source_calendar_ids=frozenset({"a@example.com"}),
            destination_calendars=(DestinationCalendar(id="b@example.com"),),
        )

    monkeypatch.setattr("calmirror.sync.engine.load_sync_configuration", slow_config)

    first = asyncio.create_task(run_sync(gateway=gateway))
    await entered.wait()

    second = await run_sync(hint="a@example.com", gateway=gateway)
    assert second.status == SyncStatus.ALREADY_RUNNING
    assert gateway.calls == []

    proceed.set()
    first_result = await first

    assert first_result.status == SyncStatus.SUCCESS
    assert await is_job_locked(SYNC_JOB_NAME) is False
