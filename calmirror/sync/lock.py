"""Persisted single-run guard for sync jobs."""

import logging
import os
import socket
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional

from calmirror.config import get_settings
from calmirror.database import get_database

logger = logging.getLogger(__name__)

SYNC_JOB_NAME = "calendar_sync"


def _lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def acquire_job_lock(job_name: str, timeout_minutes: Optional[int] = None) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    Locks older than timeout_minutes are considered abandoned and reclaimed.
    """
    if timeout_minutes is None:
        timeout_minutes = get_settings().sync_lock_timeout_minutes

    db = await get_database()
    now = datetime.utcnow()
    cutoff = (now - timedelta(minutes=timeout_minutes)).isoformat()

    cursor = await db.execute(
        """DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?""",
        (job_name, cutoff)
    )
    if cursor.rowcount:
        logger.warning(f"Reclaimed stale lock for job '{job_name}'")
    await db.commit()

    # The primary key makes this insert the atomic check-and-set
    try:
        await db.execute(
            """INSERT INTO job_locks (job_name, locked_at, locked_by)
               VALUES (?, ?, ?)""",
            (job_name, now.isoformat(), _lock_owner())
        )
        await db.commit()
        return True
    except sqlite3.IntegrityError:
        await db.rollback()
        return False


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()


async def is_job_locked(job_name: str) -> bool:
    db = await get_database()
    cursor = await db.execute(
        "SELECT 1 FROM job_locks WHERE job_name = ?", (job_name,)
    )
    return await cursor.fetchone() is not None


@asynccontextmanager
async def job_lock(job_name: str = SYNC_JOB_NAME) -> AsyncIterator[bool]:
    """
    Hold a job lock for the duration of the block.

    Yields whether the lock was acquired. The lock is released on every exit
    path, but only by the holder that acquired it.
    """
    acquired = await acquire_job_lock(job_name)
    try:
        yield acquired
    finally:
        if acquired:
            await release_job_lock(job_name)
