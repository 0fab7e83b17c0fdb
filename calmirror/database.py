"""Database connection and schema management."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from calmirror.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- Key/value settings for the running principal
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Audit log of sync runs and cleanups
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    calendar_id TEXT,
    details TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_log_created ON sync_log(created_at);

-- Push notification channels registered on source calendars
CREATE TABLE IF NOT EXISTS webhook_channels (
    id INTEGER PRIMARY KEY,
    calendar_id TEXT NOT NULL,
    channel_id TEXT NOT NULL UNIQUE,
    resource_id TEXT NOT NULL,
    token TEXT NOT NULL DEFAULT '',
    expiration TIMESTAMP NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_webhook_expiration ON webhook_channels(expiration);

-- Job locking (single-run guard)
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")


async def get_setting(key: str) -> Optional[str]:
    """Get a setting value by key, or None when it was never stored."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT value FROM settings WHERE key = ?", (key,)
    )
    row = await cursor.fetchone()
    if row:
        return row["value"]
    return None


async def set_setting(key: str, value: str) -> None:
    """Set a setting value."""
    db = await get_database()
    now = datetime.utcnow().isoformat()

    await db.execute(
        """INSERT INTO settings (key, value, updated_at)
           VALUES (?, ?, ?)
           ON CONFLICT(key) DO UPDATE SET
           value = excluded.value,
           updated_at = excluded.updated_at""",
        (key, value, now)
    )
    await db.commit()


async def log_sync_action(
    action: str,
    status: str,
    details: Optional[dict] = None,
    calendar_id: Optional[str] = None,
) -> None:
    """Append an entry to the sync audit log."""
    db = await get_database()
    await db.execute(
        """INSERT INTO sync_log (action, status, calendar_id, details)
           VALUES (?, ?, ?, ?)""",
        (action, status, calendar_id, json.dumps(details) if details is not None else None)
    )
    await db.commit()
