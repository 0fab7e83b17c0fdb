"""Periodic sync and webhook maintenance jobs."""

import logging
from datetime import datetime, timedelta

from calmirror.database import get_database

logger = logging.getLogger(__name__)


async def run_periodic_sync() -> None:
    """Run a full sync on the time-based cadence."""
    from calmirror.sync.engine import run_sync

    result = await run_sync()
    logger.info(f"Periodic sync finished: {result.status.value} - {result.summary}")


async def renew_expiring_webhooks() -> None:
    """Renew push channels expiring within 24 hours, dropping those for removed sources."""
    db = await get_database()
    threshold = (datetime.utcnow() + timedelta(hours=24)).isoformat()

    cursor = await db.execute(
        """SELECT * FROM webhook_channels WHERE expiration < ?""",
        (threshold,)
    )
    expiring = await cursor.fetchall()

    if not expiring:
        logger.debug("No webhooks need renewal")
        return

    logger.info(f"Renewing {len(expiring)} expiring webhooks")

    from calmirror.api.webhooks import register_webhook_channel, stop_webhook_channel
    from calmirror.sync.configuration import load_sync_configuration
    from calmirror.sync.google_calendar import get_calendar_gateway

    config = await load_sync_configuration(validate=False)
    gateway = get_calendar_gateway()

    for webhook in expiring:
        try:
            await stop_webhook_channel(webhook["channel_id"], webhook["resource_id"], gateway)

            if webhook["calendar_id"] not in config.source_calendar_ids:
                logger.info(f"Calendar {webhook['calendar_id']} is no longer a source, not renewing")
                continue

            await register_webhook_channel(webhook["calendar_id"], gateway)
            logger.info(f"Renewed webhook for calendar {webhook['calendar_id']}")

        except Exception as e:
            logger.error(f"Failed to renew webhook {webhook['channel_id']}: {e}")


async def ensure_source_webhooks() -> None:
    """Register channels for enabled source calendars that have none."""
    from calmirror.api.webhooks import register_webhook_channel
    from calmirror.sync.configuration import load_sync_configuration
    from calmirror.sync.google_calendar import get_calendar_gateway

    config = await load_sync_configuration(validate=False)
    if not config.enabled:
        logger.debug("Sync is disabled, not registering webhooks")
        return

    db = await get_database()
    cursor = await db.execute("SELECT DISTINCT calendar_id FROM webhook_channels")
    watched = {row["calendar_id"] for row in await cursor.fetchall()}

    missing = sorted(config.source_calendar_ids - watched)
    if not missing:
        return

    gateway = get_calendar_gateway()
    for calendar_id in missing:
        try:
            await register_webhook_channel(calendar_id, gateway)
        except Exception as e:
            logger.error(f"Failed to register webhook for calendar {calendar_id}: {e}")
