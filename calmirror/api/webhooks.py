"""Webhook receiver and channel management for Google Calendar push notifications."""

import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta

from fastapi import APIRouter, Header, HTTPException, Request, status

from calmirror.config import get_settings
from calmirror.database import get_database
from calmirror.utils.rate_limit import limiter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/google-calendar")
@limiter.limit(f"{get_settings().webhook_rate_limit_per_minute}/minute")
async def receive_google_calendar_webhook(
    request: Request,
    x_goog_channel_id: str = Header(None, alias="X-Goog-Channel-ID"),
    x_goog_channel_token: str = Header(None, alias="X-Goog-Channel-Token"),
    x_goog_resource_id: str = Header(None, alias="X-Goog-Resource-ID"),
    x_goog_resource_state: str = Header(None, alias="X-Goog-Resource-State"),
):
    """
    Receive push notifications from Google Calendar.

    Google only tells us that a watched calendar changed. The calendar id
    becomes the hint for a targeted sync, run in the background.
    """
    if not x_goog_channel_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing channel ID"
        )

    logger.info(
        f"Webhook received: channel={x_goog_channel_id}, "
        f"resource={x_goog_resource_id}, state={x_goog_resource_state}"
    )

    # Sent once when the channel is first registered
    if x_goog_resource_state == "sync":
        return {"status": "ok"}

    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM webhook_channels WHERE channel_id = ?""",
        (x_goog_channel_id,)
    )
    channel = await cursor.fetchone()

    if not channel:
        logger.warning(f"Unknown webhook channel: {x_goog_channel_id}")
        # Don't return error - Google will keep retrying
        return {"status": "ok", "message": "Unknown channel"}

    stored_token = channel["token"] or ""
    if stored_token and not hmac.compare_digest(stored_token, x_goog_channel_token or ""):
        logger.warning(f"Webhook token mismatch for channel {x_goog_channel_id}")
        return {"status": "ok"}

    if (
        x_goog_resource_id
        and channel["resource_id"]
        and x_goog_resource_id != channel["resource_id"]
    ):
        logger.warning(
            f"Webhook resource mismatch for channel {x_goog_channel_id}: "
            f"expected={channel['resource_id']} got={x_goog_resource_id}"
        )
        return {"status": "ok", "message": "Resource mismatch"}

    expiry = datetime.fromisoformat(channel["expiration"])
    if datetime.utcnow() > expiry:
        logger.warning(f"Expired webhook channel: {x_goog_channel_id}, cleaning up")
        await db.execute(
            "DELETE FROM webhook_channels WHERE channel_id = ?",
            (x_goog_channel_id,)
        )
        await db.commit()
        return {"status": "ok", "message": "Channel expired and removed"}

    calendar_id = channel["calendar_id"]

    from calmirror.sync.configuration import is_calendar_quiet

    # Clone writes into a watched calendar notify us too
    if await is_calendar_quiet(calendar_id):
        logger.info(f"Ignoring notification for {calendar_id} caused by the last sync")
        return {"status": "ok", "message": "Own changes ignored"}

    try:
        from calmirror.sync.engine import run_sync
        from calmirror.utils.tasks import create_background_task

        create_background_task(run_sync(hint=calendar_id), f"sync_calendar_{calendar_id}")
        logger.info(f"Sync triggered for changed calendar {calendar_id}")
    except Exception as e:
        logger.exception(f"Failed to trigger sync from webhook: {e}")
        # Still return OK to avoid Google retrying
        return {"status": "ok", "message": "Sync trigger failed"}

    return {"status": "ok"}


@router.post("/register")
async def register_webhooks():
    """(Re)install push channels for every source calendar."""
    summary = await register_source_webhooks()
    if summary["registered"] == 0 and summary["errors"]:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"No channels registered: {', '.join(summary['errors'])}",
        )
    return summary


async def register_webhook_channel(calendar_id: str, gateway) -> dict:
    """
    Register a push channel for one calendar and store it.

    Returns the channel info including expiration time.
    """
    settings = get_settings()
    channel_id = str(uuid.uuid4())
    channel_token = secrets.token_urlsafe(32)
    webhook_url = f"{settings.public_url}/api/webhooks/google-calendar"

    # Google caps channel lifetime at 7 days
    expiration = datetime.utcnow() + timedelta(days=settings.webhook_channel_days)

    result = gateway.watch_events(
        calendar_id,
        channel_id=channel_id,
        address=webhook_url,
        token=channel_token,
        expiration=expiration,
    )

    db = await get_database()
    await db.execute(
        """INSERT INTO webhook_channels
           (calendar_id, channel_id, resource_id, token, expiration)
           VALUES (?, ?, ?, ?, ?)""",
        (
            calendar_id,
            channel_id,
            result["resourceId"],
            channel_token,
            expiration.isoformat(),
        )
    )
    await db.commit()

    logger.info(f"Registered webhook channel {channel_id} for calendar {calendar_id}")

    return {
        "channel_id": channel_id,
        "resource_id": result["resourceId"],
        "expiration": expiration.isoformat(),
    }


async def stop_webhook_channel(channel_id: str, resource_id: str, gateway) -> bool:
    """Stop (unregister) a push channel and forget it."""
    try:
        gateway.stop_channel(channel_id, resource_id)
    except Exception as e:
        logger.warning(f"Failed to stop webhook channel {channel_id}: {e}")
        return False

    db = await get_database()
    await db.execute(
        "DELETE FROM webhook_channels WHERE channel_id = ?",
        (channel_id,)
    )
    await db.commit()

    logger.info(f"Stopped webhook channel {channel_id}")
    return True


async def register_source_webhooks(gateway=None) -> dict:
    """Replace all push channels with one channel per configured source calendar."""
    from calmirror.sync.configuration import load_sync_configuration
    from calmirror.sync.google_calendar import get_calendar_gateway

    if gateway is None:
        gateway = get_calendar_gateway()

    db = await get_database()
    cursor = await db.execute("SELECT channel_id, resource_id FROM webhook_channels")
    for channel in await cursor.fetchall():
        await stop_webhook_channel(channel["channel_id"], channel["resource_id"], gateway)

    config = await load_sync_configuration(validate=False)
    summary = {"registered": 0, "errors": []}

    if not config.source_calendar_ids:
        logger.info("No source calendars configured, no webhooks registered")
        summary["errors"].append("no_source_calendars")
        return summary

    for calendar_id in sorted(config.source_calendar_ids):
        try:
            await register_webhook_channel(calendar_id, gateway)
            summary["registered"] += 1
        except Exception as e:
            logger.error(f"Failed to register webhook for calendar {calendar_id}: {e}")
            summary["errors"].append(f"{calendar_id}:{type(e).__name__}")

    logger.info(f"Registered {summary['registered']} webhook channel(s)")
    return summary
