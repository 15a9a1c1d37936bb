"""Worker: purge old delivered webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timedelta

from aiohttp import web

from webhook_service.services.dependencies import get_engine


async def webhook_purge_delivered(app: web.Application, now: datetime) -> str | None:
    """Delete delivered chains older than ``webhook_delivered_retention_days`` (when set)."""
    engine = get_engine(app)
    retention_days = engine.settings.webhook_delivered_retention_days
    if retention_days is None:
        return None
    cutoff = now - timedelta(days=retention_days)
    purged = await engine.deliveries.delete_delivered_before(cutoff)
    return f"purged={purged}" if purged else None
