"""Worker: release delivery claims left behind by a replica that died mid-attempt."""
from __future__ import annotations

from datetime import datetime, timedelta

from aiohttp import web

from webhook_service.services.dependencies import get_engine


async def webhook_reclaim_stuck(app: web.Application, now: datetime) -> str | None:
    """Clear claims older than ``webhook_claim_stale_minutes`` so the delivery can be retried."""
    engine = get_engine(app)
    cutoff = now - timedelta(minutes=engine.settings.webhook_claim_stale_minutes)
    reclaimed = await engine.deliveries.release_stale_claims(cutoff)
    return f"reclaimed={reclaimed}" if reclaimed else None
