"""Worker: requeue webhook deliveries that fell out of the delivery queue."""
from __future__ import annotations

from datetime import datetime, timedelta

from aiohttp import web

from webhook_service.services.dependencies import get_engine


async def webhook_requeue_orphans(app: web.Application, now: datetime) -> str | None:
    """Queue pending/retrying deliveries overdue by more than ``webhook_orphan_grace_minutes``."""
    engine = get_engine(app)
    grace = timedelta(minutes=engine.settings.webhook_orphan_grace_minutes)
    requeued = await engine.worker.requeue_orphans(now, grace)
    return f"requeued={requeued}" if requeued else None
