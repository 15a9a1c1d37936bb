"""Unit tests for webhook_service.workers task functions, run against the in-memory engine."""
from __future__ import annotations

from datetime import timedelta

import pytest
from aiohttp import web

from webhook_service.domain.dto import DeliveryFilter
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.models import EventEnvelope, utc_now
from webhook_service.services.dependencies import ENGINE_KEY, build_memory_engine
from webhook_service.services.dispatcher import EventDispatcher
from webhook_service.workers import (
    create_maintenance_worker,
    webhook_purge_delivered,
    webhook_reclaim_stuck,
    webhook_requeue_orphans,
)

from tests.utils import make_settings, make_subscription


def _app_for(engine) -> web.Application:
    app = web.Application()
    app[ENGINE_KEY] = engine
    return app


async def _dispatch_one(engine):
    subscription = await engine.subscriptions.create(make_subscription(engine.secret_store))
    dispatcher = EventDispatcher(engine.subscriptions, engine.deliveries, engine.queue)
    [delivery] = await dispatcher.dispatch(
        EventEnvelope(event_type="fault.created", organization_id=subscription.organization_id)
    )
    return delivery


# ---------------------------------------------------------------------------
# webhook_requeue_orphans
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_requeue_orphans_returns_summary(engine):
    delivery = await _dispatch_one(engine)
    engine.queue.discard(delivery.id)

    result = await webhook_requeue_orphans(_app_for(engine), utc_now() + timedelta(hours=1))

    assert result == "requeued=1"
    assert delivery.id in engine.queue


@pytest.mark.asyncio
async def test_requeue_orphans_ignores_queued_and_recent(engine):
    delivery = await _dispatch_one(engine)

    assert await webhook_requeue_orphans(_app_for(engine), utc_now() + timedelta(hours=1)) is None

    engine.queue.discard(delivery.id)
    assert await webhook_requeue_orphans(_app_for(engine), utc_now()) is None


# ---------------------------------------------------------------------------
# webhook_reclaim_stuck
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reclaim_releases_stale_claims(engine):
    delivery = await _dispatch_one(engine)
    engine.queue.discard(delivery.id)
    await engine.deliveries.claim(delivery.id)
    app = _app_for(engine)

    assert await webhook_reclaim_stuck(app, utc_now()) is None
    assert await webhook_requeue_orphans(app, utc_now() + timedelta(hours=1)) is None

    assert await webhook_reclaim_stuck(app, utc_now() + timedelta(minutes=6)) == "reclaimed=1"
    assert (await engine.deliveries.get(delivery.id)).locked_at is None
    assert await webhook_requeue_orphans(app, utc_now() + timedelta(hours=1)) == "requeued=1"


# ---------------------------------------------------------------------------
# webhook_purge_delivered
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_purge_is_disabled_without_retention(engine):
    delivery = await _dispatch_one(engine)
    await engine.worker.process(delivery.id)

    assert await webhook_purge_delivered(_app_for(engine), utc_now() + timedelta(days=365)) is None
    assert (await engine.deliveries.get(delivery.id)).status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_purge_removes_old_delivered_chains(fake_session):
    engine = build_memory_engine(make_settings(webhook_delivered_retention_days=7), fake_session)  # type: ignore[arg-type]
    delivered = await _dispatch_one(engine)
    await engine.worker.process(delivered.id)
    pending = await _dispatch_one(engine)
    engine.queue.discard(pending.id)
    app = _app_for(engine)

    assert await webhook_purge_delivered(app, utc_now() + timedelta(days=1)) is None
    assert await webhook_purge_delivered(app, utc_now() + timedelta(days=8)) == "purged=1"

    _, total = await engine.deliveries.list_by_subscription(delivered.subscription_id, DeliveryFilter())
    assert total == 0
    assert (await engine.deliveries.get(pending.id)).status == DeliveryStatus.PENDING


@pytest.mark.asyncio
async def test_maintenance_worker_runs_all_tasks(engine):
    worker = create_maintenance_worker(engine.settings)
    summaries = await worker.run_once(_app_for(engine))

    assert set(summaries) == {
        "webhook_reclaim_stuck",
        "webhook_requeue_orphans",
        "webhook_purge_delivered",
    }
