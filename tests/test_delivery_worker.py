from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from aiohttp import web

from webhook_service.domain.enums import DeliveryStatus, ErrorCode
from webhook_service.domain.models import EventEnvelope, utc_now
from webhook_service.services.dispatcher import EventDispatcher
from webhook_service.services.signature import verify

from tests.utils import FakeResponse, make_subscription, start_receiver, wait_for


async def _dispatch(engine, subscription, event_type: str = "fault.created"):
    dispatcher = EventDispatcher(engine.subscriptions, engine.deliveries, engine.queue)
    return await dispatcher.dispatch(
        EventEnvelope(event_type=event_type, organization_id=subscription.organization_id)
    )


@pytest.mark.asyncio
async def test_deactivated_subscription_gets_no_further_attempts(engine, fake_session):
    fake_session.default = FakeResponse(500)
    subscription = await engine.subscriptions.create(
        make_subscription(engine.secret_store, retry_count=5)
    )
    [delivery] = await _dispatch(engine, subscription)

    await engine.worker.process(delivery.id)
    retrying = await engine.deliveries.get(delivery.id)
    assert retrying.status == DeliveryStatus.RETRYING

    await engine.subscriptions.update_fields(subscription.id, {"is_active": False})
    await asyncio.sleep(0.02)
    await engine.worker.process(delivery.id)

    final = await engine.deliveries.get(delivery.id)
    assert final.status == DeliveryStatus.CANCELLED
    assert final.error_code == ErrorCode.CANCELLED
    assert len(fake_session.requests) == 1
    assert delivery.id not in engine.queue


@pytest.mark.asyncio
async def test_deleted_subscription_cancels_queued_delivery(engine, fake_session):
    subscription = await engine.subscriptions.create(make_subscription(engine.secret_store))
    [delivery] = await _dispatch(engine, subscription)

    await engine.subscriptions.delete(subscription.organization_id, subscription.id)
    outcome = await engine.worker.process(delivery.id)

    assert outcome is None
    assert fake_session.requests == []
    stored = await engine.deliveries.get(delivery.id)
    assert stored.status == DeliveryStatus.CANCELLED


@pytest.mark.asyncio
async def test_terminal_delivery_is_skipped(engine, fake_session):
    subscription = await engine.subscriptions.create(make_subscription(engine.secret_store))
    [delivery] = await _dispatch(engine, subscription)
    await engine.worker.process(delivery.id)
    assert (await engine.deliveries.get(delivery.id)).status == DeliveryStatus.DELIVERED

    assert await engine.worker.process(delivery.id) is None
    assert len(fake_session.requests) == 1


@pytest.mark.asyncio
async def test_not_yet_due_delivery_is_requeued(engine, fake_session):
    subscription = await engine.subscriptions.create(make_subscription(engine.secret_store))
    [delivery] = await _dispatch(engine, subscription)
    engine.queue.discard(delivery.id)
    await engine.deliveries.transition(
        delivery.id,
        from_statuses=[DeliveryStatus.PENDING],
        changes={"next_retry_at": utc_now() + timedelta(minutes=5)},
    )

    assert await engine.worker.process(delivery.id) is None
    assert fake_session.requests == []
    assert delivery.id in engine.queue


@pytest.mark.asyncio
async def test_recover_and_requeue_orphans(engine):
    subscription = await engine.subscriptions.create(make_subscription(engine.secret_store))
    [delivery] = await _dispatch(engine, subscription)
    engine.queue.discard(delivery.id)

    assert await engine.worker.requeue_orphans(utc_now(), timedelta(minutes=10)) == 0
    assert await engine.worker.requeue_orphans(
        utc_now() + timedelta(minutes=11), timedelta(minutes=10)
    ) == 1
    assert delivery.id in engine.queue

    engine.queue.discard(delivery.id)
    assert await engine.worker.recover() == 1
    assert delivery.id in engine.queue


@pytest.mark.asyncio
async def test_worker_delivers_fan_out_end_to_end(real_session_engine):
    engine = real_session_engine
    received: asyncio.Queue[tuple[dict[str, str], bytes]] = asyncio.Queue()

    async def handler(request: web.Request) -> web.Response:
        await received.put((dict(request.headers), await request.read()))
        return web.Response(status=200)

    runner, url = await start_receiver(handler)
    app = web.Application()
    try:
        org = (await engine.subscriptions.create(
            make_subscription(engine.secret_store, secret="whsec_a", endpoint_url=url)
        )).organization_id
        second = await engine.subscriptions.create(
            make_subscription(
                engine.secret_store, secret="whsec_b", endpoint_url=url, organization_id=org
            )
        )
        await engine.worker.start(app)

        deliveries = await _dispatch(engine, second)
        assert len(deliveries) == 2

        bodies = []
        for _ in range(2):
            headers, raw = await asyncio.wait_for(received.get(), timeout=3.0)
            signature = headers["X-Webhook-Signature"]
            assert verify("whsec_a", raw, signature) or verify("whsec_b", raw, signature)
            bodies.append(json.loads(raw))
        assert {b["eventId"] for b in bodies} == {str(deliveries[0].event_id)}

        async def all_delivered() -> bool:
            stored = [await engine.deliveries.get(d.id) for d in deliveries]
            return all(d.status == DeliveryStatus.DELIVERED for d in stored)

        await wait_for(all_delivered)
    finally:
        await engine.worker.stop(app)
        await runner.cleanup()


@pytest.mark.asyncio
async def test_delivery_claimed_elsewhere_is_not_attempted(engine, fake_session):
    subscription = await engine.subscriptions.create(make_subscription(engine.secret_store))
    [delivery] = await _dispatch(engine, subscription)
    assert await engine.deliveries.claim(delivery.id) is not None

    assert await engine.worker.process(delivery.id) is None
    assert fake_session.requests == []
    assert (await engine.deliveries.get(delivery.id)).status == DeliveryStatus.PENDING

    # a claim left by a dead replica is released once it goes stale
    assert await engine.deliveries.release_stale_claims(utc_now() - timedelta(minutes=5)) == 0
    assert await engine.deliveries.release_stale_claims(utc_now() + timedelta(seconds=1)) == 1
    await engine.worker.process(delivery.id)
    assert (await engine.deliveries.get(delivery.id)).status == DeliveryStatus.DELIVERED
    assert len(fake_session.requests) == 1


@pytest.mark.asyncio
async def test_claim_is_released_with_the_outcome(engine, fake_session):
    fake_session.default = FakeResponse(500)
    subscription = await engine.subscriptions.create(
        make_subscription(engine.secret_store, retry_count=2)
    )
    [delivery] = await _dispatch(engine, subscription)

    await engine.worker.process(delivery.id)

    stored = await engine.deliveries.get(delivery.id)
    assert stored.status == DeliveryStatus.RETRYING
    assert stored.locked_at is None
    assert await engine.worker.requeue_orphans(
        utc_now() + timedelta(hours=1), timedelta(minutes=10)
    ) == 0  # still queued for its retry


@pytest.mark.asyncio
async def test_crashing_attempt_consumes_budget_until_exhausted(engine, fake_session, monkeypatch):
    monkeypatch.setattr(engine.executor, "attempt", AsyncMock(side_effect=RuntimeError("boom")))
    subscription = await engine.subscriptions.create(
        make_subscription(engine.secret_store, retry_count=1)
    )
    [delivery] = await _dispatch(engine, subscription)

    outcome = await engine.worker.process(delivery.id)

    assert outcome is not None and outcome.error_code == ErrorCode.INTERNAL_ERROR
    retrying = await engine.deliveries.get(delivery.id)
    assert retrying.status == DeliveryStatus.RETRYING
    assert retrying.error_code == ErrorCode.INTERNAL_ERROR
    assert retrying.locked_at is None

    await asyncio.sleep(0.02)
    await engine.worker.process(delivery.id)

    final = await engine.deliveries.get(delivery.id)
    assert final.status == DeliveryStatus.EXHAUSTED
    assert final.attempt_number == 2
    assert "RuntimeError" in final.error_message
    assert fake_session.requests == []
