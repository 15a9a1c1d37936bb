from __future__ import annotations

import asyncio
import json
from uuid import uuid4

import pytest
from aiohttp import web

from webhook_service.domain.enums import AttemptOutcome, ErrorCode
from webhook_service.domain.models import EventEnvelope, WebhookDelivery, utc_now
from webhook_service.domain.outcomes import Failure, Success, Timeout
from webhook_service.services.signature import verify

from tests.utils import FakeResponse, make_subscription, start_receiver


def _delivery_for(subscription, event: EventEnvelope, *, attempt_number: int = 1) -> WebhookDelivery:
    now = utc_now()
    return WebhookDelivery(
        id=uuid4(),
        subscription_id=subscription.id,
        organization_id=subscription.organization_id,
        event_id=event.event_id,
        event_type=event.event_type,
        payload=event.wire_body(),
        attempt_number=attempt_number,
        max_attempts=subscription.max_attempts,
        dedup_key=f"{event.event_id}:{subscription.id}",
        created_at=now,
        updated_at=now,
    )


@pytest.mark.asyncio
async def test_attempt_signs_exact_body_and_sets_headers(engine, fake_session):
    subscription = await engine.subscriptions.create(
        make_subscription(
            engine.secret_store, secret="whsec_known", custom_headers={"X-Tenant": "acme"}
        )
    )
    event = EventEnvelope(
        event_type="fault.created",
        organization_id=subscription.organization_id,
        payload={"title": "Leak in 4B", "unit": "Ž-4B"},
    )
    delivery = _delivery_for(subscription, event, attempt_number=2)

    outcome = await engine.executor.attempt(delivery, subscription)

    assert isinstance(outcome, Success)
    [sent] = fake_session.requests
    assert sent.url == subscription.endpoint_url
    assert verify("whsec_known", sent.data, sent.headers["X-Webhook-Signature"])
    assert sent.headers["Content-Type"] == "application/json"
    assert sent.headers["X-Webhook-Event"] == "fault.created"
    assert sent.headers["X-Webhook-Event-Id"] == str(event.event_id)
    assert sent.headers["X-Webhook-Delivery-Id"] == str(delivery.id)
    assert sent.headers["X-Webhook-Attempt"] == "2"
    assert sent.headers["X-Tenant"] == "acme"
    assert sent.timeout.total == subscription.timeout_seconds
    body = sent.json()
    assert body["eventId"] == str(event.event_id)
    assert body["payload"] == {"title": "Leak in 4B", "unit": "Ž-4B"}
    assert set(body) == {"eventId", "eventType", "organizationId", "payload", "timestamp"}


@pytest.mark.asyncio
async def test_attempt_appends_ledger_row_and_counters_for_every_outcome(engine, fake_session):
    subscription = await engine.subscriptions.create(make_subscription(engine.secret_store))
    event = EventEnvelope(event_type="fault.created", organization_id=subscription.organization_id)
    fake_session.queue(FakeResponse(503, "maintenance"), asyncio.TimeoutError(), FakeResponse(200))

    outcomes = []
    for attempt in (1, 2, 3):
        delivery = _delivery_for(subscription, event, attempt_number=attempt)
        outcomes.append(await engine.executor.attempt(delivery, subscription))

    assert isinstance(outcomes[0], Failure)
    assert outcomes[0].status_code == 503
    assert outcomes[0].response_body == "maintenance"
    assert outcomes[0].error_code == ErrorCode.RECEIVER_ERROR
    assert isinstance(outcomes[1], Timeout)
    assert isinstance(outcomes[2], Success)

    counts = await engine.attempts.counts(subscription.id, since=utc_now().replace(year=2000))
    assert counts.total == 3
    assert counts.successful == 1

    stored = await engine.subscriptions.get(subscription.id)
    assert stored.total_deliveries == 3
    assert stored.successful_deliveries == 1
    assert stored.failed_deliveries == 2
    assert stored.last_success_at is not None
    assert stored.last_failure_at is not None


@pytest.mark.asyncio
async def test_send_truncates_response_body(engine, fake_session, settings):
    subscription = make_subscription(engine.secret_store)
    fake_session.queue(FakeResponse(500, "x" * (settings.webhook_response_body_max_chars + 500)))

    outcome = await engine.executor.send(subscription, "whsec_x", {"eventType": "fault.created"})

    assert isinstance(outcome, Failure)
    assert len(outcome.response_body) == settings.webhook_response_body_max_chars


@pytest.mark.asyncio
async def test_send_against_real_receiver(real_session_engine):
    engine = real_session_engine
    received: asyncio.Queue[tuple[dict[str, str], bytes]] = asyncio.Queue()

    async def handler(request: web.Request) -> web.Response:
        await received.put((dict(request.headers), await request.read()))
        return web.json_response({"ok": True}, status=202)

    runner, url = await start_receiver(handler)
    try:
        subscription = make_subscription(engine.secret_store, secret="whsec_live", endpoint_url=url)
        event = EventEnvelope(event_type="payment.received", organization_id=subscription.organization_id)

        outcome = await engine.executor.send(subscription, "whsec_live", event.wire_body())

        headers, raw = await asyncio.wait_for(received.get(), timeout=3.0)
        assert isinstance(outcome, Success)
        assert outcome.status_code == 202
        assert json.loads(outcome.response_body) == {"ok": True}
        assert verify("whsec_live", raw, headers["X-Webhook-Signature"])
        assert json.loads(raw)["eventType"] == "payment.received"
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_send_times_out_against_slow_receiver(real_session_engine):
    engine = real_session_engine

    async def handler(request: web.Request) -> web.Response:
        await asyncio.sleep(2)
        return web.Response(status=200)

    runner, url = await start_receiver(handler)
    try:
        subscription = make_subscription(engine.secret_store, endpoint_url=url, timeout_seconds=1)
        outcome = await engine.executor.send(subscription, "whsec_x", {"eventType": "vote.ended"})
        assert isinstance(outcome, Timeout)
        assert outcome.kind == AttemptOutcome.TIMEOUT
        assert outcome.error_code == ErrorCode.TIMEOUT
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_send_reports_network_error(real_session_engine):
    engine = real_session_engine
    # nothing listens on port 9 locally
    subscription = make_subscription(engine.secret_store, endpoint_url="http://127.0.0.1:9/hook")

    outcome = await engine.executor.send(subscription, "whsec_x", {"eventType": "vote.ended"})

    assert isinstance(outcome, Failure)
    assert outcome.status_code is None
    assert outcome.error_code == ErrorCode.NETWORK_ERROR
    assert outcome.error_message
