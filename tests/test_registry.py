from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from webhook_service.core.exceptions import NotFoundError, ValidationError
from webhook_service.domain.dto import SubscriptionFilter, WebhookCreateDTO, WebhookUpdateDTO
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.models import EventEnvelope
from webhook_service.services.dispatcher import EventDispatcher
from webhook_service.services.registry import SubscriptionRegistry


@pytest.fixture
def registry(engine, settings) -> SubscriptionRegistry:
    return SubscriptionRegistry(engine.subscriptions, engine.deliveries, engine.secret_store, settings)


def _create_dto(**overrides) -> WebhookCreateDTO:
    values = {
        "name": "Facility bot",
        "endpoint_url": "https://hooks.example.com/faults",
        "event_types": ["fault.created", "fault.resolved"],
        "retry_count": 3,
        "timeout_seconds": 30,
    }
    values.update(overrides)
    return WebhookCreateDTO(**values)


@pytest.mark.asyncio
async def test_create_returns_secret_once_and_stores_ciphertext(registry, engine):
    org = uuid4()
    subscription, issued = await registry.create(org, _create_dto())

    assert issued.new_secret.startswith("whsec_")
    assert len(issued.new_secret) == len("whsec_") + 48
    assert subscription.secret_ciphertext != issued.new_secret
    assert engine.secret_store.decrypt(subscription.secret_ciphertext) == issued.new_secret

    api = (await registry.get(org, subscription.id)).to_api()
    assert "secret" not in api
    assert "secretCiphertext" not in api
    assert issued.new_secret not in str(api)


@pytest.mark.asyncio
async def test_create_normalizes_event_types(registry):
    subscription, _ = await registry.create(
        uuid4(), _create_dto(event_types=[" fault.created", "fault.created", "vote.started"])
    )
    assert subscription.event_types == ["fault.created", "vote.started"]


@pytest.mark.asyncio
async def test_create_applies_default_policy(registry, settings):
    subscription, _ = await registry.create(
        uuid4(), _create_dto(retry_count=None, timeout_seconds=None)
    )
    assert subscription.retry_count == settings.webhook_default_retry_count
    assert subscription.timeout_seconds == settings.webhook_default_timeout_seconds


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"endpoint_url": "http://hooks.example.com/faults"},
        {"endpoint_url": "ftp://hooks.example.com"},
        {"endpoint_url": "https://"},
        {"event_types": ["  "]},
        {"event_types": ["fault.exploded"]},
        {"retry_count": 6},
        {"retry_count": -1},
        {"timeout_seconds": 4},
        {"timeout_seconds": 61},
        {"name": "   "},
        {"custom_headers": {"X-Webhook-Signature": "forged"}},
        {"custom_headers": {"content-type": "text/plain"}},
        {"custom_headers": {"X-Tenant": "a\r\nInjected: 1"}},
    ],
)
async def test_create_rejects_invalid_configuration(registry, engine, overrides):
    org = uuid4()
    with pytest.raises(ValidationError):
        await registry.create(org, _create_dto(**overrides))
    items, total = await engine.subscriptions.list_by_organization(org, SubscriptionFilter())
    assert items == [] and total == 0


@pytest.mark.asyncio
async def test_update_validates_and_applies_partial_changes(registry):
    org = uuid4()
    subscription, _ = await registry.create(org, _create_dto())

    updated = await registry.update(
        org, subscription.id, WebhookUpdateDTO(name="Renamed", timeout_seconds=10)
    )
    assert updated.name == "Renamed"
    assert updated.timeout_seconds == 10
    assert updated.event_types == subscription.event_types

    with pytest.raises(ValidationError):
        await registry.update(org, subscription.id, WebhookUpdateDTO(event_types=[]))
    with pytest.raises(ValidationError):
        await registry.update(
            org, subscription.id, WebhookUpdateDTO(endpoint_url="http://plain.example.com")
        )


@pytest.mark.asyncio
async def test_other_organization_cannot_see_subscription(registry):
    subscription, _ = await registry.create(uuid4(), _create_dto())
    with pytest.raises(NotFoundError):
        await registry.get(uuid4(), subscription.id)
    with pytest.raises(NotFoundError):
        await registry.delete(uuid4(), subscription.id)


@pytest.mark.asyncio
async def test_list_filters_by_event_type_and_active_flag(registry):
    org = uuid4()
    faults, _ = await registry.create(org, _create_dto(event_types=["fault.created"]))
    votes, _ = await registry.create(org, _create_dto(event_types=["vote.started"]))
    await registry.set_active(org, votes.id, False)

    items, total = await registry.list(org, SubscriptionFilter(event_type="fault.created"))
    assert [s.id for s in items] == [faults.id] and total == 1

    items, total = await registry.list(org, SubscriptionFilter(is_active=False))
    assert [s.id for s in items] == [votes.id] and total == 1

    items, total = await registry.list(org, limit=1)
    assert len(items) == 1 and total == 2


@pytest.mark.asyncio
async def test_rotate_secret_replaces_stored_secret(registry, engine):
    org = uuid4()
    subscription, first = await registry.create(org, _create_dto())

    rotated = await registry.rotate_secret(org, subscription.id)

    stored = await registry.get(org, subscription.id)
    assert rotated.new_secret != first.new_secret
    assert rotated.webhook_id == subscription.id
    assert engine.secret_store.decrypt(stored.secret_ciphertext) == rotated.new_secret
    assert stored.secret_fingerprint != subscription.secret_fingerprint
    assert stored.secret_rotated_at == rotated.rotated_at


@pytest.mark.asyncio
async def test_delete_cancels_outstanding_deliveries(registry, engine):
    org = uuid4()
    subscription, _ = await registry.create(org, _create_dto())
    dispatcher = EventDispatcher(engine.subscriptions, engine.deliveries, engine.queue)
    [delivery] = await dispatcher.dispatch(EventEnvelope(event_type="fault.created", organization_id=org))

    cancelled = await registry.delete(org, subscription.id)

    assert cancelled == [delivery.id]
    stored = await engine.deliveries.get(delivery.id)
    assert stored.status == DeliveryStatus.CANCELLED
    assert stored.error_code == "cancelled"
    with pytest.raises(NotFoundError):
        await registry.get(org, subscription.id)


@pytest.mark.asyncio
async def test_deactivation_cancels_outstanding_deliveries(registry, engine):
    org = uuid4()
    subscription, _ = await registry.create(org, _create_dto())
    dispatcher = EventDispatcher(engine.subscriptions, engine.deliveries, engine.queue)
    [delivery] = await dispatcher.dispatch(EventEnvelope(event_type="fault.created", organization_id=org))

    await registry.update(org, subscription.id, WebhookUpdateDTO(is_active=False))

    stored = await engine.deliveries.get(delivery.id)
    assert stored.status == DeliveryStatus.CANCELLED


@pytest.mark.asyncio
async def test_concurrent_rotation_and_deactivation_keep_both_writes(registry, engine, monkeypatch):
    org = uuid4()
    subscription, _ = await registry.create(org, _create_dto())
    original_get = engine.subscriptions.get

    async def slow_get(*args, **kwargs):
        current = await original_get(*args, **kwargs)
        await asyncio.sleep(0.01)
        return current

    monkeypatch.setattr(engine.subscriptions, "get", slow_get)

    rotated, _ = await asyncio.gather(
        registry.rotate_secret(org, subscription.id),
        registry.update(org, subscription.id, WebhookUpdateDTO(is_active=False)),
    )

    stored = await original_get(subscription.id, organization_id=org)
    assert stored.is_active is False
    assert stored.secret_fingerprint == engine.secret_store.fingerprint(rotated.new_secret)
    assert engine.secret_store.decrypt(stored.secret_ciphertext) == rotated.new_secret


@pytest.mark.asyncio
async def test_endpoint_scheme_is_stored_lowercase(registry):
    org = uuid4()
    subscription, _ = await registry.create(
        org, _create_dto(endpoint_url="HTTPS://Hooks.Example.com/Faults")
    )
    assert subscription.endpoint_url == "https://Hooks.Example.com/Faults"

    updated = await registry.update(
        org, subscription.id, WebhookUpdateDTO(endpoint_url="Https://r.example.com/h")
    )
    assert updated.endpoint_url == "https://r.example.com/h"
