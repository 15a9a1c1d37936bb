"""Webhook subscription endpoints."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import (
    paginated_response,
    pagination_params,
    parse_bool,
    parse_model,
    parse_uuid,
    read_json,
)
from webhook_service.domain.dto import (
    SubscriptionFilter,
    TestWebhookDTO,
    WebhookCreateDTO,
    WebhookUpdateDTO,
)
from webhook_service.domain.enums import EventType
from webhook_service.services.dependencies import (
    get_ledger,
    get_registry,
    get_sandbox,
    require_organization_id,
)

routes = web.RouteTableDef()


# registered before /{webhook_id} so "events" is not parsed as an id
@routes.get("/api/v1/webhooks/events")
async def list_event_types(_request: web.Request):
    events = [
        {"eventType": e.value, "label": e.label, "category": e.category} for e in EventType
    ]
    return web.json_response({"events": events})


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    organization_id = require_organization_id(request)
    query = request.rel_url.query
    flt = SubscriptionFilter(
        event_type=query.get("eventType"),
        is_active=parse_bool(query.get("isActive"), "isActive"),
    )
    limit, offset = pagination_params(request)
    registry = await get_registry(request)
    items, total = await registry.list(organization_id, flt, limit=limit, offset=offset)
    payload = paginated_response(
        [item.to_api() for item in items],
        limit=limit,
        offset=offset,
        key="webhooks",
        total=total,
    )
    return web.json_response(payload)


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    organization_id = require_organization_id(request)
    dto = parse_model(WebhookCreateDTO, await read_json(request))
    registry = await get_registry(request)
    subscription, issued = await registry.create(organization_id, dto)
    # the only response that ever carries the plaintext secret, besides rotation
    payload = {**subscription.to_api(), "secret": issued.new_secret}
    return web.json_response(payload, status=201)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    registry = await get_registry(request)
    subscription = await registry.get(organization_id, webhook_id)
    return web.json_response(subscription.to_api())


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    dto = parse_model(WebhookUpdateDTO, await read_json(request))
    registry = await get_registry(request)
    subscription = await registry.update(organization_id, webhook_id, dto)
    return web.json_response(subscription.to_api())


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    registry = await get_registry(request)
    await registry.delete(organization_id, webhook_id)
    return web.Response(status=204)


@routes.post("/api/v1/webhooks/{webhook_id}/test")
async def test_webhook(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    dto = parse_model(TestWebhookDTO, await read_json(request))
    sandbox = await get_sandbox(request)
    result = await sandbox.test_deliver(organization_id, webhook_id, dto.event_type, dto.payload)
    return web.json_response(result.to_api())


@routes.post("/api/v1/webhooks/{webhook_id}/rotate-secret")
async def rotate_secret(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    registry = await get_registry(request)
    issued = await registry.rotate_secret(organization_id, webhook_id)
    return web.json_response(issued.to_api())


@routes.get("/api/v1/webhooks/{webhook_id}/stats")
async def webhook_stats(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    ledger = await get_ledger(request)
    stats = await ledger.stats(organization_id, webhook_id)
    return web.json_response(stats.to_api())
