"""Delivery ledger endpoints."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import (
    paginated_response,
    pagination_params,
    parse_datetime,
    parse_uuid,
)
from webhook_service.core.exceptions import ValidationError
from webhook_service.domain.dto import DeliveryFilter
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.services.dependencies import (
    get_ledger,
    get_scheduler,
    require_organization_id,
)

routes = web.RouteTableDef()


def _parse_status(value: str | None) -> DeliveryStatus | None:
    if value is None:
        return None
    try:
        return DeliveryStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid status: {value}") from exc


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_deliveries(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    query = request.rel_url.query
    flt = DeliveryFilter(
        event_type=query.get("eventType"),
        status=_parse_status(query.get("status")),
        since=parse_datetime(query.get("since"), "since"),
        until=parse_datetime(query.get("until"), "until"),
    )
    limit, offset = pagination_params(request)
    ledger = await get_ledger(request)
    items, total = await ledger.list_deliveries(
        organization_id, webhook_id, flt, limit=limit, offset=offset
    )
    payload = paginated_response(
        [item.to_api() for item in items],
        limit=limit,
        offset=offset,
        key="deliveries",
        total=total,
    )
    return web.json_response(payload)


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries/{delivery_id}/attempts")
async def list_attempts(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    delivery_id = parse_uuid(request.match_info["delivery_id"], "delivery_id")
    ledger = await get_ledger(request)
    attempts = await ledger.list_attempts(organization_id, webhook_id, delivery_id)
    return web.json_response({"attempts": [a.to_api() for a in attempts]})


@routes.post("/api/v1/webhooks/{webhook_id}/deliveries/{delivery_id}/retry")
async def retry_delivery(request: web.Request):
    organization_id = require_organization_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    delivery_id = parse_uuid(request.match_info["delivery_id"], "delivery_id")
    scheduler = await get_scheduler(request)
    delivery = await scheduler.manual_retry(organization_id, webhook_id, delivery_id)
    return web.json_response(delivery.to_api(), status=202)
