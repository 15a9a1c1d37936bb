"""Domain event ingestion."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import parse_model, read_json
from webhook_service.core.exceptions import ValidationError
from webhook_service.domain.dto import EventIngestDTO
from webhook_service.domain.enums import KNOWN_EVENT_TYPES
from webhook_service.domain.models import EventEnvelope
from webhook_service.services.dependencies import get_dispatcher, require_organization_id

routes = web.RouteTableDef()


@routes.post("/api/v1/events")
async def ingest_event(request: web.Request):
    organization_id = require_organization_id(request)
    dto = parse_model(EventIngestDTO, await read_json(request))
    if dto.event_type not in KNOWN_EVENT_TYPES:
        raise ValidationError(f"Unknown event type: {dto.event_type}")

    envelope_fields = {
        "event_type": dto.event_type,
        "organization_id": organization_id,
        "payload": dto.payload,
    }
    if dto.event_id is not None:
        envelope_fields["event_id"] = dto.event_id
    if dto.timestamp is not None:
        envelope_fields["timestamp"] = dto.timestamp
    event = EventEnvelope(**envelope_fields)

    dispatcher = await get_dispatcher(request)
    deliveries = await dispatcher.dispatch(event)
    return web.json_response(
        {"eventId": str(event.event_id), "deliveries": [d.to_api() for d in deliveries]},
        status=202,
    )
