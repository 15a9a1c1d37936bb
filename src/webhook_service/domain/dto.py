"""Pydantic DTOs for the API/service layers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from webhook_service.domain.enums import DeliveryStatus


class _RequestDTO(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class WebhookCreateDTO(_RequestDTO):
    name: str
    endpoint_url: str
    event_types: list[str] = Field(min_length=1)
    retry_count: int | None = None
    timeout_seconds: int | None = None
    description: str | None = None
    custom_headers: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class WebhookUpdateDTO(_RequestDTO):
    name: str | None = None
    endpoint_url: str | None = None
    event_types: list[str] | None = None
    is_active: bool | None = None
    retry_count: int | None = None
    timeout_seconds: int | None = None
    description: str | None = None
    custom_headers: dict[str, str] | None = None
    metadata: dict[str, Any] | None = None


class TestWebhookDTO(_RequestDTO):
    __test__ = False  # not a pytest class

    event_type: str
    payload: dict[str, Any] | None = None


class EventIngestDTO(_RequestDTO):
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    event_id: UUID | None = None
    timestamp: datetime | None = None


@dataclass
class SubscriptionFilter:
    event_type: str | None = None
    is_active: bool | None = None


@dataclass
class DeliveryFilter:
    event_type: str | None = None
    status: DeliveryStatus | None = None
    since: datetime | None = None
    until: datetime | None = None
