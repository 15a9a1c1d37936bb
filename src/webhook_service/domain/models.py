"""Webhook domain primitives."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from webhook_service.domain.enums import AttemptOutcome, DeliveryStatus, ErrorCode


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Models serialized to the portal in camelCase, populated in snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class WebhookSubscription(CamelModel):
    id: UUID
    organization_id: UUID
    name: str
    description: str | None = None
    endpoint_url: str
    event_types: list[str]
    is_active: bool = True
    retry_count: int
    timeout_seconds: int
    custom_headers: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    secret_ciphertext: str = Field(exclude=True, repr=False)
    secret_fingerprint: str
    secret_rotated_at: datetime | None = None
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    last_triggered_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float | None:
        if self.total_deliveries == 0:
            return None
        return self.successful_deliveries / self.total_deliveries

    @property
    def max_attempts(self) -> int:
        """Total attempts per delivery chain; a zero retry budget still allows one attempt."""
        return max(1, self.retry_count)


class EventEnvelope(CamelModel):
    """Immutable domain event handed to the dispatcher."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    event_type: str
    organization_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    def wire_body(self) -> dict[str, Any]:
        """Body POSTed to receivers; ``eventId`` is their idempotency key."""
        return {
            "eventId": str(self.event_id),
            "eventType": self.event_type,
            "organizationId": str(self.organization_id),
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class WebhookDelivery(CamelModel):
    id: UUID
    subscription_id: UUID
    organization_id: UUID
    event_id: UUID
    event_type: str
    payload: dict[str, Any]
    attempt_number: int = 1
    max_attempts: int
    status: DeliveryStatus = DeliveryStatus.PENDING
    response_status_code: int | None = None
    response_body: str | None = None
    response_time_ms: int | None = None
    error_message: str | None = None
    error_code: ErrorCode | None = None
    next_retry_at: datetime | None = None
    delivered_at: datetime | None = None
    retried_from_id: UUID | None = None
    dedup_key: str | None = Field(default=None, exclude=True)
    locked_at: datetime | None = Field(default=None, exclude=True)
    created_at: datetime
    updated_at: datetime

    @property
    def due_at(self) -> datetime:
        """When the next attempt of this chain may run."""
        return self.next_retry_at or self.created_at


class DeliveryAttempt(CamelModel):
    """One append-only ledger row per HTTP attempt."""

    id: UUID
    delivery_id: UUID
    subscription_id: UUID
    attempt_number: int
    outcome: AttemptOutcome
    error_code: ErrorCode | None = None
    response_status_code: int | None = None
    response_body: str | None = None
    response_time_ms: int
    error_message: str | None = None
    attempted_at: datetime


class TestResult(CamelModel):
    __test__ = False  # not a pytest class

    success: bool
    response_status_code: int | None = None
    response_body: str | None = None
    response_time_ms: int
    error_message: str | None = None


class SecretIssued(CamelModel):
    """Plaintext secret handed out once, right after creation or rotation."""

    webhook_id: UUID
    new_secret: str = Field(repr=False)
    rotated_at: datetime


class SubscriptionStats(CamelModel):
    subscription_id: UUID
    total_deliveries: int
    delivered_deliveries: int
    pending_deliveries: int
    retrying_deliveries: int
    exhausted_deliveries: int
    cancelled_deliveries: int
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    average_response_time_ms: float | None
    success_rate: float | None
    last_24h_deliveries: int = Field(alias="last24hDeliveries")
    last_24h_failures: int = Field(alias="last24hFailures")
    events_by_type: dict[str, int]
