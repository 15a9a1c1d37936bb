"""Repository contracts injected into the webhook services.

Two implementations exist: :mod:`webhook_service.repositories.webhooks`
(asyncpg/PostgreSQL) and :mod:`webhook_service.repositories.memory`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Protocol
from uuid import UUID

from webhook_service.domain.dto import DeliveryFilter, SubscriptionFilter
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.models import DeliveryAttempt, WebhookDelivery, WebhookSubscription


@dataclass
class DeliveryCounts:
    by_status: dict[str, int] = field(default_factory=dict)
    by_event_type: dict[str, int] = field(default_factory=dict)
    created_since: int = 0


@dataclass
class AttemptCounts:
    total: int = 0
    successful: int = 0
    average_response_time_ms: float | None = None
    failed_since: int = 0


class SubscriptionRepository(Protocol):
    async def create(self, subscription: WebhookSubscription) -> WebhookSubscription: ...

    async def get(
        self, subscription_id: UUID, *, organization_id: UUID | None = None
    ) -> WebhookSubscription: ...

    async def find(self, subscription_id: UUID) -> WebhookSubscription | None: ...

    async def list_by_organization(
        self,
        organization_id: UUID,
        flt: SubscriptionFilter,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookSubscription], int]: ...

    async def update_fields(
        self, subscription_id: UUID, changes: dict[str, Any]
    ) -> WebhookSubscription:
        """Write only the named fields and bump ``updated_at``."""
        ...

    async def delete(self, organization_id: UUID, subscription_id: UUID) -> None: ...

    async def list_active_matching(
        self, organization_id: UUID, event_type: str
    ) -> list[WebhookSubscription]: ...

    async def record_attempt(self, subscription_id: UUID, *, success: bool, at: datetime) -> None: ...


class DeliveryRepository(Protocol):
    async def create(self, delivery: WebhookDelivery) -> tuple[WebhookDelivery, bool]:
        """Insert unless a delivery with the same ``dedup_key`` exists.

        Returns the stored delivery and whether it was created.
        """
        ...

    async def get(self, delivery_id: UUID) -> WebhookDelivery: ...

    async def find(self, delivery_id: UUID) -> WebhookDelivery | None: ...

    async def transition(
        self,
        delivery_id: UUID,
        *,
        from_statuses: Iterable[DeliveryStatus],
        changes: dict[str, Any],
    ) -> WebhookDelivery | None:
        """Apply ``changes`` only if the current status is in ``from_statuses``.

        Returns the updated delivery, or None when the guard did not match.
        """
        ...

    async def list_by_subscription(
        self,
        subscription_id: UUID,
        flt: DeliveryFilter,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]: ...

    async def cancel_active(self, subscription_id: UUID, *, reason: str) -> list[UUID]: ...

    async def claim(self, delivery_id: UUID) -> WebhookDelivery | None:
        """Mark an active, unclaimed delivery as held by the caller.

        Returns None when it is terminal or another worker holds it. The claim
        is released by the next ``transition`` or by ``release_stale_claims``.
        """
        ...

    async def release_stale_claims(self, cutoff: datetime) -> int: ...

    async def list_active(self) -> list[WebhookDelivery]: ...

    async def delete_delivered_before(self, cutoff: datetime) -> int: ...

    async def counts(self, subscription_id: UUID, *, since: datetime) -> DeliveryCounts: ...


class AttemptRepository(Protocol):
    async def append(self, attempt: DeliveryAttempt) -> DeliveryAttempt: ...

    async def list_by_delivery(self, delivery_id: UUID) -> list[DeliveryAttempt]: ...

    async def counts(self, subscription_id: UUID, *, since: datetime) -> AttemptCounts: ...
