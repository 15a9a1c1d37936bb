"""Read side of the delivery audit trail."""
from __future__ import annotations

from datetime import timedelta
from typing import List
from uuid import UUID

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.dto import DeliveryFilter
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.models import (
    DeliveryAttempt,
    SubscriptionStats,
    WebhookDelivery,
    utc_now,
)
from webhook_service.repositories.interfaces import (
    AttemptRepository,
    DeliveryRepository,
    SubscriptionRepository,
)

STATS_WINDOW = timedelta(hours=24)


class DeliveryLedger:
    def __init__(
        self,
        subscription_repository: SubscriptionRepository,
        delivery_repository: DeliveryRepository,
        attempt_repository: AttemptRepository,
    ):
        self._subscriptions = subscription_repository
        self._deliveries = delivery_repository
        self._attempts = attempt_repository

    async def list_deliveries(
        self,
        organization_id: UUID,
        subscription_id: UUID,
        flt: DeliveryFilter | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[WebhookDelivery], int]:
        await self._subscriptions.get(subscription_id, organization_id=organization_id)
        return await self._deliveries.list_by_subscription(
            subscription_id, flt or DeliveryFilter(), limit=limit, offset=offset
        )

    async def get_delivery(
        self, organization_id: UUID, subscription_id: UUID, delivery_id: UUID
    ) -> WebhookDelivery:
        await self._subscriptions.get(subscription_id, organization_id=organization_id)
        delivery = await self._deliveries.get(delivery_id)
        if delivery.subscription_id != subscription_id:
            raise NotFoundError("Webhook delivery not found")
        return delivery

    async def list_attempts(
        self, organization_id: UUID, subscription_id: UUID, delivery_id: UUID
    ) -> List[DeliveryAttempt]:
        delivery = await self.get_delivery(organization_id, subscription_id, delivery_id)
        return await self._attempts.list_by_delivery(delivery.id)

    async def stats(self, organization_id: UUID, subscription_id: UUID) -> SubscriptionStats:
        await self._subscriptions.get(subscription_id, organization_id=organization_id)
        since = utc_now() - STATS_WINDOW
        deliveries = await self._deliveries.counts(subscription_id, since=since)
        attempts = await self._attempts.counts(subscription_id, since=since)
        by_status = deliveries.by_status

        def count(status: DeliveryStatus) -> int:
            return by_status.get(status.value, 0)

        return SubscriptionStats(
            subscription_id=subscription_id,
            total_deliveries=sum(by_status.values()),
            delivered_deliveries=count(DeliveryStatus.DELIVERED),
            pending_deliveries=count(DeliveryStatus.PENDING),
            retrying_deliveries=count(DeliveryStatus.RETRYING),
            exhausted_deliveries=count(DeliveryStatus.EXHAUSTED),
            cancelled_deliveries=count(DeliveryStatus.CANCELLED),
            total_attempts=attempts.total,
            successful_attempts=attempts.successful,
            failed_attempts=attempts.total - attempts.successful,
            average_response_time_ms=attempts.average_response_time_ms,
            success_rate=(attempts.successful / attempts.total) if attempts.total else None,
            last_24h_deliveries=deliveries.created_since,
            last_24h_failures=attempts.failed_since,
            events_by_type=deliveries.by_event_type,
        )
