"""Event dispatcher: fan a domain event out to matching subscriptions."""
from __future__ import annotations

from typing import List
from uuid import uuid4

import structlog

from webhook_service.delivery_queue import DelayQueue
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.models import EventEnvelope, WebhookDelivery, utc_now
from webhook_service.repositories.interfaces import DeliveryRepository, SubscriptionRepository

logger = structlog.get_logger(__name__)


class EventDispatcher:
    def __init__(
        self,
        subscription_repository: SubscriptionRepository,
        delivery_repository: DeliveryRepository,
        queue: DelayQueue,
    ):
        self._subscriptions = subscription_repository
        self._deliveries = delivery_repository
        self._queue = queue

    async def dispatch(self, event: EventEnvelope) -> List[WebhookDelivery]:
        """Create one pending delivery per active matching subscription.

        Dispatching the same event twice returns the existing deliveries
        instead of creating new ones.
        """
        subs = await self._subscriptions.list_active_matching(event.organization_id, event.event_type)
        if not subs:
            logger.debug(
                "No subscriptions for event",
                event_id=str(event.event_id),
                event_type=event.event_type,
                organization_id=str(event.organization_id),
            )
            return []

        body = event.wire_body()
        deliveries: List[WebhookDelivery] = []
        for sub in subs:
            now = utc_now()
            delivery, created = await self._deliveries.create(
                WebhookDelivery(
                    id=uuid4(),
                    subscription_id=sub.id,
                    organization_id=event.organization_id,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    payload=body,
                    attempt_number=1,
                    max_attempts=sub.max_attempts,
                    status=DeliveryStatus.PENDING,
                    dedup_key=f"{event.event_id}:{sub.id}",
                    created_at=now,
                    updated_at=now,
                )
            )
            if created:
                await self._queue.put(delivery.id)
            deliveries.append(delivery)

        logger.info(
            "Event dispatched",
            event_id=str(event.event_id),
            event_type=event.event_type,
            deliveries=len(deliveries),
        )
        return deliveries
