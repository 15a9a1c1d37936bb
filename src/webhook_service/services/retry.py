"""Retry scheduling: backoff, outcome handling and manual retries."""
from __future__ import annotations

import random
from datetime import timedelta
from typing import Any, Callable
from uuid import UUID, uuid4

import structlog

from webhook_service.core.exceptions import CancellationError, InvalidStatusTransitionError, NotFoundError
from webhook_service.delivery_queue import DelayQueue
from webhook_service.domain.enums import ACTIVE_STATUSES, DeliveryStatus, ErrorCode
from webhook_service.domain.models import WebhookDelivery, utc_now
from webhook_service.domain.outcomes import Outcome, Success
from webhook_service.domain.state_machine import validate_delivery_path, validate_delivery_transition
from webhook_service.repositories.interfaces import DeliveryRepository, SubscriptionRepository

logger = structlog.get_logger(__name__)

_MAX_EXPONENT = 32
_MANUAL_RETRY_FROM = frozenset({DeliveryStatus.EXHAUSTED, DeliveryStatus.CANCELLED})


def compute_backoff(
    attempt: int,
    *,
    base: float,
    cap: float,
    jitter: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-based).

    ``min(cap, base * 2**attempt * (1 + U(-jitter, jitter)))``. With
    ``jitter <= 1/3`` consecutive ranges never overlap, so the delay is
    non-decreasing in ``attempt``.
    """
    exponent = min(max(attempt, 0), _MAX_EXPONENT)
    factor = 1.0 + jitter * (2.0 * rng() - 1.0)
    return min(cap, base * (2**exponent) * factor)


def _outcome_fields(outcome: Outcome) -> dict[str, Any]:
    return {
        "response_status_code": outcome.status_code,
        "response_body": outcome.response_body,
        "response_time_ms": outcome.elapsed_ms,
        "error_message": outcome.error_message,
        "error_code": outcome.error_code,
    }


class RetryScheduler:
    def __init__(
        self,
        delivery_repository: DeliveryRepository,
        subscription_repository: SubscriptionRepository,
        queue: DelayQueue,
        *,
        base_seconds: float,
        max_seconds: float,
        jitter_ratio: float,
        rng: Callable[[], float] = random.random,
    ):
        self._deliveries = delivery_repository
        self._subscriptions = subscription_repository
        self._queue = queue
        self._base = base_seconds
        self._cap = max_seconds
        self._jitter = jitter_ratio
        self._rng = rng

    def backoff(self, attempt: int) -> float:
        return compute_backoff(
            attempt, base=self._base, cap=self._cap, jitter=self._jitter, rng=self._rng
        )

    async def handle_outcome(
        self, delivery: WebhookDelivery, outcome: Outcome
    ) -> WebhookDelivery | None:
        """Persist the result of an attempt and requeue the chain if budget remains.

        Returns None when the delivery left its active state meanwhile
        (e.g. cancelled while the attempt was in flight).
        """
        now = utc_now()
        fields = _outcome_fields(outcome)
        if isinstance(outcome, Success):
            validate_delivery_transition(delivery.status, DeliveryStatus.DELIVERED)
            changes = {
                **fields,
                "status": DeliveryStatus.DELIVERED,
                "delivered_at": now,
                "next_retry_at": None,
            }
        elif delivery.attempt_number < delivery.max_attempts:
            validate_delivery_path(delivery.status, DeliveryStatus.FAILED, DeliveryStatus.RETRYING)
            delay = self.backoff(delivery.attempt_number)
            changes = {
                **fields,
                "status": DeliveryStatus.RETRYING,
                "attempt_number": delivery.attempt_number + 1,
                "next_retry_at": now + timedelta(seconds=delay),
            }
        else:
            validate_delivery_path(delivery.status, DeliveryStatus.FAILED, DeliveryStatus.EXHAUSTED)
            changes = {
                **fields,
                "status": DeliveryStatus.EXHAUSTED,
                "error_code": ErrorCode.EXHAUSTED,
                "next_retry_at": None,
            }

        updated = await self._deliveries.transition(
            delivery.id, from_statuses=ACTIVE_STATUSES, changes=changes
        )
        if updated is None:
            logger.info(
                "Delivery changed during attempt, outcome kept in ledger only",
                delivery_id=str(delivery.id),
                attempt=delivery.attempt_number,
            )
            return None

        if updated.status == DeliveryStatus.RETRYING:
            await self._queue.put(updated.id, updated.next_retry_at)
            logger.info(
                "Delivery scheduled for retry",
                delivery_id=str(updated.id),
                attempt=updated.attempt_number,
                max_attempts=updated.max_attempts,
                next_retry_at=updated.next_retry_at.isoformat() if updated.next_retry_at else None,
            )
        elif updated.status == DeliveryStatus.EXHAUSTED:
            logger.warning(
                "Delivery exhausted",
                delivery_id=str(updated.id),
                subscription_id=str(updated.subscription_id),
                attempts=updated.attempt_number,
                last_error=outcome.error_message,
            )
        return updated

    async def cancel(self, delivery: WebhookDelivery, *, reason: str) -> WebhookDelivery | None:
        validate_delivery_transition(delivery.status, DeliveryStatus.CANCELLED)
        self._queue.discard(delivery.id)
        updated = await self._deliveries.transition(
            delivery.id,
            from_statuses=ACTIVE_STATUSES,
            changes={
                "status": DeliveryStatus.CANCELLED,
                "error_code": ErrorCode.CANCELLED,
                "error_message": reason,
                "next_retry_at": None,
            },
        )
        if updated is not None:
            logger.info("Delivery cancelled", delivery_id=str(delivery.id), reason=reason)
        return updated

    async def manual_retry(
        self, organization_id: UUID, subscription_id: UUID, delivery_id: UUID
    ) -> WebhookDelivery:
        """Start a fresh chain for the event of a terminal delivery.

        The original delivery is left untouched; the new one links back via
        ``retried_from_id`` and gets the subscription's current attempt budget.
        """
        subscription = await self._subscriptions.get(
            subscription_id, organization_id=organization_id
        )
        original = await self._deliveries.get(delivery_id)
        if original.subscription_id != subscription.id:
            raise NotFoundError("Webhook delivery not found")
        if original.status not in _MANUAL_RETRY_FROM:
            raise InvalidStatusTransitionError(
                f"Only exhausted or cancelled deliveries can be retried (status={original.status.value})"
            )
        if not subscription.is_active:
            raise CancellationError("Subscription is inactive")

        now = utc_now()
        new_id = uuid4()
        retry = WebhookDelivery(
            id=new_id,
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            event_id=original.event_id,
            event_type=original.event_type,
            payload=original.payload,
            attempt_number=1,
            max_attempts=subscription.max_attempts,
            status=DeliveryStatus.PENDING,
            retried_from_id=original.id,
            dedup_key=f"{original.event_id}:{subscription.id}:retry:{new_id}",
            created_at=now,
            updated_at=now,
        )
        created, _ = await self._deliveries.create(retry)
        await self._queue.put(created.id)
        logger.info(
            "Manual retry queued",
            delivery_id=str(created.id),
            retried_from_id=str(original.id),
            subscription_id=str(subscription.id),
        )
        return created
