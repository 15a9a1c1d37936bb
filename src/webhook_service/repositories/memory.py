"""In-process repositories used with ``storage_backend=memory`` (tests, local runs).

Semantics mirror the PostgreSQL repositories: dedup on ``dedup_key``,
compare-and-set status transitions, copies handed out so callers never
mutate stored rows.
"""
from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from typing import Any, Iterable, List, Tuple
from uuid import UUID

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.dto import DeliveryFilter, SubscriptionFilter
from webhook_service.domain.enums import ACTIVE_STATUSES, AttemptOutcome, DeliveryStatus, ErrorCode
from webhook_service.domain.models import (
    DeliveryAttempt,
    WebhookDelivery,
    WebhookSubscription,
    utc_now,
)
from webhook_service.repositories.interfaces import AttemptCounts, DeliveryCounts


class InMemorySubscriptionRepository:
    def __init__(self) -> None:
        self._rows: dict[UUID, WebhookSubscription] = {}
        self._lock = asyncio.Lock()

    async def create(self, subscription: WebhookSubscription) -> WebhookSubscription:
        async with self._lock:
            self._rows[subscription.id] = subscription.model_copy(deep=True)
        return subscription.model_copy(deep=True)

    async def find(self, subscription_id: UUID) -> WebhookSubscription | None:
        row = self._rows.get(subscription_id)
        return row.model_copy(deep=True) if row is not None else None

    async def get(
        self, subscription_id: UUID, *, organization_id: UUID | None = None
    ) -> WebhookSubscription:
        subscription = await self.find(subscription_id)
        if subscription is None or (
            organization_id is not None and subscription.organization_id != organization_id
        ):
            raise NotFoundError("Webhook subscription not found")
        return subscription

    async def list_by_organization(
        self,
        organization_id: UUID,
        flt: SubscriptionFilter,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookSubscription], int]:
        rows = [
            row
            for row in self._rows.values()
            if row.organization_id == organization_id
            and (flt.event_type is None or flt.event_type in row.event_types)
            and (flt.is_active is None or row.is_active == flt.is_active)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        page = rows[offset : offset + limit]
        return [r.model_copy(deep=True) for r in page], len(rows)

    async def update_fields(
        self, subscription_id: UUID, changes: dict[str, Any]
    ) -> WebhookSubscription:
        async with self._lock:
            current = self._rows.get(subscription_id)
            if current is None:
                raise NotFoundError("Webhook subscription not found")
            self._rows[subscription_id] = current.model_copy(
                deep=True, update={**changes, "updated_at": utc_now()}
            )
            return self._rows[subscription_id].model_copy(deep=True)

    async def delete(self, organization_id: UUID, subscription_id: UUID) -> None:
        async with self._lock:
            row = self._rows.get(subscription_id)
            if row is None or row.organization_id != organization_id:
                raise NotFoundError("Webhook subscription not found")
            del self._rows[subscription_id]

    async def list_active_matching(
        self, organization_id: UUID, event_type: str
    ) -> List[WebhookSubscription]:
        rows = [
            row
            for row in self._rows.values()
            if row.organization_id == organization_id
            and row.is_active
            and event_type in row.event_types
        ]
        rows.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in rows]

    async def record_attempt(self, subscription_id: UUID, *, success: bool, at: datetime) -> None:
        async with self._lock:
            row = self._rows.get(subscription_id)
            if row is None:
                return
            update: dict[str, Any] = {
                "total_deliveries": row.total_deliveries + 1,
                "last_triggered_at": at,
            }
            if success:
                update["successful_deliveries"] = row.successful_deliveries + 1
                update["last_success_at"] = at
            else:
                update["failed_deliveries"] = row.failed_deliveries + 1
                update["last_failure_at"] = at
            self._rows[subscription_id] = row.model_copy(update=update)


class InMemoryDeliveryRepository:
    def __init__(self) -> None:
        self._rows: dict[UUID, WebhookDelivery] = {}
        self._by_dedup_key: dict[str, UUID] = {}
        self._lock = asyncio.Lock()

    async def create(self, delivery: WebhookDelivery) -> tuple[WebhookDelivery, bool]:
        async with self._lock:
            if delivery.dedup_key is not None and delivery.dedup_key in self._by_dedup_key:
                existing = self._rows[self._by_dedup_key[delivery.dedup_key]]
                return existing.model_copy(deep=True), False
            self._rows[delivery.id] = delivery.model_copy(deep=True)
            if delivery.dedup_key is not None:
                self._by_dedup_key[delivery.dedup_key] = delivery.id
        return delivery.model_copy(deep=True), True

    async def find(self, delivery_id: UUID) -> WebhookDelivery | None:
        row = self._rows.get(delivery_id)
        return row.model_copy(deep=True) if row is not None else None

    async def get(self, delivery_id: UUID) -> WebhookDelivery:
        delivery = await self.find(delivery_id)
        if delivery is None:
            raise NotFoundError("Webhook delivery not found")
        return delivery

    async def transition(
        self,
        delivery_id: UUID,
        *,
        from_statuses: Iterable[DeliveryStatus],
        changes: dict[str, Any],
    ) -> WebhookDelivery | None:
        async with self._lock:
            row = self._rows.get(delivery_id)
            if row is None or row.status not in set(from_statuses):
                return None
            updated = row.model_copy(
                update={**changes, "locked_at": None, "updated_at": utc_now()}
            )
            self._rows[delivery_id] = updated
            return updated.model_copy(deep=True)

    async def list_by_subscription(
        self,
        subscription_id: UUID,
        flt: DeliveryFilter,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        rows = [
            row
            for row in self._rows.values()
            if row.subscription_id == subscription_id
            and (flt.event_type is None or row.event_type == flt.event_type)
            and (flt.status is None or row.status == flt.status)
            and (flt.since is None or row.created_at >= flt.since)
            and (flt.until is None or row.created_at < flt.until)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        page = rows[offset : offset + limit]
        return [r.model_copy(deep=True) for r in page], len(rows)

    async def cancel_active(self, subscription_id: UUID, *, reason: str) -> list[UUID]:
        cancelled: list[UUID] = []
        async with self._lock:
            now = utc_now()
            for delivery_id, row in list(self._rows.items()):
                if row.subscription_id != subscription_id or row.status not in ACTIVE_STATUSES:
                    continue
                self._rows[delivery_id] = row.model_copy(
                    update={
                        "status": DeliveryStatus.CANCELLED,
                        "error_code": ErrorCode.CANCELLED,
                        "error_message": reason,
                        "next_retry_at": None,
                        "updated_at": now,
                    }
                )
                cancelled.append(delivery_id)
        return cancelled

    async def claim(self, delivery_id: UUID) -> WebhookDelivery | None:
        async with self._lock:
            row = self._rows.get(delivery_id)
            if row is None or row.status not in ACTIVE_STATUSES or row.locked_at is not None:
                return None
            now = utc_now()
            self._rows[delivery_id] = row.model_copy(update={"locked_at": now, "updated_at": now})
            return self._rows[delivery_id].model_copy(deep=True)

    async def release_stale_claims(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [
                row
                for row in self._rows.values()
                if row.status in ACTIVE_STATUSES
                and row.locked_at is not None
                and row.locked_at < cutoff
            ]
            for row in stale:
                self._rows[row.id] = row.model_copy(update={"locked_at": None})
        return len(stale)

    async def list_active(self) -> List[WebhookDelivery]:
        rows = [r for r in self._rows.values() if r.status in ACTIVE_STATUSES]
        rows.sort(key=lambda r: r.due_at)
        return [r.model_copy(deep=True) for r in rows]

    async def delete_delivered_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                row
                for row in self._rows.values()
                if row.status == DeliveryStatus.DELIVERED and row.created_at < cutoff
            ]
            for row in doomed:
                del self._rows[row.id]
                if row.dedup_key is not None:
                    self._by_dedup_key.pop(row.dedup_key, None)
        return len(doomed)

    async def counts(self, subscription_id: UUID, *, since: datetime) -> DeliveryCounts:
        rows = [r for r in self._rows.values() if r.subscription_id == subscription_id]
        return DeliveryCounts(
            by_status=dict(Counter(r.status.value for r in rows)),
            by_event_type=dict(Counter(r.event_type for r in rows)),
            created_since=sum(1 for r in rows if r.created_at >= since),
        )

    def contains(self, delivery_id: UUID) -> bool:
        return delivery_id in self._rows


class InMemoryAttemptRepository:
    def __init__(self, deliveries: InMemoryDeliveryRepository | None = None) -> None:
        self._rows: list[DeliveryAttempt] = []
        self._deliveries = deliveries
        self._lock = asyncio.Lock()

    def _live(self) -> list[DeliveryAttempt]:
        # attempts of purged deliveries disappear with them, like ON DELETE CASCADE
        if self._deliveries is None:
            return self._rows
        return [a for a in self._rows if self._deliveries.contains(a.delivery_id)]

    async def append(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        async with self._lock:
            self._rows.append(attempt.model_copy(deep=True))
        return attempt

    async def list_by_delivery(self, delivery_id: UUID) -> List[DeliveryAttempt]:
        rows = [a for a in self._live() if a.delivery_id == delivery_id]
        rows.sort(key=lambda a: a.attempt_number)
        return [a.model_copy(deep=True) for a in rows]

    async def counts(self, subscription_id: UUID, *, since: datetime) -> AttemptCounts:
        rows = [a for a in self._live() if a.subscription_id == subscription_id]
        if not rows:
            return AttemptCounts()
        successful = sum(1 for a in rows if a.outcome == AttemptOutcome.SUCCESS)
        return AttemptCounts(
            total=len(rows),
            successful=successful,
            average_response_time_ms=sum(a.response_time_ms for a in rows) / len(rows),
            failed_since=sum(
                1 for a in rows if a.outcome != AttemptOutcome.SUCCESS and a.attempted_at >= since
            ),
        )
