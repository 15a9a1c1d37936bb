"""Webhook repositories backed by PostgreSQL (subscriptions, deliveries, attempts)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]
from asyncpg.exceptions import UniqueViolationError  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.dto import DeliveryFilter, SubscriptionFilter
from webhook_service.domain.enums import ACTIVE_STATUSES, DeliveryStatus, ErrorCode
from webhook_service.domain.models import DeliveryAttempt, WebhookDelivery, WebhookSubscription
from webhook_service.repositories.base import BaseRepository
from webhook_service.repositories.interfaces import AttemptCounts, DeliveryCounts


def _decode_json(payload: dict[str, Any], *keys: str) -> dict[str, Any]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            payload[key] = json.loads(value)
    return payload


class WebhookSubscriptionRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookSubscription:
        payload = _decode_json(dict(record), "custom_headers", "metadata")
        payload.pop("total_count", None)
        return WebhookSubscription.model_validate(payload)

    async def create(self, subscription: WebhookSubscription) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_subscriptions (
                id, organization_id, name, description, endpoint_url, event_types,
                is_active, retry_count, timeout_seconds, custom_headers, metadata,
                secret_ciphertext, secret_fingerprint, secret_rotated_at,
                created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6::text[], $7, $8, $9, $10::jsonb, $11::jsonb,
                    $12, $13, $14, $15, $16)
            RETURNING *
            """,
            subscription.id,
            subscription.organization_id,
            subscription.name,
            subscription.description,
            subscription.endpoint_url,
            subscription.event_types,
            subscription.is_active,
            subscription.retry_count,
            subscription.timeout_seconds,
            json.dumps(subscription.custom_headers),
            json.dumps(subscription.metadata),
            subscription.secret_ciphertext,
            subscription.secret_fingerprint,
            subscription.secret_rotated_at,
            subscription.created_at,
            subscription.updated_at,
        )
        assert record is not None
        return self._to_model(record)

    async def find(self, subscription_id: UUID) -> WebhookSubscription | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE id = $1", subscription_id
        )
        return self._to_model(record) if record is not None else None

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
        where = ["organization_id = $1"]
        values: list[Any] = [organization_id]
        idx = 2
        if flt.event_type is not None:
            where.append(f"${idx} = ANY(event_types)")
            values.append(flt.event_type)
            idx += 1
        if flt.is_active is not None:
            where.append(f"is_active = ${idx}")
            values.append(flt.is_active)
            idx += 1
        where_sql = " AND ".join(where)
        records = await self._fetch(
            f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_subscriptions
            WHERE {where_sql}
            ORDER BY created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
            """,
            *values,
            limit,
            offset,
        )
        items: List[WebhookSubscription] = []
        total: int | None = None
        for rec in records:
            total_value = rec["total_count"]
            if total_value is not None:
                total = int(total_value)
            items.append(self._to_model(rec))
        if total is None:
            total = int(
                await self._fetchval(
                    f"SELECT COUNT(*) FROM webhook_subscriptions WHERE {where_sql}", *values
                )
            )
        return items, total

    # columns update_fields() may write, with the cast each placeholder needs
    _UPDATABLE_COLUMNS = {
        "name": "",
        "description": "",
        "endpoint_url": "",
        "event_types": "::text[]",
        "is_active": "",
        "retry_count": "",
        "timeout_seconds": "",
        "custom_headers": "::jsonb",
        "metadata": "::jsonb",
        "secret_ciphertext": "",
        "secret_fingerprint": "",
        "secret_rotated_at": "",
    }
    _JSON_COLUMNS = frozenset({"custom_headers", "metadata"})

    async def update_fields(
        self, subscription_id: UUID, changes: dict[str, Any]
    ) -> WebhookSubscription:
        """Write only the given columns; concurrent writers of other columns are preserved."""
        unknown = set(changes) - set(self._UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unsupported subscription columns: {sorted(unknown)}")
        assignments = []
        values: list[Any] = [subscription_id]
        for column, value in changes.items():
            values.append(json.dumps(value) if column in self._JSON_COLUMNS else value)
            assignments.append(f"{column} = ${len(values)}{self._UPDATABLE_COLUMNS[column]}")
        assignments.append("updated_at = now()")
        record = await self._fetchrow(
            f"""
            UPDATE webhook_subscriptions
            SET {", ".join(assignments)}
            WHERE id = $1
            RETURNING *
            """,
            *values,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def delete(self, organization_id: UUID, subscription_id: UUID) -> None:
        record = await self._fetchrow(
            """
            DELETE FROM webhook_subscriptions
            WHERE organization_id = $1 AND id = $2
            RETURNING id
            """,
            organization_id,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")

    async def list_active_matching(
        self, organization_id: UUID, event_type: str
    ) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE organization_id = $1
              AND is_active = true
              AND $2 = ANY(event_types)
            ORDER BY created_at ASC
            """,
            organization_id,
            event_type,
        )
        return [self._to_model(r) for r in records]

    async def record_attempt(self, subscription_id: UUID, *, success: bool, at: datetime) -> None:
        await self._execute(
            """
            UPDATE webhook_subscriptions
            SET total_deliveries = total_deliveries + 1,
                successful_deliveries = successful_deliveries + CASE WHEN $2 THEN 1 ELSE 0 END,
                failed_deliveries = failed_deliveries + CASE WHEN $2 THEN 0 ELSE 1 END,
                last_triggered_at = $3,
                last_success_at = CASE WHEN $2 THEN $3 ELSE last_success_at END,
                last_failure_at = CASE WHEN $2 THEN last_failure_at ELSE $3 END
            WHERE id = $1
            """,
            subscription_id,
            success,
            at,
        )


class WebhookDeliveryRepository(BaseRepository):
    # columns that transition() is allowed to touch
    _MUTABLE_COLUMNS = frozenset(
        {
            "status",
            "attempt_number",
            "response_status_code",
            "response_body",
            "response_time_ms",
            "error_message",
            "error_code",
            "next_retry_at",
            "delivered_at",
        }
    )

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookDelivery:
        payload = _decode_json(dict(record), "payload")
        payload.pop("total_count", None)
        return WebhookDelivery.model_validate(payload)

    async def create(self, delivery: WebhookDelivery) -> tuple[WebhookDelivery, bool]:
        try:
            record = await self._fetchrow(
                """
                INSERT INTO webhook_deliveries (
                    id, subscription_id, organization_id, event_id, event_type, payload,
                    attempt_number, max_attempts, status, retried_from_id, dedup_key,
                    created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11, $12, $13)
                ON CONFLICT (dedup_key) DO NOTHING
                RETURNING *
                """,
                delivery.id,
                delivery.subscription_id,
                delivery.organization_id,
                delivery.event_id,
                delivery.event_type,
                json.dumps(delivery.payload),
                delivery.attempt_number,
                delivery.max_attempts,
                delivery.status.value,
                delivery.retried_from_id,
                delivery.dedup_key,
                delivery.created_at,
                delivery.updated_at,
            )
        except UniqueViolationError:
            record = None
        if record is not None:
            return self._to_model(record), True
        existing = await self._fetchrow(
            "SELECT * FROM webhook_deliveries WHERE dedup_key = $1", delivery.dedup_key
        )
        assert existing is not None
        return self._to_model(existing), False

    async def find(self, delivery_id: UUID) -> WebhookDelivery | None:
        record = await self._fetchrow("SELECT * FROM webhook_deliveries WHERE id = $1", delivery_id)
        return self._to_model(record) if record is not None else None

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
        unknown = set(changes) - self._MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported delivery columns: {sorted(unknown)}")
        assignments = []
        values: list[Any] = [delivery_id, [s.value for s in from_statuses]]
        for column, value in changes.items():
            values.append(value.value if isinstance(value, (DeliveryStatus, ErrorCode)) else value)
            assignments.append(f"{column} = ${len(values)}")
        assignments.append("locked_at = NULL")
        assignments.append("updated_at = now()")
        record = await self._fetchrow(
            f"""
            UPDATE webhook_deliveries
            SET {", ".join(assignments)}
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
            """,
            *values,
        )
        return self._to_model(record) if record is not None else None

    async def list_by_subscription(
        self,
        subscription_id: UUID,
        flt: DeliveryFilter,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        where = ["subscription_id = $1"]
        values: list[Any] = [subscription_id]
        idx = 2
        if flt.event_type is not None:
            where.append(f"event_type = ${idx}")
            values.append(flt.event_type)
            idx += 1
        if flt.status is not None:
            where.append(f"status = ${idx}")
            values.append(flt.status.value)
            idx += 1
        if flt.since is not None:
            where.append(f"created_at >= ${idx}")
            values.append(flt.since)
            idx += 1
        if flt.until is not None:
            where.append(f"created_at < ${idx}")
            values.append(flt.until)
            idx += 1
        where_sql = " AND ".join(where)
        records = await self._fetch(
            f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE {where_sql}
            ORDER BY created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
            """,
            *values,
            limit,
            offset,
        )
        items: List[WebhookDelivery] = []
        total: int | None = None
        for rec in records:
            total_value = rec["total_count"]
            if total_value is not None:
                total = int(total_value)
            items.append(self._to_model(rec))
        if total is None:
            total = int(
                await self._fetchval(
                    f"SELECT COUNT(*) FROM webhook_deliveries WHERE {where_sql}", *values
                )
            )
        return items, total

    async def cancel_active(self, subscription_id: UUID, *, reason: str) -> list[UUID]:
        records = await self._fetch(
            """
            UPDATE webhook_deliveries
            SET status = 'cancelled',
                error_code = 'cancelled',
                error_message = $2,
                next_retry_at = NULL,
                updated_at = now()
            WHERE subscription_id = $1
              AND status = ANY($3::text[])
            RETURNING id
            """,
            subscription_id,
            reason,
            [s.value for s in ACTIVE_STATUSES],
        )
        return [r["id"] for r in records]

    async def claim(self, delivery_id: UUID) -> WebhookDelivery | None:
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET locked_at = now(),
                updated_at = now()
            WHERE id = $1
              AND status = ANY($2::text[])
              AND locked_at IS NULL
            RETURNING *
            """,
            delivery_id,
            [s.value for s in ACTIVE_STATUSES],
        )
        return self._to_model(record) if record is not None else None

    async def release_stale_claims(self, cutoff: datetime) -> int:
        """Free claims taken before *cutoff* by workers that never finished. Returns count."""
        result = await self._execute(
            """
            UPDATE webhook_deliveries
            SET locked_at = NULL,
                updated_at = now()
            WHERE locked_at < $1
              AND status = ANY($2::text[])
            """,
            cutoff,
            [s.value for s in ACTIVE_STATUSES],
        )
        return self._affected(result)

    async def list_active(self) -> List[WebhookDelivery]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_deliveries
            WHERE status = ANY($1::text[])
            ORDER BY COALESCE(next_retry_at, created_at) ASC
            """,
            [s.value for s in ACTIVE_STATUSES],
        )
        return [self._to_model(r) for r in records]

    async def delete_delivered_before(self, cutoff: datetime) -> int:
        """Purge delivered chains older than *cutoff* (attempts cascade). Returns count."""
        result = await self._execute(
            "DELETE FROM webhook_deliveries WHERE status = 'delivered' AND created_at < $1",
            cutoff,
        )
        return self._affected(result)

    async def counts(self, subscription_id: UUID, *, since: datetime) -> DeliveryCounts:
        by_status = await self._fetch(
            """
            SELECT status, COUNT(*) AS total
            FROM webhook_deliveries
            WHERE subscription_id = $1
            GROUP BY status
            """,
            subscription_id,
        )
        by_event = await self._fetch(
            """
            SELECT event_type, COUNT(*) AS total
            FROM webhook_deliveries
            WHERE subscription_id = $1
            GROUP BY event_type
            """,
            subscription_id,
        )
        recent = await self._fetchval(
            "SELECT COUNT(*) FROM webhook_deliveries WHERE subscription_id = $1 AND created_at >= $2",
            subscription_id,
            since,
        )
        return DeliveryCounts(
            by_status={r["status"]: int(r["total"]) for r in by_status},
            by_event_type={r["event_type"]: int(r["total"]) for r in by_event},
            created_since=int(recent or 0),
        )


class DeliveryAttemptRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> DeliveryAttempt:
        return DeliveryAttempt.model_validate(dict(record))

    async def append(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_delivery_attempts (
                id, delivery_id, subscription_id, attempt_number, outcome, error_code,
                response_status_code, response_body, response_time_ms, error_message,
                attempted_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING *
            """,
            attempt.id,
            attempt.delivery_id,
            attempt.subscription_id,
            attempt.attempt_number,
            attempt.outcome.value,
            attempt.error_code.value if attempt.error_code else None,
            attempt.response_status_code,
            attempt.response_body,
            attempt.response_time_ms,
            attempt.error_message,
            attempt.attempted_at,
        )
        assert record is not None
        return self._to_model(record)

    async def list_by_delivery(self, delivery_id: UUID) -> List[DeliveryAttempt]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_delivery_attempts
            WHERE delivery_id = $1
            ORDER BY attempt_number ASC
            """,
            delivery_id,
        )
        return [self._to_model(r) for r in records]

    async def counts(self, subscription_id: UUID, *, since: datetime) -> AttemptCounts:
        record = await self._fetchrow(
            """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE outcome = 'success') AS successful,
                   AVG(response_time_ms) AS average_response_time_ms,
                   COUNT(*) FILTER (WHERE outcome <> 'success' AND attempted_at >= $2) AS failed_since
            FROM webhook_delivery_attempts
            WHERE subscription_id = $1
            """,
            subscription_id,
            since,
        )
        if record is None:
            return AttemptCounts()
        average = record["average_response_time_ms"]
        return AttemptCounts(
            total=int(record["total"]),
            successful=int(record["successful"]),
            average_response_time_ms=float(average) if average is not None else None,
            failed_since=int(record["failed_since"]),
        )
