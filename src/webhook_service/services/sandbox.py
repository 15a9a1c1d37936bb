"""Test deliveries from the developer portal: no persistence, no retries."""
from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from webhook_service.core.exceptions import ValidationError
from webhook_service.domain.enums import EventType
from webhook_service.domain.models import EventEnvelope, TestResult, utc_now
from webhook_service.domain.outcomes import is_success
from webhook_service.repositories.interfaces import SubscriptionRepository
from webhook_service.services.executor import DeliveryExecutor
from webhook_service.services.secrets import SecretStore

logger = structlog.get_logger(__name__)

TEST_HEADER = "X-Webhook-Test"


def sample_payload(event_type: str) -> dict[str, Any]:
    """Built-in example payload for an event type."""
    now = utc_now().isoformat()
    samples: dict[str, dict[str, Any]] = {
        EventType.FAULT_CREATED.value: {
            "id": "fault_test_123",
            "title": "Test Fault Report",
            "description": "This is a test fault report",
            "priority": "medium",
            "status": "open",
            "building_id": "building_456",
            "unit_id": "unit_789",
            "created_at": now,
        },
        EventType.FAULT_UPDATED.value: {
            "id": "fault_test_123",
            "title": "Test Fault Report",
            "status": "in_progress",
            "updated_at": now,
        },
        EventType.FAULT_RESOLVED.value: {
            "id": "fault_test_123",
            "title": "Test Fault Report",
            "status": "resolved",
            "resolved_at": now,
            "resolution_notes": "Issue has been fixed",
        },
        EventType.PAYMENT_RECEIVED.value: {
            "id": "payment_test_123",
            "amount": 500.0,
            "currency": "EUR",
            "unit_id": "unit_789",
            "resident_id": "resident_456",
            "received_at": now,
        },
        EventType.PAYMENT_OVERDUE.value: {
            "id": "payment_test_123",
            "amount": 500.0,
            "currency": "EUR",
            "unit_id": "unit_789",
            "due_date": now,
            "days_overdue": 15,
        },
        EventType.RESIDENT_MOVED_IN.value: {
            "id": "resident_test_123",
            "name": "Test Resident",
            "unit_id": "unit_789",
            "move_in_date": now,
        },
        EventType.RESIDENT_MOVED_OUT.value: {
            "id": "resident_test_123",
            "name": "Test Resident",
            "unit_id": "unit_789",
            "move_out_date": now,
        },
        EventType.VOTE_STARTED.value: {
            "id": "vote_test_123",
            "title": "Test Vote",
            "description": "This is a test vote",
            "start_date": now,
        },
        EventType.VOTE_ENDED.value: {
            "id": "vote_test_123",
            "title": "Test Vote",
            "result": "approved",
            "yes_votes": 15,
            "no_votes": 5,
            "abstain_votes": 2,
            "ended_at": now,
        },
        EventType.ANNOUNCEMENT_PUBLISHED.value: {
            "id": "announcement_test_123",
            "title": "Test Announcement",
            "content": "This is a test announcement",
            "author_id": "user_456",
            "published_at": now,
        },
        EventType.DOCUMENT_UPLOADED.value: {
            "id": "document_test_123",
            "filename": "test_document.pdf",
            "file_type": "application/pdf",
            "file_size": 1024000,
            "uploaded_by": "user_456",
            "uploaded_at": now,
        },
        EventType.WORK_ORDER_CREATED.value: {
            "id": "work_order_test_123",
            "title": "Test Work Order",
            "description": "This is a test work order",
            "priority": "high",
            "fault_id": "fault_test_123",
            "created_at": now,
        },
        EventType.WORK_ORDER_COMPLETED.value: {
            "id": "work_order_test_123",
            "title": "Test Work Order",
            "status": "completed",
            "completed_at": now,
            "completion_notes": "Work has been completed",
        },
    }
    return samples.get(event_type, {})


class TestDeliverySandbox:
    __test__ = False  # not a pytest class

    def __init__(
        self,
        subscription_repository: SubscriptionRepository,
        executor: DeliveryExecutor,
        secret_store: SecretStore,
    ):
        self._subscriptions = subscription_repository
        self._executor = executor
        self._secrets = secret_store

    async def test_deliver(
        self,
        organization_id: UUID,
        subscription_id: UUID,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> TestResult:
        subscription = await self._subscriptions.get(subscription_id, organization_id=organization_id)
        if event_type not in subscription.event_types:
            raise ValidationError(f"Subscription is not subscribed to {event_type}")

        envelope = EventEnvelope(
            event_type=event_type,
            organization_id=organization_id,
            payload=payload if payload is not None else sample_payload(event_type),
        )
        outcome = await self._executor.send(
            subscription,
            self._secrets.decrypt(subscription.secret_ciphertext),
            envelope.wire_body(),
            {TEST_HEADER: "true"},
        )
        logger.info(
            "Test webhook sent",
            subscription_id=str(subscription_id),
            event_type=event_type,
            outcome=outcome.kind.value,
            status_code=outcome.status_code,
        )
        return TestResult(
            success=is_success(outcome),
            response_status_code=outcome.status_code,
            response_body=outcome.response_body,
            response_time_ms=outcome.elapsed_ms,
            error_message=outcome.error_message,
        )
