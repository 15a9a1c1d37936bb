"""Subscription registry: CRUD, validation and signing-secret lifecycle."""
from __future__ import annotations

from typing import Any, List
from urllib.parse import urlsplit, urlunsplit
from uuid import UUID, uuid4

import structlog

from webhook_service.core.exceptions import ValidationError
from webhook_service.domain.dto import SubscriptionFilter, WebhookCreateDTO, WebhookUpdateDTO
from webhook_service.domain.enums import KNOWN_EVENT_TYPES
from webhook_service.domain.models import SecretIssued, WebhookSubscription, utc_now
from webhook_service.repositories.interfaces import DeliveryRepository, SubscriptionRepository
from webhook_service.services.secrets import SecretStore
from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

_RESERVED_HEADERS = frozenset({"content-type", "content-length", "host", "user-agent"})
_RESERVED_HEADER_PREFIX = "x-webhook-"


def normalize_event_types(event_types: list[str]) -> list[str]:
    """Strip, drop blanks and de-duplicate while keeping order; reject unknown types."""
    normalized = [e.strip() for e in event_types if e and e.strip()]
    normalized = list(dict.fromkeys(normalized))
    if not normalized:
        raise ValidationError("eventTypes must be a non-empty list")
    unknown = [e for e in normalized if e not in KNOWN_EVENT_TYPES]
    if unknown:
        raise ValidationError(f"Unknown event types: {', '.join(unknown)}")
    return normalized


def validate_endpoint_url(url: str) -> str:
    url = url.strip()
    parts = urlsplit(url)
    if parts.scheme.lower() != "https":
        raise ValidationError("endpointUrl must use https")
    if not parts.hostname:
        raise ValidationError("endpointUrl must include a host")
    return urlunsplit(parts._replace(scheme="https"))


def validate_custom_headers(headers: dict[str, str]) -> dict[str, str]:
    for name, value in headers.items():
        lowered = name.strip().lower()
        if not lowered:
            raise ValidationError("Custom header names must not be empty")
        if lowered in _RESERVED_HEADERS or lowered.startswith(_RESERVED_HEADER_PREFIX):
            raise ValidationError(f"Custom header {name} is reserved")
        if any(ch in name + value for ch in "\r\n"):
            raise ValidationError(f"Custom header {name} contains a line break")
    return dict(headers)


class SubscriptionRegistry:
    def __init__(
        self,
        subscription_repository: SubscriptionRepository,
        delivery_repository: DeliveryRepository,
        secret_store: SecretStore,
        settings: Settings,
    ):
        self._subscriptions = subscription_repository
        self._deliveries = delivery_repository
        self._secrets = secret_store
        self._settings = settings

    def _validate_retry_count(self, value: int) -> int:
        low, high = self._settings.webhook_min_retry_count, self._settings.webhook_max_retry_count
        if not low <= value <= high:
            raise ValidationError(f"retryCount must be between {low} and {high}")
        return value

    def _validate_timeout(self, value: int) -> int:
        low = self._settings.webhook_min_timeout_seconds
        high = self._settings.webhook_max_timeout_seconds
        if not low <= value <= high:
            raise ValidationError(f"timeoutSeconds must be between {low} and {high}")
        return value

    @staticmethod
    def _validate_name(value: str) -> str:
        value = value.strip()
        if not value:
            raise ValidationError("name must not be empty")
        return value

    async def create(
        self, organization_id: UUID, dto: WebhookCreateDTO
    ) -> tuple[WebhookSubscription, SecretIssued]:
        retry_count = (
            dto.retry_count
            if dto.retry_count is not None
            else self._settings.webhook_default_retry_count
        )
        timeout_seconds = (
            dto.timeout_seconds
            if dto.timeout_seconds is not None
            else self._settings.webhook_default_timeout_seconds
        )
        now = utc_now()
        secret = self._secrets.generate()
        subscription = WebhookSubscription(
            id=uuid4(),
            organization_id=organization_id,
            name=self._validate_name(dto.name),
            description=dto.description,
            endpoint_url=validate_endpoint_url(dto.endpoint_url),
            event_types=normalize_event_types(dto.event_types),
            is_active=True,
            retry_count=self._validate_retry_count(retry_count),
            timeout_seconds=self._validate_timeout(timeout_seconds),
            custom_headers=validate_custom_headers(dto.custom_headers),
            metadata=dto.metadata,
            secret_ciphertext=self._secrets.encrypt(secret),
            secret_fingerprint=self._secrets.fingerprint(secret),
            secret_rotated_at=None,
            created_at=now,
            updated_at=now,
        )
        created = await self._subscriptions.create(subscription)
        logger.info(
            "Webhook subscription created",
            subscription_id=str(created.id),
            organization_id=str(organization_id),
            event_types=created.event_types,
            secret_fingerprint=created.secret_fingerprint,
        )
        return created, SecretIssued(webhook_id=created.id, new_secret=secret, rotated_at=now)

    async def get(self, organization_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        return await self._subscriptions.get(subscription_id, organization_id=organization_id)

    async def list(
        self,
        organization_id: UUID,
        flt: SubscriptionFilter | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[WebhookSubscription], int]:
        return await self._subscriptions.list_by_organization(
            organization_id, flt or SubscriptionFilter(), limit=limit, offset=offset
        )

    async def update(
        self, organization_id: UUID, subscription_id: UUID, dto: WebhookUpdateDTO
    ) -> WebhookSubscription:
        current = await self.get(organization_id, subscription_id)
        fields = dto.model_fields_set
        changes: dict[str, Any] = {}
        if "name" in fields and dto.name is not None:
            changes["name"] = self._validate_name(dto.name)
        if "description" in fields:
            changes["description"] = dto.description
        if "endpoint_url" in fields and dto.endpoint_url is not None:
            changes["endpoint_url"] = validate_endpoint_url(dto.endpoint_url)
        if "event_types" in fields:
            changes["event_types"] = normalize_event_types(dto.event_types or [])
        if "retry_count" in fields and dto.retry_count is not None:
            changes["retry_count"] = self._validate_retry_count(dto.retry_count)
        if "timeout_seconds" in fields and dto.timeout_seconds is not None:
            changes["timeout_seconds"] = self._validate_timeout(dto.timeout_seconds)
        if "custom_headers" in fields:
            changes["custom_headers"] = validate_custom_headers(dto.custom_headers or {})
        if "metadata" in fields:
            changes["metadata"] = dto.metadata or {}
        if "is_active" in fields and dto.is_active is not None:
            changes["is_active"] = dto.is_active

        if not changes:
            return current
        updated = await self._subscriptions.update_fields(subscription_id, changes)
        if current.is_active and not updated.is_active:
            await self._cancel_outstanding(updated.id, reason="Subscription deactivated")
        logger.info(
            "Webhook subscription updated",
            subscription_id=str(updated.id),
            fields=sorted(changes),
        )
        return updated

    async def set_active(
        self, organization_id: UUID, subscription_id: UUID, is_active: bool
    ) -> WebhookSubscription:
        return await self.update(
            organization_id, subscription_id, WebhookUpdateDTO(is_active=is_active)
        )

    async def delete(self, organization_id: UUID, subscription_id: UUID) -> list[UUID]:
        """Hard-delete the subscription; outstanding deliveries become ``cancelled``."""
        await self._subscriptions.delete(organization_id, subscription_id)
        return await self._cancel_outstanding(subscription_id, reason="Subscription deleted")

    async def rotate_secret(self, organization_id: UUID, subscription_id: UUID) -> SecretIssued:
        current = await self.get(organization_id, subscription_id)
        secret = self._secrets.generate()
        now = utc_now()
        await self._subscriptions.update_fields(
            subscription_id,
            {
                "secret_ciphertext": self._secrets.encrypt(secret),
                "secret_fingerprint": self._secrets.fingerprint(secret),
                "secret_rotated_at": now,
            },
        )
        logger.info(
            "Webhook secret rotated",
            subscription_id=str(subscription_id),
            old_fingerprint=current.secret_fingerprint,
            secret_fingerprint=self._secrets.fingerprint(secret),
        )
        return SecretIssued(webhook_id=subscription_id, new_secret=secret, rotated_at=now)

    async def _cancel_outstanding(self, subscription_id: UUID, *, reason: str) -> list[UUID]:
        cancelled = await self._deliveries.cancel_active(subscription_id, reason=reason)
        if cancelled:
            logger.info(
                "Cancelled outstanding deliveries",
                subscription_id=str(subscription_id),
                count=len(cancelled),
                reason=reason,
            )
        return cancelled
