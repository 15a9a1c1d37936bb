"""Delivery executor: one signed HTTP POST per attempt."""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Mapping
from uuid import UUID, uuid4

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout

from webhook_service.domain.enums import ErrorCode
from webhook_service.domain.models import DeliveryAttempt, WebhookDelivery, WebhookSubscription, utc_now
from webhook_service.domain.outcomes import Failure, Outcome, Success, Timeout, is_success
from webhook_service.otel import get_tracer
from webhook_service.repositories.interfaces import AttemptRepository, SubscriptionRepository
from webhook_service.services.secrets import SecretStore
from webhook_service.services.signature import sign

logger = structlog.get_logger(__name__)


def encode_body(body: Mapping[str, Any]) -> bytes:
    """Compact UTF-8 JSON; these exact bytes are signed and sent."""
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class DeliveryExecutor:
    def __init__(
        self,
        session: ClientSession,
        secret_store: SecretStore,
        attempt_repository: AttemptRepository,
        subscription_repository: SubscriptionRepository,
        *,
        user_agent: str,
        response_body_max_chars: int = 2000,
    ):
        self._session = session
        self._secrets = secret_store
        self._attempts = attempt_repository
        self._subscriptions = subscription_repository
        self._user_agent = user_agent
        self._max_body = response_body_max_chars
        self._tracer = get_tracer(__name__)

    def build_headers(
        self,
        subscription: WebhookSubscription,
        signature: str,
        *,
        event_type: str,
        event_id: str,
        delivery_id: UUID,
        attempt_number: int,
        headers_extra: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        # custom headers first so the protocol headers always win
        headers = dict(subscription.custom_headers)
        headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": self._user_agent,
                "X-Webhook-Signature": signature,
                "X-Webhook-Event": event_type,
                "X-Webhook-Event-Id": event_id,
                "X-Webhook-Delivery-Id": str(delivery_id),
                "X-Webhook-Attempt": str(attempt_number),
                "X-Webhook-Timestamp": str(int(time.time())),
            }
        )
        if headers_extra:
            headers.update(headers_extra)
        return headers

    def _truncate(self, text: str | None) -> str | None:
        if text is None:
            return None
        return text[: self._max_body]

    async def send(
        self,
        subscription: WebhookSubscription,
        secret: str,
        body: Mapping[str, Any],
        headers_extra: Mapping[str, str] | None = None,
        *,
        delivery_id: UUID | None = None,
        attempt_number: int = 1,
    ) -> Outcome:
        """POST ``body`` to the subscription endpoint. Expected failures are returned, not raised."""
        body_bytes = encode_body(body)
        headers = self.build_headers(
            subscription,
            sign(secret, body_bytes),
            event_type=str(body.get("eventType", "")),
            event_id=str(body.get("eventId", "")),
            delivery_id=delivery_id or uuid4(),
            attempt_number=attempt_number,
            headers_extra=headers_extra,
        )
        timeout = ClientTimeout(total=subscription.timeout_seconds)
        started = time.monotonic()
        try:
            async with self._session.post(
                subscription.endpoint_url,
                data=body_bytes,
                headers=headers,
                timeout=timeout,
                allow_redirects=False,
            ) as resp:
                text = await resp.text(errors="replace")
                elapsed = _elapsed_ms(started)
                if 200 <= resp.status < 300:
                    return Success(resp.status, self._truncate(text), elapsed)
                return Failure(
                    status_code=resp.status,
                    response_body=self._truncate(text),
                    elapsed_ms=elapsed,
                    error_code=ErrorCode.RECEIVER_ERROR,
                    error_message=f"HTTP {resp.status}",
                )
        except asyncio.TimeoutError:
            return Timeout(
                error_message=f"Request timed out after {subscription.timeout_seconds}s",
                elapsed_ms=_elapsed_ms(started),
            )
        except ClientError as exc:
            return Failure(
                status_code=None,
                response_body=None,
                elapsed_ms=_elapsed_ms(started),
                error_code=ErrorCode.NETWORK_ERROR,
                error_message=str(exc) or exc.__class__.__name__,
            )

    async def attempt(self, delivery: WebhookDelivery, subscription: WebhookSubscription) -> Outcome:
        """Run one attempt of a delivery chain and append it to the ledger."""
        # secret read once: an attempt never mixes old and new secrets
        secret = self._secrets.decrypt(subscription.secret_ciphertext)
        with self._tracer.start_as_current_span("webhook.delivery_attempt") as span:
            span.set_attribute("webhook.subscription_id", str(subscription.id))
            span.set_attribute("webhook.delivery_id", str(delivery.id))
            span.set_attribute("webhook.event_type", delivery.event_type)
            span.set_attribute("webhook.attempt", delivery.attempt_number)
            outcome = await self.send(
                subscription,
                secret,
                delivery.payload,
                delivery_id=delivery.id,
                attempt_number=delivery.attempt_number,
            )
            span.set_attribute("webhook.outcome", outcome.kind.value)
            if outcome.status_code is not None:
                span.set_attribute("http.status_code", outcome.status_code)

        attempted_at = utc_now()
        await self._attempts.append(
            DeliveryAttempt(
                id=uuid4(),
                delivery_id=delivery.id,
                subscription_id=subscription.id,
                attempt_number=delivery.attempt_number,
                outcome=outcome.kind,
                error_code=outcome.error_code,
                response_status_code=outcome.status_code,
                response_body=outcome.response_body,
                response_time_ms=outcome.elapsed_ms,
                error_message=outcome.error_message,
                attempted_at=attempted_at,
            )
        )
        await self._subscriptions.record_attempt(
            subscription.id, success=is_success(outcome), at=attempted_at
        )
        logger.info(
            "Webhook delivery attempt",
            delivery_id=str(delivery.id),
            subscription_id=str(subscription.id),
            attempt=delivery.attempt_number,
            outcome=outcome.kind.value,
            status_code=outcome.status_code,
            elapsed_ms=outcome.elapsed_ms,
        )
        return outcome
