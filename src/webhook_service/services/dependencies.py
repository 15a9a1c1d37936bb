"""Shared dependency providers for aiohttp handlers and background tasks.

Storage, the HTTP session and the delivery queue live for the whole
application in a :class:`WebhookEngine` stored on the app; request-scoped
services are built from it and cached on the request.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar
from uuid import UUID

from aiohttp import ClientSession, web

from backend_common.db.pool import get_pool
from webhook_service.delivery_queue import DelayQueue
from webhook_service.delivery_worker import DeliveryWorker
from webhook_service.repositories import (
    DeliveryAttemptRepository,
    InMemoryAttemptRepository,
    InMemoryDeliveryRepository,
    InMemorySubscriptionRepository,
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.repositories.interfaces import (
    AttemptRepository,
    DeliveryRepository,
    SubscriptionRepository,
)
from webhook_service.services.dispatcher import EventDispatcher
from webhook_service.services.executor import DeliveryExecutor
from webhook_service.services.ledger import DeliveryLedger
from webhook_service.services.registry import SubscriptionRegistry
from webhook_service.services.retry import RetryScheduler
from webhook_service.services.sandbox import TestDeliverySandbox
from webhook_service.services.secrets import SecretStore
from webhook_service.settings import Settings

TService = TypeVar("TService")

ENGINE_KEY = "webhook_engine"

_REGISTRY_KEY = "subscription_registry"
_DISPATCHER_KEY = "event_dispatcher"
_LEDGER_KEY = "delivery_ledger"
_SANDBOX_KEY = "test_delivery_sandbox"

ORGANIZATION_ID_HEADER = "X-Organization-Id"


@dataclass
class WebhookEngine:
    settings: Settings
    subscriptions: SubscriptionRepository
    deliveries: DeliveryRepository
    attempts: AttemptRepository
    secret_store: SecretStore
    queue: DelayQueue
    session: ClientSession
    executor: DeliveryExecutor
    scheduler: RetryScheduler
    worker: DeliveryWorker


def build_engine(
    settings: Settings,
    subscriptions: SubscriptionRepository,
    deliveries: DeliveryRepository,
    attempts: AttemptRepository,
    session: ClientSession,
) -> WebhookEngine:
    secret_store = SecretStore(settings.webhook_secret_encryption_key)
    queue = DelayQueue()
    executor = DeliveryExecutor(
        session,
        secret_store,
        attempts,
        subscriptions,
        user_agent=settings.webhook_user_agent,
        response_body_max_chars=settings.webhook_response_body_max_chars,
    )
    scheduler = RetryScheduler(
        deliveries,
        subscriptions,
        queue,
        base_seconds=settings.webhook_backoff_base_seconds,
        max_seconds=settings.webhook_backoff_max_seconds,
        jitter_ratio=settings.webhook_backoff_jitter_ratio,
    )
    worker = DeliveryWorker(
        queue,
        deliveries,
        subscriptions,
        executor,
        scheduler,
        concurrency=settings.webhook_dispatch_max_concurrency,
        per_target_concurrency=settings.webhook_target_max_concurrency,
    )
    return WebhookEngine(
        settings=settings,
        subscriptions=subscriptions,
        deliveries=deliveries,
        attempts=attempts,
        secret_store=secret_store,
        queue=queue,
        session=session,
        executor=executor,
        scheduler=scheduler,
        worker=worker,
    )


async def build_postgres_engine(settings: Settings, session: ClientSession) -> WebhookEngine:
    pool = await get_pool()
    return build_engine(
        settings,
        WebhookSubscriptionRepository(pool),
        WebhookDeliveryRepository(pool),
        DeliveryAttemptRepository(pool),
        session,
    )


def build_memory_engine(settings: Settings, session: ClientSession) -> WebhookEngine:
    deliveries = InMemoryDeliveryRepository()
    return build_engine(
        settings,
        InMemorySubscriptionRepository(),
        deliveries,
        InMemoryAttemptRepository(deliveries),
        session,
    )


def get_engine(app: web.Application) -> WebhookEngine:
    engine = app.get(ENGINE_KEY)
    if engine is None:
        raise RuntimeError("Webhook engine not initialized")
    return engine


def require_organization_id(request: web.Request) -> UUID:
    """Organization scope of the request; not an authentication mechanism."""
    header = request.headers.get(ORGANIZATION_ID_HEADER)
    if header is None:
        raise web.HTTPBadRequest(text=f"Header {ORGANIZATION_ID_HEADER} is required")
    try:
        return UUID(header)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {ORGANIZATION_ID_HEADER}") from exc


async def _get_or_create_service(
    request: web.Request,
    cache_key: str,
    builder: Callable[[web.Request], Awaitable[TService]],
) -> TService:
    service = request.get(cache_key)
    if service is None:
        service = await builder(request)
        request[cache_key] = service
    return service


async def get_registry(request: web.Request) -> SubscriptionRegistry:
    async def builder(req: web.Request) -> SubscriptionRegistry:
        engine = get_engine(req.app)
        return SubscriptionRegistry(
            engine.subscriptions, engine.deliveries, engine.secret_store, engine.settings
        )

    return await _get_or_create_service(request, _REGISTRY_KEY, builder)


async def get_dispatcher(request: web.Request) -> EventDispatcher:
    async def builder(req: web.Request) -> EventDispatcher:
        engine = get_engine(req.app)
        return EventDispatcher(engine.subscriptions, engine.deliveries, engine.queue)

    return await _get_or_create_service(request, _DISPATCHER_KEY, builder)


async def get_ledger(request: web.Request) -> DeliveryLedger:
    async def builder(req: web.Request) -> DeliveryLedger:
        engine = get_engine(req.app)
        return DeliveryLedger(engine.subscriptions, engine.deliveries, engine.attempts)

    return await _get_or_create_service(request, _LEDGER_KEY, builder)


async def get_sandbox(request: web.Request) -> TestDeliverySandbox:
    async def builder(req: web.Request) -> TestDeliverySandbox:
        engine = get_engine(req.app)
        return TestDeliverySandbox(engine.subscriptions, engine.executor, engine.secret_store)

    return await _get_or_create_service(request, _SANDBOX_KEY, builder)


async def get_scheduler(request: web.Request) -> RetryScheduler:
    return get_engine(request.app).scheduler
