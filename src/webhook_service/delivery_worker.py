"""Delivery worker pool consuming the delay queue."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from urllib.parse import urlsplit
from uuid import UUID

import structlog
from aiohttp import web

from webhook_service.delivery_queue import DelayQueue
from webhook_service.domain.enums import ErrorCode
from webhook_service.domain.models import utc_now
from webhook_service.domain.outcomes import Failure, Outcome
from webhook_service.repositories.interfaces import DeliveryRepository, SubscriptionRepository
from webhook_service.services.executor import DeliveryExecutor
from webhook_service.services.retry import RetryScheduler

logger = structlog.get_logger(__name__)


class DeliveryWorker:
    """N consumer tasks; attempts of one chain never overlap.

    A chain is only re-enqueued after its outcome is stored, so at most one
    consumer holds a given delivery id. Requests to one endpoint host are
    additionally bounded by ``per_target_concurrency``.
    """

    def __init__(
        self,
        queue: DelayQueue,
        delivery_repository: DeliveryRepository,
        subscription_repository: SubscriptionRepository,
        executor: DeliveryExecutor,
        scheduler: RetryScheduler,
        *,
        concurrency: int = 10,
        per_target_concurrency: int = 2,
        name: str = "delivery_worker",
    ):
        self._queue = queue
        self._deliveries = delivery_repository
        self._subscriptions = subscription_repository
        self._executor = executor
        self._scheduler = scheduler
        self._concurrency = max(1, concurrency)
        self._per_target = max(1, per_target_concurrency)
        self._target_limits: dict[str, asyncio.Semaphore] = {}
        self._in_flight: set[UUID] = set()
        self.name = name

    @property
    def _app_key(self) -> str:
        return f"__{self.name}_tasks__"

    def _target_limit(self, endpoint_url: str) -> asyncio.Semaphore:
        target = urlsplit(endpoint_url).netloc.lower()
        limit = self._target_limits.get(target)
        if limit is None:
            limit = asyncio.Semaphore(self._per_target)
            self._target_limits[target] = limit
        return limit

    async def start(self, app: web.Application) -> None:
        """Recover outstanding deliveries and spawn consumers. Register with ``app.on_startup``."""
        recovered = await self.recover()
        app[self._app_key] = [
            asyncio.create_task(self._consume(index)) for index in range(self._concurrency)
        ]
        logger.info(
            "delivery_worker started",
            worker=self.name,
            consumers=self._concurrency,
            recovered=recovered,
        )

    async def stop(self, app: web.Application) -> None:
        """Cancel consumers. Register with ``app.on_cleanup``."""
        tasks = app.get(self._app_key) or []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("delivery_worker stopped", worker=self.name)

    async def recover(self) -> int:
        """Queue every pending/retrying delivery found in storage."""
        active = await self._deliveries.list_active()
        for delivery in active:
            await self._queue.put(delivery.id, delivery.due_at)
        return len(active)

    async def requeue_orphans(self, now: datetime, grace: timedelta) -> int:
        """Queue active deliveries overdue by more than ``grace`` that nobody holds."""
        requeued = 0
        for delivery in await self._deliveries.list_active():
            if delivery.id in self._queue or delivery.id in self._in_flight:
                continue
            if delivery.locked_at is not None:
                continue
            if delivery.due_at > now - grace:
                continue
            await self._queue.put(delivery.id)
            requeued += 1
        return requeued

    async def process(self, delivery_id: UUID) -> Outcome | None:
        """Run the next attempt of a delivery, if it is still deliverable."""
        delivery = await self._deliveries.find(delivery_id)
        if delivery is None or delivery.status.is_terminal:
            return None
        if delivery.due_at > utc_now():
            await self._queue.put(delivery.id, delivery.due_at)
            return None

        subscription = await self._subscriptions.find(delivery.subscription_id)
        if subscription is None:
            await self._scheduler.cancel(delivery, reason="Subscription deleted")
            return None
        if not subscription.is_active:
            await self._scheduler.cancel(delivery, reason="Subscription deactivated")
            return None

        claimed = await self._deliveries.claim(delivery.id)
        if claimed is None:
            logger.debug("Delivery held by another worker", delivery_id=str(delivery.id))
            return None

        try:
            async with self._target_limit(subscription.endpoint_url):
                outcome: Outcome = await self._executor.attempt(claimed, subscription)
        except Exception as exc:
            # the failed attempt still consumes budget so the chain cannot loop forever
            logger.exception(
                "delivery attempt crashed",
                worker=self.name,
                delivery_id=str(claimed.id),
                attempt=claimed.attempt_number,
            )
            outcome = Failure(
                status_code=None,
                response_body=None,
                elapsed_ms=0,
                error_code=ErrorCode.INTERNAL_ERROR,
                error_message=f"Internal error: {exc.__class__.__name__}",
            )
        await self._scheduler.handle_outcome(claimed, outcome)
        return outcome

    async def _consume(self, index: int) -> None:
        while True:
            delivery_id = await self._queue.get()
            self._in_flight.add(delivery_id)
            try:
                await self.process(delivery_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "delivery processing failed",
                    worker=self.name,
                    consumer=index,
                    delivery_id=str(delivery_id),
                )
            finally:
                self._in_flight.discard(delivery_id)
