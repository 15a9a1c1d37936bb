"""Background workers for webhook-service.

Each worker is a standalone module exporting a single async task function
compatible with :class:`backend_common.worker.WorkerTask`.

:func:`create_maintenance_worker` aggregates them; its ``start`` / ``stop``
methods are the lifecycle hooks registered by the application.
"""
from __future__ import annotations

from backend_common.worker import BackgroundWorker, WorkerTask

from webhook_service.settings import Settings
from webhook_service.workers.webhook_purge import webhook_purge_delivered
from webhook_service.workers.webhook_reclaim import webhook_reclaim_stuck
from webhook_service.workers.webhook_requeue import webhook_requeue_orphans


def create_maintenance_worker(settings: Settings) -> BackgroundWorker:
    return BackgroundWorker(
        name="webhook_maintenance",
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(name="webhook_reclaim_stuck", fn=webhook_reclaim_stuck),
            WorkerTask(name="webhook_requeue_orphans", fn=webhook_requeue_orphans),
            WorkerTask(name="webhook_purge_delivered", fn=webhook_purge_delivered),
        ],
    )


__all__ = [
    "create_maintenance_worker",
    "webhook_purge_delivered",
    "webhook_reclaim_stuck",
    "webhook_requeue_orphans",
]
