"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path
from typing import Callable

import structlog
from aiohttp import ClientSession, web

from backend_common.aiohttp_app import add_cors_to_routes, add_healthcheck, create_base_app
from backend_common.db.migrations import create_migration_runner
from backend_common.db.pool import create_pool_wrappers
from backend_common.logging_config import configure_logging

from webhook_service.api.router import setup_routes
from webhook_service.api.utils import error_middleware
from webhook_service.otel import setup_otel, shutdown_otel
from webhook_service.services.dependencies import (
    ENGINE_KEY,
    build_memory_engine,
    build_postgres_engine,
    get_engine,
)
from webhook_service.settings import Settings, get_settings
from webhook_service.workers import create_maintenance_worker

logger = structlog.get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

MIGRATION_PATHS = [
    PROJECT_ROOT / "migrations",  # /app/migrations in container, repo root locally
    Path("/app/migrations"),
]


def create_app(
    app_settings: Settings | None = None,
    *,
    session_factory: Callable[[], ClientSession] | None = None,
) -> web.Application:
    settings = app_settings or get_settings()
    configure_logging(settings.log_level)

    app, cors = create_base_app(settings)
    app.middlewares.append(error_middleware)

    add_healthcheck(app, settings)
    setup_routes(app)
    add_cors_to_routes(app, cors)
    setup_otel(app, settings)

    make_session = session_factory or ClientSession
    maintenance = create_maintenance_worker(settings)

    async def init_engine(app_: web.Application) -> None:
        session = make_session()
        if settings.storage_backend == "postgres":
            engine = await build_postgres_engine(settings, session)
        else:
            engine = build_memory_engine(settings, session)
        app_[ENGINE_KEY] = engine
        logger.info("Webhook engine ready", storage_backend=settings.storage_backend)

    async def start_delivery_worker(app_: web.Application) -> None:
        if settings.webhook_worker_enabled:
            await get_engine(app_).worker.start(app_)

    async def stop_delivery_worker(app_: web.Application) -> None:
        engine = app_.get(ENGINE_KEY)
        if engine is None:
            return
        await engine.worker.stop(app_)
        await engine.session.close()

    if settings.storage_backend == "postgres":
        init_pool, close_pool = create_pool_wrappers(settings)
        app.on_startup.append(init_pool)
        app.on_startup.append(create_migration_runner(settings, MIGRATION_PATHS))
    app.on_startup.append(init_engine)
    app.on_startup.append(start_delivery_worker)
    app.on_startup.append(maintenance.start)

    app.on_cleanup.append(maintenance.stop)
    app.on_cleanup.append(stop_delivery_worker)
    if settings.storage_backend == "postgres":
        app.on_cleanup.append(close_pool)
    app.on_cleanup.append(shutdown_otel)

    return app


def main() -> None:
    settings = get_settings()
    web.run_app(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
