"""Asyncpg connection pool helpers."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

import asyncpg  # type: ignore[import-untyped]

pool: asyncpg.Pool | None = None


class SettingsProtocol(Protocol):
    """Protocol for settings objects with database configuration."""

    database_url: Any
    db_pool_size: int


async def init_pool(database_url: str, pool_size: int, _app: Any = None) -> None:
    """Initialize global asyncpg pool."""
    global pool
    if pool is None:
        pool = await asyncpg.create_pool(
            dsn=database_url,
            max_size=pool_size,
        )


async def close_pool(_app: Any = None) -> None:
    """Close pool on shutdown."""
    global pool
    if pool is not None:
        await pool.close()
        pool = None


async def get_pool() -> asyncpg.Pool:
    """Return the initialized asyncpg pool."""
    if pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    return pool


def create_pool_wrappers(
    settings: SettingsProtocol,
) -> tuple[Callable[[Any], Awaitable[None]], Callable[[Any], Awaitable[None]]]:
    """Create init_pool and close_pool wrappers bound to service settings.

    The wrappers accept the aiohttp application so they can be registered
    directly with ``app.on_startup`` / ``app.on_cleanup``.
    """

    async def init_pool_wrapper(_app: Any = None) -> None:
        await init_pool(str(settings.database_url), settings.db_pool_size, _app)

    async def close_pool_wrapper(_app: Any = None) -> None:
        await close_pool(_app)

    return init_pool_wrapper, close_pool_wrapper
