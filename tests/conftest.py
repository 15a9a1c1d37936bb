from __future__ import annotations

import pytest
from aiohttp import ClientSession

from webhook_service.main import create_app
from webhook_service.services.dependencies import ENGINE_KEY, WebhookEngine, build_memory_engine
from webhook_service.settings import Settings

from tests.utils import FakeSession, make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
async def engine(settings, fake_session) -> WebhookEngine:
    """Memory-backed engine with a fake HTTP session; no background consumers."""
    return build_memory_engine(settings, fake_session)  # type: ignore[arg-type]


@pytest.fixture
async def real_session_engine(settings):
    """Memory-backed engine talking real HTTP (to local receivers)."""
    session = ClientSession()
    yield build_memory_engine(settings, session)
    await session.close()


@pytest.fixture
async def service_client(aiohttp_client, settings, fake_session):
    """Client for calling the service API backed by in-memory storage."""
    app = create_app(settings, session_factory=lambda: fake_session)  # type: ignore[arg-type,return-value]
    return await aiohttp_client(app)


@pytest.fixture
def service_engine(service_client) -> WebhookEngine:
    return service_client.server.app[ENGINE_KEY]
