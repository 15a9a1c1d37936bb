"""Test helpers: fake HTTP session, settings and fixtures builders."""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from aiohttp import web
from cryptography.fernet import Fernet

from webhook_service.domain.models import WebhookSubscription, utc_now
from webhook_service.services.secrets import SecretStore
from webhook_service.settings import Settings

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode("ascii")


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "storage_backend": "memory",
        "webhook_secret_encryption_key": TEST_ENCRYPTION_KEY,
        "webhook_worker_enabled": False,
        "webhook_backoff_base_seconds": 0.001,
        "webhook_backoff_max_seconds": 0.01,
        "worker_interval_seconds": 3600.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_headers(organization_id: UUID) -> dict[str, str]:
    return {"X-Organization-Id": str(organization_id)}


@dataclass
class SentRequest:
    url: str
    data: bytes
    headers: dict[str, str]
    timeout: Any

    def json(self) -> dict[str, Any]:
        return json.loads(self.data.decode("utf-8"))


class FakeResponse:
    def __init__(self, status: int = 200, body: str = "ok"):
        self.status = status
        self._body = body

    async def text(self, errors: str = "strict") -> str:
        return self._body

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


class _RaisingResponse:
    def __init__(self, exc: BaseException):
        self._exc = exc

    async def __aenter__(self):
        raise self._exc

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


class FakeSession:
    """Stands in for ``aiohttp.ClientSession``; records every POST.

    ``responses`` are consumed in order (a response or an exception to
    raise), then ``default`` is returned.
    """

    def __init__(self, responses: list[Any] | None = None, default: FakeResponse | None = None):
        self.requests: list[SentRequest] = []
        self._responses = list(responses or [])
        self.default = default or FakeResponse(200, "ok")
        self.closed = False

    def queue(self, *responses: Any) -> None:
        self._responses.extend(responses)

    def post(self, url: str, *, data: bytes, headers: dict[str, str], timeout: Any = None, **_: Any):
        self.requests.append(SentRequest(url, data, dict(headers), timeout))
        item = self._responses.pop(0) if self._responses else self.default
        if isinstance(item, BaseException):
            return _RaisingResponse(item)
        return item

    async def close(self) -> None:
        self.closed = True


def make_subscription(
    secret_store: SecretStore,
    *,
    secret: str = "whsec_test",
    organization_id: UUID | None = None,
    endpoint_url: str = "https://receiver.example.com/hook",
    event_types: list[str] | None = None,
    retry_count: int = 3,
    timeout_seconds: int = 5,
    is_active: bool = True,
    custom_headers: dict[str, str] | None = None,
) -> WebhookSubscription:
    """Build a subscription directly, bypassing registry validation (e.g. http:// test receivers)."""
    now = utc_now()
    return WebhookSubscription(
        id=uuid4(),
        organization_id=organization_id or uuid4(),
        name="Test hook",
        endpoint_url=endpoint_url,
        event_types=event_types or ["fault.created"],
        is_active=is_active,
        retry_count=retry_count,
        timeout_seconds=timeout_seconds,
        custom_headers=custom_headers or {},
        secret_ciphertext=secret_store.encrypt(secret),
        secret_fingerprint=secret_store.fingerprint(secret),
        created_at=now,
        updated_at=now,
    )


async def start_receiver(
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> tuple[web.AppRunner, str]:
    """Run a throwaway HTTP receiver on 127.0.0.1; returns the runner and the hook URL."""
    app = web.Application()
    app.router.add_post("/hook", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    return runner, f"http://127.0.0.1:{port}/hook"


async def wait_for(predicate: Callable[[], Awaitable[bool]], timeout: float = 3.0) -> None:
    async def _poll() -> None:
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)
