"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio
import json
import threading

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from sessionvault.auth.credential_store import CredentialStore, MemoryBackend
from sessionvault.auth.session import SessionLifecycleManager
from sessionvault.config import clear_settings
from sessionvault.gateway import HttpGateway


if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


BASE_URL = "http://backend.test"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class YieldingBackend(MemoryBackend):
    """Memory backend that yields to the event loop before every call."""

    async def get_item(self, key: str) -> str | None:
        await asyncio.sleep(0)
        return await super().get_item(key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.sleep(0)
        await super().set_item(key, value)

    async def delete_item(self, key: str) -> None:
        await asyncio.sleep(0)
        await super().delete_item(key)


@dataclass
class FakeApi:
    """Programmable stand-in for the backend, served through MockTransport.

    Handlers are keyed by ``"METHOD /path"``; every request is recorded.
    """

    routes: dict[str, Callable[[httpx.Request], httpx.Response]] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def route(
        self,
        method: str,
        path: str,
        status: int = 200,
        body: Any = None,
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
    ) -> None:
        if handler is None:

            def handler(_request: httpx.Request) -> httpx.Response:
                return httpx.Response(status, json=body)

        self.routes[f"{method} {path}"] = handler

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        with self._lock:
            return [r for r in self.requests if r.method == method and r.url.path == path]

    def json_body(self, request: httpx.Request) -> Any:
        return json.loads(request.content) if request.content else None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        handler = self.routes.get(f"{request.method} {request.url.path}")
        if handler is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        return handler(request)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> Iterator[None]:
    """Keep settings independent of the developer's environment and files."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("APPDATA", str(tmp_path))
    monkeypatch.delenv("SESSIONVAULT_CONFIG_FILE", raising=False)
    clear_settings()
    yield
    clear_settings()


@pytest.fixture()
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture()
def fake_api() -> FakeApi:
    """Create an empty fake backend."""
    return FakeApi()


@pytest.fixture()
def gateway(fake_api: FakeApi) -> HttpGateway:
    """Create a gateway talking to the fake backend."""
    return HttpGateway(BASE_URL, transport=httpx.MockTransport(fake_api))


@pytest.fixture()
def backend() -> MemoryBackend:
    """Create an in-memory secure backend."""
    return MemoryBackend()


@pytest.fixture()
def store(backend: MemoryBackend) -> CredentialStore:
    """Create a credential store over the memory backend."""
    return CredentialStore(backend)


@pytest.fixture()
def manager(
    store: CredentialStore,
    gateway: HttpGateway,
    clock: FakeClock,
) -> SessionLifecycleManager:
    """Create a session manager driven by the fake clock."""
    return SessionLifecycleManager(store, gateway, clock=clock)
