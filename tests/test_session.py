"""Tests for the session lifecycle manager.

Covers token validity under the refresh buffer, single-flight refresh
across tasks and threads, and fail-closed behaviour on refresh errors.
"""

# pylint: disable=redefined-outer-name,protected-access

from __future__ import annotations

import asyncio
import threading

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from sessionvault.auth.credential_store import CredentialStore
from sessionvault.auth.session import SessionLifecycleManager
from sessionvault.exceptions import (
    NoSessionError,
    RefreshFailedError,
    SessionExpiredError,
    StoreError,
)
from sessionvault.gateway import HttpGateway
from sessionvault.sync_helpers import run_async
from sessionvault.types import SessionExchange, SessionState, TokenRecord

from tests.conftest import FakeApi, FakeClock, YieldingBackend


REFRESH_PATH = "/api/v1/auth/refresh"
ME_PATH = "/api/v1/auth/me"


async def seed(
    store: CredentialStore,
    clock: FakeClock,
    expires_in: float,
    token: str = "tok1",
    user_id: str = "user-1",
) -> TokenRecord:
    """Store a token expiring ``expires_in`` seconds from the clock's now."""
    record = TokenRecord(access_token=token, expires_at=clock.now + expires_in, user_id=user_id)
    await store.put(record)
    return record


def slow_refresh(
    status: int = 200,
    body: dict | None = None,
    delay: float = 0.05,
):
    """Refresh handler that holds the request open so callers overlap."""
    payload = body if body is not None else {"access_token": "tok2", "expires_in": 3600}

    async def handler(_request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(delay)
        return httpx.Response(status, json=payload)

    return handler


# ── Token access ───────────────────────────────────────────────────


class TestGetValidToken:
    """get_valid_token behaviour."""

    @pytest.mark.asyncio
    async def test_no_session(self, manager: SessionLifecycleManager) -> None:
        with pytest.raises(NoSessionError):
            await manager.get_valid_token()
        assert manager.last_state is SessionState.NO_SESSION

    @pytest.mark.asyncio
    async def test_valid_token_needs_no_request(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        gateway: HttpGateway,
    ) -> None:
        await seed(store, clock, expires_in=3600)

        first = await manager.get_valid_token()
        second = await manager.get_valid_token()

        assert first == second == "tok1"
        assert fake_api.requests == []
        assert gateway.bearer == "tok1"
        assert manager.last_state is SessionState.VALID

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("expires_in", "refreshes"),
        [
            (301.0, 0),  # 5m01s left: still valid
            (300.0, 1),  # exactly at the buffer: refreshed
            (299.0, 1),  # 4m59s left: refreshed
            (-10.0, 1),  # already expired: refreshed
        ],
    )
    async def test_refresh_buffer_boundary(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        expires_in: float,
        refreshes: int,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, body={"access_token": "tok2", "expires_in": 3600})
        await seed(store, clock, expires_in=expires_in)

        token = await manager.get_valid_token()

        assert len(fake_api.calls("POST", REFRESH_PATH)) == refreshes
        assert token == ("tok2" if refreshes else "tok1")

    @pytest.mark.asyncio
    async def test_custom_buffer(
        self,
        store: CredentialStore,
        gateway: HttpGateway,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        manager = SessionLifecycleManager(store, gateway, refresh_buffer_seconds=60, clock=clock)
        await seed(store, clock, expires_in=120)
        assert await manager.get_valid_token() == "tok1"
        assert fake_api.requests == []

    @pytest.mark.asyncio
    async def test_unreadable_store_treated_as_no_session(
        self, manager: SessionLifecycleManager, store: CredentialStore
    ) -> None:
        store.get = AsyncMock(side_effect=StoreError("keychain locked"))
        with pytest.raises(NoSessionError):
            await manager.get_valid_token()


# ── Refresh ────────────────────────────────────────────────────────


class TestRefresh:
    """Refresh requests and their outcomes."""

    @pytest.mark.asyncio
    async def test_successful_refresh(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        gateway: HttpGateway,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, body={"access_token": "tok2", "expires_in": 3600})
        await seed(store, clock, expires_in=60)

        assert await manager.refresh_token() is True

        request = fake_api.calls("POST", REFRESH_PATH)[0]
        assert request.headers["authorization"] == "Bearer tok1"
        assert fake_api.json_body(request) == {"current_token": "tok1"}

        record = await store.get()
        assert record is not None
        assert record.access_token == "tok2"
        assert record.user_id == "user-1"
        assert record.expires_at == pytest.approx(clock.now + 3600)
        assert gateway.bearer == "tok2"
        assert manager.last_state is SessionState.VALID

    @pytest.mark.asyncio
    async def test_nothing_to_refresh(self, manager: SessionLifecycleManager) -> None:
        with pytest.raises(RefreshFailedError):
            await manager.refresh_token()

    @pytest.mark.asyncio
    async def test_non_2xx_fails_closed(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        gateway: HttpGateway,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, status=401, body={"detail": "Invalid token"})
        await seed(store, clock, expires_in=60)

        with pytest.raises(SessionExpiredError) as exc_info:
            await manager.get_valid_token()

        assert isinstance(exc_info.value.__cause__, RefreshFailedError)
        status = await manager.status()
        assert status.has_token is False
        assert status.state is SessionState.NO_SESSION
        assert gateway.bearer is None
        assert await store.get() is None

    @pytest.mark.asyncio
    async def test_network_failure_fails_closed(
        self,
        store: CredentialStore,
        gateway: HttpGateway,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        fake_api.route("POST", REFRESH_PATH, handler=handler)
        cleared = MagicMock()
        manager = SessionLifecycleManager(store, gateway, clock=clock, on_session_cleared=cleared)
        await seed(store, clock, expires_in=60)

        with pytest.raises(RefreshFailedError):
            await manager.refresh_token()

        assert await store.get() is None
        cleared.assert_called_once_with("refresh request failed")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"expires_in": 3600},
            {"access_token": "", "expires_in": 3600},
            {"access_token": "tok2"},
            {"access_token": "tok2", "expires_in": "3600"},
            {"access_token": "tok2", "expires_in": True},
            {"access_token": "tok2", "expires_in": 0},
            {"access_token": "tok2", "expires_in": -5},
        ],
    )
    async def test_malformed_response_fails_closed(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        body: dict,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, body=body)
        await seed(store, clock, expires_in=60)

        with pytest.raises(RefreshFailedError):
            await manager.refresh_token()
        assert await store.get() is None

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        gateway: HttpGateway,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, body={"access_token": "tok2", "expires_in": 3600})
        await seed(store, clock, expires_in=60)
        store.put = AsyncMock(side_effect=StoreError("disk full"))

        with pytest.raises(RefreshFailedError):
            await manager.refresh_token()
        assert await store.get() is None
        assert gateway.bearer is None

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_escape(
        self,
        store: CredentialStore,
        gateway: HttpGateway,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, status=500, body={})
        manager = SessionLifecycleManager(
            store, gateway, clock=clock, on_session_cleared=MagicMock(side_effect=RuntimeError)
        )
        await seed(store, clock, expires_in=60)

        with pytest.raises(RefreshFailedError):
            await manager.refresh_token()

    @pytest.mark.asyncio
    async def test_unexpected_refresh_error_fails_closed(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        gateway: HttpGateway,
    ) -> None:
        await seed(store, clock, expires_in=60)
        gateway.refresh = AsyncMock(side_effect=RuntimeError("bound to a different event loop"))

        with pytest.raises(RefreshFailedError) as exc_info:
            await manager.refresh_token()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert await store.get() is None
        assert gateway.bearer is None
        assert (await manager.status()).state is SessionState.NO_SESSION
        assert not manager.is_refreshing

    @pytest.mark.asyncio
    async def test_unexpected_store_error_fails_closed(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        gateway: HttpGateway,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, body={"access_token": "tok2", "expires_in": 3600})
        await seed(store, clock, expires_in=60)
        store.put = AsyncMock(side_effect=OSError("read-only file system"))

        with pytest.raises(RefreshFailedError):
            await manager.refresh_token()
        assert await store.get() is None
        assert gateway.bearer is None


# ── Single flight ──────────────────────────────────────────────────


class TestSingleFlight:
    """Concurrent callers share one refresh request."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_success(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, handler=slow_refresh())
        await seed(store, clock, expires_in=60)

        tokens = await asyncio.gather(*(manager.get_valid_token() for _ in range(10)))

        assert tokens == ["tok2"] * 10
        assert len(fake_api.calls("POST", REFRESH_PATH)) == 1
        assert not manager.is_refreshing

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_failure(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, handler=slow_refresh(status=401, body={}))
        await seed(store, clock, expires_in=60)

        results = await asyncio.gather(
            *(manager.get_valid_token() for _ in range(5)), return_exceptions=True
        )

        assert all(isinstance(r, SessionExpiredError) for r in results)
        assert len(fake_api.calls("POST", REFRESH_PATH)) == 1
        assert (await manager.status()).has_token is False

    @pytest.mark.asyncio
    async def test_status_while_refreshing(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, handler=slow_refresh(delay=0.1))
        await seed(store, clock, expires_in=60)

        task = asyncio.create_task(manager.refresh_token())
        while not manager.is_refreshing:
            await asyncio.sleep(0)

        assert (await manager.status()).state is SessionState.REFRESHING
        await task
        assert (await manager.status()).state is SessionState.VALID

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_refresh(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, handler=slow_refresh(delay=0.1))
        await seed(store, clock, expires_in=60)

        leader = asyncio.create_task(manager.refresh_token())
        while not manager.is_refreshing:
            await asyncio.sleep(0)
        waiter = asyncio.create_task(manager.refresh_token())
        await asyncio.sleep(0)
        waiter.cancel()

        assert await leader is True
        with pytest.raises(asyncio.CancelledError):
            await waiter
        record = await store.get()
        assert record is not None
        assert record.access_token == "tok2"

    @pytest.mark.asyncio
    async def test_cancelled_leader_releases_waiters(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, handler=slow_refresh(delay=1.0))
        await seed(store, clock, expires_in=60)

        leader = asyncio.create_task(manager.refresh_token())
        while not manager.is_refreshing:
            await asyncio.sleep(0)
        waiter = asyncio.create_task(manager.refresh_token())
        await asyncio.sleep(0)
        leader.cancel()

        with pytest.raises(RefreshFailedError):
            await waiter
        assert not manager.is_refreshing

    def test_threaded_callers_share_one_refresh(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        gateway: HttpGateway,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, handler=slow_refresh(delay=0.2))
        run_async(seed(store, clock, expires_in=60))

        results: list[str] = []
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                results.append(manager.get_valid_token_sync(timeout=5.0))
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10.0)

        try:
            assert errors == []
            assert results == ["tok2"] * 5
            assert len(fake_api.calls("POST", REFRESH_PATH)) == 1
        finally:
            run_async(gateway.aclose())

    @pytest.mark.asyncio
    async def test_sync_wrapper_after_async_use(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        gateway: HttpGateway,
    ) -> None:
        fake_api.route("GET", ME_PATH, body={"id": "user-1"})
        fake_api.route("POST", REFRESH_PATH, body={"access_token": "tok2", "expires_in": 3600})
        await seed(store, clock, expires_in=60)
        await gateway.request("GET", "/auth/me")

        token = await asyncio.to_thread(manager.get_valid_token_sync, 5.0)

        try:
            assert token == "tok2"
            assert await manager.get_valid_token() == "tok2"
            assert gateway.open_clients == 2
        finally:
            await gateway.aclose()

    @pytest.mark.asyncio
    async def test_status_never_empty_during_refresh(
        self, clock: FakeClock, fake_api: FakeApi, gateway: HttpGateway
    ) -> None:
        store = CredentialStore(YieldingBackend())
        manager = SessionLifecycleManager(store, gateway, clock=clock)
        fake_api.route("POST", REFRESH_PATH, handler=slow_refresh(delay=0.02))
        await seed(store, clock, expires_in=60)

        task = asyncio.create_task(manager.refresh_token())
        observed = []
        while not task.done():
            observed.append((await manager.status()).has_token)
            await asyncio.sleep(0.01)
        await task

        assert all(observed)
        assert await manager.get_valid_token() == "tok2"


# ── Session writes ─────────────────────────────────────────────────


class TestSessionWrites:
    """store_new_session, clear_session, and status."""

    @pytest.mark.asyncio
    async def test_store_then_status_round_trip(
        self,
        manager: SessionLifecycleManager,
        clock: FakeClock,
        gateway: HttpGateway,
    ) -> None:
        record = await manager.store_new_session(
            SessionExchange(access_token="tok1", expires_in=3600, user_id="user-1")
        )

        assert record.expires_at == clock.now + 3600
        assert gateway.bearer == "tok1"

        status = await manager.status()
        assert status.has_token is True
        assert status.is_valid is True
        assert status.state is SessionState.VALID
        assert status.user_id == "user-1"
        assert status.expires_at == datetime.fromtimestamp(clock.now + 3600, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_status_expiring_soon(
        self, manager: SessionLifecycleManager, store: CredentialStore, clock: FakeClock
    ) -> None:
        await seed(store, clock, expires_in=120)
        status = await manager.status()
        assert status.has_token is True
        assert status.is_valid is False
        assert status.state is SessionState.EXPIRING_SOON

    @pytest.mark.asyncio
    async def test_store_failure_leaves_bearer(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        gateway: HttpGateway,
    ) -> None:
        gateway.set_bearer("previous")
        store.put = AsyncMock(side_effect=StoreError("disk full"))
        with pytest.raises(StoreError):
            await manager.store_new_session(
                SessionExchange(access_token="tok1", expires_in=3600, user_id="user-1")
            )
        assert gateway.bearer == "previous"

    @pytest.mark.asyncio
    async def test_clear_session_twice(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        gateway: HttpGateway,
    ) -> None:
        await seed(store, clock, expires_in=3600)
        await manager.get_valid_token()

        await manager.clear_session()
        await manager.clear_session()

        assert gateway.bearer is None
        assert (await manager.status()).has_token is False

    @pytest.mark.asyncio
    async def test_clear_session_never_raises(
        self, manager: SessionLifecycleManager, store: CredentialStore, gateway: HttpGateway
    ) -> None:
        gateway.set_bearer("tok1")
        store.clear = AsyncMock(side_effect=StoreError("locked"))
        await manager.clear_session()
        assert gateway.bearer is None


# ── Lifecycle ──────────────────────────────────────────────────────


class TestLifecycle:
    """Startup and an end-to-end token rotation."""

    @pytest.mark.asyncio
    async def test_initialize(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        gateway: HttpGateway,
    ) -> None:
        assert await manager.initialize() is False

        await seed(store, clock, expires_in=3600)
        assert await manager.initialize() is True
        assert gateway.bearer == "tok1"

    @pytest.mark.asyncio
    async def test_initialize_with_unrefreshable_token(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, status=401, body={})
        await seed(store, clock, expires_in=10)
        assert await manager.initialize() is False
        assert await store.get() is None

    @pytest.mark.asyncio
    async def test_token_rotation_end_to_end(
        self,
        manager: SessionLifecycleManager,
        store: CredentialStore,
        clock: FakeClock,
        fake_api: FakeApi,
        gateway: HttpGateway,
    ) -> None:
        fake_api.route("POST", REFRESH_PATH, body={"access_token": "tok2", "expires_in": 3600})
        fake_api.route("GET", ME_PATH, body={"id": "user-1"})
        await seed(store, clock, expires_in=3600)

        assert await manager.get_valid_token() == "tok1"
        await gateway.current_user()
        assert fake_api.requests[-1].headers["authorization"] == "Bearer tok1"

        clock.advance(3600 - 299)
        assert await manager.get_valid_token() == "tok2"
        await gateway.current_user()
        assert fake_api.requests[-1].headers["authorization"] == "Bearer tok2"
        assert len(fake_api.calls("POST", REFRESH_PATH)) == 1
