"""Session lifecycle manager with single-flight token refresh.

Owns every write to the stored credential and to the gateway's bearer
slot. A token is valid while ``now < expires_at - refresh_buffer``; an
expiring token is refreshed through the backend, and concurrent callers
share the outcome of that one refresh whether they run on the same event
loop, another loop, or another thread. Any refresh failure clears the
session (fail closed).
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time

from typing import TYPE_CHECKING, Any

from ..exceptions import (
    AuthenticationError,
    NoSessionError,
    RefreshFailedError,
    SessionExpiredError,
    StoreError,
    TransportError,
)
from ..log import mask_token
from ..sync_helpers import run_async
from ..types import SessionState, SessionStatus, TokenRecord, to_datetime


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..gateway import HttpGateway
    from ..types import SessionExchange
    from .credential_store import CredentialStore


logger = logging.getLogger("sessionvault.auth")

DEFAULT_REFRESH_BUFFER_SECONDS = 300.0


class SessionLifecycleManager:
    """Manages the stored bearer token and keeps the gateway header in sync.

    Parameters
    ----------
    store : CredentialStore
        Secure store holding the single token record.
    gateway : HttpGateway
        Gateway whose bearer slot this manager owns.
    refresh_buffer_seconds : float
        Seconds before expiry at which a token stops counting as valid
        (default ``300``).
    clock : callable, optional
        Returns the current Unix time in seconds; ``time.time`` by default.
    on_session_cleared : callable, optional
        Invoked with a short reason after a failed refresh cleared the
        session. Signature: ``on_session_cleared(reason: str) -> None``.
    """

    def __init__(
        self,
        store: CredentialStore,
        gateway: HttpGateway,
        refresh_buffer_seconds: float = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], float] | None = None,
        on_session_cleared: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the session manager."""
        self.store = store
        self.gateway = gateway
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self.on_session_cleared = on_session_cleared
        self._clock = clock or time.time

        self._refresh_lock = threading.Lock()
        self._inflight: concurrent.futures.Future[bool] | None = None
        self._last_state = SessionState.NO_SESSION

    # ── State ───────────────────────────────────────────────────────

    @property
    def is_refreshing(self) -> bool:
        """True while a refresh request is outstanding."""
        with self._refresh_lock:
            return self._inflight is not None

    @property
    def last_state(self) -> SessionState:
        """The most recent lifecycle transition observed by this manager."""
        return self._last_state

    def _transition(self, state: SessionState) -> None:
        if state is not self._last_state:
            logger.debug("Session state %s -> %s", self._last_state.value, state.value)
            self._last_state = state

    def _is_valid(self, record: TokenRecord) -> bool:
        return record.is_valid(self._clock(), self.refresh_buffer_seconds)

    async def _load(self) -> TokenRecord | None:
        """Read the stored record, treating storage failures as no session."""
        try:
            return await self.store.get()
        except StoreError as exc:
            logger.warning("Could not read stored credential: %s", exc)
            return None

    async def status(self) -> SessionStatus:
        """Snapshot of the stored session.

        Returns
        -------
        SessionStatus
            Whether a token is stored, whether it is valid under the
            refresh buffer, its expiry and user.
        """
        record = await self._load()
        refreshing = self.is_refreshing
        if record is None:
            state = SessionState.REFRESHING if refreshing else SessionState.NO_SESSION
            return SessionStatus(has_token=False, is_valid=False, state=state)

        is_valid = self._is_valid(record)
        if refreshing:
            state = SessionState.REFRESHING
        elif is_valid:
            state = SessionState.VALID
        else:
            state = SessionState.EXPIRING_SOON

        return SessionStatus(
            has_token=True,
            is_valid=is_valid,
            state=state,
            expires_at=to_datetime(record.expires_at),
            user_id=record.user_id,
        )

    # ── Token access ────────────────────────────────────────────────

    async def get_valid_token(self) -> str:
        """Return a usable bearer token, refreshing it when it is expiring.

        Returns
        -------
        str
            A token valid beyond the refresh buffer. The gateway bearer is
            set to it.

        Raises
        ------
        NoSessionError
            If no credential is stored.
        SessionExpiredError
            If the token was expiring and could not be refreshed.
        """
        record = await self._load()
        if record is None:
            self._transition(SessionState.NO_SESSION)
            msg = "No session stored on this device"
            raise NoSessionError(msg)

        if self._is_valid(record):
            self.gateway.set_bearer(record.access_token)
            self._transition(SessionState.VALID)
            return record.access_token

        self._transition(SessionState.EXPIRING_SOON)
        try:
            await self.refresh_token()
        except RefreshFailedError as exc:
            msg = "Session expired; sign in again"
            raise SessionExpiredError(msg, user_id=record.user_id) from exc

        refreshed = await self._load()
        if refreshed is None:
            msg = "Session expired; sign in again"
            raise SessionExpiredError(msg, user_id=record.user_id)
        return refreshed.access_token

    async def refresh_token(self) -> bool:
        """Refresh the stored token, sharing one request among all callers.

        If a refresh is already in flight the caller waits for it and gets
        the same outcome instead of issuing a second request.

        Returns
        -------
        bool
            True once a new token is stored and set on the gateway.

        Raises
        ------
        RefreshFailedError
            If there was nothing to refresh or the refresh failed; the
            session has been cleared.
        """
        with self._refresh_lock:
            inflight = self._inflight
            is_leader = inflight is None
            if inflight is None:
                inflight = concurrent.futures.Future()
                # A running future cannot be cancelled by a waiter giving up.
                inflight.set_running_or_notify_cancel()
                self._inflight = inflight

        if not is_leader:
            logger.debug("Refresh already in flight; awaiting shared result")
            return await asyncio.wrap_future(inflight)

        try:
            result = await self._perform_refresh()
        except RefreshFailedError as exc:
            inflight.set_exception(exc)
            raise
        except BaseException as exc:
            inflight.set_exception(RefreshFailedError(f"Token refresh aborted: {exc!r}"))
            raise
        else:
            inflight.set_result(result)
            return result
        finally:
            with self._refresh_lock:
                if self._inflight is inflight:
                    self._inflight = None

    async def _perform_refresh(self) -> bool:
        record = await self._load()
        if record is None:
            logger.info("No stored credential to refresh")
            await self._fail_closed("no stored credential")
            msg = "No stored credential to refresh"
            raise RefreshFailedError(msg)

        self._transition(SessionState.REFRESHING)
        logger.info("Refreshing token %s for user %s", mask_token(record.access_token), record.user_id)

        # The refresh endpoint authenticates with the token being replaced.
        self.gateway.set_bearer(record.access_token)
        try:
            response = await self.gateway.refresh(record.access_token)
        except TransportError as exc:
            await self._fail_closed("refresh request failed")
            msg = f"Token refresh request failed: {exc.message}"
            raise RefreshFailedError(msg, user_id=record.user_id, **exc.context) from exc
        except Exception as exc:  # noqa: BLE001
            await self._fail_closed("refresh request failed")
            msg = f"Token refresh request failed: {exc!r}"
            raise RefreshFailedError(msg, user_id=record.user_id) from exc

        new_record = self._record_from_refresh(response.data, record.user_id)
        if new_record is None:
            await self._fail_closed("malformed refresh response")
            msg = "Refresh response missing access_token or expires_in"
            raise RefreshFailedError(msg, user_id=record.user_id)

        try:
            await self.store.put(new_record)
        except StoreError as exc:
            await self._fail_closed("refreshed token could not be stored")
            msg = f"Refreshed token could not be stored: {exc.message}"
            raise RefreshFailedError(msg, user_id=record.user_id) from exc
        except Exception as exc:  # noqa: BLE001
            await self._fail_closed("refreshed token could not be stored")
            msg = f"Refreshed token could not be stored: {exc!r}"
            raise RefreshFailedError(msg, user_id=record.user_id) from exc

        self.gateway.set_bearer(new_record.access_token)
        self._transition(SessionState.VALID)
        logger.info("Token refreshed for user %s", record.user_id)
        return True

    def _record_from_refresh(self, data: Any, user_id: str) -> TokenRecord | None:
        if not isinstance(data, dict):
            return None
        access_token = data.get("access_token")
        expires_in = data.get("expires_in")
        if not isinstance(access_token, str) or not access_token:
            return None
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            return None
        if expires_in <= 0:
            return None
        return TokenRecord(
            access_token=access_token,
            expires_at=self._clock() + expires_in,
            user_id=user_id,
            token_type=data.get("token_type") or "bearer",
        )

    async def _fail_closed(self, reason: str) -> None:
        self._transition(SessionState.INVALID)
        logger.warning("Clearing session: %s", reason)
        await self.clear_session()
        if self.on_session_cleared is not None:
            try:
                self.on_session_cleared(reason)
            except Exception:
                logger.exception("on_session_cleared callback failed")

    # ── Session writes ──────────────────────────────────────────────

    async def store_new_session(self, exchange: SessionExchange) -> TokenRecord:
        """Persist a freshly issued token and start using it.

        Parameters
        ----------
        exchange : SessionExchange
            Token, lifetime in seconds, and user id from the backend.

        Returns
        -------
        TokenRecord
            The stored record with its absolute expiry.

        Raises
        ------
        StoreError
            If the token could not be persisted. The gateway bearer is left
            unchanged.
        """
        record = TokenRecord(
            access_token=exchange.access_token,
            expires_at=self._clock() + exchange.expires_in,
            user_id=exchange.user_id,
            token_type=exchange.token_type,
        )
        await self.store.put(record)
        self.gateway.set_bearer(record.access_token)
        self._transition(SessionState.VALID)
        logger.info("Session stored for user %s", record.user_id)
        return record

    async def clear_session(self) -> None:
        """Remove the stored credential and the gateway bearer.

        Never raises; storage failures are logged so logout cannot be
        blocked.
        """
        try:
            await self.store.clear()
        except StoreError as exc:
            logger.warning("Failed to clear stored credential: %s", exc)
        self.gateway.clear_bearer()
        self._transition(SessionState.NO_SESSION)
        logger.debug("Session cleared")

    async def initialize(self) -> bool:
        """Restore the stored session at process start.

        Returns
        -------
        bool
            True if a usable token is now set on the gateway.
        """
        try:
            await self.get_valid_token()
        except AuthenticationError as exc:
            logger.info("No usable session at startup: %s", exc.message)
            return False
        logger.info("Session restored")
        return True

    # ── Sync wrappers ───────────────────────────────────────────────

    def get_valid_token_sync(self, timeout: float | None = 30.0) -> str:
        """Blocking ``get_valid_token`` for threaded callers."""
        return run_async(self.get_valid_token(), timeout=timeout)

    def initialize_sync(self, timeout: float | None = 30.0) -> bool:
        """Blocking ``initialize`` for threaded callers."""
        return run_async(self.initialize(), timeout=timeout)
