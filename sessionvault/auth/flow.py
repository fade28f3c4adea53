"""Sign-in, sign-out, and startup orchestration.

AuthFlowCoordinator glues the identity bridge, the backend exchange, and
the session manager together. Storage and transport failures are mapped
into the AuthenticationError family before they reach the caller.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any

from ..exceptions import (
    AuthenticationError,
    BackendRejectedError,
    HttpStatusError,
    ProviderUnavailableError,
    SignInIncompleteError,
    StoreError,
    TransportError,
    UserCancelledError,
)
from ..types import AuthFlowState, ProviderCredentialState, SessionExchange, UserIdentity


if TYPE_CHECKING:
    from ..gateway import HttpGateway
    from .identity import IdentityBridge
    from .session import SessionLifecycleManager


logger = logging.getLogger("sessionvault.auth")


class AuthFlowCoordinator:
    """Orchestrates the application's authentication flows.

    Parameters
    ----------
    bridge : IdentityBridge
        Adapter over the external sign-in provider.
    session : SessionLifecycleManager
        Owner of the stored session.
    gateway : HttpGateway
        Gateway used for the backend exchange and profile calls.
    """

    def __init__(
        self,
        bridge: IdentityBridge,
        session: SessionLifecycleManager,
        gateway: HttpGateway,
    ) -> None:
        """Initialize the coordinator."""
        self.bridge = bridge
        self.session = session
        self.gateway = gateway
        self._flow_state = AuthFlowState.PENDING

    @property
    def flow_state(self) -> AuthFlowState:
        """State of the most recent sign-in attempt."""
        return self._flow_state

    async def initialize(self) -> UserIdentity | None:
        """Restore the session at app start and confirm it with the backend.

        Returns
        -------
        UserIdentity or None
            The signed-in user, or None when the sign-in flow should be shown.
        """
        if not await self.session.initialize():
            logger.info("No valid session; sign-in required")
            return None

        try:
            user = await self._fetch_current_user()
        except (TransportError, AuthenticationError) as exc:
            logger.warning("Stored session was not accepted: %s", exc)
            await self.session.clear_session()
            return None

        logger.info("Restored session for %s", user.username or user.id)
        return user

    async def sign_in(self) -> UserIdentity:
        """Run the provider sign-in and exchange it for a backend session.

        Returns
        -------
        UserIdentity
            The backend user the new session belongs to.

        Raises
        ------
        ProviderUnavailableError
            If the provider cannot be used on this device.
        UserCancelledError
            If the user dismissed the provider UI.
        BackendRejectedError
            If the backend refused or could not process the exchange.
        SignInIncompleteError
            If the backend accepted the exchange but the session could not
            be stored.
        """
        provider = self.bridge.name
        self._flow_state = AuthFlowState.IN_PROGRESS

        if not await self.bridge.is_available():
            self._flow_state = AuthFlowState.FAILED
            msg = f"{provider} sign-in is not available on this device"
            raise ProviderUnavailableError(msg, provider=provider)

        try:
            credential = await self.bridge.sign_in()
        except UserCancelledError:
            self._flow_state = AuthFlowState.CANCELLED
            logger.info("%s sign-in cancelled by user", provider)
            raise
        except AuthenticationError:
            self._flow_state = AuthFlowState.FAILED
            raise
        except Exception as exc:  # noqa: BLE001
            self._flow_state = AuthFlowState.FAILED
            msg = f"{provider} sign-in failed: {exc!r}"
            raise AuthenticationError(msg, provider=provider) from exc

        try:
            response = await self.gateway.sign_in_exchange(credential)
        except HttpStatusError as exc:
            self._flow_state = AuthFlowState.FAILED
            raise BackendRejectedError(exc.message, status=exc.status, provider=provider) from exc
        except TransportError as exc:
            self._flow_state = AuthFlowState.FAILED
            msg = f"Sign-in exchange failed: {exc.message}"
            raise BackendRejectedError(msg, provider=provider) from exc

        exchange, user = self._parse_exchange(response.data, provider)

        try:
            await self.session.store_new_session(exchange)
        except StoreError as exc:
            self._flow_state = AuthFlowState.FAILED
            msg = "Signed in, but the session could not be saved on this device"
            raise SignInIncompleteError(msg, provider=provider) from exc

        self._flow_state = AuthFlowState.COMPLETED
        logger.info("Signed in as %s", user.username or user.id)
        return user

    def _parse_exchange(self, data: Any, provider: str) -> tuple[SessionExchange, UserIdentity]:
        try:
            user = UserIdentity.from_api(data["user"])
            exchange = SessionExchange(
                access_token=str(data["access_token"]),
                expires_in=float(data["expires_in"]),
                user_id=user.id,
                token_type=data.get("token_type") or "bearer",
            )
        except (KeyError, TypeError, ValueError) as exc:
            self._flow_state = AuthFlowState.FAILED
            msg = "Sign-in response was missing token or user fields"
            raise BackendRejectedError(msg, provider=provider) from exc
        return exchange, user

    async def sign_out(self) -> None:
        """End the session locally, notifying the backend when possible.

        Never raises.
        """
        try:
            await self.session.get_valid_token()
        except AuthenticationError:
            logger.debug("No valid token; skipping backend logout")
        else:
            try:
                await self.gateway.logout()
            except TransportError as exc:
                logger.warning("Backend logout failed: %s", exc)

        await self.session.clear_session()
        self._flow_state = AuthFlowState.PENDING
        logger.info("Signed out")

    async def validate_current_auth(self, provider_user_id: str | None = None) -> bool:
        """Check that the current session is still usable.

        Refreshes an expiring token, checks the provider credential state
        when ``provider_user_id`` is given, and confirms the session with the
        backend. Any definitive rejection signs the user out; a network
        failure on the backend check keeps the local session.

        Parameters
        ----------
        provider_user_id : str, optional
            The provider's id for the signed-in user.

        Returns
        -------
        bool
            True if the session is still valid.
        """
        status = await self.session.status()
        if not status.has_token:
            return False

        if not status.is_valid:
            logger.info("Token expiring; refreshing before validation")
            try:
                await self.session.refresh_token()
            except AuthenticationError:
                logger.info("Token refresh failed; signing out")
                await self.sign_out()
                return False

        if provider_user_id:
            state = await self.bridge.get_credential_state(provider_user_id)
            if state is not ProviderCredentialState.AUTHORIZED:
                logger.info("Provider credential is %s; signing out", state.value)
                await self.sign_out()
                return False

        try:
            await self._fetch_current_user()
        except HttpStatusError as exc:
            logger.info("Backend rejected session (%s); signing out", exc.status)
            await self.sign_out()
            return False
        except TransportError as exc:
            logger.warning("Backend session check failed: %s", exc)
        except AuthenticationError:
            await self.sign_out()
            return False

        return True

    async def check_connection(self) -> bool:
        """Probe the backend health endpoint."""
        try:
            response = await self.gateway.health_check()
        except TransportError as exc:
            logger.warning("Health check failed: %s", exc)
            return False
        logger.debug("Health check: %s", response.data)
        return True

    async def _fetch_current_user(self) -> UserIdentity:
        await self.session.get_valid_token()
        response = await self.gateway.current_user()
        try:
            return UserIdentity.from_api(response.data)
        except (KeyError, TypeError) as exc:
            msg = "Profile response was missing the user id"
            raise BackendRejectedError(msg, status=response.status) from exc
