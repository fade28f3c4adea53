"""Explicit construction of the session components from settings.

Builds the store, gateway, and session manager once at process start so
they can be passed to whatever needs authenticated HTTP access. Nothing here
caches instances at module level.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .auth.credential_store import CredentialStore, create_backend
from .auth.flow import AuthFlowCoordinator
from .auth.session import SessionLifecycleManager
from .config import get_settings
from .gateway import HttpGateway
from .log import configure_from_settings


if TYPE_CHECKING:
    import httpx

    from .auth.credential_store import SecureBackend
    from .auth.identity import IdentityBridge
    from .config import SessionVaultSettings


@dataclass
class SessionComponents:
    """The wired-up session stack.

    Attributes
    ----------
    store : CredentialStore
        Secure credential storage.
    gateway : HttpGateway
        Backend HTTP gateway.
    session : SessionLifecycleManager
        Token lifecycle owner.
    flow : AuthFlowCoordinator or None
        Sign-in orchestration, present when an identity bridge was given.
    """

    store: CredentialStore
    gateway: HttpGateway
    session: SessionLifecycleManager
    flow: AuthFlowCoordinator | None = None

    async def aclose(self) -> None:
        """Release the gateway's HTTP connections."""
        await self.gateway.aclose()


def build_session(
    settings: SessionVaultSettings | None = None,
    bridge: IdentityBridge | None = None,
    backend: SecureBackend | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SessionComponents:
    """Create the session stack.

    Parameters
    ----------
    settings : SessionVaultSettings, optional
        Loaded settings; ``get_settings()`` when omitted.
    bridge : IdentityBridge, optional
        Provider adapter; enables the sign-in coordinator.
    backend : SecureBackend, optional
        Storage backend overriding ``settings.session.store_backend``.
    transport : httpx.AsyncBaseTransport, optional
        HTTP transport override for the gateway.

    Returns
    -------
    SessionComponents
        Freshly constructed components sharing one store and one gateway.
    """
    settings = settings or get_settings()
    configure_from_settings(settings.log)

    store = CredentialStore(backend or create_backend(settings.session))
    gateway = HttpGateway.from_settings(settings.api, transport=transport)
    session = SessionLifecycleManager(
        store,
        gateway,
        refresh_buffer_seconds=settings.session.refresh_buffer_seconds,
    )
    flow = AuthFlowCoordinator(bridge, session, gateway) if bridge is not None else None
    return SessionComponents(store=store, gateway=gateway, session=session, flow=flow)
