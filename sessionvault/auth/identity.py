"""Identity provider abstraction.

Defines the IdentityBridge ABC the sign-in flow calls into. Concrete
bridges wrap a platform sign-in SDK; sessionvault only consumes the
normalised ``ProviderCredential`` they return.
"""

from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from ..types import ProviderCredentialState


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..types import ProviderCredential


logger = logging.getLogger("sessionvault.auth")


class IdentityBridge(ABC):
    """Abstract adapter over a third-party sign-in provider.

    Parameters
    ----------
    name : str
        Provider name used in logs and error context (default "apple").
    """

    def __init__(self, name: str = "apple") -> None:
        """Initialize the identity bridge."""
        self.name = name

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the provider can be used on this device.

        Returns
        -------
        bool
            False when the platform or SDK does not support the provider.
        """

    @abstractmethod
    async def sign_in(self) -> ProviderCredential:
        """Run the provider sign-in UI.

        Returns
        -------
        ProviderCredential
            The provider's credential for the signed-in user.

        Raises
        ------
        UserCancelledError
            If the user dismissed the provider UI.
        AuthenticationError
            If the provider returned an invalid or failed response.
        """

    async def get_credential_state(self, user_id: str) -> ProviderCredentialState:
        """Ask the provider whether ``user_id`` is still authorized.

        Providers without a state query report every user as authorized.

        Parameters
        ----------
        user_id : str
            The provider's identifier for the user.

        Returns
        -------
        ProviderCredentialState
            The provider's view of the credential.
        """
        return ProviderCredentialState.AUTHORIZED


class CallbackIdentityBridge(IdentityBridge):
    """Bridge built from plain async callables.

    Lets an application hand its platform SDK calls to the sign-in flow
    without subclassing.

    Parameters
    ----------
    sign_in : callable
        ``async () -> ProviderCredential``.
    is_available : callable, optional
        ``async () -> bool``; when omitted the provider is always available.
    credential_state : callable, optional
        ``async (user_id) -> ProviderCredentialState``.
    name : str
        Provider name (default "apple").
    """

    def __init__(
        self,
        sign_in: Callable[[], Awaitable[ProviderCredential]],
        is_available: Callable[[], Awaitable[bool]] | None = None,
        credential_state: Callable[[str], Awaitable[ProviderCredentialState]] | None = None,
        name: str = "apple",
    ) -> None:
        """Initialize the callback bridge."""
        super().__init__(name=name)
        self._sign_in = sign_in
        self._is_available = is_available
        self._credential_state = credential_state

    async def is_available(self) -> bool:
        """Delegate the capability check, treating failures as unavailable."""
        if self._is_available is None:
            return True
        try:
            return await self._is_available()
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s availability check failed: %s", self.name, exc)
            return False

    async def sign_in(self) -> ProviderCredential:
        """Delegate to the sign-in callable."""
        return await self._sign_in()

    async def get_credential_state(self, user_id: str) -> ProviderCredentialState:
        """Delegate the credential state query when one was given."""
        if self._credential_state is None:
            return await super().get_credential_state(user_id)
        return await self._credential_state(user_id)
