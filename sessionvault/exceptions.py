"""sessionvault exception hierarchy.

All sessionvault-specific exceptions inherit from SessionVaultError, enabling
catch-all handling while supporting specific error types. Low-level storage
and transport errors are wrapped into the AuthenticationError family before
they reach application callers.
"""

from __future__ import annotations

from typing import Any


class SessionVaultError(Exception):
    """Base exception for all sessionvault errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize sessionvault exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (key, status, path, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class StoreError(SessionVaultError):
    """Secure storage read, write, or delete failed.

    Raised by credential backends on I/O failures. Never swallowed by the
    store itself; the session manager decides whether to recover.
    """

    def __init__(self, message: str, key: str | None = None, **context: Any) -> None:
        """Initialize store error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        key : str, optional
            The logical storage key involved.
        **context : Any
            Additional context.
        """
        super().__init__(message, key=key, **context)
        self.key = key


class TransportError(SessionVaultError):
    """HTTP request to the backend failed.

    Base class for timeout, network, and non-2xx failures.
    """

    def __init__(
        self,
        message: str,
        method: str | None = None,
        path: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize transport error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        method : str, optional
            The HTTP method of the failed request.
        path : str, optional
            The request path.
        **context : Any
            Additional context.
        """
        super().__init__(message, method=method, path=path, **context)
        self.method = method
        self.path = path


class TransportTimeoutError(TransportError):
    """Request exceeded its timeout and was aborted."""

    def __init__(
        self,
        message: str,
        timeout: float,
        method: str | None = None,
        path: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        method : str, optional
            The HTTP method of the request.
        path : str, optional
            The request path.
        **context : Any
            Additional context.
        """
        super().__init__(message, method=method, path=path, timeout=timeout, **context)
        self.timeout = timeout


class NetworkError(TransportError):
    """Connection to the backend could not be established or was dropped."""


class HttpStatusError(TransportError):
    """Backend answered with a non-2xx status."""

    def __init__(
        self,
        message: str,
        status: int,
        method: str | None = None,
        path: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize HTTP status error.

        Parameters
        ----------
        message : str
            Error message extracted from the response body.
        status : int
            The HTTP status code.
        method : str, optional
            The HTTP method of the request.
        path : str, optional
            The request path.
        **context : Any
            Additional context.
        """
        super().__init__(message, method=method, path=path, status=status, **context)
        self.status = status


class AuthenticationError(SessionVaultError):
    """Base exception for caller-facing authentication failures."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The identity provider name (e.g., "apple").
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, **context)
        self.provider = provider


class NoSessionError(AuthenticationError):
    """No credential is stored on this device.

    Callers should route the user to sign-in.
    """


class SessionExpiredError(AuthenticationError):
    """The stored token expired and could not be refreshed.

    Callers should route the user to sign-in.
    """


class RefreshFailedError(AuthenticationError):
    """Token refresh failed and the session was cleared."""


class UserCancelledError(AuthenticationError):
    """The user dismissed the provider sign-in UI.

    Not surfaced to the user as an error.
    """


class ProviderUnavailableError(AuthenticationError):
    """The identity provider is not available on this platform."""


class BackendRejectedError(AuthenticationError):
    """The backend refused the provider credential exchange."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        provider: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize backend rejection error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status : int, optional
            HTTP status returned by the backend, if any.
        provider : str, optional
            The identity provider name.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, status=status, **context)
        self.status = status


class SignInIncompleteError(AuthenticationError):
    """Sign-in was accepted by the backend but the session could not be stored."""
