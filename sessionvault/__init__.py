"""sessionvault - bearer session lifecycle for API clients.

Stores a backend-issued bearer token in secure storage, keeps it valid with
single-flight refresh, and feeds it to a shared HTTP gateway.
"""

from __future__ import annotations

from .auth import (
    AuthFlowCoordinator,
    CallbackIdentityBridge,
    CredentialStore,
    IdentityBridge,
    SessionLifecycleManager,
)
from .config import SessionVaultSettings, get_settings
from .exceptions import (
    AuthenticationError,
    BackendRejectedError,
    HttpStatusError,
    NetworkError,
    NoSessionError,
    ProviderUnavailableError,
    RefreshFailedError,
    SessionExpiredError,
    SessionVaultError,
    SignInIncompleteError,
    StoreError,
    TransportError,
    TransportTimeoutError,
    UserCancelledError,
)
from .factory import SessionComponents, build_session
from .gateway import HttpGateway
from .types import (
    ProviderCredential,
    SessionExchange,
    SessionState,
    SessionStatus,
    TokenRecord,
    UserIdentity,
)


__version__ = "0.1.0"

__all__ = [
    "AuthFlowCoordinator",
    "AuthenticationError",
    "BackendRejectedError",
    "CallbackIdentityBridge",
    "CredentialStore",
    "HttpGateway",
    "HttpStatusError",
    "IdentityBridge",
    "NetworkError",
    "NoSessionError",
    "ProviderCredential",
    "ProviderUnavailableError",
    "RefreshFailedError",
    "SessionComponents",
    "SessionExchange",
    "SessionExpiredError",
    "SessionLifecycleManager",
    "SessionState",
    "SessionStatus",
    "SessionVaultError",
    "SessionVaultSettings",
    "SignInIncompleteError",
    "StoreError",
    "TokenRecord",
    "TransportError",
    "TransportTimeoutError",
    "UserCancelledError",
    "UserIdentity",
    "__version__",
    "build_session",
    "get_settings",
]
