"""Session credential lifecycle for sessionvault.

Provides secure credential storage, the single-flight session manager,
the identity provider abstraction, and sign-in flow orchestration.
"""

from __future__ import annotations

from .credential_store import (
    CredentialStore,
    EncryptedFileBackend,
    KeyringBackend,
    MemoryBackend,
    SecureBackend,
    create_backend,
)
from .flow import AuthFlowCoordinator
from .identity import CallbackIdentityBridge, IdentityBridge
from .session import SessionLifecycleManager


__all__ = [
    "AuthFlowCoordinator",
    "CallbackIdentityBridge",
    "CredentialStore",
    "EncryptedFileBackend",
    "IdentityBridge",
    "KeyringBackend",
    "MemoryBackend",
    "SecureBackend",
    "SessionLifecycleManager",
    "create_backend",
]
