"""Secure persistence of the session credential.

Provides the SecureBackend ABC with in-memory, OS keyring, and encrypted
file implementations, and the CredentialStore that writes the token, its
expiry, and the user id under fixed logical keys.

The three values are written as independent items, so a commit key holding
a digest of all three is removed before the write and written last. A
record is only returned when every value is present and matches the digest.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
import tempfile
import threading

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

import keyring

from cryptography.fernet import Fernet, InvalidToken
from keyring.errors import KeyringError, PasswordDeleteError

from ..exceptions import StoreError
from ..sync_helpers import hold_lock
from ..types import TokenRecord


if TYPE_CHECKING:
    from ..config import SessionSettings


logger = logging.getLogger("sessionvault.auth")

ACCESS_TOKEN_KEY = "access_token"  # noqa: S105
TOKEN_EXPIRY_KEY = "token_expiry"  # noqa: S105
USER_ID_KEY = "user_id"
COMMIT_KEY = "token_commit"

RECORD_KEYS = (ACCESS_TOKEN_KEY, TOKEN_EXPIRY_KEY, USER_ID_KEY)


class SecureBackend(ABC):
    """Abstract key-value backend for secret strings.

    All methods are async so keychain and disk access never block the
    event loop. Failures raise ``StoreError``.
    """

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any existing value."""

    @abstractmethod
    async def get_item(self, key: str) -> str | None:
        """Return the value under ``key`` or None if absent."""

    @abstractmethod
    async def delete_item(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key succeeds."""


class MemoryBackend(SecureBackend):
    """In-memory backend for development and tests.

    Thread-safe via asyncio.Lock.
    """

    def __init__(self) -> None:
        """Initialize the memory backend."""
        self._items: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def set_item(self, key: str, value: str) -> None:
        """Store a value in memory."""
        async with self._lock:
            self._items[key] = value

    async def get_item(self, key: str) -> str | None:
        """Load a value from memory."""
        async with self._lock:
            return self._items.get(key)

    async def delete_item(self, key: str) -> None:
        """Delete a value from memory."""
        async with self._lock:
            self._items.pop(key, None)

    def keys(self) -> list[str]:
        """Keys currently held, for inspection in tests."""
        return list(self._items)


class KeyringBackend(SecureBackend):
    """OS keyring-backed storage (Keychain, Credential Locker, Secret Service).

    Parameters
    ----------
    service_name : str
        Service name the keys are stored under (default "sessionvault").
    """

    def __init__(self, service_name: str = "sessionvault") -> None:
        """Initialize the keyring backend."""
        self._service_name = service_name

    @property
    def service_name(self) -> str:
        """Keyring service the keys live under."""
        return self._service_name

    async def _call(self, key: str, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, self._service_name, key, *args)
        except PasswordDeleteError:
            raise
        except KeyringError as exc:
            msg = f"Keyring operation failed: {exc}"
            raise StoreError(msg, key=key, service=self._service_name) from exc
        except Exception as exc:
            # Platform backends raise their own exception types.
            msg = f"Keyring backend error: {exc!r}"
            raise StoreError(msg, key=key, service=self._service_name) from exc

    async def set_item(self, key: str, value: str) -> None:
        """Save a value to the OS keyring."""
        await self._call(key, keyring.set_password, value)

    async def get_item(self, key: str) -> str | None:
        """Load a value from the OS keyring."""
        result: str | None = await self._call(key, keyring.get_password)
        return result

    async def delete_item(self, key: str) -> None:
        """Delete a value from the OS keyring."""
        try:
            await self._call(key, keyring.delete_password)
        except PasswordDeleteError:
            # Raised by backends when the key does not exist.
            return


class EncryptedFileBackend(SecureBackend):
    """Fernet-encrypted JSON file for hosts without a usable keyring.

    Values are encrypted individually with a key derived from ``secret``.
    The whole document is rewritten through a temporary file and
    ``os.replace`` so a crash never leaves a truncated file.

    Parameters
    ----------
    path : str or Path
        Location of the credential file.
    secret : str
        Secret the Fernet key is derived from.
    """

    def __init__(self, path: str | Path, secret: str) -> None:
        """Initialize the encrypted file backend."""
        if not secret:
            msg = "Encrypted file storage requires an encryption secret"
            raise ValueError(msg)
        self._path = Path(path).expanduser()
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        """Location of the credential file."""
        return self._path

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            msg = f"Could not read credential file: {exc}"
            raise StoreError(msg, path=str(self._path)) from exc
        if not isinstance(data, dict):
            msg = "Credential file is not a JSON object"
            raise StoreError(msg, path=str(self._path))
        return data

    def _write(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".credentials-")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            msg = f"Could not write credential file: {exc}"
            raise StoreError(msg, path=str(self._path)) from exc

    async def set_item(self, key: str, value: str) -> None:
        """Encrypt and store a value."""
        async with self._lock:
            data = self._read()
            data[key] = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
            self._write(data)

    async def get_item(self, key: str) -> str | None:
        """Load and decrypt a value."""
        async with self._lock:
            ciphertext = self._read().get(key)
        if ciphertext is None:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            msg = "Stored value could not be decrypted"
            raise StoreError(msg, key=key, path=str(self._path)) from exc

    async def delete_item(self, key: str) -> None:
        """Remove a value."""
        async with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)


def _commit_digest(access_token: str, expiry: str, user_id: str) -> str:
    """Digest binding the three stored values together."""
    joined = "\x1f".join((access_token, expiry, user_id))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


class CredentialStore:
    """Persists the single ``TokenRecord`` of this device.

    ``put``, ``get`` and ``clear`` are serialized by one lock that holds
    across event loops and threads, so a read never observes a write in
    progress.

    Parameters
    ----------
    backend : SecureBackend
        Where the values are kept.
    """

    def __init__(self, backend: SecureBackend) -> None:
        """Initialize the credential store."""
        self.backend = backend
        self._lock = threading.Lock()

    async def put(self, record: TokenRecord) -> None:
        """Persist ``record``, replacing any existing one.

        Raises
        ------
        StoreError
            If any underlying write fails. The values already written are
            removed on a best-effort basis and ``get()`` returns None.
        """
        async with hold_lock(self._lock):
            try:
                await self._write(record)
            except StoreError:
                try:
                    await self._delete_all()
                except StoreError as exc:
                    logger.warning("Could not remove partial credential: %s", exc)
                raise
        logger.debug("Credential stored for user %s", record.user_id)

    async def _write(self, record: TokenRecord) -> None:
        expiry = str(record.expires_at_ms)
        await self.backend.delete_item(COMMIT_KEY)
        await self.backend.set_item(ACCESS_TOKEN_KEY, record.access_token)
        await self.backend.set_item(TOKEN_EXPIRY_KEY, expiry)
        await self.backend.set_item(USER_ID_KEY, record.user_id)
        await self.backend.set_item(
            COMMIT_KEY, _commit_digest(record.access_token, expiry, record.user_id)
        )

    async def get(self) -> TokenRecord | None:
        """Load the stored record without modifying the store.

        Returns
        -------
        TokenRecord or None
            The record, or None when nothing complete is stored. Incomplete
            values stay in place until the next ``put`` or ``clear``.

        Raises
        ------
        StoreError
            If the backend cannot be read.
        """
        async with hold_lock(self._lock):
            access_token = await self.backend.get_item(ACCESS_TOKEN_KEY)
            expiry = await self.backend.get_item(TOKEN_EXPIRY_KEY)
            user_id = await self.backend.get_item(USER_ID_KEY)
            commit = await self.backend.get_item(COMMIT_KEY)

        if access_token is None and expiry is None and user_id is None and commit is None:
            return None
        if access_token is None or expiry is None or user_id is None or commit is None:
            logger.warning("Ignoring partially written credential")
            return None
        if commit != _commit_digest(access_token, expiry, user_id):
            logger.warning("Ignoring credential with mismatched commit digest")
            return None
        try:
            expires_at_ms = int(expiry)
        except ValueError:
            logger.warning("Ignoring credential with malformed expiry")
            return None

        return TokenRecord(
            access_token=access_token,
            expires_at=expires_at_ms / 1000,
            user_id=user_id,
        )

    async def clear(self) -> None:
        """Remove every stored value. Clearing an empty store succeeds.

        Raises
        ------
        StoreError
            If any deletion failed; every key is still attempted.
        """
        async with hold_lock(self._lock):
            await self._delete_all()

    async def _delete_all(self) -> None:
        failures: list[StoreError] = []
        for key in (COMMIT_KEY, *RECORD_KEYS):
            try:
                await self.backend.delete_item(key)
            except StoreError as exc:
                failures.append(exc)
        if failures:
            keys = [exc.key for exc in failures]
            msg = f"Failed to delete {len(failures)} credential value(s)"
            raise StoreError(msg, keys=keys) from failures[0]


def create_backend(settings: SessionSettings) -> SecureBackend:
    """Build the backend named by ``settings.store_backend``.

    Parameters
    ----------
    settings : SessionSettings
        Session section of the loaded settings.

    Returns
    -------
    SecureBackend
        A new backend instance.
    """
    backend = settings.store_backend
    if backend == "memory":
        return MemoryBackend()
    if backend == "keyring":
        return KeyringBackend(service_name=settings.service_name)
    if backend == "file":
        return EncryptedFileBackend(settings.file_path, settings.encryption_secret)
    msg = f"Unknown credential store backend: {backend}"
    raise ValueError(msg)
