"""Type definitions shared across sessionvault components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Lifecycle state of the device session."""

    NO_SESSION = "no_session"
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    REFRESHING = "refreshing"
    INVALID = "invalid"


class AuthFlowState(str, Enum):
    """State of a sign-in attempt."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ProviderCredentialState(str, Enum):
    """Credential state reported by the identity provider for a user."""

    AUTHORIZED = "authorized"
    REVOKED = "revoked"
    NOT_FOUND = "not_found"
    TRANSFERRED = "transferred"


@dataclass(frozen=True)
class TokenRecord:
    """The persisted session credential.

    Attributes
    ----------
    access_token : str
        Opaque bearer token.
    expires_at : float
        Absolute expiry as a Unix timestamp in seconds.
    user_id : str
        Backend user the token was issued for.
    token_type : str
        Token type, typically "bearer".
    """

    access_token: str
    expires_at: float
    user_id: str
    token_type: str = "bearer"  # noqa: S105

    @property
    def expires_at_ms(self) -> int:
        """Expiry in epoch milliseconds, the persisted representation."""
        return int(round(self.expires_at * 1000))

    def is_valid(self, now: float, skew: float) -> bool:
        """Whether the token is usable at ``now`` given a safety ``skew`` in seconds."""
        return now < self.expires_at - skew


@dataclass(frozen=True)
class SessionExchange:
    """Token material returned by a sign-in exchange or refresh.

    ``expires_in`` is a lifetime in seconds, converted to an absolute expiry
    when the session is stored.
    """

    access_token: str
    expires_in: float
    user_id: str
    token_type: str = "bearer"  # noqa: S105


@dataclass(frozen=True)
class SessionStatus:
    """Read-only snapshot of the session."""

    has_token: bool
    is_valid: bool
    state: SessionState
    expires_at: datetime | None = None
    user_id: str | None = None


@dataclass
class ProviderCredential:
    """Normalised result of a third-party sign-in.

    Attributes
    ----------
    user_id : str
        The provider's stable identifier for the user.
    identity_token : str
        Opaque provider token the backend verifies.
    authorization_code : str or None
        Optional one-time code issued alongside the identity token.
    email : str or None
        Email shared by the provider, if any.
    given_name : str or None
        Given name shared by the provider, if any.
    family_name : str or None
        Family name shared by the provider, if any.
    """

    user_id: str
    identity_token: str
    authorization_code: str | None = None
    email: str | None = None
    given_name: str | None = None
    family_name: str | None = None

    def to_exchange_payload(self) -> dict[str, Any]:
        """Build the request body for the backend sign-in exchange."""
        payload: dict[str, Any] = {"identity_token": self.identity_token}
        if self.authorization_code:
            payload["authorization_code"] = self.authorization_code
        name: dict[str, str] = {}
        if self.given_name:
            name["firstName"] = self.given_name
        if self.family_name:
            name["lastName"] = self.family_name
        if name:
            payload["user_info"] = {"name": name}
        return payload


@dataclass
class UserIdentity:
    """Backend user profile returned by sign-in and ``/auth/me``."""

    id: str
    username: str = ""
    email: str | None = None
    provider_user_id: str | None = None
    membership_plan: str = "free"
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> UserIdentity:
        """Build from a backend user object."""
        return cls(
            id=str(data["id"]),
            username=data.get("username") or "",
            email=data.get("email"),
            provider_user_id=data.get("apple_user_id"),
            membership_plan=data.get("membership_plan") or "free",
            raw=dict(data),
        )


@dataclass
class ApiResponse:
    """Decoded response from the backend.

    Attributes
    ----------
    status : int
        HTTP status code.
    data : Any
        Parsed JSON body, or the raw text when the body is not JSON.
    headers : dict[str, str]
        Response headers.
    """

    status: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)


def to_datetime(timestamp: float) -> datetime:
    """Convert a Unix timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)
