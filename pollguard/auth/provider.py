"""Identity provider contract.

Every provider call resolves to a ``ProviderResult`` carrying either
``data`` or ``error``. The presence of ``error`` is the only failure
signal the auth flows react to; transport problems are reported the same
way instead of being raised.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, Protocol, TypeVar

T = TypeVar("T")


class ProviderErrorKind(str, Enum):
    """Why a provider call failed."""

    AUTH = "auth"  # provider answered and rejected the request
    NETWORK = "network"  # provider unreachable or failing server-side
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ProviderError:
    """Failure reported by the identity provider."""

    message: str
    status: Optional[int] = None
    kind: ProviderErrorKind = ProviderErrorKind.AUTH
    code: Optional[str] = None

    @property
    def is_transient(self) -> bool:
        """Whether retrying could succeed (connectivity, not rejection)."""
        return self.kind in (ProviderErrorKind.NETWORK, ProviderErrorKind.TIMEOUT)


@dataclass(frozen=True)
class AuthUser:
    """User identity as reported by the provider."""

    id: str
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthUser":
        """Build from a provider user object."""
        return cls(
            id=str(payload["id"]),
            email=payload.get("email"),
            metadata=dict(payload.get("user_metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Public view returned across the form boundary."""
        return {"id": self.id, "email": self.email, "metadata": dict(self.metadata)}


@dataclass(frozen=True)
class AuthSession:
    """Provider-issued session; this package never mints one."""

    access_token: str
    refresh_token: str
    expires_at: float
    user: Optional[AuthUser] = None

    def time_to_expiry(self, now: Optional[float] = None) -> float:
        """Seconds until expiry, never negative."""
        now = time.time() if now is None else now
        return max(0.0, self.expires_at - now)

    def to_dict(self) -> Dict[str, Any]:
        """Public view without tokens."""
        return {
            "expires_at": self.expires_at,
            "user": self.user.to_dict() if self.user else None,
        }


@dataclass(frozen=True)
class AuthData:
    """Payload of calls that may yield a user and a session."""

    user: Optional[AuthUser] = None
    session: Optional[AuthSession] = None


@dataclass(frozen=True)
class ProviderResult(Generic[T]):
    """``{data, error}`` pair returned by every provider call."""

    data: Optional[T] = None
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class IdentityProvider(Protocol):
    """Hosted identity provider operations consumed by the auth flows."""

    async def sign_in_with_password(
        self, email: str, password: str
    ) -> ProviderResult[AuthData]:
        """Verify credentials and issue a session."""

    async def sign_up(
        self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None
    ) -> ProviderResult[AuthData]:
        """Create an account."""

    async def sign_out(self, scope: str = "local") -> ProviderResult[None]:
        """Invalidate the current session (``local`` or ``global``)."""

    async def get_session(self) -> ProviderResult[AuthSession]:
        """Return the current session; data is None when signed out."""

    async def get_user(
        self, access_token: Optional[str] = None
    ) -> ProviderResult[AuthUser]:
        """Resolve the user behind access_token (or the current session)."""

    async def refresh_session(self) -> ProviderResult[AuthData]:
        """Exchange the refresh token for a new session."""

    async def reset_password_for_email(
        self, email: str, redirect_to: Optional[str] = None
    ) -> ProviderResult[None]:
        """Send a password reset link."""

    async def verify_otp(self, token: str, type: str) -> ProviderResult[AuthData]:
        """Verify a one-time token (e.g. ``recovery``)."""

    async def update_user(self, fields: Dict[str, Any]) -> ProviderResult[AuthUser]:
        """Update attributes of the current user."""
