"""Pytest configuration and fixtures."""

import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

import pytest

from pollguard.auth.provider import (
    AuthData,
    AuthSession,
    AuthUser,
    ProviderError,
    ProviderResult,
)
from pollguard.config import create_test_config
from pollguard.security.audit import InMemorySecurityEventStorage, SecurityEventLogger
from pollguard.security.csrf import CsrfTokenManager
from pollguard.security.kv_store import InMemoryKeyValueStore
from pollguard.security.rate_limiter import RateLimiter


class FakeIdentityProvider:
    """In-process identity provider recording every call."""

    def __init__(self) -> None:
        self.accounts: Dict[str, Tuple[str, AuthUser]] = {}
        self.session: Optional[AuthSession] = None
        self.recovery_tokens: Dict[str, str] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.next_error: Optional[ProviderError] = None
        self.session_lifetime = 3600.0

    def add_account(self, email: str, password: str) -> AuthUser:
        user = AuthUser(id=str(uuid.uuid4()), email=email)
        self.accounts[email.lower()] = (password, user)
        return user

    def sign_in_as(self, user: AuthUser) -> AuthSession:
        self.session = self._new_session(user)
        return self.session

    def _new_session(self, user: AuthUser) -> AuthSession:
        return AuthSession(
            access_token=f"access-{uuid.uuid4()}",
            refresh_token=f"refresh-{uuid.uuid4()}",
            expires_at=time.time() + self.session_lifetime,
            user=user,
        )

    def _pop_error(self) -> Optional[ProviderError]:
        error, self.next_error = self.next_error, None
        return error

    async def sign_in_with_password(self, email: str, password: str):
        self.calls.append(("sign_in_with_password", email))
        error = self._pop_error()
        if error:
            return ProviderResult(error=error)
        account = self.accounts.get(email.lower())
        if account is None or account[0] != password:
            return ProviderResult(
                error=ProviderError(
                    "Invalid login credentials", 400, code="invalid_credentials"
                )
            )
        session = self.sign_in_as(account[1])
        return ProviderResult(data=AuthData(user=account[1], session=session))

    async def sign_up(self, email: str, password: str, metadata=None):
        self.calls.append(("sign_up", metadata))
        error = self._pop_error()
        if error:
            return ProviderResult(error=error)
        if email.lower() in self.accounts:
            return ProviderResult(
                error=ProviderError(
                    "User already registered", 422, code="user_already_exists"
                )
            )
        user = self.add_account(email, password)
        user = AuthUser(id=user.id, email=email, metadata=dict(metadata or {}))
        self.accounts[email.lower()] = (password, user)
        session = self.sign_in_as(user)
        return ProviderResult(data=AuthData(user=user, session=session))

    async def sign_out(self, scope: str = "local"):
        self.calls.append(("sign_out", scope))
        error = self._pop_error()
        if error:
            return ProviderResult(error=error)
        self.session = None
        return ProviderResult()

    async def get_session(self):
        return ProviderResult(data=self.session)

    async def get_user(self, access_token: Optional[str] = None):
        self.calls.append(("get_user", access_token))
        if access_token is not None:
            if self.session and self.session.access_token == access_token:
                return ProviderResult(data=self.session.user)
            return ProviderResult(error=ProviderError("invalid JWT", 401))
        if self.session is None or self.session.user is None:
            return ProviderResult(error=ProviderError("Auth session missing!", 401))
        return ProviderResult(data=self.session.user)

    async def refresh_session(self):
        self.calls.append(("refresh_session", None))
        error = self._pop_error()
        if error:
            return ProviderResult(error=error)
        if self.session is None or self.session.user is None:
            return ProviderResult(error=ProviderError("Auth session missing!", 401))
        session = self.sign_in_as(self.session.user)
        return ProviderResult(data=AuthData(user=session.user, session=session))

    async def reset_password_for_email(self, email: str, redirect_to=None):
        self.calls.append(("reset_password_for_email", (email, redirect_to)))
        error = self._pop_error()
        if error:
            return ProviderResult(error=error)
        if email.lower() in self.accounts:
            self.recovery_tokens[f"recovery-{uuid.uuid4()}"] = email.lower()
        return ProviderResult()

    async def verify_otp(self, token: str, type: str):
        self.calls.append(("verify_otp", (token, type)))
        email = self.recovery_tokens.get(token)
        if type != "recovery" or email is None:
            return ProviderResult(
                error=ProviderError("Token has expired or is invalid", 403)
            )
        user = self.accounts[email][1]
        session = self.sign_in_as(user)
        return ProviderResult(data=AuthData(user=user, session=session))

    async def update_user(self, fields: Dict[str, Any]):
        self.calls.append(("update_user", sorted(fields)))
        error = self._pop_error()
        if error:
            return ProviderResult(error=error)
        if self.session is None or self.session.user is None:
            return ProviderResult(error=ProviderError("Auth session missing!", 401))
        user = self.session.user
        if "password" in fields and user.email:
            self.accounts[user.email.lower()] = (fields["password"], user)
        return ProviderResult(data=user)


@pytest.fixture
def settings():
    """Test settings."""
    return create_test_config()


@pytest.fixture
def kv_store():
    """Process-local key-value store."""
    return InMemoryKeyValueStore()


@pytest.fixture
def event_storage():
    """In-memory security event storage."""
    return InMemorySecurityEventStorage()


@pytest.fixture
def audit(event_storage):
    """Security event logger over in-memory storage."""
    return SecurityEventLogger(event_storage)


@pytest.fixture
def rate_limiter(settings, kv_store, audit):
    """Rate limiter with default policies."""
    return RateLimiter.from_settings(settings, kv_store, audit)


@pytest.fixture
def csrf(kv_store):
    """CSRF token manager."""
    return CsrfTokenManager(kv_store)


@pytest.fixture
def provider():
    """Fake identity provider."""
    return FakeIdentityProvider()
