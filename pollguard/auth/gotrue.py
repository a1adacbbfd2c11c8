"""httpx client for a GoTrue-compatible hosted auth API.

The client is bound to at most one session at a time, like a browser
client. ``with_session`` derives a client bound to another session that
shares the same connection pool, which is how the HTTP boundary serves
many visitors from one instance.
"""

import time
from typing import TYPE_CHECKING, Any, Dict, Optional

import httpx
import structlog

from pollguard.utils.constants import DEFAULT_PROVIDER_TIMEOUT_SECONDS

from .provider import (
    AuthData,
    AuthSession,
    AuthUser,
    ProviderError,
    ProviderErrorKind,
    ProviderResult,
)

if TYPE_CHECKING:
    from pollguard.config.settings import Settings

logger = structlog.get_logger()


def _error_from_response(response: httpx.Response) -> ProviderError:
    """Map a non-2xx response to a ProviderError."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    message = (
        body.get("msg")
        or body.get("message")
        or body.get("error_description")
        or body.get("error")
        or f"HTTP {response.status_code}"
    )
    code = body.get("error_code") or body.get("code")
    kind = (
        ProviderErrorKind.NETWORK
        if response.status_code >= 500
        else ProviderErrorKind.AUTH
    )
    return ProviderError(
        message=str(message),
        status=response.status_code,
        kind=kind,
        code=str(code) if code is not None else None,
    )


def _session_from_payload(payload: Dict[str, Any]) -> Optional[AuthSession]:
    """Build a session from a token response, if it carries one."""
    access_token = payload.get("access_token")
    if not access_token:
        return None

    expires_at = payload.get("expires_at")
    if expires_at is None:
        expires_at = time.time() + float(payload.get("expires_in") or 0)

    user_payload = payload.get("user")
    return AuthSession(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or "",
        expires_at=float(expires_at),
        user=AuthUser.from_payload(user_payload) if user_payload else None,
    )


class GoTrueIdentityProvider:
    """Identity provider backed by the GoTrue REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        session: Optional[AuthSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.session = session

    @classmethod
    def from_settings(
        cls, settings: "Settings", http_client: Optional[httpx.AsyncClient] = None
    ) -> "GoTrueIdentityProvider":
        """Build a provider from application settings."""
        return cls(
            settings.auth_provider_url,
            settings.auth_provider_key_str,
            timeout=settings.provider_timeout_seconds,
            http_client=http_client,
        )

    def with_session(self, session: Optional[AuthSession]) -> "GoTrueIdentityProvider":
        """Return a provider bound to session sharing this connection pool."""
        provider = GoTrueIdentityProvider(
            self.base_url,
            self.api_key,
            timeout=self.timeout,
            http_client=self.http_client,
            session=session,
        )
        provider._owns_client = False
        return provider

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self.http_client.aclose()

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        token = access_token or (self.session.access_token if self.session else None)
        headers["Authorization"] = f"Bearer {token or self.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> ProviderResult[Dict[str, Any]]:
        """Perform a request and return the JSON body or an error."""
        url = f"{self.base_url}/auth/v1{path}"
        try:
            response = await self.http_client.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(access_token),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("Identity provider timeout", path=path, error=str(e))
            return ProviderResult(
                error=ProviderError(
                    "Identity provider timed out", kind=ProviderErrorKind.TIMEOUT
                )
            )
        except httpx.HTTPError as e:
            logger.warning("Identity provider unreachable", path=path, error=str(e))
            return ProviderResult(
                error=ProviderError(
                    "Identity provider unreachable", kind=ProviderErrorKind.NETWORK
                )
            )

        if response.status_code >= 400:
            error = _error_from_response(response)
            logger.debug(
                "Identity provider rejected request",
                path=path,
                status=response.status_code,
                code=error.code,
            )
            return ProviderResult(error=error)

        if response.status_code == 204 or not response.content:
            return ProviderResult(data={})

        try:
            body = response.json()
        except ValueError:
            return ProviderResult(
                error=ProviderError(
                    "Malformed identity provider response",
                    status=response.status_code,
                    kind=ProviderErrorKind.NETWORK,
                )
            )
        return ProviderResult(data=body if isinstance(body, dict) else {})

    def _auth_data(self, payload: Dict[str, Any]) -> AuthData:
        session = _session_from_payload(payload)
        if session is not None:
            self.session = session
            return AuthData(user=session.user, session=session)
        # Sign-up with email confirmation returns the bare user object.
        user_payload = payload.get("user") or (payload if "id" in payload else None)
        return AuthData(
            user=AuthUser.from_payload(user_payload) if user_payload else None
        )

    async def sign_in_with_password(
        self, email: str, password: str
    ) -> ProviderResult[AuthData]:
        result = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if result.error:
            return ProviderResult(error=result.error)
        return ProviderResult(data=self._auth_data(result.data or {}))

    async def sign_up(
        self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None
    ) -> ProviderResult[AuthData]:
        result = await self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": metadata or {}},
        )
        if result.error:
            return ProviderResult(error=result.error)
        return ProviderResult(data=self._auth_data(result.data or {}))

    async def sign_out(self, scope: str = "local") -> ProviderResult[None]:
        if self.session is None:
            return ProviderResult()
        result = await self._request("POST", "/logout", params={"scope": scope})
        # The local session is dropped even if the provider call failed.
        self.session = None
        return ProviderResult(error=result.error)

    async def get_session(self) -> ProviderResult[AuthSession]:
        return ProviderResult(data=self.session)

    async def get_user(
        self, access_token: Optional[str] = None
    ) -> ProviderResult[AuthUser]:
        if access_token is None and self.session is None:
            return ProviderResult(
                error=ProviderError("Auth session missing", status=401)
            )
        result = await self._request("GET", "/user", access_token=access_token)
        if result.error:
            return ProviderResult(error=result.error)
        return ProviderResult(data=AuthUser.from_payload(result.data or {}))

    async def refresh_session(self) -> ProviderResult[AuthData]:
        if self.session is None or not self.session.refresh_token:
            return ProviderResult(
                error=ProviderError("Auth session missing", status=401)
            )
        result = await self._request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": self.session.refresh_token},
        )
        if result.error:
            return ProviderResult(error=result.error)
        return ProviderResult(data=self._auth_data(result.data or {}))

    async def reset_password_for_email(
        self, email: str, redirect_to: Optional[str] = None
    ) -> ProviderResult[None]:
        params = {"redirect_to": redirect_to} if redirect_to else None
        result = await self._request(
            "POST", "/recover", params=params, json={"email": email}
        )
        return ProviderResult(error=result.error)

    async def verify_otp(self, token: str, type: str) -> ProviderResult[AuthData]:
        result = await self._request(
            "POST", "/verify", json={"type": type, "token_hash": token}
        )
        if result.error:
            return ProviderResult(error=result.error)
        return ProviderResult(data=self._auth_data(result.data or {}))

    async def update_user(self, fields: Dict[str, Any]) -> ProviderResult[AuthUser]:
        if self.session is None:
            return ProviderResult(
                error=ProviderError("Auth session missing", status=401)
            )
        result = await self._request("PUT", "/user", json=fields)
        if result.error:
            return ProviderResult(error=result.error)
        return ProviderResult(data=AuthUser.from_payload(result.data or {}))
