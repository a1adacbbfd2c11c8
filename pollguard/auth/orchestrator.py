"""Authentication flows.

Every flow runs the same pipeline::

    input validation -> rate limit -> CSRF (form submissions) ->
    identity provider -> security event -> sanitized result

Nothing raises out of these methods. Provider and storage failures are
logged with full detail and turned into fixed user-facing messages from
``pollguard.utils.constants``.
"""

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from pollguard.security.audit import (
    RequestContext,
    SecurityEventLogger,
    SecurityEventType,
)
from pollguard.security.csrf import CsrfSubmission, CsrfTokenManager
from pollguard.security.kv_store import KeyValueStore
from pollguard.security.rate_limiter import RateLimiter
from pollguard.security.validators import InputValidator
from pollguard.utils.constants import (
    MSG_ALREADY_REGISTERED,
    MSG_CSRF_FAILED,
    MSG_INVALID_CREDENTIALS,
    MSG_LOGIN_FAILED,
    MSG_LOGIN_RATE_LIMITED,
    MSG_LOGOUT_FAILED,
    MSG_PROVIDER_UNAVAILABLE,
    MSG_REGISTER_FAILED,
    MSG_REGISTER_RATE_LIMITED,
    MSG_RESET_FAILED,
    MSG_RESET_RATE_LIMITED,
    MSG_RESET_TOKEN_INVALID,
    MSG_SESSION_INVALID,
    MSG_SESSION_REFRESH_FAILED,
    MSG_UNEXPECTED,
)

from .provider import AuthSession, AuthUser, IdentityProvider, ProviderError

if TYPE_CHECKING:
    from pollguard.config.settings import Settings

    from .session_manager import SessionManager

logger = structlog.get_logger()

# Consumed reset tokens are remembered this long.
USED_RESET_TOKEN_TTL_SECONDS = 24 * 60 * 60


@dataclass
class AuthResult:
    user: Optional[AuthUser] = None
    session: Optional[AuthSession] = None
    error: Optional[str] = None
    # failure came from connectivity; the stored session is still good
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict() if self.user else None,
            "session": self.session.to_dict() if self.session else None,
            "error": self.error,
        }


@dataclass
class ActionResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "error": self.error}


@dataclass
class ResetResult:
    email_sent: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"email_sent": self.email_sent, "error": self.error}


@dataclass
class VerificationResult:
    verified: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"verified": self.verified, "error": self.error}


@dataclass
class SessionValidationResult:
    valid: bool
    user: Optional[AuthUser] = None
    session: Optional[AuthSession] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "user": self.user.to_dict() if self.user else None,
            "error": self.error,
        }


def _is_invalid_credentials(error: ProviderError) -> bool:
    return (
        error.code == "invalid_credentials"
        or "invalid login credentials" in error.message.lower()
    )


def _is_already_registered(error: ProviderError) -> bool:
    return (
        error.code in ("user_already_exists", "email_exists")
        or "already registered" in error.message.lower()
    )


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class AuthOrchestrator:
    """Sign-in, sign-up, sign-out and password reset flows."""

    def __init__(
        self,
        provider: IdentityProvider,
        rate_limiter: RateLimiter,
        csrf: CsrfTokenManager,
        audit: SecurityEventLogger,
        settings: "Settings",
        session_manager: Optional["SessionManager"] = None,
        store: Optional[KeyValueStore] = None,
        validator: Optional[InputValidator] = None,
    ):
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.csrf = csrf
        self.audit = audit
        self.settings = settings
        self.session_manager = session_manager
        self.store = store or rate_limiter.store
        self.validator = validator or InputValidator()

    async def _verify_csrf(
        self,
        submission: Optional[CsrfSubmission],
        action: str,
        context: Optional[RequestContext],
        email: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """True when no token was required or the submitted one is valid."""
        if submission is None:
            return True
        if await self.csrf.check_submission(submission):
            return True
        await self.audit.log_event(
            SecurityEventType.CSRF_TOKEN_MISMATCH,
            False,
            email=email,
            user_id=user_id,
            context=context,
            details={"action": action},
        )
        return False

    async def sign_in(
        self,
        email: str,
        password: str,
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
    ) -> AuthResult:
        """Password sign-in.

        Failed credentials never reveal whether the email exists; the
        message only carries the remaining-attempt hint.
        """
        try:
            error = self.validator.validate_login_form(email, password)
            if error:
                return AuthResult(error=error)

            email = email.strip()
            rate_key = f"login:{email.lower()}"
            status = await self.rate_limiter.is_rate_limited(rate_key)
            if status.limited:
                await self.audit.log_event(
                    SecurityEventType.LOGIN_RATE_LIMITED,
                    False,
                    email=email,
                    context=context,
                    details={"attempt_count": status.attempt_count},
                )
                return AuthResult(error=MSG_LOGIN_RATE_LIMITED)

            if not await self._verify_csrf(csrf, "login", context, email=email):
                return AuthResult(error=MSG_CSRF_FAILED)

            result = await self.provider.sign_in_with_password(email, password)
            if result.error or result.data is None:
                provider_error = result.error or ProviderError("empty response")
                await self.audit.log_auth_attempt(
                    False,
                    email,
                    context=context,
                    details={
                        "reason": provider_error.message,
                        "attempt_count": status.attempt_count,
                    },
                )
                if _is_invalid_credentials(provider_error):
                    message = MSG_INVALID_CREDENTIALS
                    if status.remaining_attempts > 0:
                        message += (
                            f". {status.remaining_attempts} attempts remaining"
                        )
                    return AuthResult(error=message)
                return AuthResult(error=MSG_LOGIN_FAILED)

            await self.rate_limiter.reset_rate_limit(rate_key)
            user = result.data.user
            await self.audit.log_auth_attempt(
                True,
                email,
                user_id=user.id if user else None,
                context=context,
            )

            session = result.data.session
            if self.session_manager is not None and session is not None:
                await self.session_manager.track(session)

            return AuthResult(user=user, session=session)
        except Exception as e:
            logger.error("Sign-in failed unexpectedly", error=str(e))
            return AuthResult(error=MSG_UNEXPECTED)

    async def sign_up(
        self,
        email: str,
        password: str,
        name: str,
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuthResult:
        """Create an account."""
        try:
            error = self.validator.validate_register_form(email, password, name)
            if error:
                return AuthResult(error=error)

            email = email.strip()
            rate = await self.rate_limiter.check_rate_limit(
                f"register:{email.lower()}", "register"
            )
            if not rate.allowed:
                await self.audit.log_event(
                    SecurityEventType.REGISTER_RATE_LIMITED,
                    False,
                    email=email,
                    context=context,
                    details={"attempt_count": rate.count},
                )
                return AuthResult(error=MSG_REGISTER_RATE_LIMITED)

            if not await self._verify_csrf(csrf, "register", context, email=email):
                return AuthResult(error=MSG_CSRF_FAILED)

            profile = {
                "full_name": name.strip(),
                "username": email.split("@")[0],
                **(metadata or {}),
            }
            result = await self.provider.sign_up(email, password, profile)
            if result.error or result.data is None:
                provider_error = result.error or ProviderError("empty response")
                await self.audit.log_event(
                    SecurityEventType.REGISTER_FAILED,
                    False,
                    email=email,
                    context=context,
                    details={"reason": provider_error.message},
                )
                if _is_already_registered(provider_error):
                    return AuthResult(error=MSG_ALREADY_REGISTERED)
                return AuthResult(error=MSG_REGISTER_FAILED)

            user = result.data.user
            await self.audit.log_event(
                SecurityEventType.REGISTER_SUCCESS,
                True,
                email=email,
                user_id=user.id if user else None,
                context=context,
            )

            session = result.data.session
            if self.session_manager is not None and session is not None:
                await self.session_manager.track(session)

            return AuthResult(user=user, session=session)
        except Exception as e:
            logger.error("Sign-up failed unexpectedly", error=str(e))
            return AuthResult(error=MSG_UNEXPECTED)

    async def sign_out(
        self,
        scope: str = "local",
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
    ) -> ActionResult:
        """Invalidate the provider session (``local`` or ``global`` scope)."""
        try:
            user_id: Optional[str] = None
            email: Optional[str] = None
            try:
                current = await self.provider.get_user()
                if current.data is not None:
                    user_id, email = current.data.id, current.data.email
            except Exception as e:
                logger.debug("Could not resolve user before sign-out", error=str(e))

            if not await self._verify_csrf(
                csrf, "logout", context, email=email, user_id=user_id
            ):
                return ActionResult(success=False, error=MSG_CSRF_FAILED)

            scope = "global" if scope == "global" else "local"
            result = await self.provider.sign_out(scope)
            if result.error:
                await self.audit.log_event(
                    SecurityEventType.LOGOUT_FAILED,
                    False,
                    user_id=user_id,
                    email=email,
                    context=context,
                    details={"reason": result.error.message, "scope": scope},
                )
                return ActionResult(success=False, error=MSG_LOGOUT_FAILED)

            if self.session_manager is not None:
                await self.session_manager.dispose()

            await self.audit.log_event(
                SecurityEventType.LOGOUT_SUCCESS,
                True,
                user_id=user_id,
                email=email,
                context=context,
                details={"scope": scope},
            )
            return ActionResult(success=True)
        except Exception as e:
            logger.error("Sign-out failed unexpectedly", error=str(e))
            return ActionResult(success=False, error=MSG_UNEXPECTED)

    async def request_password_reset(
        self,
        email: str,
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
    ) -> ResetResult:
        """Send a reset link.

        Past validation, throttling and CSRF the outcome is always
        ``email_sent=True``, whether or not the account exists and even
        when the provider call fails.
        """
        try:
            error = self.validator.validate_email(email)
            if error:
                return ResetResult(email_sent=False, error=error)

            email = email.strip()
            rate = await self.rate_limiter.check_rate_limit(
                f"reset:{email.lower()}", "reset"
            )
            if not rate.allowed:
                await self.audit.log_event(
                    SecurityEventType.PASSWORD_RESET_RATE_LIMITED,
                    False,
                    email=email,
                    context=context,
                    details={"attempt_count": rate.count},
                )
                return ResetResult(email_sent=False, error=MSG_RESET_RATE_LIMITED)

            if not await self._verify_csrf(csrf, "reset", context, email=email):
                return ResetResult(email_sent=False, error=MSG_CSRF_FAILED)
        except Exception as e:
            logger.error("Password reset request failed unexpectedly", error=str(e))
            return ResetResult(email_sent=False, error=MSG_UNEXPECTED)

        try:
            result = await self.provider.reset_password_for_email(
                email, redirect_to=f"{self.settings.site_url}/reset-password"
            )
            if result.error:
                await self.audit.log_event(
                    SecurityEventType.PASSWORD_RESET_FAILED,
                    False,
                    email=email,
                    context=context,
                    details={"reason": result.error.message, "stage": "request"},
                )
            else:
                await self.audit.log_event(
                    SecurityEventType.PASSWORD_RESET_REQUESTED,
                    True,
                    email=email,
                    context=context,
                )
        except Exception as e:
            logger.error("Password reset provider call raised", error=str(e))

        return ResetResult(email_sent=True)

    async def complete_password_reset(
        self,
        token: str,
        new_password: str,
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
    ) -> VerificationResult:
        """Verify a reset token and set the new password. Tokens are single use."""
        try:
            valid, message = self.validator.validate_password(new_password)
            if not valid:
                return VerificationResult(verified=False, error=message)

            if not token:
                return VerificationResult(verified=False, error=MSG_RESET_TOKEN_INVALID)

            used_key = f"reset-used:{_token_digest(token)}"
            if await self.store.get(used_key) is not None:
                await self.audit.log_event(
                    SecurityEventType.PASSWORD_RESET_TOKEN_INVALID,
                    False,
                    context=context,
                    details={"reason": "token already used"},
                )
                return VerificationResult(verified=False, error=MSG_RESET_TOKEN_INVALID)

            if not await self._verify_csrf(csrf, "reset_complete", context):
                return VerificationResult(verified=False, error=MSG_CSRF_FAILED)

            verified = await self.provider.verify_otp(token, "recovery")
            if verified.error:
                await self.audit.log_event(
                    SecurityEventType.PASSWORD_RESET_TOKEN_INVALID,
                    False,
                    context=context,
                    details={"reason": verified.error.message},
                )
                return VerificationResult(verified=False, error=MSG_RESET_TOKEN_INVALID)

            await self.store.set(used_key, "1", USED_RESET_TOKEN_TTL_SECONDS)

            updated = await self.provider.update_user({"password": new_password})
            if updated.error or updated.data is None:
                await self.audit.log_event(
                    SecurityEventType.PASSWORD_RESET_FAILED,
                    False,
                    context=context,
                    details={
                        "reason": updated.error.message if updated.error else None,
                        "stage": "update",
                    },
                )
                return VerificationResult(verified=False, error=MSG_RESET_FAILED)

            await self.audit.log_event(
                SecurityEventType.PASSWORD_RESET_SUCCESS,
                True,
                user_id=updated.data.id,
                email=updated.data.email,
                context=context,
            )
            return VerificationResult(verified=True)
        except Exception as e:
            logger.error("Password reset failed unexpectedly", error=str(e))
            return VerificationResult(verified=False, error=MSG_UNEXPECTED)

    async def validate_session(self, token: Optional[str]) -> SessionValidationResult:
        """Check an access token with the provider."""
        if not token:
            return SessionValidationResult(valid=False, error=MSG_SESSION_INVALID)
        try:
            result = await self.provider.get_user(access_token=token)
        except Exception as e:
            logger.error("Session validation raised", error=str(e))
            return SessionValidationResult(valid=False, error=MSG_UNEXPECTED)

        if result.error or result.data is None:
            return SessionValidationResult(valid=False, error=MSG_SESSION_INVALID)
        return SessionValidationResult(valid=True, user=result.data)

    async def refresh_session(self) -> AuthResult:
        """Exchange the refresh token for a new session."""
        try:
            result = await self.provider.refresh_session()
        except Exception as e:
            logger.error("Session refresh raised", error=str(e))
            return AuthResult(error=MSG_UNEXPECTED, retryable=True)

        session = result.data.session if result.data else None
        if result.error or session is None:
            await self.audit.log_session_event(
                SecurityEventType.SESSION_REFRESH_FAILED,
                False,
                None,
                details={"reason": result.error.message if result.error else None},
            )
            if result.error is not None and result.error.is_transient:
                return AuthResult(error=MSG_PROVIDER_UNAVAILABLE, retryable=True)
            return AuthResult(error=MSG_SESSION_REFRESH_FAILED)

        user = session.user
        await self.audit.log_session_event(
            SecurityEventType.SESSION_REFRESH_SUCCESS,
            True,
            user.id if user else None,
        )
        if self.session_manager is not None:
            await self.session_manager.track(session)
        return AuthResult(user=user, session=session)

    async def get_current_user(self) -> Optional[AuthUser]:
        """User behind the current session, or None."""
        try:
            result = await self.provider.get_user()
        except Exception as e:
            logger.error("Failed to fetch current user", error=str(e))
            return None
        return result.data if result.error is None else None
