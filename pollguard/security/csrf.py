"""Anti-forgery tokens bound to a browser context.

One active token exists per context. A token validates at most once: a
successful validation swaps it for a fresh token in a single
compare-and-set, so there is never a moment where both or neither are
valid.
"""

import secrets
from dataclasses import dataclass
from typing import Optional

import structlog

from pollguard.utils.constants import DEFAULT_CSRF_TOKEN_TTL_SECONDS

from .kv_store import KeyValueStore

logger = structlog.get_logger()


@dataclass
class CsrfSubmission:
    """Token submitted with a form, plus the replacement once validated."""

    context_id: Optional[str]
    token: Optional[str]
    rotated_token: Optional[str] = None


class CsrfTokenManager:
    """Issue, validate and rotate CSRF tokens."""

    def __init__(
        self, store: KeyValueStore, ttl_seconds: int = DEFAULT_CSRF_TOKEN_TTL_SECONDS
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        logger.info(
            "CSRF token manager initialized",
            store=type(store).__name__,
            ttl_seconds=ttl_seconds,
        )

    @staticmethod
    def generate_token() -> str:
        """Return a new URL-safe token with 256 bits of entropy."""
        return secrets.token_urlsafe(32)

    @staticmethod
    def new_context_id() -> str:
        """Return an opaque browser-context identifier."""
        return secrets.token_urlsafe(16)

    @staticmethod
    def _key(context_id: str) -> str:
        return f"csrf:{context_id}"

    async def store_token(self, context_id: str, token: str) -> None:
        """Make token the active token for context_id."""
        await self.store.set(self._key(context_id), token, self.ttl_seconds)

    async def issue_token(self, context_id: str) -> str:
        """Generate, store and return a token for context_id."""
        token = self.generate_token()
        await self.store_token(context_id, token)
        return token

    async def validate_and_rotate(
        self, context_id: Optional[str], submitted: Optional[str]
    ) -> Optional[str]:
        """Validate submitted and return the replacement token.

        Returns None when the token is missing, stale or does not match.
        The reason is never reported to the caller.
        """
        if not context_id or not submitted:
            return None

        key = self._key(context_id)
        try:
            stored = await self.store.get(key)
            if not stored or not secrets.compare_digest(
                stored.encode(), submitted.encode()
            ):
                return None

            new_token = self.generate_token()
            if not await self.store.compare_and_set(
                key, stored, new_token, self.ttl_seconds
            ):
                # Lost a race with a concurrent submission of the same token.
                return None
        except Exception as e:
            logger.error("CSRF token store failure", error=str(e))
            return None

        return new_token

    async def validate_token(
        self, context_id: Optional[str], submitted: Optional[str]
    ) -> bool:
        """Validate submitted, rotating the stored token on success."""
        return await self.validate_and_rotate(context_id, submitted) is not None

    async def check_submission(self, submission: CsrfSubmission) -> bool:
        """Validate a form submission, recording the rotated token on it."""
        new_token = await self.validate_and_rotate(
            submission.context_id, submission.token
        )
        if new_token is None:
            logger.warning("CSRF validation failed", context_id=submission.context_id)
            return False
        submission.rotated_token = new_token
        return True
