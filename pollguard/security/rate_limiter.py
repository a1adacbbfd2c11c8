"""Fixed-window rate limiting over a shared key-value store.

Features:
- Per-action policy table with a fallback policy
- Atomic counters via the injected store
- Login specialization with remaining-attempt telemetry
- Fail-open on storage errors
"""

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple

import structlog

from pollguard.utils.constants import (
    DEFAULT_LOGIN_MAX_ATTEMPTS,
    DEFAULT_LOGIN_WINDOW_SECONDS,
    DEFAULT_RATE_LIMIT_FALLBACK,
    DEFAULT_RATE_LIMIT_POLICIES,
)

from .kv_store import KeyValueStore

if TYPE_CHECKING:
    from pollguard.config.settings import Settings

    from .audit import SecurityEventLogger

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate-limit check."""

    allowed: bool
    reset_time: float
    remaining: int
    count: int


@dataclass(frozen=True)
class LoginRateLimitStatus:
    """Login limiter status as reported to the sign-in flow."""

    limited: bool
    remaining_attempts: int
    attempt_count: int = 0


class RateLimiter:
    """Per-(key, action) attempt counter inside a fixed window."""

    def __init__(
        self,
        store: KeyValueStore,
        audit: Optional["SecurityEventLogger"] = None,
        clock: Callable[[], float] = time.time,
        policies: Optional[Dict[str, Tuple[int, int]]] = None,
        fallback: Tuple[int, int] = DEFAULT_RATE_LIMIT_FALLBACK,
        login_max_attempts: int = DEFAULT_LOGIN_MAX_ATTEMPTS,
        login_window_seconds: int = DEFAULT_LOGIN_WINDOW_SECONDS,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock
        self.policies = dict(
            DEFAULT_RATE_LIMIT_POLICIES if policies is None else policies
        )
        self.fallback = fallback
        self.login_max_attempts = login_max_attempts
        self.login_window_seconds = login_window_seconds

        logger.info(
            "Rate limiter initialized",
            store=type(store).__name__,
            policies=self.policies,
            fallback=fallback,
            login_max_attempts=login_max_attempts,
            login_window_seconds=login_window_seconds,
        )

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        store: KeyValueStore,
        audit: Optional["SecurityEventLogger"] = None,
    ) -> "RateLimiter":
        """Build a limiter from application settings."""
        return cls(
            store,
            audit=audit,
            policies=settings.rate_limit_policies,
            fallback=settings.rate_limit_fallback,
            login_max_attempts=settings.login_max_attempts,
            login_window_seconds=settings.login_window_seconds,
        )

    def get_policy(self, action: str) -> Tuple[int, int]:
        """Return (max_attempts, window_seconds) for action."""
        return self.policies.get(action, self.fallback)

    @staticmethod
    def counter_key(key: str, action: str) -> str:
        """Storage key for a (key, action) counter."""
        return f"ratelimit:{action}:{key}"

    async def check_rate_limit(
        self,
        key: str,
        action: str,
        max_attempts: Optional[int] = None,
        window_seconds: Optional[float] = None,
    ) -> RateLimitResult:
        """Count one attempt and decide whether it is allowed.

        Omitted policy parameters come from the action table. A storage
        failure is treated as allowed.
        """
        default_max, default_window = self.get_policy(action)
        max_attempts = default_max if max_attempts is None else max_attempts
        window_seconds = default_window if window_seconds is None else window_seconds
        now = self.clock()

        try:
            counter = await self.store.increment_window(
                self.counter_key(key, action), window_seconds, now
            )
        except Exception as e:
            logger.error(
                "Rate limit storage failure, allowing request",
                key=key,
                action=action,
                error=str(e),
            )
            return RateLimitResult(
                allowed=True,
                reset_time=now + window_seconds,
                remaining=max_attempts,
                count=0,
            )

        allowed = counter.count <= max_attempts
        result = RateLimitResult(
            allowed=allowed,
            reset_time=counter.window_start + window_seconds,
            remaining=max(0, max_attempts - counter.count),
            count=counter.count,
        )

        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                key=key,
                action=action,
                count=counter.count,
                max_attempts=max_attempts,
            )
            if self.audit is not None:
                await self.audit.log_rate_limit_exceeded(
                    key, action, counter.count, max_attempts, result.reset_time
                )

        return result

    async def is_rate_limited(self, identifier: str) -> LoginRateLimitStatus:
        """Login specialization: count an attempt for identifier."""
        result = await self.check_rate_limit(
            identifier,
            "login",
            max_attempts=self.login_max_attempts,
            window_seconds=self.login_window_seconds,
        )
        return LoginRateLimitStatus(
            limited=not result.allowed,
            remaining_attempts=result.remaining,
            attempt_count=result.count,
        )

    async def reset(self, key: str, action: str) -> None:
        """Clear the counter for (key, action)."""
        try:
            await self.store.delete(self.counter_key(key, action))
            logger.debug("Rate limit reset", key=key, action=action)
        except Exception as e:
            logger.error(
                "Failed to reset rate limit", key=key, action=action, error=str(e)
            )

    async def reset_rate_limit(self, identifier: str) -> None:
        """Clear the login counter after a successful sign-in."""
        await self.reset(identifier, "login")

    async def check_poll_action(self, user_id: str, action: str) -> bool:
        """Rate-limit a poll mutation for a user."""
        result = await self.check_rate_limit(f"user_{user_id}", action)
        return result.allowed
