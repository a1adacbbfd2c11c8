"""Session lifecycle controller.

Tracks a single provider-issued session and keeps it alive:

- proactive refresh at ``min(refresh_interval, time_to_expiry - warning)``
- a "session expiring" notice once ``time_to_expiry`` drops below the
  warning threshold
- forced sign-out at hard expiry
- retry with exponential backoff when the provider is unreachable,
  ending in a connectivity notice rather than a sign-out
- immediate refresh when the app returns to the foreground after more
  than ``refresh_interval`` without a refresh

Timers are asyncio tasks. At most one refresh timer (scheduled refresh
or backoff retry), one warning timer and one expiry timer are armed at
any time; every reschedule cancels the previous ones first.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Optional,
    Union,
)

import structlog

from pollguard.security.audit import SecurityEventType
from pollguard.utils.constants import (
    DEFAULT_SESSION_MAX_RETRIES,
    DEFAULT_SESSION_MAX_RETRY_DELAY_SECONDS,
    DEFAULT_SESSION_REFRESH_INTERVAL_SECONDS,
    DEFAULT_SESSION_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_SESSION_WARNING_SECONDS,
)

from .provider import (
    AuthSession,
    IdentityProvider,
    ProviderError,
    ProviderErrorKind,
    ProviderResult,
)

if TYPE_CHECKING:
    from pollguard.config.settings import Settings
    from pollguard.security.audit import SecurityEventLogger

logger = structlog.get_logger()

# Expiry timer tolerance for clock jitter.
EXPIRY_TOLERANCE_SECONDS = 1.0


class SessionState(str, Enum):
    """States of the single session slot."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionManagerConfig:
    """Timings in seconds."""

    refresh_interval: float = DEFAULT_SESSION_REFRESH_INTERVAL_SECONDS
    warning_threshold: float = DEFAULT_SESSION_WARNING_SECONDS
    max_retries: int = DEFAULT_SESSION_MAX_RETRIES
    retry_base_delay: float = DEFAULT_SESSION_RETRY_BASE_DELAY_SECONDS
    max_retry_delay: float = DEFAULT_SESSION_MAX_RETRY_DELAY_SECONDS

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SessionManagerConfig":
        return cls(
            refresh_interval=settings.session_refresh_interval_seconds,
            warning_threshold=settings.session_warning_seconds,
            max_retries=settings.session_max_retries,
        )


@dataclass(frozen=True)
class SessionSchedule:
    """Delays (seconds from now) for each timer; None means not armed."""

    refresh_in: Optional[float]
    warning_in: Optional[float]
    expiry_in: float


def compute_schedule(
    time_to_expiry: float, config: SessionManagerConfig
) -> SessionSchedule:
    """Timer delays for a session expiring in time_to_expiry seconds.

    Refresh is only armed when its delay is positive. A session already
    inside the warning window gets its warning immediately.
    """
    time_to_expiry = max(0.0, time_to_expiry)
    until_warning = time_to_expiry - config.warning_threshold

    refresh_delay = min(config.refresh_interval, until_warning)
    refresh_in = refresh_delay if refresh_delay > 0 else None

    warning_in: Optional[float] = max(0.0, until_warning)
    if time_to_expiry <= 0:
        warning_in = None

    return SessionSchedule(
        refresh_in=refresh_in, warning_in=warning_in, expiry_in=time_to_expiry
    )


def backoff_delay(retry_count: int, config: SessionManagerConfig) -> float:
    """``min(base * 2**retry_count, max_delay)``."""
    return min(config.retry_base_delay * (2**retry_count), config.max_retry_delay)


@dataclass(frozen=True)
class SessionNotice:
    """User-facing, non-blocking notification."""

    kind: str
    title: str
    message: str
    variant: str = "default"


NOTICE_EXPIRING = SessionNotice(
    kind="expiring",
    title="Session Expiring Soon",
    message=(
        "Your session will expire in a few minutes. "
        "Your work will be saved automatically."
    ),
)
NOTICE_EXPIRED = SessionNotice(
    kind="expired",
    title="Session Expired",
    message="Your session has expired. Please sign in again to continue.",
    variant="destructive",
)
NOTICE_CONNECTIVITY = SessionNotice(
    kind="connectivity",
    title="Connection Issues",
    message="Unable to refresh your session. You may need to sign in again.",
    variant="destructive",
)
NOTICE_REFRESHED = SessionNotice(
    kind="refreshed",
    title="Session Refreshed",
    message="Your session has been refreshed successfully.",
)

SessionNotifier = Callable[[SessionNotice], Union[None, Awaitable[None]]]


def log_notice(notice: SessionNotice) -> None:
    """Default notifier: write the notice to the structured log."""
    logger.info(
        "Session notice",
        kind=notice.kind,
        title=notice.title,
        variant=notice.variant,
    )


@dataclass(frozen=True)
class SessionStatus:
    """Snapshot of the session slot."""

    state: SessionState
    is_active: bool
    time_until_expiry: Optional[float]
    is_near_expiry: bool
    last_refresh: Optional[float]
    retry_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "is_active": self.is_active,
            "time_until_expiry": self.time_until_expiry,
            "is_near_expiry": self.is_near_expiry,
            "last_refresh": self.last_refresh,
            "retry_count": self.retry_count,
        }


class SessionManager:
    """Single authoritative session state machine."""

    def __init__(
        self,
        provider: IdentityProvider,
        notifier: Optional[SessionNotifier] = None,
        audit: Optional["SecurityEventLogger"] = None,
        config: Optional[SessionManagerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.notifier = notifier or log_notice
        self.audit = audit
        self.config = config or SessionManagerConfig()
        self.clock = clock

        self.state = SessionState.UNINITIALIZED
        self.session: Optional[AuthSession] = None
        self.retry_count = 0
        self.last_refresh: Optional[float] = None

        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._warning_task: Optional[asyncio.Task[None]] = None
        self._expiry_task: Optional[asyncio.Task[None]] = None
        self._refresh_lock = asyncio.Lock()

    # Lifecycle

    async def initialize(self) -> SessionState:
        """Load the provider's current session, if any."""
        try:
            result = await self.provider.get_session()
        except Exception as e:
            logger.error("Failed to load session", error=str(e))
            return self.state

        if result.error or result.data is None:
            logger.debug("No session to track")
            return self.state

        await self.track(result.data)
        return self.state

    async def track(self, session: AuthSession) -> None:
        """Take over lifecycle tracking of session."""
        self.session = session
        self.retry_count = 0
        self.state = (
            SessionState.NEAR_EXPIRY
            if self.is_near_expiry()
            else SessionState.ACTIVE
        )
        self._schedule()
        logger.info(
            "Tracking session",
            user_id=session.user.id if session.user else None,
            time_until_expiry=self.time_until_expiry(),
        )

    async def dispose(self) -> None:
        """Cancel all timers and forget the session."""
        tasks = self._cancel_timers()
        self.session = None
        self.state = SessionState.UNINITIALIZED
        self.retry_count = 0
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Queries

    def time_until_expiry(self) -> Optional[float]:
        if self.session is None:
            return None
        return self.session.time_to_expiry(self.clock())

    def is_near_expiry(self) -> bool:
        remaining = self.time_until_expiry()
        if remaining is None:
            return False
        return remaining <= self.config.warning_threshold

    def get_status(self) -> SessionStatus:
        """Snapshot for status displays."""
        return SessionStatus(
            state=self.state,
            is_active=self.session is not None,
            time_until_expiry=self.time_until_expiry(),
            is_near_expiry=self.is_near_expiry(),
            last_refresh=self.last_refresh,
            retry_count=self.retry_count,
        )

    # Refresh

    async def attempt_refresh(self) -> bool:
        """Refresh now; on failure retry with backoff or end the session."""
        if self.session is None:
            return False

        async with self._refresh_lock:
            error = await self._refresh_once()

        if error is None:
            return True

        if not error.is_transient:
            logger.warning(
                "Session rejected by provider", status=error.status, code=error.code
            )
            await self._expire(reason="rejected")
            return False

        self.retry_count += 1
        if self.retry_count >= self.config.max_retries:
            logger.warning(
                "Session refresh retries exhausted", retry_count=self.retry_count
            )
            await self._notify(NOTICE_CONNECTIVITY)
            return False

        delay = backoff_delay(self.retry_count, self.config)
        logger.info(
            "Retrying session refresh", retry_count=self.retry_count, delay=delay
        )
        self._replace_refresh_timer(self._run_later(delay, self.attempt_refresh))
        return False

    async def manual_refresh(self) -> bool:
        """User-triggered refresh; ignored while a refresh is in flight."""
        if self._refresh_lock.locked():
            return False
        success = await self.attempt_refresh()
        if success:
            await self._notify(NOTICE_REFRESHED)
        return success

    async def on_visibility_change(self, visible: bool) -> bool:
        """Resync when the app becomes visible after a long pause."""
        if not visible or self.session is None:
            return False
        stale = (
            self.last_refresh is None
            or self.clock() - self.last_refresh > self.config.refresh_interval
        )
        if not stale:
            return False
        return await self.attempt_refresh()

    async def _refresh_once(self) -> Optional[ProviderError]:
        """One provider round trip; returns the error, None on success."""
        user_id = self._user_id()
        try:
            result = await self.provider.refresh_session()
        except Exception as e:
            logger.error("Session refresh raised", error=str(e))
            result = ProviderResult(
                error=ProviderError(str(e), kind=ProviderErrorKind.NETWORK)
            )

        session = result.data.session if result.data else None
        if result.error is None and session is not None:
            self.session = session
            self.retry_count = 0
            self.last_refresh = self.clock()
            self.state = SessionState.ACTIVE
            self._schedule()
            await self._audit(SecurityEventType.SESSION_REFRESH_SUCCESS, True, user_id)
            return None

        error = result.error or ProviderError("Refresh returned no session")
        await self._audit(
            SecurityEventType.SESSION_REFRESH_FAILED,
            False,
            user_id,
            {"kind": error.kind.value, "status": error.status},
        )
        return error

    # Timers

    def _schedule(self) -> None:
        self._cancel_timers()
        remaining = self.time_until_expiry()
        if remaining is None:
            return

        schedule = compute_schedule(remaining, self.config)
        if schedule.refresh_in is not None:
            self._refresh_task = self._spawn(
                self._run_later(schedule.refresh_in, self._scheduled_refresh)
            )
        if schedule.warning_in is not None:
            self._warning_task = self._spawn(
                self._run_later(schedule.warning_in, self._warn)
            )
        self._expiry_task = self._spawn(
            self._run_later(schedule.expiry_in, self._check_expiry)
        )

    def _cancel_timers(self) -> List["asyncio.Task[None]"]:
        """Cancel armed timers other than the one currently running."""
        current = asyncio.current_task()
        cancelled: List["asyncio.Task[None]"] = []
        for name in ("_refresh_task", "_warning_task", "_expiry_task"):
            task = getattr(self, name)
            setattr(self, name, None)
            if task is not None and task is not current and not task.done():
                task.cancel()
                cancelled.append(task)
        return cancelled

    def _replace_refresh_timer(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._refresh_task
        if (
            task is not None
            and task is not asyncio.current_task()
            and not task.done()
        ):
            task.cancel()
        self._refresh_task = self._spawn(coro)

    @staticmethod
    def _spawn(coro: Coroutine[Any, Any, None]) -> "asyncio.Task[None]":
        return asyncio.get_running_loop().create_task(coro)

    @staticmethod
    async def _run_later(
        delay: float, callback: Callable[[], Awaitable[Any]]
    ) -> None:
        await asyncio.sleep(max(0.0, delay))
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Session timer callback failed", error=str(e))

    async def _scheduled_refresh(self) -> None:
        await self.attempt_refresh()

    async def _warn(self) -> None:
        if self.session is None:
            return
        self.state = SessionState.NEAR_EXPIRY
        await self._notify(NOTICE_EXPIRING)

    async def _check_expiry(self) -> None:
        remaining = self.time_until_expiry()
        if remaining is not None and remaining <= EXPIRY_TOLERANCE_SECONDS:
            await self._expire(reason="expired")

    async def _expire(self, reason: str) -> None:
        """End the session: cancel timers, notify and sign out."""
        user_id = self._user_id()
        self._cancel_timers()
        self.session = None
        self.state = SessionState.EXPIRED

        await self._notify(NOTICE_EXPIRED)
        await self._audit(
            SecurityEventType.SESSION_EXPIRED, False, user_id, {"reason": reason}
        )

        try:
            await self.provider.sign_out("local")
        except Exception as e:
            logger.error("Automatic sign-out failed", error=str(e))

    # Helpers

    def _user_id(self) -> Optional[str]:
        if self.session is not None and self.session.user is not None:
            return self.session.user.id
        return None

    async def _notify(self, notice: SessionNotice) -> None:
        try:
            result = self.notifier(notice)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Session notifier failed", kind=notice.kind, error=str(e))

    async def _audit(
        self,
        event_type: SecurityEventType,
        success: bool,
        user_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.audit is not None:
            await self.audit.log_session_event(
                event_type, success, user_id, details=details
            )
