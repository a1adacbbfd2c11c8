"""Security event logging.

Features:
- Authentication, registration and password events
- Session lifecycle events
- Access-control denials and CSRF mismatches
- Risk scoring, tagging and high-risk escalation
- Aggregate statistics for the admin view
"""

import inspect
import json
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

import structlog

from pollguard.utils.constants import (
    DEFAULT_HIGH_RISK_THRESHOLD,
    TOP_RISK_EVENT_LIMIT,
    TOP_RISK_EVENT_MIN_SCORE,
)

logger = structlog.get_logger()


class SecurityEventType(str, Enum):
    """Categorized security event types."""

    # Authentication
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_RATE_LIMITED = "login_rate_limited"
    LOGOUT_SUCCESS = "logout_success"
    LOGOUT_FAILED = "logout_failed"

    # Registration
    REGISTER_SUCCESS = "register_success"
    REGISTER_FAILED = "register_failed"
    REGISTER_RATE_LIMITED = "register_rate_limited"

    # Password
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_RATE_LIMITED = "password_reset_rate_limited"
    PASSWORD_RESET_SUCCESS = "password_reset_success"
    PASSWORD_RESET_FAILED = "password_reset_failed"
    PASSWORD_RESET_TOKEN_INVALID = "password_reset_token_invalid"

    # Session
    SESSION_EXPIRED = "session_expired"
    SESSION_REFRESH_SUCCESS = "session_refresh_success"
    SESSION_REFRESH_FAILED = "session_refresh_failed"
    SESSION_HIJACK_ATTEMPT = "session_hijack_attempt"

    # Access control
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"
    PRIVILEGE_ESCALATION_ATTEMPT = "privilege_escalation_attempt"
    RESOURCE_ACCESS_DENIED = "resource_access_denied"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"

    # Suspicious activity
    MULTIPLE_FAILED_ATTEMPTS = "multiple_failed_attempts"
    UNUSUAL_LOCATION_LOGIN = "unusual_location_login"
    BRUTE_FORCE_DETECTED = "brute_force_detected"

    # System integrity
    CSRF_TOKEN_MISMATCH = "csrf_token_mismatch"
    SUSPICIOUS_REQUEST_PATTERN = "suspicious_request_pattern"

    # Polls
    POLL_CREATED = "poll_created"
    POLL_UPDATED = "poll_updated"
    POLL_DELETED = "poll_deleted"
    VOTE_SUBMITTED = "vote_submitted"
    VOTE_REJECTED = "vote_rejected"


class SecurityEventSeverity(str, Enum):
    """Security event severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Base risk per event type; anything missing scores DEFAULT_RISK_SCORE.
EVENT_RISK_SCORES: Dict[SecurityEventType, int] = {
    SecurityEventType.LOGIN_FAILED: 20,
    SecurityEventType.LOGIN_RATE_LIMITED: 40,
    SecurityEventType.BRUTE_FORCE_DETECTED: 90,
    SecurityEventType.SESSION_HIJACK_ATTEMPT: 95,
    SecurityEventType.PRIVILEGE_ESCALATION_ATTEMPT: 85,
    SecurityEventType.CSRF_TOKEN_MISMATCH: 60,
    SecurityEventType.UNUSUAL_LOCATION_LOGIN: 50,
}
DEFAULT_RISK_SCORE = 10

_HIGH_SEVERITY_FAILURES = frozenset(
    {
        SecurityEventType.LOGIN_RATE_LIMITED,
        SecurityEventType.REGISTER_RATE_LIMITED,
        SecurityEventType.PASSWORD_RESET_RATE_LIMITED,
        SecurityEventType.RATE_LIMIT_EXCEEDED,
        SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
        SecurityEventType.CSRF_TOKEN_MISMATCH,
        SecurityEventType.MULTIPLE_FAILED_ATTEMPTS,
    }
)
_CRITICAL_SEVERITY_FAILURES = frozenset(
    {
        SecurityEventType.BRUTE_FORCE_DETECTED,
        SecurityEventType.SESSION_HIJACK_ATTEMPT,
        SecurityEventType.PRIVILEGE_ESCALATION_ATTEMPT,
    }
)

_AUTOMATION_USER_AGENT = re.compile(
    r"bot|crawler|spider|scan|curl|wget|python|postman", re.IGNORECASE
)

# Forwarding headers consulted for the client address, in priority order.
CLIENT_IP_HEADERS: Tuple[str, ...] = (
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "cf-connecting-ip",
    "x-cluster-client-ip",
)

TIMEFRAMES: Dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
}


@dataclass(frozen=True)
class RequestContext:
    """Request metadata attached to security events."""

    ip_address: str = "unknown"
    user_agent: str = ""
    referer: str = ""

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "RequestContext":
        """Build context from request headers.

        The first forwarding header present wins; for ``X-Forwarded-For``
        only the left-most (client) address is kept.
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}
        ip_address = "unknown"
        for header in CLIENT_IP_HEADERS:
            value = lowered.get(header)
            if value:
                ip_address = value.split(",")[0].strip()
                break
        return cls(
            ip_address=ip_address,
            user_agent=lowered.get("user-agent", ""),
            referer=lowered.get("referer", ""),
        )


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable security event record."""

    event_type: SecurityEventType
    severity: SecurityEventSeverity
    success: bool
    timestamp: datetime
    risk_score: int
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: str = "unknown"
    user_agent: str = ""
    session_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    tags: Tuple[str, ...] = ()
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage/logging."""
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        data["tags"] = list(self.tags)
        return data

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def derive_severity(
    event_type: SecurityEventType, success: bool
) -> SecurityEventSeverity:
    """Severity from type and outcome; every success is LOW."""
    if success:
        return SecurityEventSeverity.LOW
    if event_type in _CRITICAL_SEVERITY_FAILURES:
        return SecurityEventSeverity.CRITICAL
    if event_type in _HIGH_SEVERITY_FAILURES:
        return SecurityEventSeverity.HIGH
    return SecurityEventSeverity.MEDIUM


def is_automation_user_agent(user_agent: Optional[str]) -> bool:
    """Check whether a user agent looks like a script or crawler."""
    return bool(user_agent) and bool(_AUTOMATION_USER_AGENT.search(user_agent or ""))


def calculate_risk_score(
    event_type: SecurityEventType,
    success: bool,
    user_agent: Optional[str] = None,
    attempt_count: Optional[int] = None,
) -> int:
    """Compute a 0-100 risk score for an event."""
    score = EVENT_RISK_SCORES.get(event_type, DEFAULT_RISK_SCORE)

    if not success:
        score += 15

    if is_automation_user_agent(user_agent):
        score += 25

    if attempt_count and attempt_count > 3:
        score += attempt_count * 10

    return max(0, min(100, score))


def generate_event_tags(
    event_type: SecurityEventType,
    severity: SecurityEventSeverity,
    success: bool,
    risk_score: int,
) -> Tuple[str, ...]:
    """Categorization tags for filtering in ops tooling."""
    tags: List[str] = []
    name = event_type.value

    if "login" in name:
        tags.append("authentication")
    if "register" in name:
        tags.append("registration")
    if "password" in name:
        tags.append("password")
    if "session" in name:
        tags.append("session")

    tags.append(f"severity_{severity.value}")
    tags.append("success" if success else "failure")

    if risk_score >= 70:
        tags.append("high_risk")
    elif risk_score >= 40:
        tags.append("medium_risk")
    else:
        tags.append("low_risk")

    return tuple(tags)


class SecurityEventStorage:
    """Abstract interface for append-only security event storage."""

    async def store_event(self, event: SecurityEvent) -> None:
        """Append event."""
        raise NotImplementedError

    async def get_events(
        self,
        event_type: Optional[SecurityEventType] = None,
        user_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> List[SecurityEvent]:
        """Retrieve events newest first with filters."""
        raise NotImplementedError


class InMemorySecurityEventStorage(SecurityEventStorage):
    """In-memory event storage for development/testing."""

    def __init__(self, max_events: int = 10000):
        self.events: List[SecurityEvent] = []
        self.max_events = max_events

    async def store_event(self, event: SecurityEvent) -> None:
        """Store event in memory."""
        self.events.append(event)

        # Trim old events if we exceed limit
        if len(self.events) > self.max_events:
            self.events = self.events[-self.max_events :]

    async def get_events(
        self,
        event_type: Optional[SecurityEventType] = None,
        user_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> List[SecurityEvent]:
        """Get filtered events."""
        filtered = list(self.events)

        if event_type is not None:
            filtered = [e for e in filtered if e.event_type == event_type]

        if user_id is not None:
            filtered = [e for e in filtered if e.user_id == user_id]

        if start_time is not None:
            filtered = [e for e in filtered if e.timestamp >= start_time]

        if end_time is not None:
            filtered = [e for e in filtered if e.timestamp <= end_time]

        filtered.sort(key=lambda e: e.timestamp, reverse=True)
        return filtered if limit is None else filtered[:limit]


EscalationHook = Callable[[SecurityEvent], Union[None, Awaitable[None]]]


async def log_escalation(event: SecurityEvent) -> None:
    """Default escalation: a warning in the structured log."""
    logger.warning(
        "High-risk security event detected",
        event_type=event.event_type.value,
        risk_score=event.risk_score,
        user_id=event.user_id,
        ip_address=event.ip_address,
        request_id=event.request_id,
    )


class SecurityEventLogger:
    """Best-effort security event logger.

    ``log_event`` never raises: storage and escalation failures are written
    to the structured log and swallowed so the calling flow continues.
    """

    def __init__(
        self,
        storage: SecurityEventStorage,
        escalation_hook: Optional[EscalationHook] = None,
        high_risk_threshold: int = DEFAULT_HIGH_RISK_THRESHOLD,
    ):
        self.storage = storage
        self.escalation_hook = escalation_hook or log_escalation
        self.high_risk_threshold = high_risk_threshold
        logger.info(
            "Security event logger initialized",
            storage=type(storage).__name__,
            high_risk_threshold=high_risk_threshold,
        )

    async def log_event(
        self,
        event_type: SecurityEventType,
        success: bool,
        *,
        severity: Optional[SecurityEventSeverity] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        context: Optional[RequestContext] = None,
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        """Record a security event and return it (None if recording failed)."""
        try:
            context = context or RequestContext()
            details = dict(details or {})
            if context.referer:
                details.setdefault("referer", context.referer)

            severity = severity or derive_severity(event_type, success)
            attempt_count = details.get("attempt_count")
            risk_score = calculate_risk_score(
                event_type,
                success,
                context.user_agent,
                attempt_count if isinstance(attempt_count, int) else None,
            )

            event = SecurityEvent(
                event_type=event_type,
                severity=severity,
                success=success,
                timestamp=datetime.now(UTC),
                risk_score=risk_score,
                user_id=user_id,
                email=email,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                session_id=session_id,
                details=details,
                tags=generate_event_tags(event_type, severity, success, risk_score),
            )
        except Exception as e:
            logger.error(
                "Failed to build security event",
                event_type=getattr(event_type, "value", event_type),
                error=str(e),
            )
            return None

        log = logger.info if success else logger.warning
        log(
            "Security event",
            event_type=event.event_type.value,
            severity=event.severity.value,
            success=success,
            user_id=user_id,
            risk_score=event.risk_score,
        )

        try:
            await self.storage.store_event(event)
        except Exception as e:
            logger.error(
                "Failed to store security event",
                event_type=event.event_type.value,
                error=str(e),
            )
            if event.severity == SecurityEventSeverity.CRITICAL:
                logger.warning("Critical security event", event=event.to_dict())

        if event.risk_score >= self.high_risk_threshold:
            await self._escalate(event)

        return event

    async def _escalate(self, event: SecurityEvent) -> None:
        try:
            result = self.escalation_hook(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Security escalation hook failed",
                event_type=event.event_type.value,
                error=str(e),
            )

    async def log_auth_attempt(
        self,
        success: bool,
        email: Optional[str],
        user_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        """Log a sign-in attempt."""
        return await self.log_event(
            (
                SecurityEventType.LOGIN_SUCCESS
                if success
                else SecurityEventType.LOGIN_FAILED
            ),
            success,
            user_id=user_id,
            email=email,
            context=context,
            details=details,
        )

    async def log_unauthorized_access(
        self,
        resource: str,
        user_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        """Log a denied access attempt. Only identifiers go into details."""
        return await self.log_event(
            SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
            False,
            user_id=user_id,
            context=context,
            details={"resource": resource, **(details or {})},
        )

    async def log_session_event(
        self,
        event_type: SecurityEventType,
        success: bool,
        user_id: Optional[str],
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        """Log session-related events."""
        return await self.log_event(
            event_type,
            success,
            user_id=user_id,
            session_id=session_id,
            details=details,
        )

    async def log_rate_limit_exceeded(
        self,
        key: str,
        action: str,
        count: int,
        max_attempts: int,
        reset_time: float,
    ) -> Optional[SecurityEvent]:
        """Log rate limit exceeded."""
        return await self.log_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            False,
            details={
                "key": key,
                "action": action,
                "attempt_count": count,
                "max_attempts": max_attempts,
                "reset_time": reset_time,
            },
        )

    async def log_suspicious_activity(
        self,
        event_type: SecurityEventType,
        user_id: Optional[str],
        details: Dict[str, Any],
    ) -> Optional[SecurityEvent]:
        """Log suspicious activity at HIGH severity."""
        return await self.log_event(
            event_type,
            False,
            severity=SecurityEventSeverity.HIGH,
            user_id=user_id,
            details=details,
        )

    async def get_security_event_stats(self, timeframe: str = "day") -> Dict[str, Any]:
        """Aggregate statistics for the admin dashboard.

        Args:
            timeframe: one of ``hour``, ``day``, ``week``, ``month``

        Returns:
            total, by_type, by_severity, failure_rate (percent) and
            top_risk_events (score >= 50, highest first)
        """
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unknown timeframe: {timeframe}")

        start_time = datetime.now(UTC) - TIMEFRAMES[timeframe]
        events = await self.storage.get_events(start_time=start_time, limit=None)

        stats: Dict[str, Any] = {
            "timeframe": timeframe,
            "total": len(events),
            "by_type": {},
            "by_severity": {},
            "failure_rate": 0.0,
            "top_risk_events": [],
        }

        if not events:
            return stats

        failures = 0
        for event in events:
            event_type = event.event_type.value
            stats["by_type"][event_type] = stats["by_type"].get(event_type, 0) + 1

            severity = event.severity.value
            stats["by_severity"][severity] = stats["by_severity"].get(severity, 0) + 1

            if not event.success:
                failures += 1

        stats["failure_rate"] = failures / len(events) * 100

        risky = [e for e in events if e.risk_score >= TOP_RISK_EVENT_MIN_SCORE]
        risky.sort(key=lambda e: e.risk_score, reverse=True)
        stats["top_risk_events"] = [e.to_dict() for e in risky[:TOP_RISK_EVENT_LIMIT]]

        return stats
