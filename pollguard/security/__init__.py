"""Security policy core for pollguard.

This module provides:
- Fixed-window rate limiting over a shared key-value store
- CSRF token issuance, validation and rotation
- Security event logging with risk scoring
- Ownership-based authorization for poll actions
- Input validation and sanitization

Key Components:
- RateLimiter: Per-(key, action) attempt limits
- CsrfTokenManager: Single-use anti-forgery tokens
- SecurityEventLogger: Append-only security audit trail
- AuthorizationChecker: Poll action decision table
- InputValidator: Form field validation
"""

from .audit import (
    InMemorySecurityEventStorage,
    RequestContext,
    SecurityEvent,
    SecurityEventLogger,
    SecurityEventSeverity,
    SecurityEventStorage,
    SecurityEventType,
)
from .authorization import AuthorizationChecker, PollAction
from .csrf import CsrfSubmission, CsrfTokenManager
from .kv_store import InMemoryKeyValueStore, KeyValueStore, WindowCounter
from .rate_limiter import LoginRateLimitStatus, RateLimiter, RateLimitResult
from .validators import InputValidator

__all__ = [
    "AuthorizationChecker",
    "CsrfSubmission",
    "CsrfTokenManager",
    "InMemoryKeyValueStore",
    "InMemorySecurityEventStorage",
    "InputValidator",
    "KeyValueStore",
    "LoginRateLimitStatus",
    "PollAction",
    "RateLimitResult",
    "RateLimiter",
    "RequestContext",
    "SecurityEvent",
    "SecurityEventLogger",
    "SecurityEventSeverity",
    "SecurityEventStorage",
    "SecurityEventType",
    "WindowCounter",
]
