"""Authentication flows and session lifecycle."""

from .gotrue import GoTrueIdentityProvider
from .orchestrator import (
    ActionResult,
    AuthOrchestrator,
    AuthResult,
    ResetResult,
    SessionValidationResult,
    VerificationResult,
)
from .provider import (
    AuthData,
    AuthSession,
    AuthUser,
    IdentityProvider,
    ProviderError,
    ProviderErrorKind,
    ProviderResult,
)
from .session_manager import (
    SessionManager,
    SessionManagerConfig,
    SessionNotice,
    SessionSchedule,
    SessionState,
    compute_schedule,
)

__all__ = [
    "ActionResult",
    "AuthData",
    "AuthOrchestrator",
    "AuthResult",
    "AuthSession",
    "AuthUser",
    "GoTrueIdentityProvider",
    "IdentityProvider",
    "ProviderError",
    "ProviderErrorKind",
    "ProviderResult",
    "ResetResult",
    "SessionManager",
    "SessionManagerConfig",
    "SessionNotice",
    "SessionSchedule",
    "SessionState",
    "SessionValidationResult",
    "VerificationResult",
    "compute_schedule",
]
