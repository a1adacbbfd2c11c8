"""Application-wide constants."""

from typing import Dict, Tuple

# Version info
APP_NAME = "pollguard"
APP_DESCRIPTION = "Session and security-policy core for a polling web application"

# Identity provider
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 10.0
DEFAULT_SITE_URL = "http://localhost:3000"

# Login limiter (identity-keyed specialization)
DEFAULT_LOGIN_MAX_ATTEMPTS = 5
DEFAULT_LOGIN_WINDOW_SECONDS = 15 * 60

# Per-action policies: action -> (max attempts, window seconds)
DEFAULT_RATE_LIMIT_POLICIES: Dict[str, Tuple[int, int]] = {
    "login": (5, 5 * 60),
    "register": (3, 10 * 60),
    "reset": (3, 10 * 60),
    "createPoll": (10, 60 * 60),
    "votePoll": (30, 60 * 60),
    "deletePoll": (15, 60 * 60),
}
DEFAULT_RATE_LIMIT_FALLBACK: Tuple[int, int] = (60, 60 * 60)

# CSRF
DEFAULT_CSRF_TOKEN_TTL_SECONDS = 3600
CSRF_COOKIE_NAME = "pollguard_ctx"
CSRF_FORM_FIELD = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"

# Session cookies set by the HTTP boundary
ACCESS_TOKEN_COOKIE = "pollguard_access"
REFRESH_TOKEN_COOKIE = "pollguard_refresh"
SESSION_EXPIRES_COOKIE = "pollguard_expires"
REFRESH_COOKIE_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

# Session manager
DEFAULT_SESSION_REFRESH_INTERVAL_SECONDS = 10 * 60
DEFAULT_SESSION_WARNING_SECONDS = 5 * 60
DEFAULT_SESSION_MAX_RETRIES = 3
DEFAULT_SESSION_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_SESSION_MAX_RETRY_DELAY_SECONDS = 30.0

# Security events
DEFAULT_HIGH_RISK_THRESHOLD = 70
TOP_RISK_EVENT_MIN_SCORE = 50
TOP_RISK_EVENT_LIMIT = 10

# Poll content limits
MAX_QUESTION_LENGTH = 500
MAX_OPTION_LENGTH = 200
MIN_OPTIONS = 2
MAX_OPTIONS = 10

# Password policy
MIN_PASSWORD_LENGTH = 8
MIN_NAME_LENGTH = 2
COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "password!",
        "123456",
        "12345678",
        "123456789",
        "qwerty",
        "qwerty123",
        "letmein",
        "letmein123",
        "welcome",
        "welcome1",
        "admin",
        "admin123",
        "superman",
        "iloveyou",
        "monkey123",
        "sunshine1",
        "p@ssw0rd",
        "passw0rd!",
    }
)

# Database defaults
DEFAULT_DATABASE_URL = "sqlite:///data/pollguard.db"

# User-facing messages. These are the only strings returned across the
# form boundary on failure.
MSG_CSRF_FAILED = "Security verification failed. Please refresh the page and try again."
MSG_LOGIN_RATE_LIMITED = "Too many login attempts. Please try again later."
MSG_REGISTER_RATE_LIMITED = "Too many registration attempts. Please try again later."
MSG_RESET_RATE_LIMITED = "Too many password reset attempts. Please try again later."
MSG_INVALID_CREDENTIALS = "Invalid email or password"
MSG_LOGIN_FAILED = "Login failed. Please try again."
MSG_ALREADY_REGISTERED = "This email address is already registered."
MSG_REGISTER_FAILED = "Registration failed. Please try again."
MSG_LOGOUT_FAILED = "Logout failed. Please try again."
MSG_RESET_TOKEN_INVALID = (
    "Invalid or expired password reset token. "
    "Please request a new password reset link."
)
MSG_RESET_FAILED = (
    "Password reset failed. Please try again or request a new reset link."
)
MSG_SESSION_INVALID = "Invalid or expired session."
MSG_SESSION_REFRESH_FAILED = "Failed to refresh session."
MSG_PROVIDER_UNAVAILABLE = (
    "Unable to reach the authentication service. Please try again."
)
MSG_UNEXPECTED = "An unexpected error occurred. Please try again."

MSG_INVALID_POLL_ID = "Invalid poll ID"
MSG_INVALID_OPTION_ID = "Invalid option ID"
MSG_INVALID_OPTION = "Invalid option selected"
MSG_ALREADY_VOTED = "You have already voted on this poll"
MSG_VOTE_RATE_LIMITED = "You're voting too quickly. Please try again later."
MSG_VOTE_FAILED = "Failed to submit vote. Please try again."
MSG_LOGIN_REQUIRED_CREATE = "You must be logged in to create a poll."
MSG_LOGIN_REQUIRED_UPDATE = "You must be logged in to update a poll."
MSG_LOGIN_REQUIRED_DELETE = "You must be logged in to delete a poll."
MSG_CREATE_RATE_LIMITED = "You're creating polls too quickly. Please try again later."
MSG_UPDATE_RATE_LIMITED = "You're updating polls too quickly. Please try again later."
MSG_DELETE_RATE_LIMITED = "You're deleting polls too quickly. Please try again later."
MSG_PERMISSION_DENIED = "You do not have permission to modify this poll."
MSG_CREATE_FAILED = "Failed to create poll. Please try again."
MSG_UPDATE_FAILED = "Failed to update poll. Please try again."
MSG_DELETE_FAILED = "Failed to delete poll. Please try again."
