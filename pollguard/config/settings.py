"""Configuration management using Pydantic Settings.

Features:
- Environment variable loading
- Type validation
- Default values
- Computed properties
- Environment-specific settings
"""

from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from pollguard.utils.constants import (
    DEFAULT_CSRF_TOKEN_TTL_SECONDS,
    DEFAULT_DATABASE_URL,
    DEFAULT_HIGH_RISK_THRESHOLD,
    DEFAULT_LOGIN_MAX_ATTEMPTS,
    DEFAULT_LOGIN_WINDOW_SECONDS,
    DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    DEFAULT_RATE_LIMIT_FALLBACK,
    DEFAULT_RATE_LIMIT_POLICIES,
    DEFAULT_SESSION_MAX_RETRIES,
    DEFAULT_SESSION_REFRESH_INTERVAL_SECONDS,
    DEFAULT_SESSION_WARNING_SECONDS,
    DEFAULT_SITE_URL,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Identity provider
    auth_provider_url: str = Field(
        "http://localhost:54321",
        description="Base URL of the hosted GoTrue-compatible auth API",
        validation_alias=AliasChoices("AUTH_PROVIDER_URL", "SUPABASE_URL"),
    )
    auth_provider_key: SecretStr = Field(
        SecretStr(""),
        description="Public (anon) API key sent with every provider request",
        validation_alias=AliasChoices("AUTH_PROVIDER_KEY", "SUPABASE_ANON_KEY"),
    )
    provider_timeout_seconds: float = Field(
        DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        description="Overall timeout for a single identity provider request",
        gt=0,
    )
    site_url: str = Field(
        DEFAULT_SITE_URL, description="Public site URL used for email redirects"
    )

    # Rate limiting
    login_max_attempts: int = Field(
        DEFAULT_LOGIN_MAX_ATTEMPTS, description="Login attempts per window"
    )
    login_window_seconds: int = Field(
        DEFAULT_LOGIN_WINDOW_SECONDS, description="Login limiter window seconds"
    )
    rate_limit_overrides: Annotated[Dict[str, Tuple[int, int]], NoDecode] = Field(
        default_factory=dict,
        description="Per-action (max_attempts, window_seconds) overrides",
    )

    # CSRF
    csrf_token_ttl_seconds: int = Field(
        DEFAULT_CSRF_TOKEN_TTL_SECONDS, description="Lifetime of an issued token"
    )
    secure_cookies: bool = Field(
        False, description="Mark the browser-context cookie as Secure"
    )

    # Session manager
    session_refresh_interval_seconds: int = Field(
        DEFAULT_SESSION_REFRESH_INTERVAL_SECONDS,
        description="Seconds between proactive session refreshes",
    )
    session_warning_seconds: int = Field(
        DEFAULT_SESSION_WARNING_SECONDS,
        description="Seconds before expiry at which the user is warned",
    )
    session_max_retries: int = Field(
        DEFAULT_SESSION_MAX_RETRIES,
        description="Refresh retries before a connectivity warning",
        ge=0,
    )

    # Security events
    high_risk_threshold: int = Field(
        DEFAULT_HIGH_RISK_THRESHOLD,
        description="Risk score at which security events are escalated",
        ge=0,
        le=100,
    )

    # Polls
    allow_anonymous_votes: bool = Field(
        True, description="Accept votes from visitors without a session"
    )

    # Admin
    admin_user_ids: Annotated[Optional[List[str]], NoDecode] = Field(
        None, description="Provider user ids allowed to read security statistics"
    )

    # Storage
    database_url: str = Field(
        DEFAULT_DATABASE_URL, description="Database connection URL"
    )
    use_persistent_store: bool = Field(
        True,
        description=(
            "Keep rate-limit counters and CSRF tokens in the database "
            "instead of process memory"
        ),
    )

    # Monitoring
    log_level: str = Field("INFO", description="Logging level")

    # Development
    debug: bool = Field(False, description="Enable debug mode")
    development_mode: bool = Field(False, description="Enable development features")

    # API server
    api_server_host: str = Field("0.0.0.0", description="API server bind address")
    api_server_port: int = Field(8080, description="API server port")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("auth_provider_url", "site_url")
    @classmethod
    def validate_url(cls, v: Any) -> str:
        """Require absolute http(s) URLs without a trailing slash."""
        value = str(v).strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://: {value}")
        return value.rstrip("/")

    @field_validator(
        "login_max_attempts",
        "login_window_seconds",
        "csrf_token_ttl_seconds",
        "session_refresh_interval_seconds",
        "session_warning_seconds",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure limits and durations are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("rate_limit_overrides", mode="before")
    @classmethod
    def parse_rate_limit_overrides(cls, v: Any) -> Dict[str, Tuple[int, int]]:
        """Parse ``action=max/window`` comma-separated overrides."""
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            parsed: Dict[str, Tuple[int, int]] = {}
            for item in v.split(","):
                if not item.strip():
                    continue
                action, _, policy = item.partition("=")
                max_attempts, _, window = policy.partition("/")
                parsed[action.strip()] = (int(max_attempts), int(window))
            return parsed
        return v  # type: ignore[no-any-return]

    @field_validator("admin_user_ids", mode="before")
    @classmethod
    def parse_id_list(cls, v: Any) -> Optional[List[str]]:
        """Parse comma-separated id lists."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v  # type: ignore[no-any-return]

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: Any) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()  # type: ignore[no-any-return]

    @model_validator(mode="after")
    def validate_cross_field_dependencies(self) -> "Settings":
        """Validate dependencies between fields."""
        for action, (max_attempts, window) in self.rate_limit_overrides.items():
            if max_attempts <= 0 or window <= 0:
                raise ValueError(
                    f"rate limit override for '{action}' must be positive"
                )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not (self.debug or self.development_mode)

    @property
    def database_path(self) -> Optional[Path]:
        """Extract path from SQLite database URL."""
        if self.database_url.startswith("sqlite:///"):
            db_path = self.database_url.replace("sqlite:///", "")
            return Path(db_path).resolve()
        return None

    @property
    def auth_provider_key_str(self) -> str:
        """Get provider API key as string."""
        return self.auth_provider_key.get_secret_value()

    @property
    def rate_limit_policies(self) -> Dict[str, Tuple[int, int]]:
        """Effective per-action policy table."""
        policies = dict(DEFAULT_RATE_LIMIT_POLICIES)
        policies.update(self.rate_limit_overrides)
        return policies

    @property
    def rate_limit_fallback(self) -> Tuple[int, int]:
        """Policy for actions without an entry in the table."""
        return DEFAULT_RATE_LIMIT_FALLBACK
