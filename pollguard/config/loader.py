"""Configuration loading with environment detection."""

import os
from pathlib import Path
from typing import Any, Optional

import structlog
from dotenv import load_dotenv

from pollguard.exceptions import (
    ConfigurationError,
    InvalidConfigError,
    MissingConfigError,
)

from .environments import DevelopmentConfig, ProductionConfig, TestingConfig
from .settings import Settings

logger = structlog.get_logger()


def load_config(
    env: Optional[str] = None, config_file: Optional[Path] = None
) -> Settings:
    """Load configuration based on environment.

    Args:
        env: Environment name (development, testing, production)
        config_file: Optional path to configuration file

    Returns:
        Configured Settings instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    env_file = config_file or Path(".env")
    if env_file.exists():
        logger.info("Loading .env file", path=str(env_file))
        load_dotenv(env_file)
    else:
        logger.warning("No .env file found", path=str(env_file))

    env = env or os.getenv("ENVIRONMENT", "development")
    logger.info("Loading configuration", environment=env)

    try:
        logger.debug(
            "Environment variables check",
            auth_provider_url=os.getenv("AUTH_PROVIDER_URL")
            or os.getenv("SUPABASE_URL"),
            auth_provider_key_set=bool(
                os.getenv("AUTH_PROVIDER_KEY") or os.getenv("SUPABASE_ANON_KEY")
            ),
            debug_mode=os.getenv("DEBUG"),
        )

        settings = Settings()

        settings = _apply_environment_overrides(settings, env)

        _validate_config(settings)

        logger.info(
            "Configuration loaded successfully",
            environment=env,
            debug=settings.debug,
            auth_provider_url=settings.auth_provider_url,
            features_enabled=_get_enabled_features_summary(settings),
        )

        return settings

    except Exception as e:
        logger.error("Failed to load configuration", error=str(e), environment=env)
        raise ConfigurationError(f"Configuration loading failed: {e}") from e


def _apply_environment_overrides(settings: Settings, env: Optional[str]) -> Settings:
    """Apply environment-specific configuration overrides."""
    overrides = {}

    if env == "development":
        overrides = DevelopmentConfig.as_dict()
    elif env == "testing":
        overrides = TestingConfig.as_dict()
    elif env == "production":
        overrides = ProductionConfig.as_dict()
    else:
        logger.warning("Unknown environment, using default settings", environment=env)

    for key, value in overrides.items():
        if hasattr(settings, key):
            setattr(settings, key, value)
            logger.debug(
                "Applied environment override", key=key, value=value, environment=env
            )

    return settings


def _validate_config(settings: Settings) -> None:
    """Perform additional runtime validation."""
    if settings.use_persistent_store and settings.database_url.startswith(
        "sqlite:///"
    ):
        db_path = settings.database_path
        if db_path and str(db_path) != ":memory:":
            # Ensure parent directory exists
            db_path.parent.mkdir(parents=True, exist_ok=True)

    if settings.is_production and not settings.secure_cookies:
        logger.warning(
            "Production mode without secure cookies",
            hint="set SECURE_COOKIES=true behind HTTPS",
        )

    if settings.is_production and not settings.auth_provider_key_str:
        raise MissingConfigError("auth_provider_key is required in production")

    for action, (max_attempts, window) in settings.rate_limit_policies.items():
        if max_attempts <= 0 or window <= 0:
            raise InvalidConfigError(f"Invalid rate limit policy for '{action}'")


def _get_enabled_features_summary(settings: Settings) -> list[str]:
    """Get a summary of enabled features for logging."""
    features = []
    if settings.allow_anonymous_votes:
        features.append("anonymous_votes")
    if settings.use_persistent_store:
        features.append("persistent_store")
    if settings.secure_cookies:
        features.append("secure_cookies")
    if settings.development_mode:
        features.append("api_docs")
    return features


def create_test_config(**overrides: Any) -> Settings:
    """Create configuration for testing with optional overrides.

    Args:
        **overrides: Configuration values to override

    Returns:
        Settings instance configured for testing
    """
    test_values = TestingConfig.as_dict()

    test_values.update(
        {
            "auth_provider_url": "http://auth.test",
            "auth_provider_key": "test-anon-key",
            "site_url": "http://polls.test",
        }
    )

    test_values.update(overrides)

    return Settings(**test_values)
