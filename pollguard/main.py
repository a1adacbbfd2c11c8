"""Main entry point for the pollguard form API."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict

import structlog

from pollguard import __version__
from pollguard.api.server import run_api_server
from pollguard.auth.gotrue import GoTrueIdentityProvider
from pollguard.config.features import FeatureFlags
from pollguard.config.settings import Settings
from pollguard.exceptions import ConfigurationError
from pollguard.polls.actions import PollActions
from pollguard.polls.store import InMemoryPollStore
from pollguard.security.audit import (
    InMemorySecurityEventStorage,
    SecurityEventLogger,
)
from pollguard.security.authorization import AuthorizationChecker
from pollguard.security.csrf import CsrfTokenManager
from pollguard.security.kv_store import InMemoryKeyValueStore
from pollguard.security.rate_limiter import RateLimiter
from pollguard.storage.database import DatabaseManager
from pollguard.storage.repositories import (
    SQLiteKeyValueStore,
    SQLitePollStore,
    SQLiteSecurityEventStorage,
)

PURGE_INTERVAL_SECONDS = 10 * 60


def setup_logging(debug: bool = False) -> None:
    """Configure structured logging."""
    level = logging.DEBUG if debug else logging.INFO

    # Configure standard logging
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )

    # Keep normal runs readable; allow deep third-party logs only in --debug mode.
    noisy_loggers = (
        "httpx",
        "httpcore",
        "aiosqlite",
        "uvicorn.access",
    )
    noisy_level = logging.DEBUG if debug else logging.WARNING
    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(noisy_level)

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if not debug
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="pollguard form API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version", action="version", version=f"pollguard {__version__}"
    )

    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    parser.add_argument("--config-file", type=Path, help="Path to configuration file")

    return parser.parse_args()


async def create_application(config: Settings) -> Dict[str, Any]:
    """Create and configure the application components."""
    logger = structlog.get_logger()
    logger.info("Creating application components")

    features = FeatureFlags(config)

    db_manager = None
    if features.persistent_store_enabled:
        db_manager = DatabaseManager(config.database_url)
        await db_manager.initialize()
        key_value_store: Any = SQLiteKeyValueStore(db_manager)
        event_storage: Any = SQLiteSecurityEventStorage(db_manager)
        poll_store: Any = SQLitePollStore(db_manager)
    else:
        logger.warning(
            "Persistent store disabled - counters, tokens and polls "
            "live in process memory only"
        )
        key_value_store = InMemoryKeyValueStore()
        event_storage = InMemorySecurityEventStorage()
        poll_store = InMemoryPollStore()

    audit = SecurityEventLogger(
        event_storage, high_risk_threshold=config.high_risk_threshold
    )
    rate_limiter = RateLimiter.from_settings(config, key_value_store, audit)
    csrf = CsrfTokenManager(key_value_store, config.csrf_token_ttl_seconds)
    authorization = AuthorizationChecker(
        poll_store, audit, allow_anonymous_votes=features.anonymous_votes_enabled
    )
    provider = GoTrueIdentityProvider.from_settings(config)
    poll_actions = PollActions(
        poll_store, provider, rate_limiter, authorization, csrf, audit
    )

    logger.info("Application components created successfully")

    return {
        "config": config,
        "features": features,
        "db_manager": db_manager,
        "key_value_store": key_value_store,
        "event_storage": event_storage,
        "poll_store": poll_store,
        "audit": audit,
        "rate_limiter": rate_limiter,
        "csrf": csrf,
        "authorization": authorization,
        "provider": provider,
        "poll_actions": poll_actions,
    }


async def purge_expired_entries(
    key_value_store: Any, interval: float = PURGE_INTERVAL_SECONDS
) -> None:
    """Periodically drop expired tokens and closed rate-limit windows."""
    logger = structlog.get_logger()
    while True:
        await asyncio.sleep(interval)
        try:
            await key_value_store.purge_expired()
        except Exception as e:
            logger.error("Key-value purge failed", error=str(e))


async def run_application(app: Dict[str, Any]) -> None:
    """Run the application with graceful shutdown handling."""
    logger = structlog.get_logger()
    config: Settings = app["config"]
    provider: GoTrueIdentityProvider = app["provider"]
    db_manager = app["db_manager"]

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(signum: int, frame: Any) -> None:
        logger.info("Shutdown signal received", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        logger.info(
            "Starting pollguard API",
            host=config.api_server_host,
            port=config.api_server_port,
        )

        tasks = [
            asyncio.create_task(run_api_server(app, config), name="api"),
            asyncio.create_task(
                purge_expired_entries(app["key_value_store"]), name="purge"
            ),
            asyncio.create_task(shutdown_event.wait(), name="shutdown"),
        ]

        # Wait for any task to complete or shutdown signal
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        # Check completed tasks for exceptions
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "Task failed",
                    task=task.get_name(),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        # Cancel remaining tasks
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    except Exception as e:
        logger.error("Application error", error=str(e))
        raise
    finally:
        # Ordered shutdown: provider client -> storage
        logger.info("Shutting down application")

        try:
            await provider.aclose()
            if db_manager:
                await db_manager.close()
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))

        logger.info("Application shutdown complete")


async def main() -> None:
    """Main application entry point."""
    args = parse_args()
    setup_logging(debug=args.debug)

    logger = structlog.get_logger()
    logger.info("Starting pollguard", version=__version__)

    try:
        # Load configuration
        from pollguard.config import load_config

        config = load_config(config_file=args.config_file)
        features = FeatureFlags(config)

        logger.info(
            "Configuration loaded",
            environment="production" if config.is_production else "development",
            enabled_features=features.get_enabled_features(),
            debug=config.debug,
        )

        app = await create_application(config)
        await run_application(app)

    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error", error=str(e))
        sys.exit(1)


def run() -> None:
    """Synchronous entry point for setuptools."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)


if __name__ == "__main__":
    run()
