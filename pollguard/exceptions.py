"""Custom exceptions for pollguard."""


class PollGuardError(Exception):
    """Base exception for pollguard."""


class ConfigurationError(PollGuardError):
    """Configuration-related errors."""


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""


class InvalidConfigError(ConfigurationError):
    """Configuration is invalid."""


class StorageError(PollGuardError):
    """Storage-related errors."""


class DatabaseConnectionError(StorageError):
    """Database connection failed."""


class DataIntegrityError(StorageError):
    """Data integrity check failed."""
