"""Feature flag management."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .settings import Settings


class FeatureFlags:
    """Feature flag management system."""

    def __init__(self, settings: "Settings"):
        """Initialize with settings."""
        self.settings = settings

    @property
    def anonymous_votes_enabled(self) -> bool:
        """Check if visitors without a session may vote."""
        return self.settings.allow_anonymous_votes

    @property
    def persistent_store_enabled(self) -> bool:
        """Check if counters and tokens are kept in the database."""
        return self.settings.use_persistent_store

    @property
    def secure_cookies_enabled(self) -> bool:
        """Check if cookies are restricted to HTTPS."""
        return self.settings.secure_cookies

    @property
    def api_docs_enabled(self) -> bool:
        """Check if the interactive API docs are served."""
        return self.settings.development_mode

    def is_feature_enabled(self, feature_name: str) -> bool:
        """Generic feature check by name."""
        feature_map = {
            "anonymous_votes": self.anonymous_votes_enabled,
            "persistent_store": self.persistent_store_enabled,
            "secure_cookies": self.secure_cookies_enabled,
            "api_docs": self.api_docs_enabled,
        }
        return feature_map.get(feature_name, False)

    def get_enabled_features(self) -> list[str]:
        """Get list of all enabled features."""
        return [
            name
            for name in (
                "anonymous_votes",
                "persistent_store",
                "secure_cookies",
                "api_docs",
            )
            if self.is_feature_enabled(name)
        ]
