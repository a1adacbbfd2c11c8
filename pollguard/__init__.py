"""Session and security-policy core for a polling web application."""

__version__ = "0.1.0"
