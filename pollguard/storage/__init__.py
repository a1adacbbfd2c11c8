"""Persistent storage for pollguard.

This module provides:
- SQLite database management with migrations
- Shared key-value store for CSRF tokens and rate-limit counters
- Security event and poll repositories
"""

from .database import DatabaseManager
from .repositories import SQLiteKeyValueStore, SQLitePollStore, SQLiteSecurityEventStorage

__all__ = [
    "DatabaseManager",
    "SQLiteKeyValueStore",
    "SQLitePollStore",
    "SQLiteSecurityEventStorage",
]
