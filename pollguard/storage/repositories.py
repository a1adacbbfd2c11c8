"""Data access layer using repository pattern.

Features:
- Shared key-value store with atomic window counters
- Append-only security event storage
- Poll, option and vote persistence
"""

import sqlite3
import time
import uuid
from datetime import UTC, datetime
from typing import Callable, Dict, List, Optional

import structlog

from pollguard.exceptions import DataIntegrityError
from pollguard.polls.store import Poll, PollOption
from pollguard.security.audit import (
    SecurityEvent,
    SecurityEventStorage,
    SecurityEventType,
)
from pollguard.security.kv_store import WindowCounter

from .database import DatabaseManager
from .models import event_from_row, event_to_params, poll_from_rows

logger = structlog.get_logger()


class SQLiteKeyValueStore:
    """Key-value store shared by every process using the same database."""

    def __init__(
        self, db_manager: DatabaseManager, clock: Callable[[], float] = time.time
    ):
        """Initialize repository."""
        self.db = db_manager
        self._clock = clock

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds is not None else None

    async def get(self, key: str) -> Optional[str]:
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT value FROM kv_store
                WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)
            """,
                (key, self._clock()),
            )
            row = await cursor.fetchone()
            return row["value"] if row else None

    async def set(
        self, key: str, value: str, ttl_seconds: Optional[float] = None
    ) -> None:
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO kv_store (key, value, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
            """,
                (key, value, self._expiry(ttl_seconds)),
            )
            await conn.commit()

    async def delete(self, key: str) -> None:
        async with self.db.get_connection() as conn:
            await conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await conn.commit()

    async def compare_and_set(
        self,
        key: str,
        expected: str,
        new_value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE kv_store SET value = ?, expires_at = ?
                WHERE key = ? AND value = ?
                  AND (expires_at IS NULL OR expires_at > ?)
            """,
                (new_value, self._expiry(ttl_seconds), key, expected, self._clock()),
            )
            await conn.commit()
            return cursor.rowcount == 1

    async def increment_window(
        self, key: str, window_seconds: float, now: float
    ) -> WindowCounter:
        # Single statement so concurrent writers never lose an increment.
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO kv_store (key, counter, window_start, window_seconds)
                VALUES (:key, 1, :now, :window)
                ON CONFLICT(key) DO UPDATE SET
                    counter = CASE
                        WHEN kv_store.window_start IS NULL
                          OR :now - kv_store.window_start > :window THEN 1
                        ELSE kv_store.counter + 1
                    END,
                    window_start = CASE
                        WHEN kv_store.window_start IS NULL
                          OR :now - kv_store.window_start > :window THEN :now
                        ELSE kv_store.window_start
                    END,
                    window_seconds = :window
                RETURNING counter, window_start
            """,
                {"key": key, "now": now, "window": window_seconds},
            )
            row = await cursor.fetchone()
            await conn.commit()
            return WindowCounter(count=row["counter"], window_start=row["window_start"])

    async def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop expired values and rows whose counter window has closed."""
        now = self._clock() if now is None else now
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                DELETE FROM kv_store
                WHERE (expires_at IS NOT NULL AND expires_at <= :now)
                   OR (value IS NULL AND window_start IS NOT NULL
                       AND :now - window_start > window_seconds)
            """,
                {"now": now},
            )
            await conn.commit()
            if cursor.rowcount:
                logger.info("Purged expired key-value entries", count=cursor.rowcount)
            return cursor.rowcount


class SQLiteSecurityEventStorage(SecurityEventStorage):
    """Security event data access."""

    def __init__(self, db_manager: DatabaseManager):
        """Initialize repository."""
        self.db = db_manager

    async def store_event(self, event: SecurityEvent) -> None:
        """Append event."""
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO security_events
                (request_id, event_type, severity, success, timestamp, risk_score,
                 user_id, email, ip_address, user_agent, session_id, details, tags)
                VALUES
                (:request_id, :event_type, :severity, :success, :timestamp,
                 :risk_score, :user_id, :email, :ip_address, :user_agent,
                 :session_id, :details, :tags)
            """,
                event_to_params(event),
            )
            await conn.commit()

    async def get_events(
        self,
        event_type: Optional[SecurityEventType] = None,
        user_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> List[SecurityEvent]:
        """Get events newest first with filters."""
        query = "SELECT * FROM security_events WHERE 1=1"
        params: list = []

        if event_type is not None:
            query += " AND event_type = ?"
            params.append(event_type.value)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if start_time is not None:
            query += " AND timestamp >= ?"
            params.append(start_time)
        if end_time is not None:
            query += " AND timestamp <= ?"
            params.append(end_time)

        query += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return [event_from_row(row) for row in rows]


class SQLitePollStore:
    """Poll data access."""

    def __init__(self, db_manager: DatabaseManager):
        """Initialize repository."""
        self.db = db_manager

    async def get_poll(self, poll_id: str) -> Optional[Poll]:
        """Get poll with its options."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM polls WHERE id = ?", (poll_id,))
            poll_row = await cursor.fetchone()
            if not poll_row:
                return None
            cursor = await conn.execute(
                "SELECT * FROM poll_options WHERE poll_id = ? ORDER BY position",
                (poll_id,),
            )
            return poll_from_rows(poll_row, await cursor.fetchall())

    async def get_poll_owner(self, poll_id: str) -> Optional[str]:
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT owner_id FROM polls WHERE id = ?", (poll_id,)
            )
            row = await cursor.fetchone()
            return row["owner_id"] if row else None

    async def get_poll_options(self, poll_id: str) -> List[str]:
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT id FROM poll_options WHERE poll_id = ? ORDER BY position",
                (poll_id,),
            )
            rows = await cursor.fetchall()
            return [row["id"] for row in rows]

    async def has_vote(self, poll_id: str, user_id: str) -> bool:
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT 1 FROM votes WHERE poll_id = ? AND user_id = ? LIMIT 1",
                (poll_id, user_id),
            )
            return await cursor.fetchone() is not None

    async def insert_vote(
        self, poll_id: str, option_id: str, user_id: Optional[str]
    ) -> None:
        async with self.db.get_connection() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO votes (poll_id, option_id, user_id, created_at)
                    VALUES (?, ?, ?, ?)
                """,
                    (poll_id, option_id, user_id, datetime.now(UTC)),
                )
                await conn.commit()
            except sqlite3.IntegrityError as e:
                await conn.rollback()
                raise DataIntegrityError(f"vote rejected: {e}") from e

    async def create_poll(
        self, owner_id: str, question: str, options: List[str]
    ) -> Poll:
        poll = Poll(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            question=question,
            options=[
                PollOption(id=str(uuid.uuid4()), text=text, position=i)
                for i, text in enumerate(options)
            ],
        )
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO polls (id, owner_id, question, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (poll.id, poll.owner_id, poll.question, poll.created_at),
            )
            await conn.executemany(
                "INSERT INTO poll_options (id, poll_id, text, position) VALUES (?, ?, ?, ?)",
                [(o.id, poll.id, o.text, o.position) for o in poll.options],
            )
            await conn.commit()

        logger.info("Created poll", poll_id=poll.id, owner_id=owner_id)
        return poll

    async def update_poll(
        self, poll_id: str, question: str, options: List[str]
    ) -> None:
        """Replace question and options; existing votes go with the old options."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "UPDATE polls SET question = ? WHERE id = ?", (question, poll_id)
            )
            if cursor.rowcount != 1:
                await conn.rollback()
                raise DataIntegrityError(f"poll {poll_id} not found")
            await conn.execute("DELETE FROM poll_options WHERE poll_id = ?", (poll_id,))
            await conn.executemany(
                "INSERT INTO poll_options (id, poll_id, text, position) VALUES (?, ?, ?, ?)",
                [
                    (str(uuid.uuid4()), poll_id, text, i)
                    for i, text in enumerate(options)
                ],
            )
            await conn.commit()

        logger.info("Updated poll", poll_id=poll_id)

    async def delete_poll(self, poll_id: str) -> None:
        async with self.db.get_connection() as conn:
            await conn.execute("DELETE FROM polls WHERE id = ?", (poll_id,))
            await conn.commit()

        logger.info("Deleted poll", poll_id=poll_id)

    async def get_vote_counts(self, poll_id: str) -> Dict[str, int]:
        """Votes per option id."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT o.id AS option_id, COUNT(v.id) AS votes
                FROM poll_options o
                LEFT JOIN votes v ON v.option_id = o.id
                WHERE o.poll_id = ?
                GROUP BY o.id
            """,
                (poll_id,),
            )
            rows = await cursor.fetchall()
            return {row["option_id"]: row["votes"] for row in rows}
