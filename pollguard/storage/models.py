"""Row conversion for stored security events and polls."""

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List

import aiosqlite

from pollguard.polls.store import Poll, PollOption
from pollguard.security.audit import (
    SecurityEvent,
    SecurityEventSeverity,
    SecurityEventType,
)


def _parse_datetime(value: Any) -> Any:
    """Parse datetime values from SQLite rows.

    With sqlite3 converters enabled, values may already be datetime instances.
    Without converters, values may be ISO strings.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def event_to_params(event: SecurityEvent) -> Dict[str, Any]:
    """Named parameters for inserting a security event."""
    return {
        "request_id": event.request_id,
        "event_type": event.event_type.value,
        "severity": event.severity.value,
        "success": event.success,
        "timestamp": event.timestamp,
        "risk_score": event.risk_score,
        "user_id": event.user_id,
        "email": event.email,
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "session_id": event.session_id,
        "details": json.dumps(event.details, default=str) if event.details else None,
        "tags": ",".join(event.tags),
    }


def event_from_row(row: aiosqlite.Row) -> SecurityEvent:
    """Create a SecurityEvent from a security_events row."""
    data = dict(row)
    details = data.get("details")
    if isinstance(details, str):
        details = json.loads(details)
    tags = data.get("tags") or ""

    return SecurityEvent(
        event_type=SecurityEventType(data["event_type"]),
        severity=SecurityEventSeverity(data["severity"]),
        success=bool(data["success"]),
        timestamp=_parse_datetime(data["timestamp"]),
        risk_score=data["risk_score"],
        user_id=data.get("user_id"),
        email=data.get("email"),
        ip_address=data.get("ip_address") or "unknown",
        user_agent=data.get("user_agent") or "",
        session_id=data.get("session_id"),
        details=details or {},
        tags=tuple(tag for tag in tags.split(",") if tag),
        request_id=data["request_id"],
    )


def poll_from_rows(
    poll_row: aiosqlite.Row, option_rows: Iterable[aiosqlite.Row]
) -> Poll:
    """Create a Poll from its row and its option rows."""
    data = dict(poll_row)
    options: List[PollOption] = [
        PollOption(id=row["id"], text=row["text"], position=row["position"])
        for row in option_rows
    ]
    return Poll(
        id=data["id"],
        owner_id=data["owner_id"],
        question=data["question"],
        options=sorted(options, key=lambda option: option.position),
        created_at=_parse_datetime(data["created_at"]),
    )
