"""Narrow poll storage contract used by authorization and vote checks."""

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pollguard.exceptions import DataIntegrityError


@dataclass
class PollOption:
    """A selectable answer belonging to a poll."""

    id: str
    text: str
    position: int = 0


@dataclass
class Poll:
    """Poll with its ordered options."""

    id: str
    owner_id: str
    question: str
    options: List[PollOption] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class PollStore(Protocol):
    """Storage capability required by poll actions."""

    async def get_poll_owner(self, poll_id: str) -> Optional[str]:
        """Owner id, or None when the poll does not exist."""

    async def get_poll_options(self, poll_id: str) -> List[str]:
        """Option ids of the poll (empty when it does not exist)."""

    async def has_vote(self, poll_id: str, user_id: str) -> bool:
        """Whether user_id already voted on poll_id."""

    async def insert_vote(
        self, poll_id: str, option_id: str, user_id: Optional[str]
    ) -> None:
        """Record a vote; raises DataIntegrityError on a duplicate."""

    async def create_poll(
        self, owner_id: str, question: str, options: List[str]
    ) -> Poll:
        """Create a poll and its options."""

    async def update_poll(
        self, poll_id: str, question: str, options: List[str]
    ) -> None:
        """Replace question and options of an existing poll."""

    async def delete_poll(self, poll_id: str) -> None:
        """Delete a poll with its options and votes."""


class InMemoryPollStore:
    """Process-local poll store for development and tests."""

    def __init__(self) -> None:
        self.polls: Dict[str, Poll] = {}
        self.votes: List[Tuple[str, str, Optional[str]]] = []
        self._lock = asyncio.Lock()

    async def get_poll(self, poll_id: str) -> Optional[Poll]:
        return self.polls.get(poll_id)

    async def get_poll_owner(self, poll_id: str) -> Optional[str]:
        poll = self.polls.get(poll_id)
        return poll.owner_id if poll else None

    async def get_poll_options(self, poll_id: str) -> List[str]:
        poll = self.polls.get(poll_id)
        return [option.id for option in poll.options] if poll else []

    async def has_vote(self, poll_id: str, user_id: str) -> bool:
        return any(p == poll_id and u == user_id for p, _, u in self.votes)

    async def insert_vote(
        self, poll_id: str, option_id: str, user_id: Optional[str]
    ) -> None:
        async with self._lock:
            if user_id is not None and await self.has_vote(poll_id, user_id):
                raise DataIntegrityError("duplicate vote")
            self.votes.append((poll_id, option_id, user_id))

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
        self.polls[poll.id] = poll
        return poll

    async def update_poll(
        self, poll_id: str, question: str, options: List[str]
    ) -> None:
        poll = self.polls.get(poll_id)
        if poll is None:
            raise DataIntegrityError(f"poll {poll_id} not found")
        poll.question = question
        poll.options = [
            PollOption(id=str(uuid.uuid4()), text=text, position=i)
            for i, text in enumerate(options)
        ]
        self.votes = [v for v in self.votes if v[0] != poll_id]

    async def delete_poll(self, poll_id: str) -> None:
        self.polls.pop(poll_id, None)
        self.votes = [v for v in self.votes if v[0] != poll_id]

    async def get_vote_counts(self, poll_id: str) -> Dict[str, int]:
        """Votes per option id."""
        counts = {option_id: 0 for option_id in await self.get_poll_options(poll_id)}
        for vote_poll_id, option_id, _ in self.votes:
            if vote_poll_id == poll_id and option_id in counts:
                counts[option_id] += 1
        return counts
