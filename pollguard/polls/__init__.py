"""Poll storage contract and guarded poll actions."""

from .actions import PollActionResult, PollActions
from .store import InMemoryPollStore, Poll, PollOption, PollStore

__all__ = [
    "InMemoryPollStore",
    "Poll",
    "PollActionResult",
    "PollActions",
    "PollOption",
    "PollStore",
]
