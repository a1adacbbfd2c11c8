"""Authorization decisions for poll actions.

Decision table:
- view: always allowed
- vote: allowed when an actor is present, or for anonymous visitors
  when anonymous voting is enabled
- edit / delete: allowed only for the poll owner

Unknown actions, missing polls, missing actors and storage errors all deny.
"""

from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

import structlog

if TYPE_CHECKING:
    from pollguard.polls.store import PollStore

    from .audit import SecurityEventLogger

logger = structlog.get_logger()


class PollAction(str, Enum):
    """Actions that can be performed on a poll."""

    VIEW = "view"
    VOTE = "vote"
    EDIT = "edit"
    DELETE = "delete"


class AuthorizationChecker:
    """Resolve whether an actor may perform an action on a poll."""

    def __init__(
        self,
        store: "PollStore",
        audit: Optional["SecurityEventLogger"] = None,
        allow_anonymous_votes: bool = True,
    ):
        self.store = store
        self.audit = audit
        self.allow_anonymous_votes = allow_anonymous_votes

    async def is_action_authorized(
        self,
        action: PollAction,
        resource_id: Optional[str],
        actor_id: Optional[str],
    ) -> bool:
        """Apply the decision table for action on resource_id."""
        try:
            action = PollAction(action)
        except ValueError:
            await self._deny(action, resource_id, actor_id, "unknown_action")
            return False

        if action == PollAction.VIEW:
            return True

        if action == PollAction.VOTE:
            if actor_id or self.allow_anonymous_votes:
                return True
            await self._deny(action, resource_id, actor_id, "not_authenticated")
            return False

        return await self.verify_ownership(resource_id, actor_id, action=action)

    async def verify_ownership(
        self,
        resource_id: Optional[str],
        actor_id: Optional[str],
        action: PollAction = PollAction.EDIT,
    ) -> bool:
        """Check that actor_id owns resource_id."""
        if not resource_id or not actor_id:
            await self._deny(action, resource_id, actor_id, "missing_identity")
            return False

        try:
            owner_id = await self.store.get_poll_owner(resource_id)
        except Exception as e:
            logger.error(
                "Ownership lookup failed",
                resource_id=resource_id,
                actor_id=actor_id,
                error=str(e),
            )
            await self._deny(action, resource_id, actor_id, "lookup_error")
            return False

        if owner_id is None:
            await self._deny(action, resource_id, actor_id, "not_found")
            return False

        if owner_id != actor_id:
            await self._deny(action, resource_id, actor_id, "not_owner")
            return False

        return True

    async def _deny(
        self,
        action: Union[PollAction, str],
        resource_id: Optional[str],
        actor_id: Optional[str],
        reason: str,
    ) -> None:
        label = action.value if isinstance(action, PollAction) else str(action)
        logger.warning(
            "Poll action denied",
            action=label,
            resource_id=resource_id,
            actor_id=actor_id,
            reason=reason,
        )
        if self.audit is not None:
            await self.audit.log_unauthorized_access(
                "poll",
                user_id=actor_id,
                details={
                    "action": label,
                    "resource_id": resource_id,
                    "reason": reason,
                },
            )
