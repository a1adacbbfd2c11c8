"""Poll mutations gated by authentication, rate limits and ownership.

Anonymous votes are stored with ``user_id=None`` and are not
deduplicated; only authenticated voters get the one-vote-per-poll check
and the ``votePoll`` rate limit.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from pollguard.auth.provider import IdentityProvider
from pollguard.exceptions import DataIntegrityError
from pollguard.security.audit import (
    RequestContext,
    SecurityEventLogger,
    SecurityEventType,
)
from pollguard.security.authorization import AuthorizationChecker, PollAction
from pollguard.security.csrf import CsrfSubmission, CsrfTokenManager
from pollguard.security.rate_limiter import RateLimiter
from pollguard.security.validators import InputValidator
from pollguard.utils.constants import (
    MSG_ALREADY_VOTED,
    MSG_CREATE_FAILED,
    MSG_CREATE_RATE_LIMITED,
    MSG_CSRF_FAILED,
    MSG_DELETE_FAILED,
    MSG_DELETE_RATE_LIMITED,
    MSG_INVALID_OPTION,
    MSG_INVALID_OPTION_ID,
    MSG_INVALID_POLL_ID,
    MSG_LOGIN_REQUIRED_CREATE,
    MSG_LOGIN_REQUIRED_DELETE,
    MSG_LOGIN_REQUIRED_UPDATE,
    MSG_PERMISSION_DENIED,
    MSG_UNEXPECTED,
    MSG_UPDATE_FAILED,
    MSG_UPDATE_RATE_LIMITED,
    MSG_VOTE_FAILED,
    MSG_VOTE_RATE_LIMITED,
)

from .store import PollStore

logger = structlog.get_logger()


@dataclass
class PollActionResult:
    """``{error}`` result of a poll form submission."""

    error: Optional[str] = None
    poll_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "error": self.error, "poll_id": self.poll_id}


class PollActions:
    """Vote submission and poll create/update/delete flows."""

    def __init__(
        self,
        store: PollStore,
        provider: IdentityProvider,
        rate_limiter: RateLimiter,
        authorization: AuthorizationChecker,
        csrf: CsrfTokenManager,
        audit: SecurityEventLogger,
        validator: Optional[InputValidator] = None,
    ):
        self.store = store
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.authorization = authorization
        self.csrf = csrf
        self.audit = audit
        self.validator = validator or InputValidator()

    def with_provider(self, provider: IdentityProvider) -> "PollActions":
        """Same collaborators, different caller identity."""
        return PollActions(
            self.store,
            provider,
            self.rate_limiter,
            self.authorization,
            self.csrf,
            self.audit,
            self.validator,
        )

    async def _current_user_id(self) -> Optional[str]:
        """Resolve the caller; provider errors mean anonymous."""
        try:
            result = await self.provider.get_user()
        except Exception as e:
            logger.warning("Could not resolve current user", error=str(e))
            return None
        if result.error or result.data is None:
            return None
        return result.data.id

    async def _reject(
        self,
        event_type: SecurityEventType,
        error: str,
        poll_id: Optional[str],
        user_id: Optional[str],
        reason: str,
        context: Optional[RequestContext],
    ) -> PollActionResult:
        await self.audit.log_event(
            event_type,
            False,
            user_id=user_id,
            context=context,
            details={"poll_id": poll_id, "reason": reason},
        )
        return PollActionResult(error=error, poll_id=poll_id)

    async def _csrf_ok(
        self,
        csrf: Optional[CsrfSubmission],
        action: str,
        poll_id: Optional[str],
        user_id: Optional[str],
        context: Optional[RequestContext],
    ) -> bool:
        if csrf is None or await self.csrf.check_submission(csrf):
            return True
        await self.audit.log_event(
            SecurityEventType.CSRF_TOKEN_MISMATCH,
            False,
            user_id=user_id,
            context=context,
            details={"action": action, "poll_id": poll_id},
        )
        return False

    async def submit_vote(
        self,
        poll_id: str,
        option_id: str,
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
    ) -> PollActionResult:
        """Record a vote for option_id on poll_id."""
        rejected = SecurityEventType.VOTE_REJECTED
        try:
            if not self.validator.is_valid_id(poll_id):
                return await self._reject(
                    rejected, MSG_INVALID_POLL_ID, None, None, "bad_poll_id", context
                )
            if not self.validator.is_valid_id(option_id):
                return await self._reject(
                    rejected, MSG_INVALID_OPTION_ID, poll_id, None, "bad_option_id", context
                )

            user_id = await self._current_user_id()

            if not await self.authorization.is_action_authorized(
                PollAction.VOTE, poll_id, user_id
            ):
                return await self._reject(
                    rejected, MSG_PERMISSION_DENIED, poll_id, user_id, "unauthorized", context
                )

            if option_id not in await self.store.get_poll_options(poll_id):
                return await self._reject(
                    rejected, MSG_INVALID_OPTION, poll_id, user_id, "foreign_option", context
                )

            if user_id is not None:
                if await self.store.has_vote(poll_id, user_id):
                    return await self._reject(
                        rejected, MSG_ALREADY_VOTED, poll_id, user_id, "duplicate", context
                    )
                if not await self.rate_limiter.check_poll_action(user_id, "votePoll"):
                    return await self._reject(
                        rejected,
                        MSG_VOTE_RATE_LIMITED,
                        poll_id,
                        user_id,
                        "rate_limited",
                        context,
                    )

            if not await self._csrf_ok(csrf, "vote", poll_id, user_id, context):
                return PollActionResult(error=MSG_CSRF_FAILED, poll_id=poll_id)

            try:
                await self.store.insert_vote(poll_id, option_id, user_id)
            except DataIntegrityError:
                return await self._reject(
                    rejected, MSG_ALREADY_VOTED, poll_id, user_id, "duplicate", context
                )

            await self.audit.log_event(
                SecurityEventType.VOTE_SUBMITTED,
                True,
                user_id=user_id,
                context=context,
                details={"poll_id": poll_id, "anonymous": user_id is None},
            )
            return PollActionResult(poll_id=poll_id)
        except Exception as e:
            logger.error("Vote submission failed", poll_id=poll_id, error=str(e))
            return PollActionResult(error=MSG_VOTE_FAILED, poll_id=poll_id)

    async def create_poll(
        self,
        question: str,
        options: List[str],
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
    ) -> PollActionResult:
        """Create a poll owned by the caller."""
        try:
            error, clean_question, clean_options = self.validator.validate_poll_form(
                question, options
            )
            if error:
                return PollActionResult(error=error)

            user_id = await self._current_user_id()
            if user_id is None:
                return PollActionResult(error=MSG_LOGIN_REQUIRED_CREATE)

            if not await self.rate_limiter.check_poll_action(user_id, "createPoll"):
                return PollActionResult(error=MSG_CREATE_RATE_LIMITED)

            if not await self._csrf_ok(csrf, "create_poll", None, user_id, context):
                return PollActionResult(error=MSG_CSRF_FAILED)

            try:
                poll = await self.store.create_poll(
                    user_id, clean_question, clean_options
                )
            except Exception as e:
                logger.error("Poll insert failed", user_id=user_id, error=str(e))
                return PollActionResult(error=MSG_CREATE_FAILED)

            await self.audit.log_event(
                SecurityEventType.POLL_CREATED,
                True,
                user_id=user_id,
                context=context,
                details={"poll_id": poll.id, "option_count": len(poll.options)},
            )
            return PollActionResult(poll_id=poll.id)
        except Exception as e:
            logger.error("Poll creation failed unexpectedly", error=str(e))
            return PollActionResult(error=MSG_UNEXPECTED)

    async def update_poll(
        self,
        poll_id: str,
        question: str,
        options: List[str],
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
    ) -> PollActionResult:
        """Replace question and options of a poll the caller owns."""
        try:
            if not self.validator.is_valid_id(poll_id):
                return PollActionResult(error=MSG_INVALID_POLL_ID)

            error, clean_question, clean_options = self.validator.validate_poll_form(
                question, options
            )
            if error:
                return PollActionResult(error=error, poll_id=poll_id)

            user_id = await self._current_user_id()
            if user_id is None:
                return PollActionResult(error=MSG_LOGIN_REQUIRED_UPDATE, poll_id=poll_id)

            # Updates share the creation budget.
            if not await self.rate_limiter.check_poll_action(user_id, "createPoll"):
                return PollActionResult(error=MSG_UPDATE_RATE_LIMITED, poll_id=poll_id)

            if not await self.authorization.is_action_authorized(
                PollAction.EDIT, poll_id, user_id
            ):
                return PollActionResult(error=MSG_PERMISSION_DENIED, poll_id=poll_id)

            if not await self._csrf_ok(csrf, "update_poll", poll_id, user_id, context):
                return PollActionResult(error=MSG_CSRF_FAILED, poll_id=poll_id)

            try:
                await self.store.update_poll(poll_id, clean_question, clean_options)
            except Exception as e:
                logger.error("Poll update failed", poll_id=poll_id, error=str(e))
                return PollActionResult(error=MSG_UPDATE_FAILED, poll_id=poll_id)

            await self.audit.log_event(
                SecurityEventType.POLL_UPDATED,
                True,
                user_id=user_id,
                context=context,
                details={"poll_id": poll_id},
            )
            return PollActionResult(poll_id=poll_id)
        except Exception as e:
            logger.error("Poll update failed unexpectedly", error=str(e))
            return PollActionResult(error=MSG_UNEXPECTED, poll_id=poll_id)

    async def delete_poll(
        self,
        poll_id: str,
        csrf: Optional[CsrfSubmission] = None,
        context: Optional[RequestContext] = None,
    ) -> PollActionResult:
        """Delete a poll the caller owns."""
        try:
            if not self.validator.is_valid_id(poll_id):
                return PollActionResult(error=MSG_INVALID_POLL_ID)

            user_id = await self._current_user_id()
            if user_id is None:
                return PollActionResult(error=MSG_LOGIN_REQUIRED_DELETE, poll_id=poll_id)

            if not await self.rate_limiter.check_poll_action(user_id, "deletePoll"):
                return PollActionResult(error=MSG_DELETE_RATE_LIMITED, poll_id=poll_id)

            if not await self.authorization.is_action_authorized(
                PollAction.DELETE, poll_id, user_id
            ):
                return PollActionResult(error=MSG_PERMISSION_DENIED, poll_id=poll_id)

            if not await self._csrf_ok(csrf, "delete_poll", poll_id, user_id, context):
                return PollActionResult(error=MSG_CSRF_FAILED, poll_id=poll_id)

            try:
                await self.store.delete_poll(poll_id)
            except Exception as e:
                logger.error("Poll delete failed", poll_id=poll_id, error=str(e))
                return PollActionResult(error=MSG_DELETE_FAILED, poll_id=poll_id)

            await self.audit.log_event(
                SecurityEventType.POLL_DELETED,
                True,
                user_id=user_id,
                context=context,
                details={"poll_id": poll_id},
            )
            return PollActionResult(poll_id=poll_id)
        except Exception as e:
            logger.error("Poll deletion failed unexpectedly", error=str(e))
            return PollActionResult(error=MSG_UNEXPECTED, poll_id=poll_id)
