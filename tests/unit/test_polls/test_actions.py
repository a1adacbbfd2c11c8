"""Tests for vote submission and poll management."""

import uuid
from unittest.mock import AsyncMock

import pytest

from pollguard.config import create_test_config
from pollguard.exceptions import DataIntegrityError
from pollguard.polls.actions import PollActions
from pollguard.polls.store import InMemoryPollStore
from pollguard.security.audit import SecurityEventType
from pollguard.security.authorization import AuthorizationChecker
from pollguard.security.csrf import CsrfSubmission
from pollguard.security.kv_store import InMemoryKeyValueStore
from pollguard.security.rate_limiter import RateLimiter
from pollguard.utils.constants import (
    MSG_ALREADY_VOTED,
    MSG_CREATE_FAILED,
    MSG_CREATE_RATE_LIMITED,
    MSG_CSRF_FAILED,
    MSG_DELETE_RATE_LIMITED,
    MSG_INVALID_OPTION,
    MSG_INVALID_OPTION_ID,
    MSG_INVALID_POLL_ID,
    MSG_LOGIN_REQUIRED_CREATE,
    MSG_LOGIN_REQUIRED_DELETE,
    MSG_LOGIN_REQUIRED_UPDATE,
    MSG_PERMISSION_DENIED,
    MSG_UPDATE_RATE_LIMITED,
    MSG_VOTE_FAILED,
    MSG_VOTE_RATE_LIMITED,
)


@pytest.fixture
def store():
    return InMemoryPollStore()


@pytest.fixture
def actions(store, provider, rate_limiter, csrf, audit):
    authorization = AuthorizationChecker(store, audit=audit)
    return PollActions(store, provider, rate_limiter, authorization, csrf, audit)


@pytest.fixture
def owner(provider):
    return provider.add_account("owner@example.com", "Own3r!pass")


@pytest.fixture
def voter(provider):
    return provider.add_account("voter@example.com", "V0ter!pass")


@pytest.fixture
async def poll(store, owner):
    return await store.create_poll(owner.id, "Tea or coffee?", ["Tea", "Coffee"])


class TestSubmitVote:
    async def test_authenticated_vote(self, actions, provider, store, poll, voter, event_storage):
        provider.sign_in_as(voter)

        result = await actions.submit_vote(poll.id, poll.options[0].id)

        assert result.success is True
        assert result.to_dict() == {"success": True, "error": None, "poll_id": poll.id}
        assert store.votes == [(poll.id, poll.options[0].id, voter.id)]
        events = await event_storage.get_events(
            event_type=SecurityEventType.VOTE_SUBMITTED
        )
        assert events[0].details == {"poll_id": poll.id, "anonymous": False}

    async def test_duplicate_vote_rejected(self, actions, provider, store, poll, voter):
        provider.sign_in_as(voter)
        await actions.submit_vote(poll.id, poll.options[0].id)

        result = await actions.submit_vote(poll.id, poll.options[1].id)

        assert result.error == "You have already voted on this poll"
        assert len(store.votes) == 1

    async def test_duplicate_from_storage_constraint(
        self, actions, provider, store, poll, voter
    ):
        provider.sign_in_as(voter)
        store.has_vote = AsyncMock(return_value=False)
        store.insert_vote = AsyncMock(side_effect=DataIntegrityError("duplicate vote"))

        result = await actions.submit_vote(poll.id, poll.options[1].id)

        assert result.error == MSG_ALREADY_VOTED

    async def test_anonymous_votes_are_not_deduplicated(
        self, actions, provider, store, poll, event_storage
    ):
        provider.session = None

        for _ in range(2):
            result = await actions.submit_vote(poll.id, poll.options[0].id)
            assert result.success is True

        assert store.votes == [
            (poll.id, poll.options[0].id, None),
            (poll.id, poll.options[0].id, None),
        ]
        events = await event_storage.get_events(
            event_type=SecurityEventType.VOTE_SUBMITTED
        )
        assert events[0].details["anonymous"] is True

    async def test_anonymous_vote_denied_when_disabled(
        self, store, provider, rate_limiter, csrf, audit, poll
    ):
        authorization = AuthorizationChecker(
            store, audit=audit, allow_anonymous_votes=False
        )
        actions = PollActions(store, provider, rate_limiter, authorization, csrf, audit)

        result = await actions.submit_vote(poll.id, poll.options[0].id)

        assert result.error == MSG_PERMISSION_DENIED
        assert store.votes == []

    @pytest.mark.parametrize(
        "poll_id,option_id,expected",
        [
            ("not-a-uuid", str(uuid.uuid4()), MSG_INVALID_POLL_ID),
            (str(uuid.uuid4()), "1; DROP TABLE votes", MSG_INVALID_OPTION_ID),
        ],
    )
    async def test_malformed_ids(self, actions, store, poll_id, option_id, expected):
        result = await actions.submit_vote(poll_id, option_id)

        assert result.error == expected
        assert store.votes == []

    async def test_option_from_another_poll(
        self, actions, provider, store, poll, owner, voter, event_storage
    ):
        other = await store.create_poll(owner.id, "Cats or dogs?", ["Cats", "Dogs"])
        provider.sign_in_as(voter)

        result = await actions.submit_vote(poll.id, other.options[0].id)

        assert result.error == MSG_INVALID_OPTION
        events = await event_storage.get_events(
            event_type=SecurityEventType.VOTE_REJECTED
        )
        assert events[0].details == {"poll_id": poll.id, "reason": "foreign_option"}

    async def test_vote_rate_limit(self, store, provider, csrf, audit, voter, owner):
        limiter = RateLimiter.from_settings(
            create_test_config(rate_limit_overrides="votePoll=1/3600"),
            InMemoryKeyValueStore(),
            audit,
        )
        actions = PollActions(
            store, provider, limiter, AuthorizationChecker(store), csrf, audit
        )
        first = await store.create_poll(owner.id, "One?", ["A", "B"])
        second = await store.create_poll(owner.id, "Two?", ["A", "B"])
        provider.sign_in_as(voter)

        assert (await actions.submit_vote(first.id, first.options[0].id)).success
        result = await actions.submit_vote(second.id, second.options[0].id)

        assert result.error == MSG_VOTE_RATE_LIMITED

    async def test_csrf_checked(self, actions, provider, csrf, poll, voter, store):
        provider.sign_in_as(voter)
        token = await csrf.issue_token("ctx")

        bad = await actions.submit_vote(
            poll.id,
            poll.options[0].id,
            csrf=CsrfSubmission(context_id="ctx", token="forged"),
        )
        good = await actions.submit_vote(
            poll.id,
            poll.options[0].id,
            csrf=CsrfSubmission(context_id="ctx", token=token),
        )

        assert bad.error == MSG_CSRF_FAILED
        assert good.success is True
        assert len(store.votes) == 1

    async def test_store_failure(self, actions, provider, store, poll, voter):
        provider.sign_in_as(voter)
        store.insert_vote = AsyncMock(side_effect=RuntimeError("disk full"))

        result = await actions.submit_vote(poll.id, poll.options[0].id)

        assert result.error == MSG_VOTE_FAILED


class TestCreatePoll:
    async def test_create(self, actions, provider, store, owner, event_storage):
        provider.sign_in_as(owner)

        result = await actions.create_poll(" <b>Lunch?</b> ", ["Pizza", "", "Salad"])

        assert result.success is True
        poll = store.polls[result.poll_id]
        assert poll.owner_id == owner.id
        assert poll.question == "Lunch?"
        assert [o.text for o in poll.options] == ["Pizza", "Salad"]
        events = await event_storage.get_events(
            event_type=SecurityEventType.POLL_CREATED
        )
        assert events[0].details == {"poll_id": poll.id, "option_count": 2}

    async def test_validation_before_login(self, actions, provider):
        provider.session = None

        result = await actions.create_poll("Lunch?", ["Pizza", "pizza"])

        assert result.error == "All options must be unique"

    async def test_requires_login(self, actions, provider):
        provider.session = None

        result = await actions.create_poll("Lunch?", ["Pizza", "Salad"])

        assert result.error == MSG_LOGIN_REQUIRED_CREATE

    async def test_rate_limited(self, actions, provider, owner, store):
        provider.sign_in_as(owner)
        for i in range(10):
            assert (await actions.create_poll(f"Q{i}?", ["A", "B"])).success

        result = await actions.create_poll("One more?", ["A", "B"])

        assert result.error == MSG_CREATE_RATE_LIMITED
        assert len(store.polls) == 10

    async def test_store_failure(self, actions, provider, owner, store):
        provider.sign_in_as(owner)
        store.create_poll = AsyncMock(side_effect=RuntimeError("disk full"))

        result = await actions.create_poll("Lunch?", ["Pizza", "Salad"])

        assert result.error == MSG_CREATE_FAILED


class TestUpdatePoll:
    async def test_owner_updates(self, actions, provider, store, poll, owner):
        provider.sign_in_as(owner)

        result = await actions.update_poll(poll.id, "Tea, coffee or juice?", ["Tea", "Coffee", "Juice"])

        assert result.success is True
        assert store.polls[poll.id].question == "Tea, coffee or juice?"
        assert len(store.polls[poll.id].options) == 3

    async def test_non_owner_denied(self, actions, provider, store, poll, voter, event_storage):
        provider.sign_in_as(voter)

        result = await actions.update_poll(poll.id, "Hijacked?", ["Yes", "No"])

        assert result.error == MSG_PERMISSION_DENIED
        assert store.polls[poll.id].question == "Tea or coffee?"
        events = await event_storage.get_events(
            event_type=SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT
        )
        assert events[0].details["reason"] == "not_owner"

    async def test_requires_login(self, actions, provider, poll):
        provider.session = None

        result = await actions.update_poll(poll.id, "New?", ["A", "B"])

        assert result.error == MSG_LOGIN_REQUIRED_UPDATE

    async def test_bad_id(self, actions):
        result = await actions.update_poll("../etc", "New?", ["A", "B"])
        assert result.error == MSG_INVALID_POLL_ID

    async def test_shares_creation_budget(self, actions, provider, owner, poll):
        provider.sign_in_as(owner)
        for i in range(10):
            await actions.create_poll(f"Q{i}?", ["A", "B"])

        result = await actions.update_poll(poll.id, "New?", ["A", "B"])

        assert result.error == MSG_UPDATE_RATE_LIMITED


class TestDeletePoll:
    async def test_owner_deletes(self, actions, provider, store, poll, owner, event_storage):
        await store.insert_vote(poll.id, poll.options[0].id, None)
        provider.sign_in_as(owner)

        result = await actions.delete_poll(poll.id)

        assert result.success is True
        assert poll.id not in store.polls
        assert store.votes == []
        assert SecurityEventType.POLL_DELETED in [
            e.event_type for e in await event_storage.get_events()
        ]

    async def test_non_owner_denied(self, actions, provider, store, poll, voter):
        provider.sign_in_as(voter)

        result = await actions.delete_poll(poll.id)

        assert result.error == MSG_PERMISSION_DENIED
        assert poll.id in store.polls

    async def test_missing_poll_denied(self, actions, provider, owner):
        provider.sign_in_as(owner)

        result = await actions.delete_poll(str(uuid.uuid4()))

        assert result.error == MSG_PERMISSION_DENIED

    async def test_requires_login(self, actions, provider, poll):
        provider.session = None
        assert (await actions.delete_poll(poll.id)).error == MSG_LOGIN_REQUIRED_DELETE

    async def test_rate_limited(self, actions, provider, store, owner):
        provider.sign_in_as(owner)
        ids = [str(uuid.uuid4()) for _ in range(16)]

        results = [await actions.delete_poll(poll_id) for poll_id in ids]

        assert results[-1].error == MSG_DELETE_RATE_LIMITED
        assert all(r.error == MSG_PERMISSION_DENIED for r in results[:15])


class TestWithProvider:
    async def test_rebinds_caller(self, actions, provider, voter, poll, store):
        other = type(provider)()
        other.sign_in_as(voter)

        bound = actions.with_provider(other)
        await bound.submit_vote(poll.id, poll.options[0].id)

        assert bound.store is actions.store
        assert store.votes[0][2] == voter.id
