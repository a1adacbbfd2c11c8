"""Tests for the FastAPI form boundary."""

import json
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient

from pollguard.api.server import create_api_app, session_from_cookies
from pollguard.auth.gotrue import GoTrueIdentityProvider
from pollguard.config import create_test_config
from pollguard.polls.actions import PollActions
from pollguard.polls.store import InMemoryPollStore
from pollguard.security.audit import (
    InMemorySecurityEventStorage,
    SecurityEventLogger,
    SecurityEventType,
)
from pollguard.security.authorization import AuthorizationChecker
from pollguard.security.csrf import CsrfTokenManager
from pollguard.security.kv_store import InMemoryKeyValueStore
from pollguard.security.rate_limiter import RateLimiter
from pollguard.utils.constants import (
    ACCESS_TOKEN_COOKIE,
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    MSG_CSRF_FAILED,
    MSG_INVALID_POLL_ID,
    MSG_PERMISSION_DENIED,
    MSG_PROVIDER_UNAVAILABLE,
    MSG_SESSION_INVALID,
    MSG_SESSION_REFRESH_FAILED,
    REFRESH_TOKEN_COOKIE,
)

ADMIN_ID = "00000000-0000-4000-8000-00000000a0a0"
PASSWORD = "C0rrect!horse"


class FakeGoTrue:
    """Minimal GoTrue REST API served through httpx.MockTransport."""

    def __init__(self):
        self.users = {}
        self.access_tokens = {}
        self.refresh_tokens = {}
        self.recovery_hashes = {}
        self.unavailable = False
        self.add_user("admin@example.com", PASSWORD, user_id=ADMIN_ID)

    def add_user(self, email, password, user_id=None, metadata=None):
        user = {
            "id": user_id or str(uuid.uuid4()),
            "email": email,
            "password": password,
            "user_metadata": metadata or {},
        }
        self.users[email] = user
        return user

    def _public(self, user):
        return {k: v for k, v in user.items() if k != "password"}

    def _tokens(self, user):
        access, refresh = f"at-{uuid.uuid4()}", f"rt-{uuid.uuid4()}"
        self.access_tokens[access] = user["email"]
        self.refresh_tokens[refresh] = user["email"]
        return httpx.Response(
            200,
            json={
                "access_token": access,
                "refresh_token": refresh,
                "expires_in": 3600,
                "user": self._public(user),
            },
        )

    def _bearer_user(self, request):
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        email = self.access_tokens.get(token)
        return self.users.get(email) if email else None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/auth/v1")
        body = json.loads(request.content) if request.content else {}

        if self.unavailable:
            return httpx.Response(503, text="upstream connect error")

        if path == "/token" and request.url.params["grant_type"] == "password":
            user = self.users.get(body["email"])
            if user is None or user["password"] != body["password"]:
                return httpx.Response(
                    400,
                    json={
                        "error_code": "invalid_credentials",
                        "msg": "Invalid login credentials",
                    },
                )
            return self._tokens(user)

        if path == "/token":
            email = self.refresh_tokens.pop(body["refresh_token"], None)
            if email is None:
                return httpx.Response(
                    400,
                    json={
                        "error_code": "refresh_token_not_found",
                        "msg": "Invalid Refresh Token",
                    },
                )
            return self._tokens(self.users[email])

        if path == "/signup":
            if body["email"] in self.users:
                return httpx.Response(
                    422,
                    json={
                        "error_code": "user_already_exists",
                        "msg": "User already registered",
                    },
                )
            user = self.add_user(body["email"], body["password"], metadata=body["data"])
            return self._tokens(user)

        if path == "/logout":
            token = request.headers["Authorization"].removeprefix("Bearer ")
            self.access_tokens.pop(token, None)
            return httpx.Response(204)

        if path == "/recover":
            if body["email"] in self.users:
                self.recovery_hashes[f"hash-{uuid.uuid4()}"] = body["email"]
            return httpx.Response(200, json={})

        if path == "/verify":
            email = self.recovery_hashes.pop(body["token_hash"], None)
            if email is None:
                return httpx.Response(
                    403, json={"msg": "Token has expired or is invalid"}
                )
            return self._tokens(self.users[email])

        if path == "/user":
            user = self._bearer_user(request)
            if user is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            if request.method == "PUT":
                user.update(body)
            return httpx.Response(200, json=self._public(user))

        return httpx.Response(404, json={"msg": "not found"})


@pytest.fixture
def gotrue():
    return FakeGoTrue()


@pytest.fixture
def components(gotrue):
    settings = create_test_config(admin_user_ids=ADMIN_ID)
    kv_store = InMemoryKeyValueStore()
    event_storage = InMemorySecurityEventStorage()
    audit = SecurityEventLogger(event_storage)
    rate_limiter = RateLimiter.from_settings(settings, kv_store, audit)
    csrf = CsrfTokenManager(kv_store)
    poll_store = InMemoryPollStore()
    provider = GoTrueIdentityProvider.from_settings(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(gotrue)),
    )
    authorization = AuthorizationChecker(poll_store, audit=audit)
    return {
        "config": settings,
        "key_value_store": kv_store,
        "event_storage": event_storage,
        "audit": audit,
        "rate_limiter": rate_limiter,
        "csrf": csrf,
        "poll_store": poll_store,
        "provider": provider,
        "authorization": authorization,
        "poll_actions": PollActions(
            poll_store, provider, rate_limiter, authorization, csrf, audit
        ),
        "db_manager": None,
    }


@pytest.fixture
def client(components):
    app = create_api_app(components, components["config"])
    with TestClient(app) as client:
        yield client


def fetch_token(client) -> str:
    return client.get("/csrf").json()["csrf_token"]


def post_form(client, url, data=None):
    """Submit a form with a fresh CSRF token."""
    form = dict(data or {})
    form["csrf_token"] = fetch_token(client)
    return client.post(url, data=form)


def login(client, email="admin@example.com", password=PASSWORD):
    return post_form(client, "/auth/login", {"email": email, "password": password})


def register(client, email):
    return post_form(
        client,
        "/auth/register",
        {"email": email, "password": PASSWORD, "name": "Voter"},
    )


class TestBasics:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": True}

    def test_csrf_issues_context_cookie(self, client):
        response = client.get("/csrf")

        token = response.json()["csrf_token"]
        assert response.headers[CSRF_HEADER_NAME] == token
        assert client.cookies.get(CSRF_COOKIE_NAME)

    def test_context_cookie_is_reused(self, client):
        client.get("/csrf")
        context_id = client.cookies.get(CSRF_COOKIE_NAME)

        client.get("/csrf")

        assert client.cookies.get(CSRF_COOKIE_NAME) == context_id

    def test_session_from_cookies(self):
        session = session_from_cookies(
            {
                ACCESS_TOKEN_COOKIE: "at",
                REFRESH_TOKEN_COOKIE: "rt",
                "pollguard_expires": "not-a-number",
            }
        )
        assert session.access_token == "at"
        assert session.refresh_token == "rt"
        assert session.expires_at == 0.0
        assert session_from_cookies({}) is None


class TestAuthEndpoints:
    def test_login_requires_csrf_token(self, client):
        client.get("/csrf")

        response = client.post(
            "/auth/login", data={"email": "admin@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["error"] == MSG_CSRF_FAILED
        assert ACCESS_TOKEN_COOKIE not in client.cookies

    def test_login_sets_cookies_and_rotates_token(self, client):
        token = fetch_token(client)

        response = client.post(
            "/auth/login",
            data={
                "email": "admin@example.com",
                "password": PASSWORD,
                "csrf_token": token,
            },
        )

        body = response.json()
        assert body["error"] is None
        assert body["user"]["id"] == ADMIN_ID
        assert "access_token" not in json.dumps(body["session"])
        assert body["csrf_token"] != token
        assert response.headers[CSRF_HEADER_NAME] == body["csrf_token"]
        assert client.cookies.get(ACCESS_TOKEN_COOKIE)

        replay = client.post(
            "/auth/reset-password",
            data={"email": "admin@example.com", "csrf_token": token},
        )
        assert replay.json()["error"] == MSG_CSRF_FAILED

    def test_token_in_header(self, client):
        token = fetch_token(client)

        response = client.post(
            "/auth/reset-password",
            data={"email": "ghost@example.com"},
            headers={CSRF_HEADER_NAME: token},
        )

        body = response.json()
        assert body["email_sent"] is True
        assert body["error"] is None
        assert body["csrf_token"] not in (None, token)

    def test_wrong_password_hint(self, client):
        response = login(client, password="Wr0ng!pass")
        assert response.json()["error"] == (
            "Invalid email or password. 4 attempts remaining"
        )

    def test_register_and_session(self, client):
        response = register(client, "new@example.com")

        assert response.json()["error"] is None
        assert response.json()["user"]["metadata"] == {
            "full_name": "Voter",
            "username": "new",
        }

        session = client.get("/auth/session").json()
        assert session["valid"] is True
        assert session["user"]["email"] == "new@example.com"

    def test_session_without_cookie(self, client):
        assert client.get("/auth/session").json() == {
            "valid": False,
            "user": None,
            "error": MSG_SESSION_INVALID,
        }

    def test_logout_clears_session(self, client):
        login(client)

        response = post_form(client, "/auth/logout", {"scope": "global"})

        assert response.json()["success"] is True
        assert ACCESS_TOKEN_COOKIE not in client.cookies
        assert client.get("/auth/session").json()["valid"] is False

    def test_refresh(self, client):
        login(client)
        old_access = client.cookies.get(ACCESS_TOKEN_COOKIE)

        response = client.post("/auth/refresh")

        assert response.json()["error"] is None
        assert client.cookies.get(ACCESS_TOKEN_COOKIE) != old_access
        assert client.get("/auth/session").json()["valid"] is True

    def test_refresh_outage_keeps_session(self, client, gotrue):
        login(client)
        access = client.cookies.get(ACCESS_TOKEN_COOKIE)
        refresh = client.cookies.get(REFRESH_TOKEN_COOKIE)
        gotrue.unavailable = True

        response = client.post("/auth/refresh")

        assert response.json()["error"] == MSG_PROVIDER_UNAVAILABLE
        assert "set-cookie" not in response.headers
        assert client.cookies.get(ACCESS_TOKEN_COOKIE) == access
        assert client.cookies.get(REFRESH_TOKEN_COOKIE) == refresh

        gotrue.unavailable = False
        assert client.post("/auth/refresh").json()["error"] is None

    def test_rejected_refresh_clears_session(self, client, gotrue):
        login(client)
        gotrue.refresh_tokens.clear()

        response = client.post("/auth/refresh")

        assert response.json()["error"] == MSG_SESSION_REFRESH_FAILED
        assert REFRESH_TOKEN_COOKIE not in client.cookies
        assert ACCESS_TOKEN_COOKIE not in client.cookies

    def test_password_reset_flow(self, client, gotrue):
        reset = post_form(client, "/auth/reset-password", {"email": "admin@example.com"})
        assert reset.json()["email_sent"] is True
        token_hash = next(iter(gotrue.recovery_hashes))

        response = post_form(
            client,
            "/auth/update-password",
            {"token": token_hash, "password": "N3w!password"},
        )

        assert response.json()["verified"] is True
        assert gotrue.users["admin@example.com"]["password"] == "N3w!password"
        assert login(client, password="N3w!password").json()["error"] is None


class TestPollEndpoints:
    def create(self, client, question="Tea or coffee?", options=("Tea", "Coffee")):
        return post_form(
            client, "/polls", {"question": question, "options": list(options)}
        )

    def test_create_requires_login(self, client):
        response = self.create(client)
        assert response.json()["error"] == "You must be logged in to create a poll."

    def test_create_view_and_vote(self, client, components):
        register(client, "owner@example.com")
        poll_id = self.create(client).json()["poll_id"]

        view = client.get(f"/polls/{poll_id}").json()
        assert view["error"] is None
        assert view["poll"]["question"] == "Tea or coffee?"
        option_id = view["poll"]["options"][0]["id"]
        assert view["votes"] == {o["id"]: 0 for o in view["poll"]["options"]}

        first = post_form(client, f"/polls/{poll_id}/vote", {"option_id": option_id})
        second = post_form(client, f"/polls/{poll_id}/vote", {"option_id": option_id})

        assert first.json()["success"] is True
        assert second.json()["error"] == "You have already voted on this poll"
        assert client.get(f"/polls/{poll_id}").json()["votes"][option_id] == 1

    def test_anonymous_vote(self, client, components):
        register(client, "owner@example.com")
        poll_id = self.create(client).json()["poll_id"]
        option_id = client.get(f"/polls/{poll_id}").json()["poll"]["options"][1]["id"]
        post_form(client, "/auth/logout")

        response = post_form(client, f"/polls/{poll_id}/vote", {"option_id": option_id})

        assert response.json()["success"] is True
        assert components["poll_store"].votes[0][2] is None

    def test_unknown_poll(self, client):
        assert client.get("/polls/not-a-uuid").json()["error"] == MSG_INVALID_POLL_ID
        assert (
            client.get(f"/polls/{uuid.uuid4()}").json()["error"] == MSG_INVALID_POLL_ID
        )

    def test_only_owner_can_update_or_delete(self, client, components):
        register(client, "owner@example.com")
        poll_id = self.create(client).json()["poll_id"]
        post_form(client, "/auth/logout")
        register(client, "intruder@example.com")

        update = post_form(
            client,
            f"/polls/{poll_id}/update",
            {"question": "Hijacked?", "options": ["Yes", "No"]},
        )
        delete = post_form(client, f"/polls/{poll_id}/delete")

        assert update.json()["error"] == MSG_PERMISSION_DENIED
        assert delete.json()["error"] == MSG_PERMISSION_DENIED
        assert poll_id in components["poll_store"].polls

    def test_owner_updates_and_deletes(self, client, components):
        register(client, "owner@example.com")
        poll_id = self.create(client).json()["poll_id"]

        update = post_form(
            client,
            f"/polls/{poll_id}/update",
            {"question": "Tea, coffee or juice?", "options": ["Tea", "Coffee", "Juice"]},
        )
        assert update.json()["success"] is True
        assert len(client.get(f"/polls/{poll_id}").json()["poll"]["options"]) == 3

        delete = post_form(client, f"/polls/{poll_id}/delete")
        assert delete.json()["success"] is True
        assert poll_id not in components["poll_store"].polls


class TestAdminStats:
    def test_requires_session(self, client):
        assert client.get("/admin/security/stats").status_code == 401

    def test_non_admin_forbidden(self, client, components):
        register(client, "new@example.com")

        response = client.get("/admin/security/stats")

        assert response.status_code == 403
        events = components["event_storage"].events
        assert events[-1].event_type == SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT

    def test_admin_reads_stats(self, client):
        login(client, password="Wr0ng!pass")
        login(client)

        response = client.get("/admin/security/stats", params={"timeframe": "hour"})

        assert response.status_code == 200
        stats = response.json()
        assert stats["timeframe"] == "hour"
        assert stats["by_type"]["login_failed"] == 1
        assert stats["by_type"]["login_success"] == 1

    def test_unknown_timeframe(self, client):
        login(client)
        response = client.get("/admin/security/stats", params={"timeframe": "year"})
        assert response.status_code == 400
