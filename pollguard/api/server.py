"""FastAPI form boundary.

Every form endpoint answers HTTP 200 with an ``{error: str | null, ...}``
body; failures never surface as exceptions or status codes. Sessions
travel in http-only cookies and each request gets its own provider
bound to the caller's session.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ..auth.gotrue import GoTrueIdentityProvider
from ..auth.orchestrator import AuthOrchestrator
from ..auth.provider import AuthSession
from ..config.settings import Settings
from ..polls.actions import PollActions
from ..security.audit import RequestContext, SecurityEventLogger
from ..security.csrf import CsrfSubmission, CsrfTokenManager
from ..storage.database import DatabaseManager
from ..utils.constants import (
    ACCESS_TOKEN_COOKIE,
    APP_DESCRIPTION,
    APP_NAME,
    CSRF_COOKIE_NAME,
    CSRF_FORM_FIELD,
    CSRF_HEADER_NAME,
    MSG_INVALID_POLL_ID,
    REFRESH_COOKIE_MAX_AGE_SECONDS,
    REFRESH_TOKEN_COOKIE,
    SESSION_EXPIRES_COOKIE,
)

logger = structlog.get_logger()


def _form_value(form: Any, name: str) -> str:
    value = form.get(name)
    return value if isinstance(value, str) else ""


def _form_list(form: Any, name: str) -> List[str]:
    return [value for value in form.getlist(name) if isinstance(value, str)]


def session_from_cookies(cookies: Dict[str, str]) -> Optional[AuthSession]:
    """Rebuild the caller's provider session from its cookies."""
    access_token = cookies.get(ACCESS_TOKEN_COOKIE)
    if not access_token:
        return None
    try:
        expires_at = float(cookies.get(SESSION_EXPIRES_COOKIE) or 0)
    except ValueError:
        expires_at = 0.0
    return AuthSession(
        access_token=access_token,
        refresh_token=cookies.get(REFRESH_TOKEN_COOKIE) or "",
        expires_at=expires_at,
    )


def create_api_app(components: Dict[str, Any], settings: Settings) -> FastAPI:
    """Create the FastAPI application."""
    provider: GoTrueIdentityProvider = components["provider"]
    csrf: CsrfTokenManager = components["csrf"]
    audit: SecurityEventLogger = components["audit"]
    poll_actions: PollActions = components["poll_actions"]
    db_manager: Optional[DatabaseManager] = components.get("db_manager")

    app = FastAPI(
        title=APP_NAME,
        description=APP_DESCRIPTION,
        version="0.1.0",
        docs_url="/docs" if settings.development_mode else None,
        redoc_url=None,
    )

    def request_provider(request: Request) -> GoTrueIdentityProvider:
        return provider.with_session(session_from_cookies(dict(request.cookies)))

    def orchestrator_for(request: Request) -> AuthOrchestrator:
        return AuthOrchestrator(
            request_provider(request),
            components["rate_limiter"],
            csrf,
            audit,
            settings,
            store=components["key_value_store"],
        )

    def context_for(request: Request) -> RequestContext:
        return RequestContext.from_headers(request.headers)

    def submission_for(request: Request, form: Any) -> CsrfSubmission:
        token = _form_value(form, CSRF_FORM_FIELD) or request.headers.get(
            CSRF_HEADER_NAME
        )
        return CsrfSubmission(
            context_id=request.cookies.get(CSRF_COOKIE_NAME), token=token or None
        )

    def set_cookie(response: JSONResponse, name: str, value: str, max_age: int):
        response.set_cookie(
            name,
            value,
            max_age=max_age,
            httponly=True,
            samesite="lax",
            secure=settings.secure_cookies,
            path="/",
        )

    def form_response(
        body: Dict[str, Any],
        submission: Optional[CsrfSubmission] = None,
        session: Optional[AuthSession] = None,
        clear_session: bool = False,
    ) -> JSONResponse:
        rotated = submission.rotated_token if submission else None
        if rotated:
            body["csrf_token"] = rotated
        response = JSONResponse(body)
        if rotated:
            response.headers[CSRF_HEADER_NAME] = rotated

        if session is not None:
            max_age = max(int(session.time_to_expiry()), 0)
            set_cookie(response, ACCESS_TOKEN_COOKIE, session.access_token, max_age)
            set_cookie(
                response, SESSION_EXPIRES_COOKIE, str(int(session.expires_at)), max_age
            )
            # The refresh token outlives the access token.
            set_cookie(
                response,
                REFRESH_TOKEN_COOKIE,
                session.refresh_token,
                REFRESH_COOKIE_MAX_AGE_SECONDS,
            )
        elif clear_session:
            for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, SESSION_EXPIRES_COOKIE):
                response.delete_cookie(name, path="/")
        return response

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        database_ok = await db_manager.health_check() if db_manager else True
        return {"status": "ok" if database_ok else "degraded", "database": database_ok}

    @app.get("/csrf")
    async def issue_csrf_token(request: Request) -> JSONResponse:
        """Issue a token bound to the browser-context cookie."""
        context_id = request.cookies.get(CSRF_COOKIE_NAME) or csrf.new_context_id()
        token = await csrf.issue_token(context_id)
        response = JSONResponse({"csrf_token": token})
        response.headers[CSRF_HEADER_NAME] = token
        set_cookie(response, CSRF_COOKIE_NAME, context_id, csrf.ttl_seconds)
        return response

    @app.post("/auth/login")
    async def login(request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await orchestrator_for(request).sign_in(
            _form_value(form, "email"),
            _form_value(form, "password"),
            csrf=submission,
            context=context_for(request),
        )
        return form_response(result.to_dict(), submission, session=result.session)

    @app.post("/auth/register")
    async def register(request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await orchestrator_for(request).sign_up(
            _form_value(form, "email"),
            _form_value(form, "password"),
            _form_value(form, "name"),
            csrf=submission,
            context=context_for(request),
        )
        return form_response(result.to_dict(), submission, session=result.session)

    @app.post("/auth/logout")
    async def logout(request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await orchestrator_for(request).sign_out(
            scope=_form_value(form, "scope") or "local",
            csrf=submission,
            context=context_for(request),
        )
        return form_response(
            result.to_dict(), submission, clear_session=result.success
        )

    @app.post("/auth/reset-password")
    async def reset_password(request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await orchestrator_for(request).request_password_reset(
            _form_value(form, "email"),
            csrf=submission,
            context=context_for(request),
        )
        return form_response(result.to_dict(), submission)

    @app.post("/auth/update-password")
    async def update_password(request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await orchestrator_for(request).complete_password_reset(
            _form_value(form, "token"),
            _form_value(form, "password"),
            csrf=submission,
            context=context_for(request),
        )
        return form_response(result.to_dict(), submission)

    @app.post("/auth/refresh")
    async def refresh(request: Request) -> JSONResponse:
        result = await orchestrator_for(request).refresh_session()
        return form_response(
            result.to_dict(),
            session=result.session,
            clear_session=result.error is not None and not result.retryable,
        )

    @app.get("/auth/session")
    async def current_session(request: Request) -> Dict[str, Any]:
        result = await orchestrator_for(request).validate_session(
            request.cookies.get(ACCESS_TOKEN_COOKIE)
        )
        return result.to_dict()

    @app.post("/polls")
    async def create_poll(request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await poll_actions.with_provider(request_provider(request)).create_poll(
            _form_value(form, "question"),
            _form_list(form, "options"),
            csrf=submission,
            context=context_for(request),
        )
        return form_response(result.to_dict(), submission)

    @app.get("/polls/{poll_id}")
    async def get_poll(poll_id: str) -> Dict[str, Any]:
        store = components["poll_store"]
        poll = None
        if poll_actions.validator.is_valid_id(poll_id):
            poll = await store.get_poll(poll_id)
        if poll is None:
            return {"poll": None, "votes": {}, "error": MSG_INVALID_POLL_ID}
        return {
            "poll": poll.to_dict(),
            "votes": await store.get_vote_counts(poll_id),
            "error": None,
        }

    @app.post("/polls/{poll_id}/vote")
    async def vote(poll_id: str, request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await poll_actions.with_provider(request_provider(request)).submit_vote(
            poll_id,
            _form_value(form, "option_id"),
            csrf=submission,
            context=context_for(request),
        )
        return form_response(result.to_dict(), submission)

    @app.post("/polls/{poll_id}/update")
    async def update_poll(poll_id: str, request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await poll_actions.with_provider(request_provider(request)).update_poll(
            poll_id,
            _form_value(form, "question"),
            _form_list(form, "options"),
            csrf=submission,
            context=context_for(request),
        )
        return form_response(result.to_dict(), submission)

    @app.post("/polls/{poll_id}/delete")
    async def delete_poll(poll_id: str, request: Request) -> JSONResponse:
        form = await request.form()
        submission = submission_for(request, form)
        result = await poll_actions.with_provider(request_provider(request)).delete_poll(
            poll_id, csrf=submission, context=context_for(request)
        )
        return form_response(result.to_dict(), submission)

    @app.get("/admin/security/stats")
    async def security_stats(request: Request, timeframe: str = "day") -> Dict[str, Any]:
        """Security event statistics for administrators."""
        validation = await orchestrator_for(request).validate_session(
            request.cookies.get(ACCESS_TOKEN_COOKIE)
        )
        if not validation.valid or validation.user is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        if validation.user.id not in (settings.admin_user_ids or []):
            await audit.log_unauthorized_access(
                "security_stats",
                user_id=validation.user.id,
                context=context_for(request),
            )
            raise HTTPException(status_code=403, detail="Forbidden")

        try:
            stats = await audit.get_security_event_stats(timeframe)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        logger.info(
            "Security statistics served",
            user_id=validation.user.id,
            timeframe=timeframe,
        )
        return stats

    return app


async def run_api_server(components: Dict[str, Any], settings: Settings) -> None:
    """Run the FastAPI server using uvicorn."""
    import uvicorn

    app = create_api_app(components, settings)

    config = uvicorn.Config(
        app=app,
        host=settings.api_server_host,
        port=settings.api_server_port,
        log_level="info" if not settings.debug else "debug",
    )
    server = uvicorn.Server(config)
    await server.serve()
