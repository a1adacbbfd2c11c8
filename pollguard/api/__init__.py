"""HTTP form boundary for auth and poll actions."""

from .server import create_api_app, run_api_server, session_from_cookies

__all__ = ["create_api_app", "run_api_server", "session_from_cookies"]
