"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Every authenticated request goes through the same chain:
  1. Read the everglass.sid cookie and verify its signature.
  2. Resolve the session through AuthService (rolling expiry refresh).
  3. Re-issue the cookie so the browser's max-age follows the server expiry.

get_current_user() is the base dependency. FastAPI caches it per request, so
get_permissions() and require_password_current() reuse the same resolution.

require_password_current() is what business routes depend on: it refuses
sessions whose user still has to replace a first-login or reset password.
Only /auth/me, /auth/logout, and /auth/change-password accept such sessions.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request, Response

from auth.models import User, UserPermissions
from auth.permissions import derive_permissions
from auth.service import AuthService, password_change_reason
from core.config import SESSION_COOKIE_NAME
from core.errors import not_authenticated, password_change_required


def set_session_cookie(request: Request, response: Response, session_id: str) -> None:
    """Attach the signed session cookie to response.

    httponly + samesite=lax always; secure only in production so the dev
    server works over plain http.
    """
    app_state = request.app.state
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=app_state.cookie_signer.sign(session_id),
        max_age=app_state.auth.config.session_timeout_seconds,
        httponly=True,
        samesite="lax",
        secure=app_state.settings.is_production,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")


def read_session_id(request: Request) -> str | None:
    """Return the verified session id from the cookie, or None."""
    raw = request.cookies.get(SESSION_COOKIE_NAME)
    if not raw:
        return None
    return request.app.state.cookie_signer.unsign(raw)


def get_current_user(request: Request, response: Response) -> User:
    """Require a live session. Raises NOT_AUTHENTICATED / SESSION_EXPIRED.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    session_id = read_session_id(request)
    if session_id is None:
        raise not_authenticated()
    service: AuthService = request.app.state.auth
    user, record = service.resolve_session(session_id)
    request.state.session = record
    set_session_cookie(request, response, record.id)
    return user


def require_password_current(user: User = Depends(get_current_user)) -> User:
    """Require a session whose user is not pending a password change."""
    reason = password_change_reason(user)
    if reason is not None:
        raise password_change_required(reason)
    return user


def get_permissions(request: Request, user: User = Depends(get_current_user)) -> UserPermissions:
    """Derive the caller's capabilities against the current organization tree."""
    return derive_permissions(user, request.app.state.crm.get_org_directory())
