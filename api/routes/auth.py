"""
api/routes/auth.py -- Authentication, password, and employee management endpoints.

Routes:
  POST  /auth/login            -- password login; sets everglass.sid cookie
  POST  /auth/logout           -- destroys the session; clears the cookie
  GET   /auth/me               -- current user, session timestamps, permissions
  POST  /auth/change-password  -- replace own password; rotates sessions
  POST  /auth/reset-password   -- temporary password for another employee
  POST  /auth/users            -- create an employee
  GET   /auth/users            -- list employees in the caller's scope
  PATCH /auth/users/{id}       -- role / level / active changes

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Lockout, timing equalization, and session limits live in AuthService --
  this module only maps HTTP to the workflow.
  Cache-Control: no-store on login and password responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    EmployeeCreate,
    EmployeePatch,
    Envelope,
    ListEnvelope,
    LoginData,
    LoginRequest,
    MeData,
    PermissionsInfo,
    ResetPasswordRequest,
    SessionInfo,
    UserPublic,
)
from auth.dependencies import (
    clear_session_cookie,
    get_current_user,
    get_permissions,
    read_session_id,
    require_password_current,
    set_session_cookie,
)
from auth.models import User, UserPermissions
from auth.permissions import has_global_scope
from auth.service import AuthService
from core.errors import forbidden, password_change_required

# Auth policy:
# - POST  /auth/login:            public, rate limited
# - POST  /auth/logout:           optional session -- clearing a cookie needs no prior auth
# - GET   /auth/me:               session, even when a password change is pending
# - POST  /auth/change-password:  session, even when a password change is pending
# - POST  /auth/reset-password:   session + can_manage_employees (checked in AuthService)
# - POST  /auth/users:            session + can_manage_employees (checked in AuthService)
# - GET   /auth/users:            session + can_manage_employees
# - PATCH /auth/users/{id}:       session + admin/director (checked in AuthService)
router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    A user who must change their password still receives the cookie, but the
    body is PASSWORD_CHANGE_REQUIRED (403) so the client routes them to the
    change-password form.
    """
    service: AuthService = request.app.state.auth
    result = service.login(body.username, body.password)

    if result.password_change_reason is not None:
        err = password_change_required(result.password_change_reason)
        resp = JSONResponse(status_code=err.status_code, content=err.to_dict())
    else:
        data = LoginData(
            user=UserPublic.from_user(result.user),
            expires_at=SessionInfo.from_record(result.session).expires_at,
        )
        resp = JSONResponse(
            content=Envelope(data=data.model_dump(), message="Login successful.").model_dump(exclude_none=True)
        )
    set_session_cookie(request, resp, result.session.id)
    _no_store(resp)
    return resp


@router.post("/auth/logout")
def logout(request: Request, response: Response) -> dict:
    """Destroy the current session, if any, and clear the cookie."""
    session_id = read_session_id(request)
    if session_id is not None:
        request.app.state.auth.logout(session_id)
    clear_session_cookie(response)
    return Envelope(message="Logged out.").model_dump(exclude_none=True)


@router.get("/auth/me")
def me(
    request: Request,
    user: User = Depends(get_current_user),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    """Return the current user, their session timestamps, and permissions."""
    data = MeData(
        user=UserPublic.from_user(user),
        session=SessionInfo.from_record(request.state.session),
        permissions=PermissionsInfo.from_permissions(perms),
    )
    return Envelope(data=data.model_dump()).model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@router.post("/auth/change-password")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
) -> JSONResponse:
    """Replace the caller's password.

    Every existing session of the user is revoked; the response carries a
    cookie for the fresh session so this client stays logged in.
    """
    service: AuthService = request.app.state.auth
    session = service.change_password(user, body.current_password, body.new_password, body.confirm_password)
    resp = JSONResponse(
        content=Envelope(message="Password changed successfully.").model_dump(exclude_none=True)
    )
    set_session_cookie(request, resp, session.id)
    _no_store(resp)
    return resp


@router.post("/auth/reset-password")
def reset_password(
    request: Request,
    response: Response,
    body: ResetPasswordRequest,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    """Give another employee a temporary password they must change at next login."""
    service: AuthService = request.app.state.auth
    target = service.reset_password(user, perms, body.user_id, body.new_password)
    _no_store(response)
    return Envelope(
        data=UserPublic.from_user(target).model_dump(),
        message="Password reset. The employee must choose a new password at next login.",
    ).model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Employee management
# ---------------------------------------------------------------------------


@router.post("/auth/users", status_code=201)
def create_employee(
    request: Request,
    body: EmployeeCreate,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    """Create an employee account with a temporary password."""
    service: AuthService = request.app.state.auth
    created = service.create_employee(
        user,
        perms,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        password=body.password,
        role=body.role.value,
        level=body.level.value,
        username=body.username,
        phone=body.phone,
        site_id=body.site_id,
        franchise_id=body.franchise_id,
        center_id=body.center_id,
        hire_date=body.hire_date,
    )
    return Envelope(data=UserPublic.from_user(created).model_dump()).model_dump(exclude_none=True)


@router.get("/auth/users")
def list_employees(
    request: Request,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    """List the employees the caller may manage: everyone for global scope,
    otherwise the accounts attached to the caller's centers and franchises."""
    if not perms.can_manage_employees:
        raise forbidden("list employees")
    service: AuthService = request.app.state.auth
    if has_global_scope(user):
        users = service.users.list_users()
    else:
        users = service.users.list_users(
            center_ids=perms.accessible_center_ids,
            franchise_ids=perms.accessible_franchise_ids,
        )
    data = [UserPublic.from_user(u).model_dump() for u in users]
    return ListEnvelope(count=len(data), data=data).model_dump()


@router.patch("/auth/users/{user_id}")
def update_employee(
    request: Request,
    user_id: int,
    body: EmployeePatch,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    """Change an employee's role, level, attachment, or active status."""
    service: AuthService = request.app.state.auth
    updated = service.update_employee(
        user,
        perms,
        user_id,
        role=body.role.value if body.role is not None else None,
        level=body.level.value if body.level is not None else None,
        franchise_id=body.franchise_id,
        center_id=body.center_id,
        is_active=body.is_active,
    )
    return Envelope(data=UserPublic.from_user(updated).model_dump()).model_dump(exclude_none=True)
