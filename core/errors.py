"""
core/errors.py -- Closed error taxonomy for the Everglass API.

Every expected failure (bad credentials, lockout, missing permission, invalid
input) is an AppError tagged with an ErrorKind. The kind fixes the machine
code and HTTP status through _ERROR_TABLE; the message is rendered from the
parameters the caller supplies.

Construction:
  AppError.of(ErrorKind.ACCOUNT_LOCKED, locked_until=until)   -- generic factory
  account_locked(locked_until=until)                          -- named shortcut

Propagation: raise anywhere below the HTTP layer; api/main.py catches AppError
once and serializes it with to_dict(). Errors outside this taxonomy are bugs
and surface as a generic 500.

Layer rule: no imports from api/, auth/, or crm/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional


@dataclass(frozen=True)
class FieldError:
    """One failed rule on one input field."""

    field: str
    message: str


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    SESSION_EXPIRED = "session_expired"
    NOT_AUTHENTICATED = "not_authenticated"
    MAX_SESSIONS_REACHED = "max_sessions_reached"
    PASSWORD_CHANGE_REQUIRED = "password_change_required"
    INVALID_ROLE = "invalid_role"
    INVALID_LEVEL = "invalid_level"
    INSUFFICIENT_ROLE = "insufficient_role"
    CENTER_ACCESS_DENIED = "center_access_denied"
    FRANCHISE_ACCESS_DENIED = "franchise_access_denied"
    FORBIDDEN = "forbidden"
    STATS_ACCESS_DENIED = "stats_access_denied"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


# ---------------------------------------------------------------------------
# Message templates
#
# Each renderer receives the caller's parameters (absent ones are None) and
# returns the human-readable message.
# ---------------------------------------------------------------------------


def _invalid_credentials(remaining_attempts: Optional[int] = None) -> str:
    if remaining_attempts is not None:
        return f"Invalid username or password. {remaining_attempts} attempt(s) remaining."
    return "Invalid username or password."


def _account_locked(lockout_duration_minutes: Optional[int] = None, locked_until: Optional[datetime] = None) -> str:
    if locked_until is not None:
        return f"Account locked after too many failed attempts. Try again after {locked_until.strftime('%H:%M')}."
    if lockout_duration_minutes is not None:
        return f"Account locked for {lockout_duration_minutes} minute(s)."
    return "Account temporarily locked after too many failed attempts."


def _account_inactive(reason: Optional[str] = None) -> str:
    if reason:
        return f"Your account has been deactivated: {reason}"
    return "Your account has been deactivated. Contact an administrator."


def _session_expired(inactive_minutes: Optional[int] = None) -> str:
    if inactive_minutes is not None:
        return f"Your session was inactive for {inactive_minutes} minutes and has expired. Please log in again."
    return "Your session has expired after a period of inactivity. Please log in again."


def _not_authenticated() -> str:
    return "Authentication required. Please log in."


def _max_sessions(max_sessions: int, current_sessions: Optional[int] = None) -> str:
    return f"Limit of {max_sessions} active session(s) reached. Log out from another device to continue."


_PASSWORD_CHANGE_MESSAGES = {
    "first_login": "First login: please choose your personal password.",
    "admin_reset": "Your password has been reset. Please choose a new one.",
}


def _password_change_required(reason: str = "first_login") -> str:
    return _PASSWORD_CHANGE_MESSAGES.get(reason, _PASSWORD_CHANGE_MESSAGES["first_login"])


def _invalid_role(provided_role: Optional[str] = None) -> str:
    if provided_role:
        return f'Role "{provided_role}" is not recognized or not allowed for this action.'
    return "Invalid or unrecognized user role."


def _invalid_level(provided_level: Optional[str] = None) -> str:
    if provided_level:
        return f'Level "{provided_level}" is not recognized or not allowed for this action.'
    return "Invalid or unrecognized hierarchical level."


def _insufficient_role(required_roles: list[str], current_role: Optional[str] = None) -> str:
    roles = ", ".join(required_roles)
    if current_role:
        return f'Insufficient role. Your role "{current_role}" does not allow this action. Required roles: {roles}.'
    return f"Insufficient role for this action. Required roles: {roles}."


def _center_access_denied(center_id: Optional[int] = None, center_name: Optional[str] = None) -> str:
    if center_name:
        return f'You do not have access to center "{center_name}".'
    if center_id:
        return f"You do not have access to center #{center_id}."
    return "You do not have access to this center."


def _franchise_access_denied(franchise_id: Optional[int] = None, franchise_name: Optional[str] = None) -> str:
    if franchise_name:
        return f'You do not have access to franchise "{franchise_name}".'
    if franchise_id:
        return f"You do not have access to franchise #{franchise_id}."
    return "You do not have access to this franchise."


def _forbidden(action: Optional[str] = None, resource: Optional[str] = None) -> str:
    if action and resource:
        return f"You are not allowed to {action} on {resource}."
    if action:
        return f"You are not allowed to {action}."
    if resource:
        return f"You do not have access to {resource}."
    return "You are not allowed to perform this action."


_STATS_LABELS = {
    "center": "center",
    "franchise": "franchise",
    "global": "global",
    "employee": "employee",
}


def _stats_access_denied(stats_type: Optional[str] = None, target_id: Optional[int] = None) -> str:
    if stats_type:
        return f"You do not have access to {_STATS_LABELS.get(stats_type, stats_type)} statistics."
    return "You do not have access to these statistics."


def _validation_error(errors: list[FieldError]) -> str:
    return f"Invalid data: {', '.join(e.field for e in errors)}"


def _not_found(resource: Optional[str] = None, resource_id: Optional[Any] = None) -> str:
    if resource and resource_id is not None:
        return f"{resource} #{resource_id} not found."
    if resource:
        return f"{resource} not found."
    return "Resource not found."


def _conflict(field: Optional[str] = None, message: Optional[str] = None) -> str:
    if message:
        return message
    if field:
        return f"A record with this {field} already exists."
    return "The request conflicts with an existing record."


@dataclass(frozen=True)
class _KindSpec:
    code: str
    status_code: int
    render: Callable[..., str]


_ERROR_TABLE: dict[ErrorKind, _KindSpec] = {
    ErrorKind.INVALID_CREDENTIALS: _KindSpec("INVALID_CREDENTIALS", 401, _invalid_credentials),
    ErrorKind.ACCOUNT_LOCKED: _KindSpec("ACCOUNT_LOCKED", 423, _account_locked),
    ErrorKind.ACCOUNT_INACTIVE: _KindSpec("ACCOUNT_INACTIVE", 403, _account_inactive),
    ErrorKind.SESSION_EXPIRED: _KindSpec("SESSION_EXPIRED", 401, _session_expired),
    ErrorKind.NOT_AUTHENTICATED: _KindSpec("NOT_AUTHENTICATED", 401, _not_authenticated),
    ErrorKind.MAX_SESSIONS_REACHED: _KindSpec("MAX_SESSIONS_REACHED", 429, _max_sessions),
    ErrorKind.PASSWORD_CHANGE_REQUIRED: _KindSpec("PASSWORD_CHANGE_REQUIRED", 403, _password_change_required),
    ErrorKind.INVALID_ROLE: _KindSpec("INVALID_ROLE", 403, _invalid_role),
    ErrorKind.INVALID_LEVEL: _KindSpec("INVALID_LEVEL", 403, _invalid_level),
    ErrorKind.INSUFFICIENT_ROLE: _KindSpec("INSUFFICIENT_ROLE", 403, _insufficient_role),
    ErrorKind.CENTER_ACCESS_DENIED: _KindSpec("CENTER_ACCESS_DENIED", 403, _center_access_denied),
    ErrorKind.FRANCHISE_ACCESS_DENIED: _KindSpec("FRANCHISE_ACCESS_DENIED", 403, _franchise_access_denied),
    ErrorKind.FORBIDDEN: _KindSpec("FORBIDDEN", 403, _forbidden),
    ErrorKind.STATS_ACCESS_DENIED: _KindSpec("STATS_ACCESS_DENIED", 403, _stats_access_denied),
    ErrorKind.VALIDATION_ERROR: _KindSpec("VALIDATION_ERROR", 400, _validation_error),
    ErrorKind.NOT_FOUND: _KindSpec("NOT_FOUND", 404, _not_found),
    ErrorKind.CONFLICT: _KindSpec("CONFLICT", 409, _conflict),
}


def _to_detail(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Error types
# ---------------------------------------------------------------------------


class AppError(Exception):
    """An expected, operational failure with a fixed status and machine code."""

    is_operational = True

    def __init__(self, kind: ErrorKind, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        spec = _ERROR_TABLE[kind]
        self.kind = kind
        self.message = message
        self.code = spec.code
        self.status_code = spec.status_code
        self.details = details or None

    @classmethod
    def of(cls, kind: ErrorKind, **params: Any) -> "AppError":
        """Build the error for `kind`, rendering its message from `params`.

        Parameters passed as None are treated as absent and left out of
        details, so callers can forward optional values unconditionally.
        """
        if kind is ErrorKind.VALIDATION_ERROR:
            return ValidationFailed(params.get("errors") or [])
        present = {k: v for k, v in params.items() if v is not None}
        message = _ERROR_TABLE[kind].render(**present)
        details = {k: _to_detail(v) for k, v in present.items() if k != "message"}
        return cls(kind, message, details)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            error["details"] = self.details
        return {"success": False, "error": error}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code}, {self.message!r})"


class ValidationFailed(AppError):
    """Aggregated field errors. Serialized with the full error list."""

    def __init__(self, errors: Iterable[FieldError]) -> None:
        self.errors = list(errors)
        super().__init__(
            ErrorKind.VALIDATION_ERROR,
            _validation_error(self.errors),
            {"errors": [asdict(e) for e in self.errors]},
        )

    @classmethod
    def single_field(cls, field: str, message: str) -> "ValidationFailed":
        return cls([FieldError(field, message)])

    @classmethod
    def from_mapping(cls, errors: dict[str, str]) -> "ValidationFailed":
        return cls([FieldError(f, m) for f, m in errors.items()])

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "errors": [asdict(e) for e in self.errors],
            },
        }


# ---------------------------------------------------------------------------
# Named constructors
# ---------------------------------------------------------------------------


def invalid_credentials(remaining_attempts: Optional[int] = None) -> AppError:
    return AppError.of(ErrorKind.INVALID_CREDENTIALS, remaining_attempts=remaining_attempts)


def account_locked(
    lockout_duration_minutes: Optional[int] = None, locked_until: Optional[datetime] = None
) -> AppError:
    return AppError.of(
        ErrorKind.ACCOUNT_LOCKED, lockout_duration_minutes=lockout_duration_minutes, locked_until=locked_until
    )


def account_inactive(reason: Optional[str] = None) -> AppError:
    return AppError.of(ErrorKind.ACCOUNT_INACTIVE, reason=reason)


def session_expired(inactive_minutes: Optional[int] = None) -> AppError:
    return AppError.of(ErrorKind.SESSION_EXPIRED, inactive_minutes=inactive_minutes)


def not_authenticated() -> AppError:
    return AppError.of(ErrorKind.NOT_AUTHENTICATED)


def max_sessions_reached(max_sessions: int, current_sessions: Optional[int] = None) -> AppError:
    return AppError.of(ErrorKind.MAX_SESSIONS_REACHED, max_sessions=max_sessions, current_sessions=current_sessions)


def password_change_required(reason: str = "first_login") -> AppError:
    return AppError.of(ErrorKind.PASSWORD_CHANGE_REQUIRED, reason=reason)


def invalid_role(provided_role: Optional[str] = None) -> AppError:
    return AppError.of(ErrorKind.INVALID_ROLE, provided_role=provided_role)


def invalid_level(provided_level: Optional[str] = None) -> AppError:
    return AppError.of(ErrorKind.INVALID_LEVEL, provided_level=provided_level)


def insufficient_role(required_roles: list[str], current_role: Optional[str] = None) -> AppError:
    return AppError.of(ErrorKind.INSUFFICIENT_ROLE, required_roles=list(required_roles), current_role=current_role)


def center_access_denied(center_id: Optional[int] = None, center_name: Optional[str] = None) -> AppError:
    return AppError.of(ErrorKind.CENTER_ACCESS_DENIED, center_id=center_id, center_name=center_name)


def franchise_access_denied(franchise_id: Optional[int] = None, franchise_name: Optional[str] = None) -> AppError:
    return AppError.of(ErrorKind.FRANCHISE_ACCESS_DENIED, franchise_id=franchise_id, franchise_name=franchise_name)


def forbidden(action: Optional[str] = None, resource: Optional[str] = None) -> AppError:
    return AppError.of(ErrorKind.FORBIDDEN, action=action, resource=resource)


def stats_access_denied(stats_type: Optional[str] = None, target_id: Optional[int] = None) -> AppError:
    return AppError.of(ErrorKind.STATS_ACCESS_DENIED, stats_type=stats_type, target_id=target_id)


def not_found(resource: Optional[str] = None, resource_id: Optional[Any] = None) -> AppError:
    return AppError.of(ErrorKind.NOT_FOUND, resource=resource, resource_id=resource_id)


def conflict(field: Optional[str] = None, message: Optional[str] = None) -> AppError:
    return AppError.of(ErrorKind.CONFLICT, field=field, message=message)
