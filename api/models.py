"""
API request and response models for the Everglass REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
crm/models.py, which own the internal domain representation. Route handlers
map between the two.

Every JSON body uses the same envelope: {"success": true, "data": ...} on
success, {"success": false, "error": {...}} on failure (see core/errors.py).

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Level, Role, SessionRecord, User, UserPermissions
from crm.models import Client

# Coarse request-size cap only. bcrypt's 72-byte limit is a password policy
# rule in core/validation.py so it comes back as a field error.
_PASSWORD_MAX = 128


def _epoch_to_iso(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /auth/change-password.

    Only presence and size are checked here. The workflow reports policy
    failures for every field at once.
    """

    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(max_length=_PASSWORD_MAX)
    confirm_password: str = Field(max_length=_PASSWORD_MAX)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /auth/reset-password."""

    user_id: int = Field(ge=1)
    new_password: str = Field(max_length=_PASSWORD_MAX)


class EmployeeCreate(BaseModel):
    """Request body for POST /auth/users.

    username is optional: when omitted the workflow derives one from the
    names (jean.dupont, jean.dupont2, ...).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(max_length=_PASSWORD_MAX)
    role: Role
    level: Level
    username: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=30)
    site_id: Optional[int] = None
    franchise_id: Optional[int] = None
    center_id: Optional[int] = None
    hire_date: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")


class EmployeePatch(BaseModel):
    """Request body for PATCH /auth/users/{id}. All fields optional."""

    role: Optional[Role] = None
    level: Optional[Level] = None
    franchise_id: Optional[int] = None
    center_id: Optional[int] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserPublic(BaseModel):
    """Account fields safe to return to clients -- never the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    first_name: str
    last_name: str
    role: str
    level: str
    phone: Optional[str] = None
    site_id: Optional[int] = None
    franchise_id: Optional[int] = None
    center_id: Optional[int] = None
    is_active: bool
    must_change_password: bool
    last_login: Optional[str] = None
    hire_date: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            level=user.level,
            phone=user.phone,
            site_id=user.site_id,
            franchise_id=user.franchise_id,
            center_id=user.center_id,
            is_active=user.is_active,
            must_change_password=user.must_change_password,
            last_login=user.last_login,
            hire_date=user.hire_date,
            created_at=user.created_at,
        )


class SessionInfo(BaseModel):
    """Timestamps of the caller's session, ISO 8601 UTC."""

    model_config = ConfigDict(frozen=True)

    created_at: str
    last_activity: str
    expires_at: str

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionInfo":
        return cls(
            created_at=_epoch_to_iso(record.created_at),
            last_activity=_epoch_to_iso(record.last_activity),
            expires_at=_epoch_to_iso(record.expires_at),
        )


class PermissionsInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_manage_franchises: bool
    can_manage_centers: bool
    can_manage_employees: bool
    can_create_cases: bool
    can_edit_cases: bool
    can_delete_cases: bool
    can_view_all_cases: bool
    can_manage_stock: bool
    can_view_stats: bool
    can_view_all_stats: bool
    accessible_center_ids: list[int]
    accessible_franchise_ids: list[int]

    @classmethod
    def from_permissions(cls, perms: UserPermissions) -> "PermissionsInfo":
        return cls(**asdict(perms))


class LoginData(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserPublic
    expires_at: str


class MeData(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserPublic
    session: SessionInfo
    permissions: PermissionsInfo


class ClientOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    center_id: int
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_client(cls, client: Client) -> "ClientOut":
        return cls(**asdict(client))


class StatsData(BaseModel):
    """Client counts for one statistics scope."""

    model_config = ConfigDict(frozen=True)

    scope: str
    target_id: Optional[int] = None
    name: Optional[str] = None
    center_count: int
    client_count: int


class Envelope(BaseModel):
    """Success envelope: {"success": true, "data": ..., "message"?: ...}."""

    success: bool = True
    data: Optional[Any] = None
    message: Optional[str] = None


class ListEnvelope(BaseModel):
    """Success envelope for collections: {"success", "count", "data"}."""

    success: bool = True
    count: int
    data: list[Any]


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str
    database: str
    uptime: float
    timestamp: str
