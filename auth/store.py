"""
auth/store.py -- SQLAlchemy Core persistence layer for employee accounts.

Pattern: Repository + Data Mapper (same as crm/store.py and auth/sessions.py).
UserStore is the repository; _row_to_user is the mapper. Route and workflow
code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  Two simultaneous failed logins for the same account are arbitrated by the
  database, not by application locks: increment_failed_attempts() performs
  "SET failed_login_attempts = failed_login_attempts + 1" and reads the new
  value inside one transaction, so neither increment is lost.

Layer rule: no imports from api/ or crm/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, or_, text
from sqlalchemy.engine import Engine

from auth.models import Level, Role, User
from core.config import get_settings
from core.db import make_engine, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("phone", String(30)),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default=Role.sales.value),
    Column("level", String(20), nullable=False, server_default=Level.center.value),
    Column("site_id", Integer),
    Column("franchise_id", Integer),
    Column("center_id", Integer),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("must_change_password", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),  # ISO 8601 UTC, NULL when not locked
    Column("last_login", String(32)),
    Column("password_changed_at", String(32)),
    Column("hire_date", String(10)),  # YYYY-MM-DD
    Column("created_at", String(32), nullable=False),
)

# Columns update_user() accepts. Lockout and login bookkeeping have dedicated
# methods so no route can reset a lock by accident.
_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "first_name",
        "last_name",
        "phone",
        "hashed_password",
        "role",
        "level",
        "site_id",
        "franchise_id",
        "center_id",
        "is_active",
        "must_change_password",
        "password_changed_at",
    }
)
_BOOL_FIELDS = ("is_active", "must_change_password")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///everglass.db")
        user_id = store.create_user(User(username="jean.dupont", ...))
        user = store.get_by_username("jean.dupont")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return (result or 0) > 0

    def username_exists(self, username: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().with_only_columns(_users.c.id).where(_users.c.username == username))
            return row.first() is not None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        center_ids: list[int] | None = None,
        franchise_ids: list[int] | None = None,
    ) -> list[User]:
        """Return users ordered by last name, first name.

        With both filters None every user is returned. Otherwise a user is
        included when its center is in center_ids or its franchise is in
        franchise_ids.
        """
        query = _users.select().order_by(_users.c.last_name, _users.c.first_name)
        if center_ids is not None or franchise_ids is not None:
            query = query.where(
                or_(
                    _users.c.center_id.in_(center_ids or []),
                    _users.c.franchise_id.in_(franchise_ids or []),
                )
            )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.select()
                .with_only_columns(func.count())
                .where((_users.c.role == Role.admin.value) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. The auth workflow turns that into a CONFLICT error.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    phone=user.phone,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    level=user.level,
                    site_id=user.site_id,
                    franchise_id=user.franchise_id,
                    center_id=user.center_id,
                    is_active=1 if user.is_active else 0,
                    must_change_password=1 if user.must_change_password else 0,
                    password_changed_at=user.password_changed_at,
                    hire_date=user.hire_date,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields. Returns False if user_id was not found.

        Raises ValueError on unknown field names.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if not fields:
            return False
        for name in _BOOL_FIELDS:
            if name in fields:
                fields[name] = 1 if fields[name] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def increment_failed_attempts(self, user_id: int) -> int:
        """Atomically add one failed attempt and return the new count."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
            )
            count = conn.execute(
                _users.select().with_only_columns(_users.c.failed_login_attempts).where(_users.c.id == user_id)
            ).scalar()
        return count or 0

    def lock_user(self, user_id: int, until: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(locked_until=until.isoformat()))

    def reset_login_state(self, user_id: int, stamp_login: bool = False) -> None:
        """Clear the failure counter and any lock; optionally stamp last_login."""
        values: dict = {"failed_login_attempts": 0, "locked_until": None}
        if stamp_login:
            values["last_login"] = now_iso()
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(**values))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # Rows written by other tools may lack an offset; treat them as UTC.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        hashed_password=row.hashed_password,
        role=row.role,
        level=row.level,
        site_id=row.site_id,
        franchise_id=row.franchise_id,
        center_id=row.center_id,
        is_active=bool(row.is_active),
        must_change_password=bool(row.must_change_password),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=_parse_ts(row.locked_until),
        last_login=row.last_login,
        password_changed_at=row.password_changed_at,
        hire_date=row.hire_date,
        created_at=row.created_at,
    )
