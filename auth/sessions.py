"""
auth/sessions.py -- Server-side session table behind the everglass.sid cookie.

Each row holds an opaque session id, a JSON payload (user_id, created_at,
last_activity), and an expiry timestamp in epoch seconds. The cookie carries
only the signed id (see auth/passwords.SessionCookieSigner).

Expiry is rolling: touch() pushes expires_at forward on every authenticated
request, so a session dies after `session_timeout_minutes` of inactivity, not
after a fixed lifetime. Expired rows are ignored by get() immediately and
physically removed by clean_expired(), which the app runs periodically.

Lookup by user:
  invalidate_user_sessions() and count_user_active_sessions() deserialize every
  row and compare payload["user_id"]. This is O(total sessions) -- the user id
  lives only inside the payload, not in an indexed column. Fine at the scale
  of one CRM's staff; revisit if the table grows into the tens of thousands.
  Malformed payloads are skipped, never fatal.

Layer rule: no imports from api/ or crm/.
"""

from __future__ import annotations

import json
import logging
import secrets
import time

from sqlalchemy import Column, Float, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from auth.models import SessionRecord
from core.config import get_settings
from core.db import make_engine

logger = logging.getLogger("everglass.auth.sessions")

_DEFAULT_TIMEOUT_SECONDS = 45 * 60

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("data", Text, nullable=False),  # JSON payload
    Column("expires_at", Float, nullable=False, index=True),  # epoch seconds
)


def _new_session_id() -> str:
    # 192 bits of entropy, URL-safe so it survives cookie encoding untouched.
    return secrets.token_urlsafe(24)


def _user_id_of(data) -> int | None:
    """Return the payload's user id only when it is a real integer.

    true, 1.9, and "1" are not user 1.
    """
    value = data["user_id"]
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _decode(row) -> SessionRecord | None:
    """Map a row to a SessionRecord, or None when the payload is unreadable."""
    try:
        data = json.loads(row.data)
        user_id = _user_id_of(data)
        if user_id is None:
            return None
        return SessionRecord(
            id=row.id,
            user_id=user_id,
            created_at=float(data["created_at"]),
            last_activity=float(data["last_activity"]),
            expires_at=float(row.expires_at),
        )
    except (ValueError, TypeError, KeyError):
        return None


def _payload_user_id(raw: str) -> int | None:
    try:
        return _user_id_of(json.loads(raw))
    except (ValueError, TypeError, KeyError):
        return None


class SessionStore:
    """Repository for server-side sessions.

    Usage:
        sessions = SessionStore(db_url, timeout_seconds=45 * 60)
        record = sessions.create(user_id=7)
        sessions.touch(record.id)          # on every authenticated request
        sessions.destroy(record.id)        # on logout
        sessions.clean_expired()           # periodically
    """

    def __init__(self, db_url: str | None = None, timeout_seconds: int = _DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, user_id: int) -> SessionRecord:
        now = time.time()
        record = SessionRecord(
            id=_new_session_id(),
            user_id=user_id,
            created_at=now,
            last_activity=now,
            expires_at=now + self.timeout_seconds,
        )
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(id=record.id, data=_encode(record), expires_at=record.expires_at)
            )
        return record

    def get(self, session_id: str) -> SessionRecord | None:
        """Return the live session, or None if missing, expired, or malformed."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        if row is None or row.expires_at <= time.time():
            return None
        return _decode(row)

    def touch(self, session_id: str) -> SessionRecord | None:
        """Record activity and push the expiry forward by the full timeout."""
        record = self.get(session_id)
        if record is None:
            return None
        now = time.time()
        record.last_activity = now
        record.expires_at = now + self.timeout_seconds
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.update()
                .where(_sessions.c.id == session_id)
                .values(data=_encode(record), expires_at=record.expires_at)
            )
        return record

    def destroy(self, session_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clean_expired(self) -> int:
        """Delete every expired session. Returns the number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < time.time()))
        if result.rowcount:
            logger.info("Removed %d expired session(s)", result.rowcount)
        return result.rowcount

    def invalidate_user_sessions(self, user_id: int) -> int:
        """Delete every session (live or expired) belonging to user_id."""
        with self.engine.begin() as conn:
            rows = conn.execute(_sessions.select()).fetchall()
            doomed = [row.id for row in rows if _payload_user_id(row.data) == user_id]
            if doomed:
                conn.execute(_sessions.delete().where(_sessions.c.id.in_(doomed)))
        return len(doomed)

    def count_user_active_sessions(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            rows = conn.execute(_sessions.select().where(_sessions.c.expires_at > time.time())).fetchall()
        return sum(1 for row in rows if _payload_user_id(row.data) == user_id)

    def close(self) -> None:
        self.engine.dispose()


def _encode(record: SessionRecord) -> str:
    return json.dumps(
        {
            "user_id": record.user_id,
            "created_at": record.created_at,
            "last_activity": record.last_activity,
        }
    )
