"""
auth/passwords.py -- Password hashing and session cookie signing.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). The cost factor comes from
       AuthSecurityConfig.bcrypt_salt_rounds (12 in production). The dummy
       hash from make_dummy_hash() enables timing equalization in the login
       workflow so response time does not reveal whether a username exists.

  Session cookie: the cookie carries only the opaque session id, signed with
       SESSION_SECRET via itsdangerous. A tampered or foreign cookie fails
       signature verification and is treated as "no session" -- it never
       reaches the session table.

Layer rule: no imports from api/ or crm/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import bcrypt
from itsdangerous import BadSignature, Signer

from core.config import SESSION_COOKIE_NAME

logger = logging.getLogger("everglass.auth")

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt refuses (or, in old releases, truncates) input over 72 bytes;
    validate_password() rejects such passwords before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash is a mismatch, not a crash.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def make_dummy_hash(rounds: int = 12) -> str:
    """Return a throwaway hash at the given cost for timing equalization.

    The login workflow checks unknown usernames against it so the failure
    costs the same time as a wrong password. Build it once at startup with
    the same rounds as real hashes, otherwise the timing differs again.
    """
    return hash_password("everglass_timing_dummy", rounds=rounds)


# ---------------------------------------------------------------------------
# Session cookie signing
# ---------------------------------------------------------------------------


class SessionCookieSigner:
    """Sign and verify session ids for the everglass.sid cookie."""

    def __init__(self, secret: str) -> None:
        self._signer = Signer(secret, salt=SESSION_COOKIE_NAME)

    def sign(self, session_id: str) -> str:
        return self._signer.sign(session_id).decode("utf-8")

    def unsign(self, cookie_value: str) -> str | None:
        """Return the session id, or None when the signature does not verify."""
        try:
            return self._signer.unsign(cookie_value).decode("utf-8")
        except BadSignature:
            logger.info("Rejected session cookie with an invalid signature")
            return None
