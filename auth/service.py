"""
auth/service.py -- Login state machine, session resolution, and account changes.

AuthService is the only place that decides whether a credential is accepted.
Routes call it and serialize whatever it returns or raises; they never compare
passwords or touch lockout counters themselves.

Login state machine (one attempt):

    unknown handle ---------------------------------> INVALID_CREDENTIALS
    inactive account -------------------------------> ACCOUNT_INACTIVE
    locked_until > now -----------------------------> ACCOUNT_LOCKED
    locked_until <= now ----> counter reset, continue
    wrong password ---------> counter + 1
        counter >= max -----> lock until now + lockout -> ACCOUNT_LOCKED
        otherwise ----------------------------------> INVALID_CREDENTIALS(remaining)
    right password ---------> counter reset, last_login stamped
        too many sessions --------------------------> MAX_SESSIONS_REACHED
        otherwise ----------> session created -> LoginResult

The must-change-password flag does not block session creation: the route
answers PASSWORD_CHANGE_REQUIRED with the cookie set so the client can call
/auth/change-password with it.

Lockout is purely "now vs stored timestamp". There is no retry logic and no
in-process locking; the store's atomic increment arbitrates concurrent
attempts on the same account.

Layer rule: no imports from api/ or crm.store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Level, Role, SessionRecord, User, UserPermissions
from auth.passwords import hash_password, make_dummy_hash, verify_password
from auth.permissions import check_can_manage, parse_level, parse_role, require_roles
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import AuthSecurityConfig
from core.db import now_iso
from core.errors import (
    FieldError,
    ValidationFailed,
    account_inactive,
    account_locked,
    conflict,
    forbidden,
    invalid_credentials,
    max_sessions_reached,
    not_authenticated,
    not_found,
    session_expired,
)
from core.validation import generate_username, mask_email, validate_password, validate_username

logger = logging.getLogger("everglass.auth.service")


@dataclass
class LoginResult:
    user: User
    session: SessionRecord
    # "first_login" / "admin_reset" when the user must pick a new password
    password_change_reason: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def password_change_reason(user: User) -> Optional[str]:
    """first_login until the user has set a password of their own, then admin_reset."""
    if not user.must_change_password:
        return None
    return "first_login" if user.password_changed_at is None else "admin_reset"


def _attachment_errors(level: Level, franchise_id: Optional[int], center_id: Optional[int]) -> list[FieldError]:
    errors: list[FieldError] = []
    if level is Level.franchise and franchise_id is None:
        errors.append(FieldError("franchise_id", "A franchise-level employee needs a franchise."))
    if level is Level.center and center_id is None:
        errors.append(FieldError("center_id", "A center-level employee needs a center."))
    return errors


class AuthService:
    def __init__(self, users: UserStore, sessions: SessionStore, config: AuthSecurityConfig) -> None:
        self.users = users
        self.sessions = sessions
        self.config = config
        self._dummy_hash = make_dummy_hash(config.bcrypt_salt_rounds)

    def hash(self, plain: str) -> str:
        return hash_password(plain, rounds=self.config.bcrypt_salt_rounds)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> LoginResult:
        user = self.users.get_by_username(username)
        if user is None or not user.hashed_password:
            # Same bcrypt cost as a real mismatch so timing does not leak
            # which usernames exist.
            verify_password(password, self._dummy_hash)
            logger.info("Login failed: unknown username")
            raise invalid_credentials()

        if not user.is_active:
            logger.info("Login refused for inactive account id=%s", user.id)
            raise account_inactive()

        now = _utcnow()
        if user.locked_until is not None:
            if user.locked_until > now:
                raise account_locked(locked_until=user.locked_until)
            self.users.reset_login_state(user.id)
            user.failed_login_attempts = 0
            user.locked_until = None

        if not verify_password(password, user.hashed_password):
            attempts = self.users.increment_failed_attempts(user.id)
            if attempts >= self.config.max_login_attempts:
                until = now + timedelta(minutes=self.config.lockout_duration_minutes)
                self.users.lock_user(user.id, until)
                logger.warning(
                    "Account id=%s (%s) locked until %s after %d failed attempts",
                    user.id,
                    mask_email(user.email),
                    until.isoformat(),
                    attempts,
                )
                raise account_locked(self.config.lockout_duration_minutes, until)
            logger.info("Login failed for account id=%s (attempt %d)", user.id, attempts)
            raise invalid_credentials(remaining_attempts=self.config.max_login_attempts - attempts)

        limit = self.config.max_sessions_per_user
        if limit > 0:
            active = self.sessions.count_user_active_sessions(user.id)
            if active >= limit:
                raise max_sessions_reached(limit, active)

        self.users.reset_login_state(user.id, stamp_login=True)
        session = self.sessions.create(user.id)
        logger.info("Login succeeded for account id=%s", user.id)
        return LoginResult(user=user, session=session, password_change_reason=password_change_reason(user))

    def logout(self, session_id: str) -> bool:
        return self.sessions.destroy(session_id)

    def resolve_session(self, session_id: str) -> tuple[User, SessionRecord]:
        """Map a session id to its live user, refreshing the rolling expiry."""
        record = self.sessions.touch(session_id)
        if record is None:
            raise session_expired(self.config.session_timeout_minutes)
        user = self.users.get_by_id(record.user_id)
        if user is None:
            self.sessions.destroy(session_id)
            raise not_authenticated()
        if not user.is_active:
            self.sessions.invalidate_user_sessions(user.id)
            raise account_inactive()
        return user, record

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, user: User, current_password: str, new_password: str, confirm_password: str) -> SessionRecord:
        """Replace the user's own password and rotate their sessions.

        Every problem is reported at once. On success all of the user's
        sessions (on every device) are dropped and a fresh one is returned
        for the caller.
        """
        errors: list[FieldError] = []
        if not user.hashed_password or not verify_password(current_password, user.hashed_password):
            errors.append(FieldError("current_password", "Current password is incorrect."))
        errors.extend(validate_password(new_password, self.config.password_policy, field="new_password"))
        if new_password != confirm_password:
            errors.append(FieldError("confirm_password", "Passwords do not match."))
        if new_password and new_password == current_password:
            errors.append(FieldError("new_password", "New password must be different from the current one."))
        if errors:
            raise ValidationFailed(errors)

        self.users.update_user(
            user.id,
            hashed_password=self.hash(new_password),
            must_change_password=False,
            password_changed_at=now_iso(),
        )
        revoked = self.sessions.invalidate_user_sessions(user.id)
        logger.info("Password changed for account id=%s; %d session(s) revoked", user.id, revoked)
        return self.sessions.create(user.id)

    def reset_password(self, actor: User, perms: UserPermissions, target_id: int, new_password: str) -> User:
        """Set a temporary password chosen by a manager; the owner must change it."""
        target = self.users.get_by_id(target_id)
        if target is None:
            raise not_found("Employee", target_id)
        if target.id == actor.id:
            raise forbidden("reset your own password", "/auth/reset-password")
        check_can_manage(actor, perms, target)

        errors = validate_password(new_password, self.config.password_policy, field="new_password")
        if errors:
            raise ValidationFailed(errors)

        self.users.update_user(target.id, hashed_password=self.hash(new_password), must_change_password=True)
        self.users.reset_login_state(target.id)
        revoked = self.sessions.invalidate_user_sessions(target.id)
        logger.info(
            "Password of account id=%s reset by id=%s; %d session(s) revoked", target.id, actor.id, revoked
        )
        return self.users.get_by_id(target.id)

    # ------------------------------------------------------------------
    # Employee administration
    # ------------------------------------------------------------------

    def unique_username(self, first_name: str, last_name: str) -> str:
        """Derive a free handle from names: jean.dupont, jean.dupont2, ..."""
        max_len = self.config.username_policy.max_length
        base = generate_username(first_name, last_name)[:max_len]
        candidate = base
        suffix = 2
        while self.users.username_exists(candidate):
            tail = str(suffix)
            candidate = f"{base[: max_len - len(tail)]}{tail}"
            suffix += 1
        return candidate

    def create_employee(
        self,
        actor: User,
        perms: UserPermissions,
        *,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        role: str,
        level: str,
        username: Optional[str] = None,
        phone: Optional[str] = None,
        site_id: Optional[int] = None,
        franchise_id: Optional[int] = None,
        center_id: Optional[int] = None,
        hire_date: Optional[str] = None,
    ) -> User:
        parsed_role = parse_role(role)
        parsed_level = parse_level(level)

        candidate = User(
            username=username or "",
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=parsed_role.value,
            level=parsed_level.value,
            phone=phone,
            site_id=site_id,
            franchise_id=franchise_id,
            center_id=center_id,
            hire_date=hire_date,
        )
        check_can_manage(actor, perms, candidate)

        errors: list[FieldError] = []
        if username:
            errors.extend(validate_username(username, self.config.username_policy))
        errors.extend(validate_password(password, self.config.password_policy))
        errors.extend(_attachment_errors(parsed_level, franchise_id, center_id))
        if errors:
            raise ValidationFailed(errors)

        if not username:
            candidate.username = self.unique_username(first_name, last_name)
            generated_errors = validate_username(candidate.username, self.config.username_policy)
            if generated_errors:
                raise ValidationFailed(
                    [FieldError("username", "Could not derive a valid username from the names; provide one.")]
                )
        candidate.hashed_password = self.hash(password)

        try:
            user_id = self.users.create_user(candidate)
        except IntegrityError as exc:
            raise conflict(message="An employee with that username or email already exists.") from exc

        logger.info(
            "Employee id=%s (%s, %s) created by id=%s",
            user_id,
            candidate.username,
            mask_email(email),
            actor.id,
        )
        return self.users.get_by_id(user_id)

    def update_employee(
        self,
        actor: User,
        perms: UserPermissions,
        target_id: int,
        *,
        role: Optional[str] = None,
        level: Optional[str] = None,
        franchise_id: Optional[int] = None,
        center_id: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        """Change an employee's role, level, attachment, or active flag.

        The account as it would look after the change must still be one the
        actor may manage, so nobody but an admin can promote an account (their
        own included) above their own role or level, or move it out of their
        scope. Blocks self-deactivation and deactivating the last active
        admin. Deactivation drops every session of the account immediately.
        """
        require_roles(actor, (Role.admin, Role.director))
        target = self.users.get_by_id(target_id)
        if target is None:
            raise not_found("Employee", target_id)
        check_can_manage(actor, perms, target)

        updates: dict = {}
        if role is not None:
            new_role = parse_role(role)
            if new_role is Role.admin and actor.role != Role.admin.value:
                raise forbidden("grant the admin role")
            updates["role"] = new_role.value
        if level is not None:
            updates["level"] = parse_level(level).value
        if franchise_id is not None:
            updates["franchise_id"] = franchise_id
        if center_id is not None:
            updates["center_id"] = center_id
        if updates:
            projected = replace(target, **updates)
            check_can_manage(actor, perms, projected)
            errors = _attachment_errors(parse_level(projected.level), projected.franchise_id, projected.center_id)
            if errors:
                raise ValidationFailed(errors)
        if is_active is not None:
            if not is_active and target.id == actor.id:
                raise forbidden("deactivate your own account")
            if not is_active and target.role == Role.admin.value and self.users.count_active_admins() <= 1:
                raise forbidden("deactivate the last active administrator")
            updates["is_active"] = is_active

        if not updates:
            raise ValidationFailed.single_field("body", "No fields to update.")

        self.users.update_user(target.id, **updates)
        if is_active is False:
            revoked = self.sessions.invalidate_user_sessions(target.id)
            logger.info("Account id=%s deactivated by id=%s; %d session(s) revoked", target.id, actor.id, revoked)
        return self.users.get_by_id(target.id)
