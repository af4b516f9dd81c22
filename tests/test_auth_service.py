"""Unit tests for auth/service.py -- the login state machine and account workflow.

Covers:
- login(): unknown user, inactive account, remaining-attempt countdown,
  lockout after the maximum, lock expiry, session limit, password-change reason
- resolve_session(): expired, deleted user, deactivated user
- change_password(): aggregated field errors, session rotation
- reset_password(), create_employee(), update_employee(): scope, role and
  level ranks (no promotion above the actor), and safety rules

Fixtures used (from conftest.py):
  - service_env: (service, stores, seed) on a fresh shared-memory database.
    Every seeded account uses conftest.PASSWORD.
"""

from datetime import datetime, timedelta, timezone

import pytest

from auth.permissions import derive_permissions
from auth.service import AuthService
from core.config import AuthSecurityConfig
from core.errors import AppError, ValidationFailed
from conftest import PASSWORD, TEST_ROUNDS

NEW_PASSWORD = "N3wSecret"


def _perms(stores, user):
    return derive_permissions(user, stores.crm.get_org_directory())


def _actor(stores, seed, name):
    user = stores.users.get_by_id(seed.users[name])
    return user, _perms(stores, user)


class TestLogin:
    def test_success_creates_session(self, service_env) -> None:
        service, stores, seed = service_env
        result = service.login("sales_lille", PASSWORD)
        assert result.user.id == seed.users["sales_lille"]
        assert result.password_change_reason is None
        assert stores.sessions.get(result.session.id).user_id == result.user.id
        assert stores.users.get_by_id(result.user.id).last_login is not None

    def test_unknown_user(self, service_env) -> None:
        service, _stores, _seed = service_env
        with pytest.raises(AppError) as excinfo:
            service.login("ghost", PASSWORD)
        assert excinfo.value.code == "INVALID_CREDENTIALS"
        assert excinfo.value.details is None

    def test_wrong_password_counts_down(self, service_env) -> None:
        service, stores, seed = service_env
        with pytest.raises(AppError) as excinfo:
            service.login("sales_lille", "wrong")
        assert excinfo.value.code == "INVALID_CREDENTIALS"
        assert excinfo.value.details == {"remaining_attempts": 4}
        assert stores.users.get_by_id(seed.users["sales_lille"]).failed_login_attempts == 1

    def test_success_resets_counter(self, service_env) -> None:
        service, stores, seed = service_env
        for _ in range(3):
            with pytest.raises(AppError):
                service.login("sales_lille", "wrong")
        service.login("sales_lille", PASSWORD)
        assert stores.users.get_by_id(seed.users["sales_lille"]).failed_login_attempts == 0

    def test_sixth_attempt_after_five_failures_is_locked(self, service_env) -> None:
        """Five consecutive failures lock the account; even the right password is refused."""
        service, stores, seed = service_env
        codes = []
        for _ in range(5):
            with pytest.raises(AppError) as excinfo:
                service.login("sales_lille", "wrong")
            codes.append(excinfo.value.code)
        assert codes == ["INVALID_CREDENTIALS"] * 4 + ["ACCOUNT_LOCKED"]

        with pytest.raises(AppError) as excinfo:
            service.login("sales_lille", PASSWORD)
        assert excinfo.value.code == "ACCOUNT_LOCKED"
        assert excinfo.value.status_code == 423
        assert stores.users.get_by_id(seed.users["sales_lille"]).locked_until is not None

    def test_expired_lock_is_cleared(self, service_env) -> None:
        service, stores, seed = service_env
        uid = seed.users["sales_lille"]
        stores.users.lock_user(uid, datetime.now(timezone.utc) - timedelta(minutes=1))
        result = service.login("sales_lille", PASSWORD)
        assert result.user.id == uid
        refreshed = stores.users.get_by_id(uid)
        assert refreshed.locked_until is None
        assert refreshed.failed_login_attempts == 0

    def test_expired_lock_restarts_the_countdown(self, service_env) -> None:
        service, stores, seed = service_env
        uid = seed.users["sales_lille"]
        for _ in range(5):
            with pytest.raises(AppError):
                service.login("sales_lille", "wrong")
        stores.users.lock_user(uid, datetime.now(timezone.utc) - timedelta(seconds=1))
        with pytest.raises(AppError) as excinfo:
            service.login("sales_lille", "wrong")
        assert excinfo.value.details == {"remaining_attempts": 4}

    def test_inactive_account(self, service_env) -> None:
        service, stores, seed = service_env
        stores.users.update_user(seed.users["tech_nice"], is_active=False)
        with pytest.raises(AppError) as excinfo:
            service.login("tech_nice", PASSWORD)
        assert excinfo.value.code == "ACCOUNT_INACTIVE"

    def test_first_login_reason(self, service_env) -> None:
        service, _stores, _seed = service_env
        result = service.login("newbie_lille", PASSWORD)
        assert result.password_change_reason == "first_login"
        assert result.session is not None

    def test_first_login_reason_lasts_until_own_password(self, service_env) -> None:
        """Logging in again without changing the issued password is still a first login."""
        service, stores, seed = service_env
        service.login("newbie_lille", PASSWORD)
        assert stores.users.get_by_id(seed.users["newbie_lille"]).last_login is not None
        assert service.login("newbie_lille", PASSWORD).password_change_reason == "first_login"

    def test_max_sessions(self, service_env) -> None:
        _service, stores, _seed = service_env
        service = AuthService(
            stores.users, stores.sessions, AuthSecurityConfig(bcrypt_salt_rounds=TEST_ROUNDS, max_sessions_per_user=2)
        )
        service.login("sales_lille", PASSWORD)
        service.login("sales_lille", PASSWORD)
        with pytest.raises(AppError) as excinfo:
            service.login("sales_lille", PASSWORD)
        assert excinfo.value.code == "MAX_SESSIONS_REACHED"
        assert excinfo.value.details == {"max_sessions": 2, "current_sessions": 2}

    def test_session_limit_refusal_leaves_account_untouched(self, service_env) -> None:
        """A login refused for too many sessions does not count as a login."""
        _service, stores, seed = service_env
        service = AuthService(
            stores.users, stores.sessions, AuthSecurityConfig(bcrypt_salt_rounds=TEST_ROUNDS, max_sessions_per_user=1)
        )
        service.login("sales_lille", PASSWORD)
        last_login = stores.users.get_by_id(seed.users["sales_lille"]).last_login
        with pytest.raises(AppError):
            service.login("sales_lille", "wrong")

        with pytest.raises(AppError) as excinfo:
            service.login("sales_lille", PASSWORD)

        assert excinfo.value.code == "MAX_SESSIONS_REACHED"
        user = stores.users.get_by_id(seed.users["sales_lille"])
        assert user.failed_login_attempts == 1
        assert user.last_login == last_login


class TestResolveSession:
    def test_live_session(self, service_env) -> None:
        service, _stores, seed = service_env
        session = service.login("sales_lille", PASSWORD).session
        user, record = service.resolve_session(session.id)
        assert user.id == seed.users["sales_lille"]
        assert record.expires_at >= session.expires_at

    def test_unknown_session(self, service_env) -> None:
        service, _stores, _seed = service_env
        with pytest.raises(AppError) as excinfo:
            service.resolve_session("missing")
        assert excinfo.value.code == "SESSION_EXPIRED"

    def test_deactivated_user_loses_sessions(self, service_env) -> None:
        service, stores, seed = service_env
        session = service.login("sales_lille", PASSWORD).session
        stores.users.update_user(seed.users["sales_lille"], is_active=False)
        with pytest.raises(AppError) as excinfo:
            service.resolve_session(session.id)
        assert excinfo.value.code == "ACCOUNT_INACTIVE"
        assert stores.sessions.get(session.id) is None

    def test_logout(self, service_env) -> None:
        service, _stores, _seed = service_env
        session = service.login("sales_lille", PASSWORD).session
        assert service.logout(session.id) is True
        with pytest.raises(AppError):
            service.resolve_session(session.id)


class TestChangePassword:
    def test_rotates_sessions(self, service_env) -> None:
        service, stores, seed = service_env
        first = service.login("newbie_lille", PASSWORD).session
        second = service.login("newbie_lille", PASSWORD).session
        user = stores.users.get_by_id(seed.users["newbie_lille"])

        fresh = service.change_password(user, PASSWORD, NEW_PASSWORD, NEW_PASSWORD)

        assert stores.sessions.get(first.id) is None
        assert stores.sessions.get(second.id) is None
        assert stores.sessions.get(fresh.id) is not None
        updated = stores.users.get_by_id(user.id)
        assert updated.must_change_password is False
        assert updated.password_changed_at is not None
        assert service.login("newbie_lille", NEW_PASSWORD).password_change_reason is None

    def test_reports_every_problem(self, service_env) -> None:
        service, stores, seed = service_env
        user = stores.users.get_by_id(seed.users["sales_lille"])
        with pytest.raises(ValidationFailed) as excinfo:
            service.change_password(user, "not-my-password", "short", "different")
        fields = [e.field for e in excinfo.value.errors]
        assert "current_password" in fields
        assert "new_password" in fields
        assert "confirm_password" in fields

    def test_password_over_bcrypt_limit_is_a_field_error(self, service_env) -> None:
        service, stores, seed = service_env
        user = stores.users.get_by_id(seed.users["sales_lille"])
        too_long = "Aa1" + "x" * 80
        with pytest.raises(ValidationFailed) as excinfo:
            service.change_password(user, PASSWORD, too_long, too_long)
        assert [e.field for e in excinfo.value.errors] == ["new_password"]

    def test_rejects_same_password(self, service_env) -> None:
        service, stores, seed = service_env
        user = stores.users.get_by_id(seed.users["sales_lille"])
        with pytest.raises(ValidationFailed) as excinfo:
            service.change_password(user, PASSWORD, PASSWORD, PASSWORD)
        assert [e.field for e in excinfo.value.errors] == ["new_password"]


class TestResetPassword:
    def test_manager_resets_own_center_staff(self, service_env) -> None:
        service, stores, seed = service_env
        session = service.login("sales_lille", PASSWORD).session
        actor, perms = _actor(stores, seed, "manager_lille")

        target = service.reset_password(actor, perms, seed.users["sales_lille"], NEW_PASSWORD)

        assert target.must_change_password is True
        assert stores.sessions.get(session.id) is None
        assert service.login("sales_lille", NEW_PASSWORD).password_change_reason == "admin_reset"

    def test_reset_unlocks_account(self, service_env) -> None:
        service, stores, seed = service_env
        uid = seed.users["sales_lille"]
        stores.users.lock_user(uid, datetime.now(timezone.utc) + timedelta(minutes=10))
        actor, perms = _actor(stores, seed, "admin")
        service.reset_password(actor, perms, uid, NEW_PASSWORD)
        assert stores.users.get_by_id(uid).locked_until is None

    def test_out_of_scope(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "manager_lille")
        with pytest.raises(AppError) as excinfo:
            service.reset_password(actor, perms, seed.users["tech_nice"], NEW_PASSWORD)
        assert excinfo.value.code == "FORBIDDEN"

    def test_policy_applies(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "admin")
        with pytest.raises(ValidationFailed):
            service.reset_password(actor, perms, seed.users["sales_lille"], "weak")

    def test_unknown_target(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "admin")
        with pytest.raises(AppError) as excinfo:
            service.reset_password(actor, perms, 9999, NEW_PASSWORD)
        assert excinfo.value.code == "NOT_FOUND"


class TestCreateEmployee:
    def _create(self, service, stores, seed, actor_name="admin", **overrides):
        actor, perms = _actor(stores, seed, actor_name)
        values = dict(
            first_name="Jean",
            last_name="Dupont",
            email="jean.dupont@everglass.test",
            password=NEW_PASSWORD,
            role="sales",
            level="center",
            center_id=seed.centers["lille"],
        )
        values.update(overrides)
        return service.create_employee(actor, perms, **values)

    def test_generates_username(self, service_env) -> None:
        service, stores, seed = service_env
        user = self._create(service, stores, seed)
        assert user.username == "jean.dupont"
        assert user.must_change_password is True
        assert user.password_changed_at is None

    def test_generated_username_gets_suffix(self, service_env) -> None:
        service, stores, seed = service_env
        self._create(service, stores, seed)
        second = self._create(service, stores, seed, email="jean.dupont2@everglass.test")
        assert second.username == "jean.dupont2"

    def test_duplicate_email_is_conflict(self, service_env) -> None:
        service, stores, seed = service_env
        self._create(service, stores, seed)
        with pytest.raises(AppError) as excinfo:
            self._create(service, stores, seed, username="other.handle")
        assert excinfo.value.code == "CONFLICT"

    def test_center_level_needs_center(self, service_env) -> None:
        service, stores, seed = service_env
        with pytest.raises(ValidationFailed) as excinfo:
            self._create(service, stores, seed, center_id=None)
        assert [e.field for e in excinfo.value.errors] == ["center_id"]

    def test_invalid_role(self, service_env) -> None:
        service, stores, seed = service_env
        with pytest.raises(AppError) as excinfo:
            self._create(service, stores, seed, role="emperor")
        assert excinfo.value.code == "INVALID_ROLE"

    def test_manager_cannot_create_outside_scope(self, service_env) -> None:
        service, stores, seed = service_env
        with pytest.raises(AppError) as excinfo:
            self._create(service, stores, seed, actor_name="manager_lille", center_id=seed.centers["nice"])
        assert excinfo.value.code == "FORBIDDEN"

    def test_sales_cannot_create(self, service_env) -> None:
        service, stores, seed = service_env
        with pytest.raises(AppError) as excinfo:
            self._create(service, stores, seed, actor_name="sales_lille")
        assert excinfo.value.code == "FORBIDDEN"

    @pytest.mark.parametrize(
        "role, level, extra",
        [
            ("director", "site", {}),
            ("director", "center", {}),
            ("sales", "franchise", {"franchise_id": "nord"}),
            ("sales", "site", {}),
        ],
    )
    def test_manager_cannot_create_above_own_rank(self, service_env, role, level, extra) -> None:
        """A center manager hands out neither a higher role nor a broader level,
        even when the new account is attached to the manager's own center."""
        service, stores, seed = service_env
        overrides = {key: seed.franchises[value] for key, value in extra.items()}
        with pytest.raises(AppError) as excinfo:
            self._create(service, stores, seed, actor_name="manager_lille", role=role, level=level, **overrides)
        assert excinfo.value.code == "FORBIDDEN"
        assert not stores.users.username_exists("jean.dupont")

    def test_manager_creates_peer_manager_in_own_center(self, service_env) -> None:
        service, stores, seed = service_env
        user = self._create(service, stores, seed, actor_name="manager_lille", role="manager")
        assert user.role == "manager"

    def test_franchise_director_creates_franchise_staff(self, service_env) -> None:
        service, stores, seed = service_env
        user = self._create(
            service,
            stores,
            seed,
            actor_name="director_nord",
            role="manager",
            level="franchise",
            center_id=None,
            franchise_id=seed.franchises["nord"],
        )
        assert (user.role, user.level) == ("manager", "franchise")

    def test_franchise_director_cannot_create_site_level(self, service_env) -> None:
        service, stores, seed = service_env
        with pytest.raises(AppError) as excinfo:
            self._create(service, stores, seed, actor_name="director_nord", role="sales", level="site")
        assert excinfo.value.code == "FORBIDDEN"

    def test_password_over_bcrypt_limit_is_a_field_error(self, service_env) -> None:
        service, stores, seed = service_env
        with pytest.raises(ValidationFailed) as excinfo:
            self._create(service, stores, seed, password="Aa1" + "é" * 40)
        assert [e.field for e in excinfo.value.errors] == ["password"]


class TestUpdateEmployee:
    def test_deactivation_revokes_sessions(self, service_env) -> None:
        service, stores, seed = service_env
        session = service.login("sales_lille", PASSWORD).session
        actor, perms = _actor(stores, seed, "admin")
        updated = service.update_employee(actor, perms, seed.users["sales_lille"], is_active=False)
        assert updated.is_active is False
        assert stores.sessions.get(session.id) is None

    def test_cannot_deactivate_self(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "director_nord")
        with pytest.raises(AppError) as excinfo:
            service.update_employee(actor, perms, actor.id, is_active=False)
        assert excinfo.value.code == "FORBIDDEN"

    def test_admin_may_deactivate_a_peer_admin(self, service_env) -> None:
        service, stores, seed = service_env
        second_admin = stores.users.get_by_id(seed.users["admin"])
        second_admin.id = None
        second_admin.username = "admin2"
        second_admin.email = "admin2@everglass.test"
        other_id = stores.users.create_user(second_admin)
        actor, perms = _actor(stores, seed, "admin")

        assert service.update_employee(actor, perms, other_id, is_active=False).is_active is False
        assert stores.users.count_active_admins() == 1

    def test_director_cannot_touch_admin_accounts(self, service_env) -> None:
        service, stores, seed = service_env
        director = stores.users.get_by_id(seed.users["director_nord"])
        with pytest.raises(AppError) as excinfo:
            service.update_employee(director, _perms(stores, director), seed.users["admin"], is_active=False)
        assert excinfo.value.code == "FORBIDDEN"

    def test_manager_role_is_insufficient(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "manager_lille")
        with pytest.raises(AppError) as excinfo:
            service.update_employee(actor, perms, seed.users["sales_lille"], role="technician")
        assert excinfo.value.code == "INSUFFICIENT_ROLE"

    def test_director_cannot_grant_admin(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "director_nord")
        with pytest.raises(AppError) as excinfo:
            service.update_employee(actor, perms, seed.users["sales_lille"], role="admin")
        assert excinfo.value.code == "FORBIDDEN"

    def test_role_change(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "director_nord")
        updated = service.update_employee(actor, perms, seed.users["sales_lille"], role="technician")
        assert updated.role == "technician"

    def test_franchise_director_cannot_raise_own_level(self, service_env) -> None:
        """Promoting yourself to site level would unlock every franchise."""
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "director_nord")
        with pytest.raises(AppError) as excinfo:
            service.update_employee(actor, perms, actor.id, level="site")
        assert excinfo.value.code == "FORBIDDEN"

        unchanged = stores.users.get_by_id(actor.id)
        after = _perms(stores, unchanged)
        assert unchanged.level == "franchise"
        assert after.can_view_all_stats is False
        assert after.accessible_franchise_ids == [seed.franchises["nord"]]

    def test_director_cannot_promote_staff_above_own_level(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "director_nord")
        with pytest.raises(AppError) as excinfo:
            service.update_employee(actor, perms, seed.users["manager_lille"], level="site")
        assert excinfo.value.code == "FORBIDDEN"
        assert stores.users.get_by_id(seed.users["manager_lille"]).level == "center"

    def test_director_cannot_move_staff_out_of_scope(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "director_nord")
        with pytest.raises(AppError) as excinfo:
            service.update_employee(actor, perms, seed.users["sales_lille"], center_id=seed.centers["nice"])
        assert excinfo.value.code == "FORBIDDEN"

    def test_director_may_widen_staff_to_own_level(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "director_nord")
        updated = service.update_employee(
            actor, perms, seed.users["sales_lille"], level="franchise", franchise_id=seed.franchises["nord"]
        )
        assert (updated.level, updated.franchise_id) == ("franchise", seed.franchises["nord"])

    def test_level_change_requires_attachment(self, service_env) -> None:
        """sales_lille has a center but no franchise."""
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "admin")
        with pytest.raises(ValidationFailed) as excinfo:
            service.update_employee(actor, perms, seed.users["sales_lille"], level="franchise")
        assert [e.field for e in excinfo.value.errors] == ["franchise_id"]

    def test_admin_may_promote_to_site_level(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "admin")
        updated = service.update_employee(actor, perms, seed.users["director_nord"], level="site")
        assert updated.level == "site"

    def test_empty_patch(self, service_env) -> None:
        service, stores, seed = service_env
        actor, perms = _actor(stores, seed, "admin")
        with pytest.raises(ValidationFailed):
            service.update_employee(actor, perms, seed.users["sales_lille"])
