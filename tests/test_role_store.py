"""Role and account administration in the memory store."""

from datetime import timedelta

import pytest

from staffauth.storage.errors import (
    ConstraintViolation,
    InvalidState,
    NotFound,
    ValidationFailure,
)


class TestRoles:
    def test_default_roles_seeded(self, memory_store):
        names = [r.name for r in memory_store.list_roles()]
        assert names == ["Administrator", "Employee", "Manager"]
        admin = memory_store.get_role_by_name("administrator")
        assert admin.can_access_admin_panel and admin.can_manage_roles

    def test_role_names_are_unique_case_insensitively(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_role("employee")

    def test_update_permissions(self, memory_store):
        role = memory_store.create_role("Auditor")
        updated = memory_store.update_role_permissions(
            role.id, {"can_generate_reports": True, "can_view_attendance": True}
        )
        assert updated.permissions() == ["view_attendance", "generate_reports"]
        assert memory_store.role_has_permission(role.id, "generate_reports")
        assert memory_store.role_has_permission(role.id, "can_view_attendance")
        assert not memory_store.role_has_permission(role.id, "manage_users")

    def test_unknown_permission_flag_rejected(self, memory_store):
        role = memory_store.create_role("Auditor")
        with pytest.raises(ValidationFailure):
            memory_store.update_role_permissions(role.id, {"can_fly": True})

    def test_clone_copies_flags(self, memory_store):
        manager = memory_store.get_role_by_name("Manager")
        clone = memory_store.clone_role(manager.id, "Regional Manager")
        assert clone.id != manager.id
        assert clone.permission_flags() == manager.permission_flags()

    def test_administrator_cannot_be_deactivated(self, memory_store):
        admin = memory_store.get_role_by_name("Administrator")
        with pytest.raises(InvalidState):
            memory_store.set_role_active(admin.id, False)
        assert memory_store.get_role(admin.id).is_active

    def test_deactivated_roles_hidden_from_active_listing(self, memory_store):
        manager = memory_store.get_role_by_name("Manager")
        memory_store.set_role_active(manager.id, False)
        assert "Manager" not in [r.name for r in memory_store.list_roles(active_only=True)]

    def test_delete_blocked_while_referenced(self, memory_store, account, employee_role):
        with pytest.raises(InvalidState):
            memory_store.delete_role(employee_role.id)
        assert memory_store.get_role(employee_role.id) is not None

    def test_delete_unreferenced_role(self, memory_store):
        role = memory_store.create_role("Temp")
        assert memory_store.delete_role(role.id) is True
        with pytest.raises(NotFound):
            memory_store.delete_role(role.id)

    def test_account_counts_per_role(self, memory_store, account):
        counts = memory_store.count_accounts_per_role()
        assert counts == {"Administrator": 0, "Manager": 0, "Employee": 1}
        assert [a.id for a in memory_store.list_accounts_in_role(account.role_id)] == [account.id]


class TestAccounts:
    def test_username_and_email_unique(self, memory_store, account, employee_role):
        with pytest.raises(ConstraintViolation):
            memory_store.create_account("JDOE", "other@example.com", "h", employee_role.id)
        with pytest.raises(ConstraintViolation):
            memory_store.create_account("other", "JDoe@Example.com", "h", employee_role.id)

    def test_account_requires_existing_role(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_account("x", "x@example.com", "h", "no-such-role")

    def test_lockout_after_max_failures(self, memory_store, account):
        for _ in range(4):
            memory_store.record_login_failure(account.id, max_attempts=5, lockout_minutes=15)
        assert not memory_store.get_account(account.id).is_locked()
        locked = memory_store.record_login_failure(account.id, max_attempts=5, lockout_minutes=15)
        assert locked.is_locked()

        cleared = memory_store.record_login_success(account.id)
        assert cleared.failed_login_attempts == 0
        assert cleared.lockout_end is None
        assert cleared.last_login is not None

    def test_assign_inactive_role_rejected(self, memory_store, account):
        manager = memory_store.get_role_by_name("Manager")
        memory_store.set_role_active(manager.id, False)
        with pytest.raises(InvalidState):
            memory_store.assign_role(account.id, manager.id)

    def test_update_account_checks_uniqueness(self, memory_store, account, employee_role):
        other = memory_store.create_account("other", "other@example.com", "h", employee_role.id)
        with pytest.raises(ConstraintViolation):
            memory_store.update_account(other.id, email="jdoe@example.com")
        renamed = memory_store.update_account(other.id, username="renamed", employee_id="E-7")
        assert renamed.username == "renamed" and renamed.employee_id == "E-7"

    def test_delete_account_cascades(self, memory_store, account):
        sess = memory_store.create_session(account.id, "tok", ttl=timedelta(hours=1))
        memory_store.record_auth_event("login", True, user_id=account.id)
        memory_store.delete_account(account.id)
        assert memory_store.get_account(account.id) is None
        assert memory_store.get_session(sess.id) is None
        assert memory_store.list_auth_events(account.id) == []
        with pytest.raises(NotFound):
            memory_store.delete_account(account.id)

    def test_password_reset_token_lifecycle(self, memory_store, account):
        from staffauth.storage.models import utcnow

        memory_store.set_password_reset_token(account.id, "reset", utcnow() + timedelta(hours=24))
        assert memory_store.get_account(account.id).password_reset_token == "reset"
        memory_store.clear_password_reset_token(account.id)
        assert memory_store.get_account(account.id).password_reset_expires is None
