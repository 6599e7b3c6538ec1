"""
Tests for the admin control plane.

Tests:
- Permission checks
- Principal listing, creation and updates
- Archive, restore and anonymize
- MFA policy administration and audit trail
- Unlocks, grace extensions and enforcement statistics
"""
from datetime import timedelta

import pytest

from auth.auth_middleware import Actor
from auth.errors import AuthError, ErrorKind
from auth.mfa_policy import MfaMode, MfaPolicyUpdate, RolePolicy
from control_plane.admin_manager import PrincipalCreate, PrincipalQuery, PrincipalUpdate
from security.audit_logger import AuditAction

from tests.conftest import PASSWORD, enroll_totp, make_ctx


@pytest.fixture
def user_actor(alice):
    return Actor(principal_id=alice.principal_id, role="user", session_id="sess_alice", email=alice.email)


def create(services, actor, handle, role="user"):
    return services.admin.create_principal(
        actor, PrincipalCreate(handle=handle, email=f"{handle}@example.com", password=PASSWORD, role=role)
    )


class TestPermissions:
    """Tests for role-based access to admin operations."""

    def test_user_forbidden(self, services, user_actor):
        """Test an ordinary user cannot reach admin operations."""
        calls = [
            lambda: services.admin.list_principals(user_actor),
            lambda: services.admin.get_policy(user_actor),
            lambda: services.admin.update_policy(user_actor, MfaPolicyUpdate(mfa_mode=MfaMode.TOTP_ONLY)),
            lambda: services.admin.list_audit_entries(user_actor),
            lambda: services.admin.enforcement_statistics(user_actor),
        ]
        for call in calls:
            with pytest.raises(AuthError) as exc_info:
                call()
            assert exc_info.value.kind == ErrorKind.FORBIDDEN

    def test_admin_cannot_grant_super_admin(self, services, admin, alice):
        """Test only super admins can create or promote super admins."""
        with pytest.raises(AuthError) as exc_info:
            create(services, admin, "boss", role="super_admin")
        assert exc_info.value.kind == ErrorKind.FORBIDDEN

        with pytest.raises(AuthError) as exc_info:
            services.admin.update_principal(admin, alice.principal_id, PrincipalUpdate(role="super_admin"))
        assert exc_info.value.kind == ErrorKind.FORBIDDEN

    def test_admin_cannot_demote_super_admin(self, services, admin, super_admin):
        """Test an admin cannot change a super admin's role."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.update_principal(admin, super_admin.principal_id, PrincipalUpdate(role="user"))

        assert exc_info.value.kind == ErrorKind.FORBIDDEN

    def test_super_admin_grants(self, services, super_admin):
        """Test a super admin can create another super admin."""
        principal = create(services, super_admin, "boss", role="super_admin")

        assert principal.role == "super_admin"


class TestListing:
    """Tests for principal listing."""

    @pytest.fixture
    def population(self, services, admin, clock):
        handles = ["bob", "carol", "dave", "erin"]
        principals = []
        for handle in handles:
            clock.advance(timedelta(minutes=1))
            principals.append(create(services, admin, handle))
        return principals

    def test_default_listing(self, services, admin, population):
        """Test the default listing is newest first."""
        page = services.admin.list_principals(admin)

        assert page.total == 5
        assert page.page == 1
        assert page.page_size == 20
        assert [p.handle for p in page.items][:4] == ["erin", "dave", "carol", "bob"]

    def test_pagination(self, services, admin, population):
        """Test pages are sized and counted."""
        page = services.admin.list_principals(admin, PrincipalQuery(page=2, page_size=2))

        assert [p.handle for p in page.items] == ["carol", "bob"]
        assert page.total == 5
        assert page.total_pages == 3

    def test_search(self, services, admin, population):
        """Test search matches email or handle substrings."""
        page = services.admin.list_principals(admin, PrincipalQuery(search="CAR"))

        assert [p.handle for p in page.items] == ["carol"]

    def test_role_filter(self, services, admin, population):
        """Test filtering by role."""
        page = services.admin.list_principals(admin, PrincipalQuery(role="admin"))

        assert [p.handle for p in page.items] == ["admin"]

    def test_status_filter(self, services, admin, population):
        """Test filtering by lifecycle status."""
        services.admin.archive(admin, population[0].principal_id)
        services.admin.update_principal(admin, population[1].principal_id, PrincipalUpdate(is_active=False))

        archived = services.admin.list_principals(admin, PrincipalQuery(status="archived"))
        inactive = services.admin.list_principals(admin, PrincipalQuery(status="inactive"))
        active = services.admin.list_principals(admin, PrincipalQuery(status="active"))

        assert [p.handle for p in archived.items] == ["bob"]
        assert [p.handle for p in inactive.items] == ["carol"]
        assert active.total == 3

    def test_sort_by_handle(self, services, admin, population):
        """Test ascending sort by handle."""
        page = services.admin.list_principals(admin, PrincipalQuery(sort_by="handle", descending=False))

        assert [p.handle for p in page.items] == ["admin", "bob", "carol", "dave", "erin"]

    def test_query_validation(self):
        """Test unknown statuses and oversized pages are rejected."""
        with pytest.raises(ValueError):
            PrincipalQuery(status="deleted")
        with pytest.raises(ValueError):
            PrincipalQuery(page_size=101)


class TestPrincipalChanges:
    """Tests for creating and updating principals."""

    def test_create_audited(self, services, admin):
        """Test admin creation records an audit entry."""
        principal = create(services, admin, "bob")

        entry = services.admin.list_audit_entries(admin, target_id=principal.principal_id).items[0]

        assert entry.action == AuditAction.USER_CREATED.value
        assert entry.actor_id == admin.principal_id

    def test_create_unknown_role(self, services, admin):
        """Test unknown roles are rejected."""
        with pytest.raises(AuthError) as exc_info:
            create(services, admin, "bob", role="owner")

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_get_principal(self, services, admin, alice, clock):
        """Test the detail view includes MFA and session state."""
        enroll_totp(services, alice.principal_id, clock)
        services.login.authenticate("alice@example.com", PASSWORD, make_ctx())
        services.principals.link_identity(alice.principal_id, "google", "g-1")

        detail = services.admin.get_principal(admin, alice.principal_id)

        assert detail.principal.handle == "alice"
        assert detail.totp_enabled is True
        assert detail.backup_codes_remaining == 10
        assert detail.active_sessions == 1
        assert [i.provider for i in detail.linked_identities] == ["google"]

    def test_get_missing(self, services, admin):
        """Test an unknown principal is not_found."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.get_principal(admin, "usr_missing")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_update_handle_audited(self, services, admin, alice):
        """Test a handle change is applied and audited without the handle values."""
        updated = services.admin.update_principal(admin, alice.principal_id, PrincipalUpdate(handle="alice2"))

        assert updated.handle == "alice2"
        entry = services.admin.list_audit_entries(admin, action=AuditAction.USER_UPDATED).items[0]
        assert entry.details["changes"] == {"handle": {}}

    def test_update_email_resets_verification(self, services, admin, alice, mailer):
        """Test an email change clears the verified flag."""
        services.principals.verify_email(alice.principal_id, mailer.last_code(to="alice@example.com"))

        updated = services.admin.update_principal(
            admin, alice.principal_id, PrincipalUpdate(email="alice@corp.example.com")
        )

        assert updated.email == "alice@corp.example.com"
        assert updated.email_verified is False

    def test_update_duplicate_handle(self, services, admin, alice):
        """Test handle collisions are conflicts."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.update_principal(admin, alice.principal_id, PrincipalUpdate(handle="admin"))

        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_role_change(self, services, admin, alice):
        """Test a role change revokes access tokens and is recorded."""
        credentials = services.login.authenticate("alice@example.com", PASSWORD, make_ctx()).credentials

        updated = services.admin.update_principal(admin, alice.principal_id, PrincipalUpdate(role="admin"))

        assert updated.role == "admin"
        with pytest.raises(AuthError):
            services.credentials.verify_access(credentials.access_token)

        event = services.events.security_events(alice.principal_id).items[0]
        assert (event.event_type, event.severity) == ("role-changed", "critical")
        assert event.details == {"from": "user", "to": "admin", "changed_by": admin.principal_id}

        actions = [e.action for e in services.admin.list_audit_entries(admin, target_id=alice.principal_id).items]
        assert actions == [AuditAction.ROLE_CHANGED.value, AuditAction.USER_UPDATED.value]

    def test_deactivate_logs_out(self, services, admin, alice):
        """Test deactivation ends every session."""
        services.login.authenticate("alice@example.com", PASSWORD, make_ctx())

        services.admin.update_principal(admin, alice.principal_id, PrincipalUpdate(is_active=False))

        assert services.sessions.list_for(alice.principal_id) == []

    def test_no_op_update(self, services, admin, alice):
        """Test an update that changes nothing writes no audit entry."""
        services.admin.update_principal(admin, alice.principal_id, PrincipalUpdate(handle="alice"))

        assert services.admin.list_audit_entries(admin, action=AuditAction.USER_UPDATED).total == 0


class TestLifecycle:
    """Tests for archive, restore and anonymize."""

    def test_archive(self, services, admin, alice):
        """Test archiving deactivates the principal and ends its sessions."""
        services.login.authenticate("alice@example.com", PASSWORD, make_ctx())

        archived = services.admin.archive(admin, alice.principal_id)

        assert archived.archived_at is not None
        assert archived.is_active is False
        assert services.sessions.list_for(alice.principal_id) == []

    def test_archive_self(self, services, admin):
        """Test an admin cannot archive their own account."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.archive(admin, admin.principal_id)

        assert exc_info.value.kind == ErrorKind.FORBIDDEN

    def test_archive_twice(self, services, admin, alice):
        """Test archiving an archived principal is a conflict."""
        services.admin.archive(admin, alice.principal_id)

        with pytest.raises(AuthError) as exc_info:
            services.admin.archive(admin, alice.principal_id)

        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_restore_leaves_inactive(self, services, admin, alice):
        """Test restore clears the archive flag but does not reactivate."""
        services.admin.archive(admin, alice.principal_id)

        restored = services.admin.restore(admin, alice.principal_id)

        assert restored.archived_at is None
        assert restored.is_active is False

        active = services.admin.update_principal(admin, alice.principal_id, PrincipalUpdate(is_active=True))
        assert active.is_active is True

    def test_activate_archived(self, services, admin, alice):
        """Test an archived principal must be restored before activation."""
        services.admin.archive(admin, alice.principal_id)

        with pytest.raises(AuthError) as exc_info:
            services.admin.update_principal(admin, alice.principal_id, PrincipalUpdate(is_active=True))

        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_restore_not_archived(self, services, admin, alice):
        """Test restoring a principal that is not archived is a conflict."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.restore(admin, alice.principal_id)

        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_anonymize_requires_super_admin(self, services, admin, alice):
        """Test admins cannot anonymize."""
        services.admin.archive(admin, alice.principal_id)

        with pytest.raises(AuthError) as exc_info:
            services.admin.anonymize(admin, alice.principal_id)

        assert exc_info.value.kind == ErrorKind.FORBIDDEN

    def test_anonymize_requires_archive(self, services, super_admin, alice):
        """Test only archived principals can be anonymized."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.anonymize(super_admin, alice.principal_id)

        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_anonymize(self, services, super_admin, alice, clock):
        """Test anonymization replaces PII and removes credentials and factors."""
        enroll_totp(services, alice.principal_id, clock)
        services.login.authenticate("alice@example.com", PASSWORD, make_ctx())
        services.admin.archive(super_admin, alice.principal_id)

        view = services.admin.anonymize(super_admin, alice.principal_id)

        placeholder = f"anon_{alice.principal_id}"
        assert view.handle == placeholder
        assert view.email == f"{placeholder}@anonymized.local"
        assert view.anonymized_at is not None
        assert services.principals.get_by_email("alice@example.com") is None
        assert services.enrollment.status(alice.principal_id).totp_enabled is False
        assert services.backup_codes.remaining(alice.principal_id) == 0
        history = services.events.login_history(alice.principal_id).items
        assert history
        assert all(a.email is None and a.ip_address is None for a in history)

        entry = services.admin.list_audit_entries(super_admin, action=AuditAction.USER_ANONYMIZED).items[0]
        assert entry.target_id == alice.principal_id

    def test_anonymize_leaves_no_handle_in_audit(self, services, super_admin, alice):
        """Test no audit entry about the principal still carries its old handles or email."""
        services.admin.update_principal(super_admin, alice.principal_id, PrincipalUpdate(handle="alice_real_name"))
        services.admin.update_principal(
            super_admin, alice.principal_id, PrincipalUpdate(email="alice.real@example.com")
        )
        services.admin.archive(super_admin, alice.principal_id)
        services.admin.anonymize(super_admin, alice.principal_id)

        entries = services.admin.list_audit_entries(super_admin, target_id=alice.principal_id).items
        trail = repr([entry.details for entry in entries])

        assert entries
        for value in ("alice_real_name", "alice.real@example.com", "alice@example.com", "'alice'"):
            assert value not in trail

    def test_anonymized_is_final(self, services, super_admin, alice):
        """Test an anonymized principal cannot be restored, edited or anonymized again."""
        services.admin.archive(super_admin, alice.principal_id)
        services.admin.anonymize(super_admin, alice.principal_id)

        for call in (
            lambda: services.admin.restore(super_admin, alice.principal_id),
            lambda: services.admin.update_principal(super_admin, alice.principal_id, PrincipalUpdate(handle="x-y-z")),
            lambda: services.admin.anonymize(super_admin, alice.principal_id),
        ):
            with pytest.raises(AuthError) as exc_info:
                call()
            assert exc_info.value.kind == ErrorKind.CONFLICT


class TestPolicyAdministration:
    """Tests for MFA policy management."""

    def test_update_audited(self, services, admin):
        """Test a policy update records the changed fields only."""
        policy = services.admin.update_policy(admin, MfaPolicyUpdate(mfa_mode=MfaMode.TOTP_ONLY))

        assert policy.mfa_mode == MfaMode.TOTP_ONLY
        entry = services.admin.list_audit_entries(admin, action=AuditAction.MFA_POLICY_UPDATED).items[0]
        assert entry.details["changes"] == {"mfa_mode": {"from": "disabled", "to": "totp_only"}}

    def test_reset(self, services, admin):
        """Test reset restores defaults and is audited."""
        services.admin.update_policy(admin, MfaPolicyUpdate(mfa_mode=MfaMode.EMAIL_ONLY))

        policy = services.admin.reset_policy(admin)

        assert policy.mfa_mode == MfaMode.DISABLED
        assert services.admin.list_audit_entries(admin, action=AuditAction.MFA_POLICY_RESET).total == 1

    def test_role_policy(self, services, admin):
        """Test role overrides are saved and visible in the policy."""
        services.admin.set_role_policy(admin, RolePolicy(role="admin", mfa_mode=MfaMode.TOTP_ONLY))

        assert services.admin.get_policy(admin).role_policies["admin"].mfa_mode == MfaMode.TOTP_ONLY

    def test_role_policy_unknown_role(self, services, admin):
        """Test overrides for unknown roles are rejected."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.set_role_policy(admin, RolePolicy(role="owner", mfa_mode=MfaMode.TOTP_ONLY))

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_audit_newest_first(self, services, admin):
        """Test audit entries are listed newest first."""
        services.admin.update_policy(admin, MfaPolicyUpdate(mfa_mode=MfaMode.TOTP_ONLY))
        services.admin.reset_policy(admin)

        actions = [e.action for e in services.admin.list_audit_entries(admin).items]

        assert actions == [AuditAction.MFA_POLICY_RESET.value, AuditAction.MFA_POLICY_UPDATED.value]


class TestMfaAdministration:
    """Tests for unlocks, grace extensions and statistics."""

    def test_unlock_without_enrollment(self, services, admin, alice):
        """Test unlocking a principal with no MFA state is not_found."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.unlock_mfa(admin, alice.principal_id)

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_unlock_audited(self, services, admin, alice, clock):
        """Test an unlock is audited."""
        enroll_totp(services, alice.principal_id, clock)

        services.admin.unlock_mfa(admin, alice.principal_id)

        entry = services.admin.list_audit_entries(admin, action=AuditAction.MFA_UNLOCKED).items[0]
        assert entry.target_id == alice.principal_id

    @pytest.mark.parametrize("days", [0, 91])
    def test_extend_grace_bounds(self, services, admin, alice, days):
        """Test extensions must be between 1 and 90 days."""
        with pytest.raises(AuthError) as exc_info:
            services.admin.extend_grace_period(admin, alice.principal_id, days)

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_extend_grace(self, services, admin, alice):
        """Test an extension starts from the current deadline when it is in the future."""
        deadline = services.admin.extend_grace_period(admin, alice.principal_id, 10)

        assert deadline == alice.created_at + timedelta(days=17)
        assert services.principals.get(alice.principal_id).mfa_grace_until == deadline

    def test_extend_grace_after_deadline(self, services, admin, alice, clock):
        """Test an extension starts from now once the deadline has passed."""
        clock.advance(timedelta(days=30))

        deadline = services.admin.extend_grace_period(admin, alice.principal_id, 10)

        assert deadline == clock.now() + timedelta(days=10)

    def test_enforcement_statistics(self, services, admin, alice, clock):
        """Test enrollment coverage is split into enrolled, in grace and past grace."""
        services.admin.update_policy(
            admin, MfaPolicyUpdate(mfa_mode=MfaMode.TOTP_ONLY, enforcement_enabled=True, grace_period_days=7)
        )
        enroll_totp(services, alice.principal_id, clock)
        clock.advance(timedelta(days=10))
        services.principals.register("bob", "bob@example.com", PASSWORD)

        stats = services.admin.enforcement_statistics(admin)

        assert stats.mfa_mode == MfaMode.TOTP_ONLY
        assert stats.total_active == 3
        assert stats.enrolled == 1
        assert stats.not_enrolled == 2
        assert stats.in_grace == 1
        assert stats.past_grace == 1
        assert stats.exempt == 0
        assert stats.totp_enrolled == 1
        assert stats.email_enrolled == 0
        assert stats.by_role == {"user": 2, "admin": 1}

    def test_exempt_roles_counted(self, services, admin, clock):
        """Test exempt roles are reported separately."""
        services.admin.update_policy(admin, MfaPolicyUpdate(mfa_mode=MfaMode.TOTP_ONLY, enforcement_enabled=True))
        services.admin.set_role_policy(admin, RolePolicy(role="admin", exempt_from_enforcement=True))

        stats = services.admin.enforcement_statistics(admin)

        assert stats.exempt == 1
