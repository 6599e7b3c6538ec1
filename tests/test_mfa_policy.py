"""
Unit tests for MFA policy resolution and persistence.

Tests:
- resolve() across modes, enrollment, grace and trust
- Role overrides and exemptions
- PolicyStore roundtrip, partial update and reset
"""
from datetime import datetime, timedelta

import pytest

from auth.mfa_policy import (
    EnrollmentState,
    LockoutBehavior,
    MfaMethod,
    MfaMode,
    MfaPolicy,
    MfaPolicyUpdate,
    PolicyStore,
    PrincipalFacts,
    RolePolicy,
    resolve,
)
from auth.verification_codes import CodeFormat

NOW = datetime(2024, 1, 15, 12, 0, 0)


def principal(role: str = "user", created_days_ago: int = 30, grace_until=None) -> PrincipalFacts:
    return PrincipalFacts(
        principal_id="usr_1",
        role=role,
        created_at=NOW - timedelta(days=created_days_ago),
        mfa_grace_until=grace_until,
    )


TOTP_ONLY = EnrollmentState(totp_enabled=True, backup_codes_remaining=10)
EMAIL_ONLY = EnrollmentState(email_enabled=True, preferred_method=MfaMethod.EMAIL)
BOTH = EnrollmentState(totp_enabled=True, email_enabled=True, backup_codes_remaining=10)
NONE = EnrollmentState()


class TestResolve:
    """Tests for the pure requirement function."""

    def test_disabled(self):
        """Test no MFA when the mode is disabled, even if enrolled."""
        requirement = resolve(MfaPolicy(), principal(), BOTH, NOW)

        assert requirement.required is False
        assert requirement.reason == "mfa_disabled"

    def test_totp_only_enrolled(self):
        """Test TOTP mode challenges an enrolled principal with backup available."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_ONLY)

        requirement = resolve(policy, principal(), TOTP_ONLY, NOW)

        assert requirement.required is True
        assert requirement.methods == [MfaMethod.TOTP]
        assert requirement.preferred == MfaMethod.TOTP
        assert requirement.backup_allowed is True
        assert MfaMethod.BACKUP in requirement.available_methods

    def test_backup_not_offered_for_email(self):
        """Test backup codes only count for email when the policy allows it."""
        policy = MfaPolicy(mfa_mode=MfaMode.EMAIL_ONLY)
        enrollment = EnrollmentState(email_enabled=True, backup_codes_remaining=10)

        assert resolve(policy, principal(), enrollment, NOW).backup_allowed is False

        policy = MfaPolicy(mfa_mode=MfaMode.EMAIL_ONLY, backup_codes_for_email=True)
        assert resolve(policy, principal(), enrollment, NOW).backup_allowed is True

    def test_not_enrolled_without_enforcement(self):
        """Test unenrolled principals log in without MFA when enforcement is off."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_ONLY)

        requirement = resolve(policy, principal(), NONE, NOW)

        assert requirement.required is False
        assert requirement.reason == "not_enrolled"

    def test_all_required_in_order(self):
        """Test both factors are required, TOTP first."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_AND_EMAIL_REQUIRED)

        requirement = resolve(policy, principal(), BOTH, NOW)

        assert requirement.all_required is True
        assert requirement.methods == [MfaMethod.TOTP, MfaMethod.EMAIL]

    def test_fallback_offers_email(self):
        """Test primary-with-fallback accepts email alongside TOTP."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_PRIMARY_EMAIL_FALLBACK)

        requirement = resolve(policy, principal(), BOTH, NOW)

        assert requirement.methods == [MfaMethod.TOTP]
        assert MfaMethod.EMAIL in requirement.available_methods
        assert requirement.all_required is False

    def test_fallback_email_when_totp_missing(self):
        """Test email alone satisfies the fallback mode."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_PRIMARY_EMAIL_FALLBACK, enforcement_enabled=True)

        requirement = resolve(policy, principal(), EMAIL_ONLY, NOW)

        assert requirement.required is True
        assert requirement.methods == [MfaMethod.EMAIL]
        assert requirement.preferred == MfaMethod.EMAIL

    def test_grace_period(self):
        """Test new unenrolled principals are let in during the grace period."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_ONLY, enforcement_enabled=True, grace_period_days=7)

        requirement = resolve(policy, principal(created_days_ago=2), NONE, NOW)

        assert requirement.required is False
        assert requirement.in_grace is True
        assert requirement.grace_deadline == NOW + timedelta(days=5)
        assert requirement.reason == "grace_period"

    def test_setup_required_after_grace(self):
        """Test unenrolled principals must set up MFA once grace has passed."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_ONLY, enforcement_enabled=True, grace_period_days=7)

        requirement = resolve(policy, principal(created_days_ago=8), NONE, NOW)

        assert requirement.required is True
        assert requirement.setup_required is True
        assert requirement.methods == [MfaMethod.TOTP]
        assert requirement.reason == "enrollment_required"

    def test_grace_counts_from_enforcement_start(self):
        """Test principals older than the grace period get grace from when enforcement began."""
        policy = MfaPolicy(
            mfa_mode=MfaMode.TOTP_ONLY,
            enforcement_enabled=True,
            grace_period_days=7,
            enforcement_started_at=NOW - timedelta(days=2),
        )

        requirement = resolve(policy, principal(created_days_ago=30), NONE, NOW)

        assert requirement.required is False
        assert requirement.in_grace is True
        assert requirement.grace_deadline == NOW + timedelta(days=5)

    def test_grace_counts_from_creation_after_start(self):
        """Test principals created after enforcement began get grace from creation."""
        policy = MfaPolicy(
            mfa_mode=MfaMode.TOTP_ONLY,
            enforcement_enabled=True,
            grace_period_days=7,
            enforcement_started_at=NOW - timedelta(days=20),
        )

        requirement = resolve(policy, principal(created_days_ago=10), NONE, NOW)

        assert requirement.setup_required is True
        assert requirement.grace_deadline == NOW - timedelta(days=3)

    def test_grace_override(self):
        """Test a per-principal grace extension wins over creation time."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_ONLY, enforcement_enabled=True, grace_period_days=7)

        requirement = resolve(
            policy, principal(created_days_ago=30, grace_until=NOW + timedelta(days=3)), NONE, NOW
        )

        assert requirement.in_grace is True
        assert requirement.grace_deadline == NOW + timedelta(days=3)

    def test_partial_enrollment_in_grace(self):
        """Test a half-enrolled principal verifies what it has during grace."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_AND_EMAIL_REQUIRED, enforcement_enabled=True)

        requirement = resolve(policy, principal(created_days_ago=1), TOTP_ONLY, NOW)

        assert requirement.required is True
        assert requirement.methods == [MfaMethod.TOTP]
        assert requirement.in_grace is True

    def test_trusted_device(self):
        """Test a trusted device skips MFA when trust is enabled."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_ONLY, device_trust_enabled=True)

        requirement = resolve(policy, principal(), TOTP_ONLY, NOW, trusted_until=NOW + timedelta(days=1))

        assert requirement.required is False
        assert requirement.reason == "trusted_device"

    def test_trust_ignored_when_disabled(self):
        """Test stale trust does not bypass MFA once trust is switched off."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_ONLY, device_trust_enabled=False)

        requirement = resolve(policy, principal(), TOTP_ONLY, NOW, trusted_until=NOW + timedelta(days=1))

        assert requirement.required is True

    def test_expired_trust(self):
        """Test expired trust does not bypass MFA."""
        policy = MfaPolicy(mfa_mode=MfaMode.TOTP_ONLY, device_trust_enabled=True)

        requirement = resolve(policy, principal(), TOTP_ONLY, NOW, trusted_until=NOW - timedelta(seconds=1))

        assert requirement.required is True


class TestRolePolicies:
    """Tests for per-role overrides."""

    def test_role_mode_override(self):
        """Test a role's mode replaces the global mode when role-based MFA is on."""
        policy = MfaPolicy(
            mfa_mode=MfaMode.DISABLED,
            role_based_mfa_enabled=True,
            role_policies={"admin": RolePolicy(role="admin", mfa_mode=MfaMode.TOTP_ONLY)},
        )

        assert resolve(policy, principal(role="admin"), TOTP_ONLY, NOW).required is True
        assert resolve(policy, principal(role="user"), TOTP_ONLY, NOW).required is False

    def test_role_override_ignored_when_off(self):
        """Test role overrides are inert unless role-based MFA is enabled."""
        policy = MfaPolicy(
            mfa_mode=MfaMode.DISABLED,
            role_policies={"admin": RolePolicy(role="admin", mfa_mode=MfaMode.TOTP_ONLY)},
        )

        assert resolve(policy, principal(role="admin"), TOTP_ONLY, NOW).required is False

    def test_exempt_role(self):
        """Test exempt roles are not forced into setup."""
        policy = MfaPolicy(
            mfa_mode=MfaMode.TOTP_ONLY,
            enforcement_enabled=True,
            role_policies={"user": RolePolicy(role="user", exempt_from_enforcement=True)},
        )

        requirement = resolve(policy, principal(created_days_ago=30), NONE, NOW)

        assert requirement.required is False
        assert requirement.reason == "not_enrolled"


class TestPolicyStore:
    """Tests for policy persistence."""

    @pytest.fixture
    def store(self, database, clock):
        return PolicyStore(database, clock)

    def test_defaults(self, store):
        """Test an unsaved policy returns defaults."""
        policy = store.get()

        assert policy.mfa_mode == MfaMode.DISABLED
        assert policy.code_format == CodeFormat.NUMERIC_6
        assert policy.max_failed_attempts == 5
        assert policy.lockout_behavior == LockoutBehavior.TEMPORARY
        assert policy.role_policies == {}

    def test_partial_update(self, store):
        """Test an update changes only the given fields."""
        store.update(MfaPolicyUpdate(mfa_mode=MfaMode.TOTP_ONLY, max_failed_attempts=3))
        store.update(MfaPolicyUpdate(code_format=CodeFormat.ALPHANUMERIC_6))

        policy = store.get()

        assert policy.mfa_mode == MfaMode.TOTP_ONLY
        assert policy.max_failed_attempts == 3
        assert policy.code_format == CodeFormat.ALPHANUMERIC_6

    def test_update_validates_ranges(self):
        """Test out-of-range values are rejected."""
        with pytest.raises(ValueError):
            MfaPolicyUpdate(max_failed_attempts=0)

    def test_role_policy_roundtrip(self, store):
        """Test role overrides persist."""
        store.set_role_policy(RolePolicy(role="admin", mfa_mode=MfaMode.TOTP_AND_EMAIL_REQUIRED))

        policy = store.get()

        assert policy.role_policies["admin"].mfa_mode == MfaMode.TOTP_AND_EMAIL_REQUIRED

    def test_enforcement_start_recorded(self, store, clock):
        """Test switching enforcement on records the time and later updates keep it."""
        store.update(MfaPolicyUpdate(mfa_mode=MfaMode.TOTP_ONLY, enforcement_enabled=True))
        started = clock.now()

        clock.advance(timedelta(days=3))
        store.update(MfaPolicyUpdate(grace_period_days=14))

        assert store.get().enforcement_started_at == started

    def test_enforcement_restart(self, store, clock):
        """Test switching enforcement off clears the start and switching it on again restarts it."""
        store.update(MfaPolicyUpdate(mfa_mode=MfaMode.TOTP_ONLY, enforcement_enabled=True))
        store.update(MfaPolicyUpdate(enforcement_enabled=False))

        assert store.get().enforcement_started_at is None

        clock.advance(timedelta(days=5))
        store.update(MfaPolicyUpdate(enforcement_enabled=True))

        assert store.get().enforcement_started_at == clock.now()

    def test_reset(self, store):
        """Test reset restores defaults and drops role overrides."""
        store.update(MfaPolicyUpdate(mfa_mode=MfaMode.EMAIL_ONLY, enforcement_enabled=True))
        store.set_role_policy(RolePolicy(role="admin", exempt_from_enforcement=True))

        store.reset()
        policy = store.get()

        assert policy.mfa_mode == MfaMode.DISABLED
        assert policy.enforcement_enabled is False
        assert policy.role_policies == {}
