"""
Tests for principal management and password recovery.

Tests:
- Registration and email verification
- Test email limits
- Password changes
- Password reset by emailed code
- Linked identities
"""
from datetime import timedelta

import pytest

from auth.errors import AuthError, ErrorKind, RateLimitExceeded
from auth.login_flow import CredentialsIssued
from auth.mailer import MailTemplate

from tests.conftest import PASSWORD, make_ctx

NEW_PASSWORD = "N3w-Passw0rd!"


class TestRegistration:
    """Tests for registration."""

    def test_register(self, services, mailer):
        """Test a new principal is created unverified and mailed a code."""
        principal = services.principals.register("bob", "Bob@Example.com", PASSWORD)

        assert principal.principal_id.startswith("usr_")
        assert principal.email == "bob@example.com"
        assert principal.email_verified is False
        assert principal.role == "user"
        assert mailer.messages[-1].template == MailTemplate.EMAIL_VERIFY
        assert mailer.messages[-1].to == "bob@example.com"

    def test_verify_email(self, services, mailer):
        """Test the mailed code verifies the email."""
        principal = services.principals.register("bob", "bob@example.com", PASSWORD)

        verified = services.principals.verify_email(principal.principal_id, mailer.last_code(MailTemplate.EMAIL_VERIFY))

        assert verified.email_verified is True
        assert verified.email_verified_at is not None

    def test_verify_email_wrong_code(self, services):
        """Test a wrong verification code is rejected."""
        principal = services.principals.register("bob", "bob@example.com", PASSWORD)

        with pytest.raises(AuthError) as exc_info:
            services.principals.verify_email(principal.principal_id, "not-it")

        assert exc_info.value.kind == ErrorKind.CODE_INVALID

    def test_resend_after_verified(self, services, mailer):
        """Test no code is resent once the email is verified."""
        principal = services.principals.register("bob", "bob@example.com", PASSWORD)
        services.principals.verify_email(principal.principal_id, mailer.last_code(MailTemplate.EMAIL_VERIFY))

        with pytest.raises(AuthError) as exc_info:
            services.principals.resend_verification(principal.principal_id)

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_duplicate_email(self, services, alice):
        """Test emails are unique regardless of case."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.register("alice2", "ALICE@example.com", PASSWORD)

        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_duplicate_handle(self, services, alice):
        """Test handles are unique."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.register("alice", "other@example.com", PASSWORD)

        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_weak_password(self, services):
        """Test weak passwords are rejected with reasons."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.register("bob", "bob@example.com", "password")

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT
        assert exc_info.value.details["reasons"]

    @pytest.mark.parametrize("handle,email", [
        ("b!", "bob@example.com"),
        ("bob", "not-an-email"),
    ])
    def test_invalid_input(self, services, handle, email):
        """Test malformed handles and emails are rejected."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.register(handle, email, PASSWORD)

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_register_rate_limit(self, services):
        """Test registrations from one IP are limited."""
        ctx = make_ctx(ip="203.0.113.9")
        for i in range(5):
            services.principals.register(f"user{i}", f"user{i}@example.com", PASSWORD, ctx)

        with pytest.raises(RateLimitExceeded):
            services.principals.register("user5", "user5@example.com", PASSWORD, ctx)


class TestMailDeliveryCheck:
    """Tests for the test email."""

    def test_sent_to_primary_email(self, services, alice, mailer):
        """Test the message goes to the principal's primary email."""
        recipient = services.principals.send_test_email(alice.principal_id, make_ctx())

        assert recipient == "alice@example.com"
        assert mailer.messages[-1].template == MailTemplate.TEST_EMAIL
        assert mailer.messages[-1].to == "alice@example.com"

    def test_cooldown(self, services, alice, clock):
        """Test a second send within 30 seconds is limited, after that it is allowed."""
        services.principals.send_test_email(alice.principal_id)

        with pytest.raises(RateLimitExceeded) as exc_info:
            services.principals.send_test_email(alice.principal_id)
        assert exc_info.value.retry_after == 30

        clock.advance(timedelta(seconds=30))
        services.principals.send_test_email(alice.principal_id)

    def test_daily_limit(self, services, alice, admin, clock):
        """Test the 26th send in a day is limited and other principals are unaffected."""
        for _ in range(25):
            services.principals.send_test_email(alice.principal_id)
            clock.advance(timedelta(seconds=31))

        with pytest.raises(RateLimitExceeded):
            services.principals.send_test_email(alice.principal_id)
        services.principals.send_test_email(admin.principal_id)


class TestPasswordChange:
    """Tests for changing a password."""

    def test_change_password(self, services, alice):
        """Test the new password works, the old one does not, and sessions end."""
        services.login.authenticate("alice@example.com", PASSWORD, make_ctx())

        revoked = services.principals.change_password(alice.principal_id, PASSWORD, NEW_PASSWORD)

        assert revoked == 1
        assert services.sessions.list_for(alice.principal_id) == []
        with pytest.raises(AuthError):
            services.login.authenticate("alice@example.com", PASSWORD, make_ctx())
        assert isinstance(
            services.login.authenticate("alice@example.com", NEW_PASSWORD, make_ctx()), CredentialsIssued
        )

    def test_change_password_event(self, services, alice):
        """Test a password change records a critical event."""
        services.principals.change_password(alice.principal_id, PASSWORD, NEW_PASSWORD)

        event = services.events.security_events(alice.principal_id).items[0]

        assert (event.event_type, event.severity) == ("password-changed", "critical")
        assert event.details["reason"] == "password_changed"

    def test_wrong_current_password(self, services, alice):
        """Test the current password must match."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.change_password(alice.principal_id, "wrong-Passw0rd", NEW_PASSWORD)

        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS

    def test_same_password(self, services, alice):
        """Test the new password must differ."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.change_password(alice.principal_id, PASSWORD, PASSWORD)

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_weak_new_password(self, services, alice):
        """Test the new password must be strong."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.change_password(alice.principal_id, PASSWORD, "short")

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT


class TestPasswordReset:
    """Tests for password reset by email."""

    def test_reset(self, services, alice, mailer):
        """Test the mailed code sets a new password."""
        services.password_reset.request_reset("alice@example.com")
        code = mailer.last_code(MailTemplate.PASSWORD_RESET, to="alice@example.com")

        assert len(code) == 8

        services.password_reset.reset_password("alice@example.com", code, NEW_PASSWORD)

        assert isinstance(
            services.login.authenticate("alice@example.com", NEW_PASSWORD, make_ctx()), CredentialsIssued
        )

    def test_reset_code_single_use(self, services, alice, mailer):
        """Test a reset code works once."""
        services.password_reset.request_reset("alice@example.com")
        code = mailer.last_code(MailTemplate.PASSWORD_RESET)
        services.password_reset.reset_password("alice@example.com", code, NEW_PASSWORD)

        with pytest.raises(AuthError) as exc_info:
            services.password_reset.reset_password("alice@example.com", code, "An0ther-Passw0rd")

        assert exc_info.value.kind == ErrorKind.CODE_INVALID

    def test_unknown_email_is_silent(self, services, alice, mailer):
        """Test a reset for an unknown email sends nothing and raises nothing."""
        sent = len(mailer.messages)

        services.password_reset.request_reset("nobody@example.com")

        assert len(mailer.messages) == sent

    def test_wrong_code(self, services, alice, mailer):
        """Test a wrong code is rejected and the password is unchanged."""
        services.password_reset.request_reset("alice@example.com")

        with pytest.raises(AuthError) as exc_info:
            services.password_reset.reset_password("alice@example.com", "00000000x", NEW_PASSWORD)

        assert exc_info.value.kind == ErrorKind.CODE_INVALID
        assert isinstance(services.login.authenticate("alice@example.com", PASSWORD, make_ctx()), CredentialsIssued)

    def test_unknown_email_reset(self, services):
        """Test resetting an unknown email looks like a wrong code."""
        with pytest.raises(AuthError) as exc_info:
            services.password_reset.reset_password("nobody@example.com", "12345678", NEW_PASSWORD)

        assert exc_info.value.kind == ErrorKind.CODE_INVALID

    def test_reset_logs_out_everywhere(self, services, alice, mailer):
        """Test a reset ends every session."""
        credentials = services.login.authenticate("alice@example.com", PASSWORD, make_ctx()).credentials
        services.password_reset.request_reset("alice@example.com")

        services.password_reset.reset_password(
            "alice@example.com", mailer.last_code(MailTemplate.PASSWORD_RESET), NEW_PASSWORD
        )

        with pytest.raises(AuthError):
            services.credentials.verify_access(credentials.access_token)


class TestLinkedIdentities:
    """Tests for external identity links."""

    def test_link_and_find(self, services, alice):
        """Test a linked identity resolves to its principal."""
        view = services.principals.link_identity(alice.principal_id, "google", "g-1", "Alice@Gmail.com")

        assert view.provider_email == "alice@gmail.com"
        assert services.principals.find_by_identity("google", "g-1").principal_id == alice.principal_id
        assert [i.provider for i in services.principals.list_identities(alice.principal_id)] == ["google"]

    def test_link_twice(self, services, alice, admin):
        """Test an identity links to one principal only."""
        services.principals.link_identity(alice.principal_id, "github", "gh-1")

        with pytest.raises(AuthError) as exc_info:
            services.principals.link_identity(admin.principal_id, "github", "gh-1")

        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_unsupported_provider(self, services, alice):
        """Test only known providers can be linked."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.link_identity(alice.principal_id, "myspace", "m-1")

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_unlink(self, services, alice):
        """Test unlinking removes the identity."""
        services.principals.link_identity(alice.principal_id, "google", "g-1")

        services.principals.unlink_identity(alice.principal_id, "google")

        assert services.principals.find_by_identity("google", "g-1") is None

    def test_unlink_missing(self, services, alice):
        """Test unlinking an identity that is not linked is not_found."""
        with pytest.raises(AuthError) as exc_info:
            services.principals.unlink_identity(alice.principal_id, "google")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND
