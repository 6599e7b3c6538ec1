"""
Tests for the credential lifecycle.

Tests:
- Issuance and refresh rotation
- Refresh reuse detection
- Logout and logout everywhere
- Request authentication
"""
from datetime import timedelta

import pytest

from auth.errors import AuthError, ErrorKind
from database.repositories import PrincipalRepository

from tests.conftest import PASSWORD, SAFARI_IPHONE, make_ctx


def login(services, ctx=None):
    return services.login.authenticate("alice@example.com", PASSWORD, ctx or make_ctx()).credentials


class TestRefresh:
    """Tests for refresh token rotation."""

    def test_rotation(self, services, alice):
        """Test a refresh returns a new pair bound to the same session."""
        first = login(services)

        second = services.credentials.refresh(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        assert second.session_id == first.session_id
        assert services.credentials.authenticate(second.access_token).principal_id == alice.principal_id

    def test_chained_rotation(self, services, alice):
        """Test each new refresh token can be rotated in turn."""
        credentials = login(services)
        for _ in range(3):
            credentials = services.credentials.refresh(credentials.refresh_token)

        assert credentials.session_id

    def test_reuse_revokes_family(self, services, alice):
        """Test replaying an old refresh token revokes the whole family."""
        first = login(services)
        second = services.credentials.refresh(first.refresh_token)

        with pytest.raises(AuthError) as exc_info:
            services.credentials.refresh(first.refresh_token)
        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS

        with pytest.raises(AuthError) as exc_info:
            services.credentials.refresh(second.refresh_token)
        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS

    def test_reuse_event(self, services, alice):
        """Test reuse records a critical suspicious event."""
        first = login(services)
        services.credentials.refresh(first.refresh_token)

        with pytest.raises(AuthError):
            services.credentials.refresh(first.refresh_token)

        event = services.events.security_events(alice.principal_id).items[0]
        assert (event.event_type, event.severity) == ("suspicious", "critical")
        assert event.details["reason"] == "refresh_reuse_detected"

    def test_access_token_not_a_refresh_token(self, services, alice):
        """Test an access token cannot be used to refresh."""
        credentials = login(services)

        with pytest.raises(AuthError) as exc_info:
            services.credentials.refresh(credentials.access_token)

        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS

    def test_refresh_after_access_expiry(self, services, alice, clock):
        """Test an expired access token is replaced by refreshing."""
        credentials = login(services)
        clock.advance(timedelta(seconds=901))

        with pytest.raises(AuthError):
            services.credentials.verify_access(credentials.access_token)

        renewed = services.credentials.refresh(credentials.refresh_token)
        assert services.credentials.verify_access(renewed.access_token).sub == alice.principal_id

    def test_refresh_idle_session(self, services, alice, clock):
        """Test a session idle past the timeout cannot be refreshed."""
        credentials = login(services)
        clock.advance(timedelta(minutes=31))

        with pytest.raises(AuthError) as exc_info:
            services.credentials.refresh(credentials.refresh_token)

        assert exc_info.value.kind == ErrorKind.SESSION_EXPIRED


class TestLogout:
    """Tests for logout paths."""

    def test_logout(self, services, alice):
        """Test logout ends the session and its refresh family."""
        credentials = login(services)

        services.credentials.logout(alice.principal_id, credentials.session_id)

        with pytest.raises(AuthError) as exc_info:
            services.credentials.authenticate(credentials.access_token)
        assert exc_info.value.kind == ErrorKind.SESSION_EXPIRED

        with pytest.raises(AuthError) as exc_info:
            services.credentials.refresh(credentials.refresh_token)
        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS

    def test_logout_foreign_session(self, services, alice, admin):
        """Test a principal cannot log out another principal's session."""
        credentials = login(services)

        with pytest.raises(AuthError) as exc_info:
            services.credentials.logout(admin.principal_id, credentials.session_id)

        assert exc_info.value.kind == ErrorKind.SESSION_FORBIDDEN

    def test_logout_everywhere(self, services, alice):
        """Test every session ends and old access tokens stop verifying."""
        desktop = login(services)
        phone = login(services, make_ctx(user_agent=SAFARI_IPHONE))

        assert services.credentials.logout_everywhere(alice.principal_id) == 2

        for credentials in (desktop, phone):
            with pytest.raises(AuthError) as exc_info:
                services.credentials.verify_access(credentials.access_token)
            assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS

        assert services.sessions.list_for(alice.principal_id) == []

    def test_login_after_logout_everywhere(self, services, alice):
        """Test tokens issued after the epoch bump are valid."""
        login(services)
        services.credentials.logout_everywhere(alice.principal_id)

        fresh = login(services)

        assert services.credentials.authenticate(fresh.access_token).principal_id == alice.principal_id

    def test_role_change_revokes_access(self, services, alice, admin):
        """Test bumping the epoch invalidates outstanding access tokens."""
        credentials = login(services)

        services.credentials.bump_epoch(alice.principal_id)

        with pytest.raises(AuthError):
            services.credentials.verify_access(credentials.access_token)


class TestMiddleware:
    """Tests for request authentication."""

    def test_bearer_header(self, services, alice):
        """Test a bearer header resolves to an actor."""
        credentials = login(services)

        actor = services.middleware.authenticate_request(f"Bearer {credentials.access_token}")

        assert actor.principal_id == alice.principal_id
        assert actor.role == "user"
        assert actor.session_id == credentials.session_id
        assert actor.email == "alice@example.com"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer"])
    def test_missing_token(self, services, header):
        """Test missing or non-bearer headers are rejected."""
        with pytest.raises(AuthError) as exc_info:
            services.middleware.authenticate_request(header)

        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS

    def test_deactivated_principal(self, services, alice):
        """Test tokens stop working once the principal is deactivated."""
        credentials = login(services)

        with services.database.session_scope() as db:
            PrincipalRepository(db).get_by_id(alice.principal_id).is_active = False

        with pytest.raises(AuthError) as exc_info:
            services.middleware.authenticate_request(f"Bearer {credentials.access_token}")

        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS
