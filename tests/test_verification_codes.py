"""
Unit tests for the verification code store.

Tests:
- Issue, verify and single use
- Expiry and attempt exhaustion
- Resend cooldown and limit
"""
from datetime import timedelta

import pytest

from auth.errors import AuthError, ErrorKind, RateLimitExceeded
from auth.verification_codes import CodeFormat, CodePurpose, CodeStore, hash_code


@pytest.fixture
def store(database, clock):
    return CodeStore(database, clock)


class TestIssue:
    """Tests for issuing codes."""

    def test_formats(self, store):
        """Test each format produces the right shape."""
        numeric6 = store.issue("usr_1", CodePurpose.MFA_LOGIN, CodeFormat.NUMERIC_6).code
        numeric8 = store.issue("usr_1", CodePurpose.PASSWORD_RESET, CodeFormat.NUMERIC_8).code
        alnum = store.issue("usr_1", CodePurpose.MFA_SETUP, CodeFormat.ALPHANUMERIC_6).code

        assert len(numeric6) == 6 and numeric6.isdigit()
        assert len(numeric8) == 8 and numeric8.isdigit()
        assert len(alnum) == 6 and alnum.isalnum() and alnum == alnum.upper()

    def test_expiry_from_ttl(self, store, clock):
        """Test expires_at is issue time plus the TTL."""
        issued = store.issue("usr_1", CodePurpose.MFA_LOGIN, ttl_minutes=10)

        assert issued.sent_at == clock.now()
        assert issued.expires_at == clock.now() + timedelta(minutes=10)

    def test_new_code_invalidates_previous(self, store):
        """Test only the newest code for a purpose is accepted."""
        first = store.issue("usr_1", CodePurpose.MFA_LOGIN).code
        second = store.issue("usr_1", CodePurpose.MFA_LOGIN).code

        if first != second:
            with pytest.raises(AuthError):
                store.verify("usr_1", CodePurpose.MFA_LOGIN, first)
        assert store.verify("usr_1", CodePurpose.MFA_LOGIN, second) is None

    def test_hash_is_case_insensitive(self):
        """Test codes hash the same regardless of case and whitespace."""
        assert hash_code("ab3d9k") == hash_code(" AB3D9K ")


class TestVerify:
    """Tests for verifying codes."""

    def test_single_use(self, store):
        """Test a verified code cannot be used again."""
        code = store.issue("usr_1", CodePurpose.EMAIL_VERIFY).code

        store.verify("usr_1", CodePurpose.EMAIL_VERIFY, code)

        with pytest.raises(AuthError) as exc_info:
            store.verify("usr_1", CodePurpose.EMAIL_VERIFY, code)
        assert exc_info.value.kind == ErrorKind.CODE_INVALID

    def test_returns_target_email(self, store):
        """Test the target email recorded at issue is returned."""
        code = store.issue("usr_1", CodePurpose.ALTERNATE_EMAIL, target_email="alt@example.com").code

        assert store.verify("usr_1", CodePurpose.ALTERNATE_EMAIL, code) == "alt@example.com"

    def test_purposes_are_separate(self, store):
        """Test a code issued for one purpose is not valid for another."""
        code = store.issue("usr_1", CodePurpose.MFA_LOGIN).code

        with pytest.raises(AuthError) as exc_info:
            store.verify("usr_1", CodePurpose.PASSWORD_RESET, code)
        assert exc_info.value.kind == ErrorKind.CODE_INVALID

    def test_no_open_code(self, store):
        """Test verifying with nothing issued is invalid."""
        with pytest.raises(AuthError) as exc_info:
            store.verify("usr_1", CodePurpose.MFA_LOGIN, "123456")
        assert exc_info.value.kind == ErrorKind.CODE_INVALID

    def test_expired(self, store, clock):
        """Test a code is rejected at its expiry time."""
        code = store.issue("usr_1", CodePurpose.MFA_LOGIN, ttl_minutes=5).code

        clock.advance(timedelta(minutes=5))

        with pytest.raises(AuthError) as exc_info:
            store.verify("usr_1", CodePurpose.MFA_LOGIN, code)
        assert exc_info.value.kind == ErrorKind.CODE_EXPIRED

    def test_attempts_exhausted(self, store):
        """Test the correct code is refused after max wrong attempts."""
        code = store.issue("usr_1", CodePurpose.MFA_LOGIN).code
        wrong = "000000" if code != "000000" else "111111"

        for _ in range(5):
            with pytest.raises(AuthError) as exc_info:
                store.verify("usr_1", CodePurpose.MFA_LOGIN, wrong, max_attempts=5)
            assert exc_info.value.kind == ErrorKind.CODE_INVALID

        with pytest.raises(AuthError) as exc_info:
            store.verify("usr_1", CodePurpose.MFA_LOGIN, code, max_attempts=5)
        assert exc_info.value.kind == ErrorKind.CODE_ATTEMPTS_EXHAUSTED

    def test_invalidate(self, store):
        """Test invalidating removes the open code."""
        code = store.issue("usr_1", CodePurpose.MFA_LOGIN).code

        assert store.invalidate("usr_1", CodePurpose.MFA_LOGIN) == 1

        with pytest.raises(AuthError):
            store.verify("usr_1", CodePurpose.MFA_LOGIN, code)

    def test_cleanup_expired(self, store, clock):
        """Test cleanup purges expired and consumed codes."""
        used = store.issue("usr_1", CodePurpose.EMAIL_VERIFY).code
        store.verify("usr_1", CodePurpose.EMAIL_VERIFY, used)
        store.issue("usr_1", CodePurpose.MFA_LOGIN, ttl_minutes=1)
        clock.advance(timedelta(minutes=2))

        assert store.cleanup_expired() == 2


class TestResend:
    """Tests for resend cooldown and limit."""

    def test_cooldown(self, store, clock):
        """Test resending inside the cooldown is refused with retry_after."""
        store.issue("usr_1", CodePurpose.MFA_LOGIN)
        clock.advance(timedelta(seconds=20))

        with pytest.raises(RateLimitExceeded) as exc_info:
            store.resend("usr_1", CodePurpose.MFA_LOGIN, cooldown_seconds=60)

        assert exc_info.value.retry_after == 40
        assert exc_info.value.kind == ErrorKind.RATE_LIMITED

    def test_limit(self, store, clock):
        """Test at most resend_limit resends per open code."""
        store.issue("usr_1", CodePurpose.MFA_LOGIN, ttl_minutes=10)

        for _ in range(3):
            clock.advance(timedelta(seconds=61))
            store.resend("usr_1", CodePurpose.MFA_LOGIN, ttl_minutes=10, resend_limit=3, cooldown_seconds=60)

        clock.advance(timedelta(seconds=61))
        with pytest.raises(RateLimitExceeded):
            store.resend("usr_1", CodePurpose.MFA_LOGIN, ttl_minutes=10, resend_limit=3, cooldown_seconds=60)

    def test_resend_replaces_code(self, store, clock):
        """Test the resent code is the one that verifies."""
        store.issue("usr_1", CodePurpose.MFA_LOGIN)
        clock.advance(timedelta(seconds=61))

        code = store.resend("usr_1", CodePurpose.MFA_LOGIN).code

        store.verify("usr_1", CodePurpose.MFA_LOGIN, code)
