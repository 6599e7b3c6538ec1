"""
Unit tests for password hashing.

Tests:
- Hash/verify roundtrip and salting
- Malformed digests
- Strength rules
"""
from datetime import timedelta

import pytest

from auth.clock import Deadline, ManualClock, RequestContext
from auth.errors import AuthError, ErrorKind


class TestPasswordHasher:
    """Tests for PasswordHasher."""

    def test_verify_roundtrip(self, hasher):
        """Test a password verifies against its own digest and nothing else."""
        digest = hasher.hash("Passw0rd!")

        assert hasher.verify("Passw0rd!", digest) is True
        assert hasher.verify("passw0rd!", digest) is False
        assert hasher.verify("", digest) is False

    def test_hashes_are_salted(self, hasher):
        """Test two hashes of the same password differ."""
        assert hasher.hash("Passw0rd!") != hasher.hash("Passw0rd!")

    def test_digest_is_argon2id(self, hasher):
        """Test the digest carries the algorithm and parameters."""
        assert hasher.hash("Passw0rd!").startswith("$argon2id$")

    def test_malformed_digest_is_internal_error(self, hasher):
        """Test a corrupt stored digest raises internal."""
        with pytest.raises(AuthError) as exc_info:
            hasher.verify("Passw0rd!", "not-a-digest")

        assert exc_info.value.kind == ErrorKind.INTERNAL

    def test_needs_rehash_after_cost_change(self, hasher):
        """Test digests from a cheaper configuration are flagged for upgrade."""
        from auth.password_hasher import PasswordHasher

        stronger = PasswordHasher(time_cost=2, memory_cost=1024, parallelism=1)
        digest = hasher.hash("Passw0rd!")

        assert hasher.needs_rehash(digest) is False
        assert stronger.needs_rehash(digest) is True

    def test_expired_deadline(self, hasher):
        """Test hashing refuses to start after the deadline."""
        clock = ManualClock()
        ctx = RequestContext(deadline=Deadline.after(1, clock))
        clock.advance(timedelta(seconds=2))

        with pytest.raises(AuthError) as exc_info:
            hasher.hash("Passw0rd!", ctx)

        assert exc_info.value.kind == ErrorKind.DEADLINE_EXCEEDED


class TestPasswordStrength:
    """Tests for the strength check."""

    @pytest.mark.parametrize("password", ["Passw0rd!", "abcdefG1", "ABCDEF1!", "correct-Horse-battery"])
    def test_strong_passwords(self, hasher, password):
        """Test passwords with length and three classes pass."""
        assert hasher.strength(password).ok is True

    def test_too_short(self, hasher):
        """Test short passwords are rejected with a reason."""
        result = hasher.strength("Ab1!")

        assert result.ok is False
        assert any("at least 8" in reason for reason in result.reasons)

    def test_too_few_classes(self, hasher):
        """Test two character classes are not enough."""
        result = hasher.strength("abcdefgh123")

        assert result.ok is False
        assert any("uppercase" in reason for reason in result.reasons)
