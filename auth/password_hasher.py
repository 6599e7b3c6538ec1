"""
Password hashing with Argon2id.

The digest string carries the algorithm parameters and a per-hash salt, so
cost can be raised later and old digests upgraded on next login.
"""
import logging
import re
from typing import List, Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from pydantic import BaseModel, Field

from auth.clock import RequestContext, check_deadline
from auth.errors import AuthError, ErrorKind

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MIN_CHARACTER_CLASSES = 3


class PasswordStrength(BaseModel):
    """Result of a password strength check."""

    ok: bool = Field(description="Whether the password is acceptable")
    reasons: List[str] = Field(default_factory=list, description="Unmet requirements")


class PasswordHasher:
    """Argon2id password hashing and strength checks."""

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        """
        Initialize the hasher.

        Args:
            time_cost: Argon2 iterations (KDF_COST)
            memory_cost: Memory in KiB
            parallelism: Lanes
        """
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against unknown accounts so timing matches a real check
        self._dummy_digest = self._hasher.hash("dummy-password-for-timing")

    def hash(self, plaintext: str, ctx: Optional[RequestContext] = None) -> str:
        """
        Hash a password.

        Args:
            plaintext: Password to hash
            ctx: Request context (deadline)

        Returns:
            Encoded Argon2id digest
        """
        check_deadline(ctx)
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str, ctx: Optional[RequestContext] = None) -> bool:
        """
        Verify a password against a digest.

        Args:
            plaintext: Candidate password
            digest: Stored Argon2id digest
            ctx: Request context (deadline)

        Returns:
            True if the password matches

        Raises:
            AuthError: internal if the digest is malformed
        """
        check_deadline(ctx)
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHashError as e:
            logger.error(f"Malformed password digest: {e}")
            raise AuthError(ErrorKind.INTERNAL, "Stored password digest is malformed")
        except VerificationError:
            return False

    def dummy_verify(self, plaintext: str) -> None:
        """Spend one verification's worth of time without a real digest."""
        try:
            self._hasher.verify(self._dummy_digest, plaintext)
        except VerifyMismatchError:
            pass

    def needs_rehash(self, digest: str) -> bool:
        return self._hasher.check_needs_rehash(digest)

    @staticmethod
    def strength(plaintext: str) -> PasswordStrength:
        """
        Check password strength.

        Requires at least 8 characters and three of: lowercase, uppercase,
        digit, symbol.

        Args:
            plaintext: Candidate password

        Returns:
            PasswordStrength with the list of unmet requirements
        """
        reasons = []

        if len(plaintext) < MIN_PASSWORD_LENGTH:
            reasons.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        classes = {
            "lowercase letter": re.search(r"[a-z]", plaintext),
            "uppercase letter": re.search(r"[A-Z]", plaintext),
            "digit": re.search(r"\d", plaintext),
            "symbol": re.search(r"[^A-Za-z0-9]", plaintext),
        }
        present = sum(1 for match in classes.values() if match)

        if present < MIN_CHARACTER_CLASSES:
            missing = [name for name, match in classes.items() if not match]
            reasons.append(
                f"Password must contain at least {MIN_CHARACTER_CLASSES} of: lowercase, uppercase, "
                f"digit, symbol (missing {', '.join(missing)})"
            )

        return PasswordStrength(ok=not reasons, reasons=reasons)
