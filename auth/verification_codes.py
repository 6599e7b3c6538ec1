"""
Single-use verification codes delivered over a side channel.

Supports:
- Numeric (6 or 8 digits) and alphanumeric (6 characters) codes
- At most one open code per (principal, purpose)
- Attempt counting, expiry and resend cooldowns
- Compare-and-set consumption so a code is used once
"""
import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from auth.clock import Clock, RequestContext, check_deadline, random_digits, random_from_alphabet
from auth.errors import AuthError, ErrorKind, RateLimitExceeded
from database.connection import Database
from database.repositories import VerificationCodeRepository

logger = logging.getLogger(__name__)

# No 0/O or 1/I to avoid transcription mistakes
ALPHANUMERIC_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class CodePurpose(str, Enum):
    """What a code authorises."""
    EMAIL_VERIFY = "email-verify"
    MFA_LOGIN = "mfa-login"
    MFA_SETUP = "mfa-setup"
    PASSWORD_RESET = "password-reset"
    ALTERNATE_EMAIL = "alternate-email"


class CodeFormat(str, Enum):
    """Code shapes."""
    NUMERIC_6 = "numeric_6"
    NUMERIC_8 = "numeric_8"
    ALPHANUMERIC_6 = "alphanumeric_6"


class IssuedCode(BaseModel):
    """A freshly issued code. `code` is the only plaintext copy."""

    code: str = Field(description="Plaintext code, to be mailed and discarded")
    purpose: CodePurpose
    sent_at: datetime
    expires_at: datetime
    target_email: Optional[str] = None


def generate_code(code_format: CodeFormat) -> str:
    """Generate a random code in the given format."""
    if code_format == CodeFormat.NUMERIC_8:
        return random_digits(8)
    if code_format == CodeFormat.ALPHANUMERIC_6:
        return random_from_alphabet(ALPHANUMERIC_ALPHABET, 6)
    return random_digits(6)


def hash_code(code: str) -> str:
    """Digest stored for a code (codes are case-insensitive)."""
    return hashlib.sha256(code.strip().upper().encode()).hexdigest()


class CodeStore:
    """Issue, verify and consume verification codes."""

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        """
        Initialize code store.

        Args:
            database: Relational store
            clock: Time source
        """
        self.database = database
        self.clock = clock or Clock()

    def issue(
        self,
        principal_id: str,
        purpose: CodePurpose,
        code_format: CodeFormat = CodeFormat.NUMERIC_6,
        ttl_minutes: int = 5,
        target_email: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> IssuedCode:
        """
        Issue a new code, invalidating any open code for the same purpose.

        Args:
            principal_id: Owner
            purpose: What the code authorises
            code_format: Code shape
            ttl_minutes: Lifetime
            target_email: Address the code proves control of (alternate email)
            ctx: Request context (deadline)

        Returns:
            The issued code (plaintext returned once)
        """
        check_deadline(ctx)

        now = self.clock.now()
        code = generate_code(code_format)
        expires_at = now + timedelta(minutes=ttl_minutes)

        with self.database.session_scope() as db:
            repo = VerificationCodeRepository(db)
            repo.invalidate_open(principal_id, purpose.value, now)
            repo.create({
                "principal_id": principal_id,
                "purpose": purpose.value,
                "code_hash": hash_code(code),
                "target_email": target_email,
                "attempts": 0,
                "resend_count": 0,
                "created_at": now,
                "expires_at": expires_at,
            })

        logger.info(f"Issued {purpose.value} code for principal={principal_id}")

        return IssuedCode(
            code=code,
            purpose=purpose,
            sent_at=now,
            expires_at=expires_at,
            target_email=target_email,
        )

    def resend(
        self,
        principal_id: str,
        purpose: CodePurpose,
        code_format: CodeFormat = CodeFormat.NUMERIC_6,
        ttl_minutes: int = 5,
        resend_limit: int = 3,
        cooldown_seconds: int = 60,
        target_email: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> IssuedCode:
        """
        Replace the open code with a new one, honouring limit and cooldown.

        Raises:
            RateLimitExceeded: If sent too recently or too many times
        """
        check_deadline(ctx)

        now = self.clock.now()

        with self.database.session_scope() as db:
            current = VerificationCodeRepository(db).get_open(principal_id, purpose.value)

        resend_count = 0
        if current is not None and current.expires_at > now:
            elapsed = (now - current.created_at).total_seconds()
            if elapsed < cooldown_seconds:
                raise RateLimitExceeded(retry_after=max(1, int(cooldown_seconds - elapsed)), scope="code-resend")
            if current.resend_count >= resend_limit:
                retry_after = max(1, int((current.expires_at - now).total_seconds()))
                raise RateLimitExceeded(retry_after=retry_after, scope="code-resend")
            resend_count = current.resend_count + 1
            target_email = target_email or current.target_email

        issued = self.issue(principal_id, purpose, code_format, ttl_minutes, target_email, ctx)

        if resend_count:
            with self.database.session_scope() as db:
                code = VerificationCodeRepository(db).get_open(principal_id, purpose.value)
                if code is not None:
                    code.resend_count = resend_count

        return issued

    def verify(
        self,
        principal_id: str,
        purpose: CodePurpose,
        code: str,
        max_attempts: int = 5,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[str]:
        """
        Verify and consume a code.

        Args:
            principal_id: Owner
            purpose: Purpose the code was issued for
            code: Candidate code
            max_attempts: Attempts allowed before the code is dead
            ctx: Request context (deadline)

        Returns:
            The target email the code was issued for, if any

        Raises:
            AuthError: code_invalid, code_expired or code_attempts_exhausted
        """
        check_deadline(ctx)

        now = self.clock.now()

        with self.database.session_scope() as db:
            repo = VerificationCodeRepository(db)
            record = repo.get_open(principal_id, purpose.value)

            if record is None:
                raise AuthError(ErrorKind.CODE_INVALID)

            if now >= record.expires_at:
                raise AuthError(ErrorKind.CODE_EXPIRED)

            if record.attempts >= max_attempts:
                raise AuthError(ErrorKind.CODE_ATTEMPTS_EXHAUSTED)

            repo.increment_attempts(record.id)
            matches = hmac.compare_digest(record.code_hash, hash_code(code or ""))
            record_id = record.id
            target_email = record.target_email

        # Attempt counted even when the comparison fails
        if not matches:
            logger.warning(f"Invalid {purpose.value} code for principal={principal_id}")
            raise AuthError(ErrorKind.CODE_INVALID)

        with self.database.session_scope() as db:
            won = VerificationCodeRepository(db).consume(record_id, now)

        if not won:
            raise AuthError(ErrorKind.CODE_INVALID, reason="already_consumed")

        logger.info(f"Verified {purpose.value} code for principal={principal_id}")

        return target_email

    def invalidate(self, principal_id: str, purpose: CodePurpose) -> int:
        with self.database.session_scope() as db:
            return VerificationCodeRepository(db).invalidate_open(principal_id, purpose.value, self.clock.now())

    def cleanup_expired(self) -> int:
        """
        Purge expired and consumed codes.

        Returns:
            Number of rows removed
        """
        with self.database.session_scope() as db:
            removed = VerificationCodeRepository(db).delete_expired(self.clock.now())

        if removed:
            logger.info(f"Cleaned up {removed} verification codes")

        return removed
