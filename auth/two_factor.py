"""
Two-factor authentication (2FA) system.

Supports:
- TOTP (Time-based One-Time Password) using authenticator apps
- Email codes as a second factor
- Backup codes for account recovery
- Enrollment flows (setup, confirmation, disable, preferences)
"""
import base64
import hashlib
import hmac
import logging
import secrets
from contextlib import contextmanager
from datetime import datetime
from typing import Generator, List, Optional, Tuple

import pyotp
from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from auth.clock import Clock, RequestContext, check_deadline
from auth.errors import AuthError, ErrorKind
from auth.mailer import LoggingMailer, Mailer, MailMessage, MailTemplate
from auth.mfa_policy import MfaMethod, MfaPolicy, PolicyStore
from auth.password_hasher import PasswordHasher
from auth.verification_codes import CodePurpose, CodeStore
from database.connection import Database
from database.models import MfaEnrollmentModel, PrincipalModel
from database.repositories import BackupCodeRepository, MfaEnrollmentRepository, PrincipalRepository
from security.audit_logger import EventRecorder, SecurityEventType, Severity

logger = logging.getLogger(__name__)

BACKUP_CODE_COUNT = 10
BACKUP_CODE_ITERATIONS = 100000


class TotpVerifier:
    """RFC 6238 codes: 30 s step, 6 digits, SHA1, one step of drift."""

    def __init__(self, issuer: str = "Identity Core", clock: Optional[Clock] = None):
        self.issuer = issuer
        self.clock = clock or Clock()
        self.digits = 6
        self.interval = 30

    @staticmethod
    def new_secret() -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        """URI for authenticator apps (otpauth://)."""
        return pyotp.TOTP(secret, digits=self.digits, interval=self.interval).provisioning_uri(
            name=account_name,
            issuer_name=self.issuer
        )

    def verify(self, secret: str, code: str, at: Optional[int] = None) -> bool:
        """
        Verify a TOTP code.

        Args:
            secret: Base32 shared secret
            code: Candidate code
            at: Unix time to verify at (defaults to the clock)

        Returns:
            True if the code matches the current step or one step either side
        """
        code = (code or "").replace(" ", "").strip()
        if len(code) != self.digits or not code.isdigit():
            return False

        totp = pyotp.TOTP(secret, digits=self.digits, interval=self.interval)
        # Allow 1 interval before/after for clock skew
        return totp.verify(code, for_time=at if at is not None else self.clock.timestamp(), valid_window=1)


class SecretCipher:
    """Fernet encryption for TOTP secrets at rest."""

    def __init__(self, key_material: str):
        derived = hashlib.sha256(key_material.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(derived))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Stored MFA secret could not be decrypted")
            raise AuthError(ErrorKind.INTERNAL, "MFA secret unreadable")


class BackupCodeManager:
    """Generate and consume single-use backup codes."""

    def __init__(self, database: Database, clock: Optional[Clock] = None,
                 count: int = BACKUP_CODE_COUNT, iterations: int = BACKUP_CODE_ITERATIONS):
        """
        Initialize backup code manager.

        Args:
            database: Relational store
            clock: Time source
            count: Codes per set
            iterations: PBKDF2 iterations per stored code
        """
        self.database = database
        self.clock = clock or Clock()
        self.count = count
        self.iterations = iterations

    @staticmethod
    def normalize(code: str) -> str:
        """Upper-case, strip spaces and restore the dash (XXXX-XXXX)."""
        code = (code or "").replace(" ", "").strip().upper()
        if len(code) == 8 and "-" not in code:
            code = f"{code[:4]}-{code[4:]}"
        return code

    def _hash(self, code: str) -> str:
        salt = secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac('sha256', code.encode('utf-8'), salt.encode('utf-8'), self.iterations)
        # Format: algorithm$iterations$salt$hash
        return f"pbkdf2_sha256${self.iterations}${salt}${digest.hex()}"

    @staticmethod
    def _matches(code: str, stored: str) -> bool:
        try:
            _, iterations, salt, stored_hash = stored.split('$')
            digest = hashlib.pbkdf2_hmac('sha256', code.encode('utf-8'), salt.encode('utf-8'), int(iterations))
        except ValueError:
            logger.error("Malformed backup code digest")
            return False
        return hmac.compare_digest(digest.hex(), stored_hash)

    def generate(self, principal_id: str, db: Optional[Session] = None) -> List[str]:
        """
        Replace the principal's backup codes with a fresh set.

        Args:
            principal_id: Owner
            db: Open session to join (otherwise a new transaction)

        Returns:
            Plaintext codes (shown once)
        """
        codes = [f"{secrets.token_hex(2)}-{secrets.token_hex(2)}".upper() for _ in range(self.count)]
        hashes = [self._hash(code) for code in codes]

        if db is not None:
            BackupCodeRepository(db).replace_all(principal_id, hashes, self.clock.now())
        else:
            with self.database.session_scope() as session:
                BackupCodeRepository(session).replace_all(principal_id, hashes, self.clock.now())

        logger.info(f"Generated {len(codes)} backup codes for principal {principal_id}")

        return codes

    def consume(self, principal_id: str, code: str, ctx: Optional[RequestContext] = None) -> bool:
        """
        Verify and consume one backup code.

        Every stored code is checked so timing does not reveal which matched.

        Returns:
            True if a code matched and this caller consumed it
        """
        check_deadline(ctx)

        candidate = self.normalize(code)

        with self.database.session_scope() as db:
            repo = BackupCodeRepository(db)
            matched_id = None
            for stored in repo.list_unconsumed(principal_id):
                if self._matches(candidate, stored.code_hash) and matched_id is None:
                    matched_id = stored.id

            if matched_id is None:
                logger.warning(f"Invalid backup code for principal {principal_id}")
                return False

            consumed = repo.consume(matched_id, self.clock.now())

        if consumed:
            logger.info(f"Backup code consumed for principal {principal_id}")
        return consumed

    def remaining(self, principal_id: str) -> int:
        with self.database.session_scope() as db:
            return BackupCodeRepository(db).count_unconsumed(principal_id)


class TotpSetup(BaseModel):
    """Returned once when TOTP setup begins."""

    secret: str = Field(description="Base32 secret for manual entry")
    provisioning_uri: str = Field(description="otpauth:// URI for QR codes")


class CodeDelivery(BaseModel):
    """When an email code was sent and when it lapses."""

    sent_at: datetime
    expires_at: datetime


class MfaStatus(BaseModel):
    """Enrollment summary shown to the principal."""

    totp_enabled: bool = False
    totp_pending: bool = False
    email_enabled: bool = False
    alternate_email: Optional[str] = None
    alternate_email_verified: bool = False
    preferred_method: MfaMethod = MfaMethod.TOTP
    backup_codes_remaining: int = 0
    locked_until: Optional[datetime] = None
    locked_by_admin: bool = False
    enrollment_completed_at: Optional[datetime] = None


class AlternateEmailRequest(BaseModel):
    email: EmailStr


class MfaEnrollmentManager:
    """Manage a principal's second factors."""

    def __init__(
        self,
        database: Database,
        totp: TotpVerifier,
        cipher: SecretCipher,
        backup_codes: BackupCodeManager,
        code_store: CodeStore,
        hasher: PasswordHasher,
        events: EventRecorder,
        policy_store: PolicyStore,
        mailer: Optional[Mailer] = None,
        clock: Optional[Clock] = None,
    ):
        self.database = database
        self.totp = totp
        self.cipher = cipher
        self.backup_codes = backup_codes
        self.code_store = code_store
        self.hasher = hasher
        self.events = events
        self.policy_store = policy_store
        self.mailer = mailer or LoggingMailer()
        self.clock = clock or Clock()

    @contextmanager
    def _enrollment(self, principal_id: str) -> Generator[Tuple[Session, PrincipalModel, MfaEnrollmentModel], None, None]:
        """Transaction over a principal and its enrollment row; version clashes become conflicts."""
        try:
            with self.database.session_scope() as db:
                principal = PrincipalRepository(db).get_by_id(principal_id)
                if principal is None or not principal.is_active:
                    raise AuthError(ErrorKind.NOT_FOUND, "User not found")
                enrollment = MfaEnrollmentRepository(db).get_or_create(principal_id, self.clock.now())
                yield db, principal, enrollment
                enrollment.updated_at = self.clock.now()
        except StaleDataError:
            logger.warning(f"Concurrent MFA change for principal {principal_id}")
            raise AuthError(ErrorKind.CONFLICT, "MFA settings changed concurrently, retry")

    def _require_password(self, principal: PrincipalModel, password: str, ctx: Optional[RequestContext]) -> None:
        if not principal.password_hash or not self.hasher.verify(password, principal.password_hash, ctx):
            raise AuthError(ErrorKind.INVALID_CREDENTIALS)

    @staticmethod
    def delivery_address(principal: PrincipalModel, enrollment: Optional[MfaEnrollmentModel]) -> str:
        """Verified alternate email if set, else the primary email."""
        if enrollment is not None and enrollment.alternate_email and enrollment.alternate_email_verified:
            return enrollment.alternate_email
        return principal.email

    def status(self, principal_id: str) -> MfaStatus:
        with self.database.session_scope() as db:
            enrollment = MfaEnrollmentRepository(db).get(principal_id)
            remaining = BackupCodeRepository(db).count_unconsumed(principal_id)

        if enrollment is None:
            return MfaStatus(backup_codes_remaining=remaining)

        return MfaStatus(
            totp_enabled=enrollment.totp_enabled,
            totp_pending=bool(enrollment.totp_secret_encrypted) and not enrollment.totp_enabled,
            email_enabled=enrollment.email_2fa_enabled,
            alternate_email=enrollment.alternate_email,
            alternate_email_verified=enrollment.alternate_email_verified,
            preferred_method=MfaMethod(enrollment.preferred_method),
            backup_codes_remaining=remaining,
            locked_until=enrollment.locked_until,
            locked_by_admin=enrollment.lock_requires_admin,
            enrollment_completed_at=enrollment.enrollment_completed_at,
        )

    # ========== TOTP ==========

    def begin_totp_setup(self, principal_id: str, ctx: Optional[RequestContext] = None) -> TotpSetup:
        """
        Start TOTP setup.

        Returns:
            Secret and provisioning URI (the only time the plaintext is returned)

        Raises:
            AuthError: conflict if TOTP is already enabled
        """
        check_deadline(ctx)

        secret = self.totp.new_secret()

        with self._enrollment(principal_id) as (db, principal, enrollment):
            if enrollment.totp_enabled:
                raise AuthError(ErrorKind.CONFLICT, "TOTP is already enabled")
            enrollment.totp_secret_encrypted = self.cipher.encrypt(secret)
            account_name = principal.email

        logger.info(f"TOTP setup initiated for principal {principal_id}")

        return TotpSetup(secret=secret, provisioning_uri=self.totp.provisioning_uri(secret, account_name))

    def confirm_totp_setup(self, principal_id: str, code: str, ctx: Optional[RequestContext] = None) -> List[str]:
        """
        Enable TOTP after the first successful verification.

        Returns:
            Fresh backup codes (empty if backup codes are off for TOTP)

        Raises:
            AuthError: invalid_input without a pending setup, code_invalid on mismatch
        """
        check_deadline(ctx)

        policy = self.policy_store.get()

        with self._enrollment(principal_id) as (db, principal, enrollment):
            if enrollment.totp_enabled:
                raise AuthError(ErrorKind.CONFLICT, "TOTP is already enabled")
            if not enrollment.totp_secret_encrypted:
                raise AuthError(ErrorKind.INVALID_INPUT, "TOTP setup has not been started")

            if not self.totp.verify(self.cipher.decrypt(enrollment.totp_secret_encrypted), code):
                logger.warning(f"Invalid TOTP code during setup for principal {principal_id}")
                raise AuthError(ErrorKind.CODE_INVALID)

            now = self.clock.now()
            enrollment.totp_enabled = True
            enrollment.totp_enabled_at = now
            enrollment.enrollment_completed_at = enrollment.enrollment_completed_at or now
            if not enrollment.email_2fa_enabled:
                enrollment.preferred_method = MfaMethod.TOTP.value

            codes = self.backup_codes.generate(principal_id, db) if policy.backup_codes_for_totp else []

        logger.info(f"TOTP enabled for principal {principal_id}")
        self.events.record_security_event(
            principal_id, SecurityEventType.MFA_ENABLED, Severity.INFO,
            {"method": MfaMethod.TOTP.value},
            ctx.ip_address if ctx else None,
        )

        return codes

    def verify_totp(self, principal_id: str, code: str) -> bool:
        """Check a login TOTP code against the enabled secret."""
        with self.database.session_scope() as db:
            enrollment = MfaEnrollmentRepository(db).get(principal_id)

        if enrollment is None or not enrollment.totp_enabled or not enrollment.totp_secret_encrypted:
            logger.warning(f"TOTP not enabled for principal {principal_id}")
            return False

        return self.totp.verify(self.cipher.decrypt(enrollment.totp_secret_encrypted), code)

    def disable_totp(self, principal_id: str, password: str, ctx: Optional[RequestContext] = None) -> None:
        """
        Disable TOTP (password required).

        Raises:
            AuthError: invalid_credentials on a wrong password
        """
        check_deadline(ctx)

        with self._enrollment(principal_id) as (db, principal, enrollment):
            self._require_password(principal, password, ctx)
            if not enrollment.totp_enabled and not enrollment.totp_secret_encrypted:
                raise AuthError(ErrorKind.INVALID_INPUT, "TOTP is not enabled")

            enrollment.totp_enabled = False
            enrollment.totp_secret_encrypted = None
            enrollment.totp_enabled_at = None
            if enrollment.email_2fa_enabled:
                enrollment.preferred_method = MfaMethod.EMAIL.value
            else:
                enrollment.enrollment_completed_at = None
                BackupCodeRepository(db).delete_all(principal_id)

        logger.info(f"TOTP disabled for principal {principal_id}")
        self.events.record_security_event(
            principal_id, SecurityEventType.MFA_DISABLED, Severity.CRITICAL,
            {"method": MfaMethod.TOTP.value},
            ctx.ip_address if ctx else None,
        )

    # ========== Email 2FA ==========

    def _send_code(self, to: str, template: str, code: str, expires_in_minutes: int) -> None:
        self.mailer.send(MailMessage(
            to=to,
            template=template,
            context={"code": code, "expires_in_minutes": expires_in_minutes},
        ))

    def send_login_code(self, principal_id: str, policy: MfaPolicy,
                        resend: bool = False, ctx: Optional[RequestContext] = None) -> CodeDelivery:
        """Issue (or re-issue) the email code for a pending login."""
        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            enrollment = MfaEnrollmentRepository(db).get(principal_id)
            address = self.delivery_address(principal, enrollment)

        if resend:
            issued = self.code_store.resend(
                principal_id, CodePurpose.MFA_LOGIN, policy.code_format, policy.code_expiration_minutes,
                policy.code_resend_limit, policy.code_resend_cooldown_seconds, ctx=ctx,
            )
        else:
            issued = self.code_store.issue(
                principal_id, CodePurpose.MFA_LOGIN, policy.code_format, policy.code_expiration_minutes, ctx=ctx
            )

        self._send_code(address, MailTemplate.MFA_LOGIN_CODE, issued.code, policy.code_expiration_minutes)
        return CodeDelivery(sent_at=issued.sent_at, expires_at=issued.expires_at)

    def begin_email_setup(self, principal_id: str, ctx: Optional[RequestContext] = None) -> CodeDelivery:
        """Send a setup code to the principal's email."""
        check_deadline(ctx)

        policy = self.policy_store.get()

        with self._enrollment(principal_id) as (db, principal, enrollment):
            if enrollment.email_2fa_enabled:
                raise AuthError(ErrorKind.CONFLICT, "Email 2FA is already enabled")
            address = self.delivery_address(principal, enrollment)

        issued = self.code_store.issue(
            principal_id, CodePurpose.MFA_SETUP, policy.code_format, policy.code_expiration_minutes, ctx=ctx
        )
        self._send_code(address, MailTemplate.MFA_SETUP_CODE, issued.code, policy.code_expiration_minutes)

        logger.info(f"Email 2FA setup initiated for principal {principal_id}")

        return CodeDelivery(sent_at=issued.sent_at, expires_at=issued.expires_at)

    def confirm_email_setup(self, principal_id: str, code: str, ctx: Optional[RequestContext] = None) -> List[str]:
        """
        Enable email 2FA with the setup code.

        Returns:
            Backup codes if email backup codes are on and none exist yet
        """
        policy = self.policy_store.get()
        self.code_store.verify(principal_id, CodePurpose.MFA_SETUP, code, policy.max_failed_attempts, ctx)

        with self._enrollment(principal_id) as (db, principal, enrollment):
            now = self.clock.now()
            enrollment.email_2fa_enabled = True
            enrollment.enrollment_completed_at = enrollment.enrollment_completed_at or now
            if not enrollment.totp_enabled:
                enrollment.preferred_method = MfaMethod.EMAIL.value

            codes = []
            if policy.backup_codes_for_email and BackupCodeRepository(db).count_unconsumed(principal_id) == 0:
                codes = self.backup_codes.generate(principal_id, db)

        logger.info(f"Email 2FA enabled for principal {principal_id}")
        self.events.record_security_event(
            principal_id, SecurityEventType.MFA_ENABLED, Severity.INFO,
            {"method": MfaMethod.EMAIL.value},
            ctx.ip_address if ctx else None,
        )

        return codes

    def disable_email(self, principal_id: str, password: str, ctx: Optional[RequestContext] = None) -> None:
        """Disable email 2FA (password required)."""
        check_deadline(ctx)

        with self._enrollment(principal_id) as (db, principal, enrollment):
            self._require_password(principal, password, ctx)
            if not enrollment.email_2fa_enabled:
                raise AuthError(ErrorKind.INVALID_INPUT, "Email 2FA is not enabled")

            enrollment.email_2fa_enabled = False
            if enrollment.totp_enabled:
                enrollment.preferred_method = MfaMethod.TOTP.value
            else:
                enrollment.enrollment_completed_at = None
                BackupCodeRepository(db).delete_all(principal_id)

        logger.info(f"Email 2FA disabled for principal {principal_id}")
        self.events.record_security_event(
            principal_id, SecurityEventType.MFA_DISABLED, Severity.CRITICAL,
            {"method": MfaMethod.EMAIL.value},
            ctx.ip_address if ctx else None,
        )

    def set_alternate_email(self, principal_id: str, email: str, ctx: Optional[RequestContext] = None) -> CodeDelivery:
        """Send a verification code to a new alternate address."""
        check_deadline(ctx)

        email = AlternateEmailRequest(email=email).email.lower()
        policy = self.policy_store.get()

        issued = self.code_store.issue(
            principal_id, CodePurpose.ALTERNATE_EMAIL, policy.code_format, policy.code_expiration_minutes,
            target_email=email, ctx=ctx,
        )
        self._send_code(email, MailTemplate.ALTERNATE_EMAIL, issued.code, policy.code_expiration_minutes)

        return CodeDelivery(sent_at=issued.sent_at, expires_at=issued.expires_at)

    def verify_alternate_email(self, principal_id: str, code: str, ctx: Optional[RequestContext] = None) -> str:
        """
        Confirm control of the alternate address.

        Returns:
            The verified address
        """
        policy = self.policy_store.get()
        email = self.code_store.verify(principal_id, CodePurpose.ALTERNATE_EMAIL, code, policy.max_failed_attempts, ctx)

        with self._enrollment(principal_id) as (db, principal, enrollment):
            enrollment.alternate_email = email
            enrollment.alternate_email_verified = True

        logger.info(f"Alternate email verified for principal {principal_id}")

        return email

    def set_preferred_method(self, principal_id: str, method: MfaMethod) -> None:
        """Choose which enrolled factor is offered first."""
        with self._enrollment(principal_id) as (db, principal, enrollment):
            enrolled = (
                (method == MfaMethod.TOTP and enrollment.totp_enabled)
                or (method == MfaMethod.EMAIL and enrollment.email_2fa_enabled)
            )
            if not enrolled:
                raise AuthError(ErrorKind.INVALID_INPUT, f"{method.value} is not enabled")
            enrollment.preferred_method = method.value

    def regenerate_backup_codes(self, principal_id: str, password: str,
                                ctx: Optional[RequestContext] = None) -> List[str]:
        """Replace the backup code set (password required)."""
        check_deadline(ctx)

        with self._enrollment(principal_id) as (db, principal, enrollment):
            self._require_password(principal, password, ctx)
            if not (enrollment.totp_enabled or enrollment.email_2fa_enabled):
                raise AuthError(ErrorKind.INVALID_INPUT, "Enable a second factor first")
            codes = self.backup_codes.generate(principal_id, db)

        return codes
