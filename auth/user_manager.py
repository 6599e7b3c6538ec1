"""
Principal management.

Handles:
- Registration and email verification
- Password changes (with logout everywhere)
- Linked external identities (google, github)
- Principal lookups
"""
import logging
import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from auth.clock import Clock, RequestContext, check_deadline, new_id
from auth.credentials import CredentialService
from auth.errors import AuthError, ErrorKind
from auth.mailer import LoggingMailer, Mailer, MailMessage, MailTemplate
from auth.password_hasher import PasswordHasher
from auth.verification_codes import CodeFormat, CodePurpose, CodeStore
from database.connection import Database
from database.models import PrincipalModel
from database.repositories import LinkedIdentityRepository, PrincipalRepository
from security.audit_logger import EventRecorder, SecurityEventType, Severity
from security.rate_limiter import RateLimiter, RateLimitScope

logger = logging.getLogger(__name__)

HANDLE_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")
IDENTITY_PROVIDERS = ("google", "github")
EMAIL_VERIFY_TTL_MINUTES = 60
EMAIL_VERIFY_RESEND_LIMIT = 5
EMAIL_VERIFY_COOLDOWN_SECONDS = 60


class PrincipalView(BaseModel):
    """Principal as exposed to callers (never includes the password hash)."""

    model_config = ConfigDict(from_attributes=True)

    principal_id: str = Field(description="Unique principal identifier")
    handle: str
    email: str
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    role: str = "user"
    is_active: bool = True
    archived_at: Optional[datetime] = None
    anonymized_at: Optional[datetime] = None
    mfa_grace_until: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime] = None


class LinkedIdentityView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    provider_subject: str
    provider_email: Optional[str] = None
    linked_at: datetime


class RegistrationRequest(BaseModel):
    """Validated registration input."""

    handle: str = Field(description="Public handle")
    email: EmailStr = Field(description="Primary email")
    password: str = Field(description="Plain text password")

    @field_validator("handle")
    @classmethod
    def _validate_handle(cls, value: str) -> str:
        value = value.strip()
        if not HANDLE_PATTERN.match(value):
            raise ValueError("Handle must be 3-32 characters: letters, digits, '.', '_' or '-'")
        return value


def validation_message(error: Exception) -> str:
    """First human-readable message of a pydantic ValidationError."""
    errors = getattr(error, "errors", None)
    if callable(errors):
        first = errors()[0]
        return str(first.get("msg", "Invalid request")).removeprefix("Value error, ")
    return str(error)


class PrincipalService:
    """Manage principals and their credentials of record."""

    def __init__(
        self,
        database: Database,
        hasher: PasswordHasher,
        code_store: CodeStore,
        credentials: CredentialService,
        events: EventRecorder,
        rate_limiter: Optional[RateLimiter] = None,
        mailer: Optional[Mailer] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize principal service.

        Args:
            database: Relational store
            hasher: Password hasher
            code_store: Verification codes (email verification)
            credentials: Credential lifecycle (logout everywhere on password change)
            events: Event recorder
            rate_limiter: Rate limiter for public operations (optional)
            mailer: Outbound mail
            clock: Time source
        """
        self.database = database
        self.hasher = hasher
        self.code_store = code_store
        self.credentials = credentials
        self.events = events
        self.rate_limiter = rate_limiter
        self.mailer = mailer or LoggingMailer()
        self.clock = clock or Clock()

    def _limit(self, scope: str, ctx: Optional[RequestContext]) -> None:
        if self.rate_limiter is not None and ctx is not None:
            self.rate_limiter.enforce(scope, ctx.ip_address, ctx)

    def _check_strength(self, password: str) -> None:
        strength = self.hasher.strength(password)
        if not strength.ok:
            raise AuthError(ErrorKind.INVALID_INPUT, "Password too weak", reasons=strength.reasons)

    # ========== Registration ==========

    def register(self, handle: str, email: str, password: str,
                 ctx: Optional[RequestContext] = None, role: str = "user") -> PrincipalView:
        """
        Create a principal with password authentication.

        Args:
            handle: Public handle (unique)
            email: Primary email (unique, case-insensitive)
            password: Plain text password (will be hashed)
            ctx: Request context
            role: Initial role

        Returns:
            Created principal

        Raises:
            AuthError: invalid_input, conflict or rate_limited
        """
        self._limit(RateLimitScope.REGISTER, ctx)
        check_deadline(ctx)

        try:
            request = RegistrationRequest(handle=handle, email=email, password=password)
        except ValueError as e:
            raise AuthError(ErrorKind.INVALID_INPUT, validation_message(e))

        self._check_strength(request.password)
        email = request.email.lower()

        password_hash = self.hasher.hash(request.password, ctx)
        now = self.clock.now()

        try:
            with self.database.session_scope() as db:
                repo = PrincipalRepository(db)
                if repo.get_by_email(email) is not None:
                    raise AuthError(ErrorKind.CONFLICT, "Email already registered")
                if repo.get_by_handle(request.handle) is not None:
                    raise AuthError(ErrorKind.CONFLICT, "Handle already taken")

                principal = repo.create({
                    "principal_id": new_id("usr"),
                    "handle": request.handle,
                    "email": email,
                    "password_hash": password_hash,
                    "role": role,
                    "is_active": True,
                    "created_at": now,
                    "updated_at": now,
                })
                view = PrincipalView.model_validate(principal)
        except IntegrityError:
            logger.warning(f"Concurrent registration for handle {request.handle}")
            raise AuthError(ErrorKind.CONFLICT, "Email or handle already registered")

        logger.info(f"Created principal: {view.principal_id} ({view.handle})")

        self._send_verification(view, resend=False, ctx=ctx)

        return view

    def _send_verification(self, principal: PrincipalView, resend: bool,
                           ctx: Optional[RequestContext]) -> None:
        if resend:
            issued = self.code_store.resend(
                principal.principal_id,
                CodePurpose.EMAIL_VERIFY,
                CodeFormat.NUMERIC_6,
                EMAIL_VERIFY_TTL_MINUTES,
                EMAIL_VERIFY_RESEND_LIMIT,
                EMAIL_VERIFY_COOLDOWN_SECONDS,
                ctx=ctx,
            )
        else:
            issued = self.code_store.issue(
                principal.principal_id, CodePurpose.EMAIL_VERIFY, CodeFormat.NUMERIC_6,
                EMAIL_VERIFY_TTL_MINUTES, ctx=ctx,
            )

        self.mailer.send(MailMessage(
            to=principal.email,
            template=MailTemplate.EMAIL_VERIFY,
            context={"code": issued.code, "handle": principal.handle, "expires_in_minutes": EMAIL_VERIFY_TTL_MINUTES},
        ))

    def verify_email(self, principal_id: str, code: str, ctx: Optional[RequestContext] = None) -> PrincipalView:
        """
        Mark the primary email verified.

        Raises:
            AuthError: code_invalid, code_expired, code_attempts_exhausted
        """
        self._limit(RateLimitScope.EMAIL_VERIFY, ctx)

        self.code_store.verify(principal_id, CodePurpose.EMAIL_VERIFY, code, ctx=ctx)

        now = self.clock.now()
        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            if principal is None:
                raise AuthError(ErrorKind.NOT_FOUND, "User not found")
            principal.email_verified = True
            principal.email_verified_at = now
            principal.updated_at = now
            db.flush()
            view = PrincipalView.model_validate(principal)

        logger.info(f"Email verified for principal {principal_id}")

        return view

    def resend_verification(self, principal_id: str, ctx: Optional[RequestContext] = None) -> None:
        """Send a fresh email verification code (cooldown and resend limit apply)."""
        self._limit(RateLimitScope.EMAIL_VERIFY, ctx)

        principal = self.get(principal_id)
        if principal.email_verified:
            raise AuthError(ErrorKind.INVALID_INPUT, "Email already verified")

        self._send_verification(principal, resend=True, ctx=ctx)

    # ========== Passwords ==========

    def change_password(self, principal_id: str, current_password: str, new_password: str,
                        ctx: Optional[RequestContext] = None) -> int:
        """
        Change password (requires the current password).

        Every session is revoked and the credential epoch bumped.

        Returns:
            Number of sessions revoked

        Raises:
            AuthError: invalid_credentials, invalid_input
        """
        check_deadline(ctx)

        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            if principal is None or not principal.is_active:
                raise AuthError(ErrorKind.NOT_FOUND, "User not found")
            current_hash = principal.password_hash

        if not current_hash:
            raise AuthError(ErrorKind.INVALID_INPUT, "Account has no password")

        if not self.hasher.verify(current_password, current_hash, ctx):
            logger.warning(f"Invalid current password for principal {principal_id}")
            raise AuthError(ErrorKind.INVALID_CREDENTIALS)

        return self.set_password(principal_id, new_password, reason="password_changed", ctx=ctx)

    def set_password(self, principal_id: str, new_password: str, reason: str,
                     ctx: Optional[RequestContext] = None) -> int:
        """
        Store a new password, then log out everywhere and emit password-changed.

        Returns:
            Number of sessions revoked
        """
        self._check_strength(new_password)

        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            if principal is None:
                raise AuthError(ErrorKind.NOT_FOUND, "User not found")
            current_hash = principal.password_hash

        if current_hash and self.hasher.verify(new_password, current_hash, ctx):
            raise AuthError(ErrorKind.INVALID_INPUT, "New password must differ from the current password")

        new_hash = self.hasher.hash(new_password, ctx)

        try:
            with self.database.session_scope() as db:
                principal = PrincipalRepository(db).get_by_id(principal_id)
                principal.password_hash = new_hash
                principal.updated_at = self.clock.now()
        except StaleDataError:
            raise AuthError(ErrorKind.CONFLICT, "Account changed concurrently, retry")

        revoked = self.credentials.logout_everywhere(principal_id, reason, ctx)

        logger.info(f"Password updated for principal {principal_id} ({reason})")
        self.events.record_security_event(
            principal_id,
            SecurityEventType.PASSWORD_CHANGED,
            Severity.CRITICAL,
            {"reason": reason, "sessions_revoked": revoked},
            ctx.ip_address if ctx else None,
        )

        return revoked

    # ========== Linked identities ==========

    def link_identity(self, principal_id: str, provider: str, provider_subject: str,
                      provider_email: Optional[str] = None) -> LinkedIdentityView:
        """
        Link an external identity to a principal.

        Raises:
            AuthError: invalid_input for unknown providers, conflict if already linked
        """
        if provider not in IDENTITY_PROVIDERS:
            raise AuthError(ErrorKind.INVALID_INPUT, f"Unsupported provider: {provider}")

        try:
            with self.database.session_scope() as db:
                repo = LinkedIdentityRepository(db)
                if repo.get(provider, provider_subject) is not None:
                    raise AuthError(ErrorKind.CONFLICT, "Identity already linked")
                if PrincipalRepository(db).get_by_id(principal_id) is None:
                    raise AuthError(ErrorKind.NOT_FOUND, "User not found")
                identity = repo.create({
                    "principal_id": principal_id,
                    "provider": provider,
                    "provider_subject": provider_subject,
                    "provider_email": provider_email.lower() if provider_email else None,
                    "linked_at": self.clock.now(),
                })
                view = LinkedIdentityView.model_validate(identity)
        except IntegrityError:
            raise AuthError(ErrorKind.CONFLICT, "Identity already linked")

        logger.info(f"Linked {provider} identity to principal {principal_id}")

        return view

    def unlink_identity(self, principal_id: str, provider: str) -> None:
        """
        Detach an external identity.

        Raises:
            AuthError: not_found, or invalid_input if it is the last way to log in
        """
        with self.database.session_scope() as db:
            repo = LinkedIdentityRepository(db)
            identities = repo.list_for(principal_id)
            if not any(i.provider == provider for i in identities):
                raise AuthError(ErrorKind.NOT_FOUND, "Identity not linked")

            principal = PrincipalRepository(db).get_by_id(principal_id)
            if not principal.password_hash and len(identities) == 1:
                raise AuthError(ErrorKind.INVALID_INPUT, "Cannot remove the only login method")

            repo.delete(principal_id, provider)

        logger.info(f"Unlinked {provider} identity from principal {principal_id}")

    def list_identities(self, principal_id: str) -> List[LinkedIdentityView]:
        with self.database.session_scope() as db:
            return [LinkedIdentityView.model_validate(i) for i in LinkedIdentityRepository(db).list_for(principal_id)]

    def find_by_identity(self, provider: str, provider_subject: str) -> Optional[PrincipalView]:
        """Principal linked to an external identity, if any."""
        with self.database.session_scope() as db:
            identity = LinkedIdentityRepository(db).get(provider, provider_subject)
            if identity is None:
                return None
            principal = PrincipalRepository(db).get_by_id(identity.principal_id)
            return PrincipalView.model_validate(principal) if principal else None

    # ========== Mail delivery check ==========

    def send_test_email(self, principal_id: str, ctx: Optional[RequestContext] = None) -> str:
        """
        Send a test message to the principal's primary email.

        Limited per principal: one every 30 seconds and 25 a day.

        Returns:
            The recipient address

        Raises:
            AuthError: not_found
            RateLimitExceeded: If either limit is exhausted
        """
        if self.rate_limiter is not None:
            self.rate_limiter.enforce(RateLimitScope.TEST_EMAIL_COOLDOWN, principal_id, ctx)
            self.rate_limiter.enforce(RateLimitScope.TEST_EMAIL_DAILY, principal_id, ctx)

        principal = self.get(principal_id)
        self.mailer.send(MailMessage(
            to=principal.email,
            template=MailTemplate.TEST_EMAIL,
            context={"handle": principal.handle, "sent_at": self.clock.now().isoformat()},
        ))

        logger.info(f"Test email sent for principal {principal_id}")

        return principal.email

    # ========== Lookups ==========

    def get(self, principal_id: str) -> PrincipalView:
        """
        Get principal by ID.

        Raises:
            AuthError: not_found
        """
        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            if principal is None:
                raise AuthError(ErrorKind.NOT_FOUND, "User not found")
            return PrincipalView.model_validate(principal)

    def get_by_email(self, email: str) -> Optional[PrincipalView]:
        """Get principal by email (case-insensitive)."""
        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_email(email)
            return PrincipalView.model_validate(principal) if principal else None

    @staticmethod
    def is_usable(principal: PrincipalModel) -> bool:
        """Whether a principal may authenticate."""
        return principal.is_active and principal.archived_at is None and principal.anonymized_at is None
