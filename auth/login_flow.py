"""
Login state machine.

    Start -> CredentialsChecked -> Issued
                                -> MfaChallenged -> MfaPassed -> Issued
                                                 -> MfaFailed (retry or lockout)
                                -> SetupRequired -> (setup) -> Issued
          -> Rejected

Every outcome other than a rejection is a LoginOutcome; rejections are
AuthErrors. Challenge and setup tokens are single-use: each one has a row
in mfa_challenges and the first verification to consume it wins.
"""
import logging
from datetime import datetime, timedelta
from typing import Annotated, List, Literal, NoReturn, Optional, Union

from pydantic import BaseModel, Field

from auth.clock import Clock, RequestContext, check_deadline
from auth.credentials import Credentials, CredentialService
from auth.errors import AuthError, ErrorKind, invalid_credentials
from auth.jwt_handler import ChallengeClaims, TokenClaims, TokenError, TokenKind, TokenMinter
from auth.mfa_policy import (
    LockoutBehavior,
    MfaMethod,
    MfaMode,
    MfaPolicy,
    MfaRequirement,
    MfaRequirementService,
    PolicyStore,
)
from auth.password_hasher import PasswordHasher
from auth.session_manager import DeviceInfo, SessionManager, device_fingerprint
from auth.two_factor import BackupCodeManager, CodeDelivery, MfaEnrollmentManager, TotpSetup
from auth.user_manager import PrincipalService
from auth.verification_codes import CodePurpose, CodeStore
from database.connection import Database
from database.repositories import (
    ChallengeRepository,
    LinkedIdentityRepository,
    MfaEnrollmentRepository,
    PrincipalRepository,
)
from security.audit_logger import EventRecorder, SecurityEventType, Severity
from security.rate_limiter import RateLimiter, RateLimitScope
from security.threat_detection import ThreatDetector

logger = logging.getLogger(__name__)


class CredentialsIssued(BaseModel):
    """Login finished: credentials issued."""

    outcome: Literal["credentials"] = "credentials"
    mfa_required: bool = False
    principal_id: str
    role: str
    credentials: Credentials
    mfa_used: bool = False
    in_grace: bool = Field(default=False, description="MFA enrollment is due but not yet enforced")
    grace_deadline: Optional[datetime] = None
    device_trusted_until: Optional[datetime] = None
    backup_codes: List[str] = Field(default_factory=list, description="Shown once after setup")


class MfaChallengeIssued(BaseModel):
    """Password accepted; a second factor is required."""

    outcome: Literal["mfa_required"] = "mfa_required"
    mfa_required: bool = True
    challenge: str = Field(description="Challenge token for the verify call")
    expires_in: int
    methods: List[MfaMethod] = Field(description="Methods accepted for this step")
    preferred: Optional[MfaMethod] = None
    available_methods: List[MfaMethod] = Field(default_factory=list)
    completed_methods: List[MfaMethod] = Field(default_factory=list)
    backup_method: bool = False
    email_code_sent: bool = False
    code_expires_at: Optional[datetime] = None
    device_trust_enabled: bool = False
    device_trust_days: int = 0
    in_grace: bool = False
    grace_deadline: Optional[datetime] = None


class MfaSetupRequired(BaseModel):
    """Password accepted; MFA enrollment must finish before credentials are issued."""

    outcome: Literal["mfa_setup_required"] = "mfa_setup_required"
    mfa_setup_required: bool = True
    setup_token: str = Field(description="Token valid only for MFA setup")
    expires_in: int
    methods: List[MfaMethod] = Field(description="Methods that may be enrolled")
    grace_deadline: Optional[datetime] = None
    backup_codes: List[str] = Field(default_factory=list, description="Shown once after a factor is confirmed")


LoginOutcome = Annotated[
    Union[CredentialsIssued, MfaChallengeIssued, MfaSetupRequired],
    Field(discriminator="outcome"),
]


class LoginFlow:
    """Drive a login from password check to credential issuance."""

    def __init__(
        self,
        database: Database,
        hasher: PasswordHasher,
        minter: TokenMinter,
        policy_store: PolicyStore,
        requirements: MfaRequirementService,
        sessions: SessionManager,
        credentials: CredentialService,
        enrollment: MfaEnrollmentManager,
        backup_codes: BackupCodeManager,
        code_store: CodeStore,
        events: EventRecorder,
        threats: ThreatDetector,
        rate_limiter: RateLimiter,
        clock: Optional[Clock] = None,
    ):
        self.database = database
        self.hasher = hasher
        self.minter = minter
        self.policy_store = policy_store
        self.requirements = requirements
        self.sessions = sessions
        self.credentials = credentials
        self.enrollment = enrollment
        self.backup_codes = backup_codes
        self.code_store = code_store
        self.events = events
        self.threats = threats
        self.rate_limiter = rate_limiter
        self.clock = clock or Clock()

    # ========== First factor ==========

    def authenticate(self, email: str, password: str, ctx: RequestContext) -> LoginOutcome:
        """
        Check an email/password pair and decide what comes next.

        Args:
            email: Email as entered (case-insensitive)
            password: Plain text password
            ctx: Request context (IP, user agent, deadline)

        Returns:
            CredentialsIssued, MfaChallengeIssued or MfaSetupRequired

        Raises:
            AuthError: rate_limited, invalid_credentials (generic), locked
        """
        self.rate_limiter.enforce(RateLimitScope.LOGIN, ctx.ip_address, ctx)
        check_deadline(ctx)

        normalized = (email or "").strip().lower()

        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_email(normalized) if normalized else None
            principal_id = principal.principal_id if principal else None
            usable = principal is not None and PrincipalService.is_usable(principal)
            password_hash = principal.password_hash if principal else None

        if principal_id is None:
            # Equalise timing with the known-user path
            self.hasher.dummy_verify(password or "")
            self._reject(normalized, None, "user_not_found", ctx)

        if not usable:
            self.hasher.dummy_verify(password or "")
            self._reject(normalized, principal_id, "account_inactive", ctx)

        if not password_hash:
            self.hasher.dummy_verify(password or "")
            self._reject(normalized, principal_id, "bad_password", ctx)

        if not self.hasher.verify(password or "", password_hash, ctx):
            self._reject(normalized, principal_id, "bad_password", ctx)

        if self.hasher.needs_rehash(password_hash):
            self._rehash(principal_id, password, ctx)

        return self._after_first_factor(principal_id, normalized, ctx)

    def authenticate_identity(self, provider: str, provider_subject: str, ctx: RequestContext) -> LoginOutcome:
        """
        Log in through a linked external identity, then apply the MFA policy.

        Raises:
            AuthError: rate_limited, invalid_credentials, locked
        """
        self.rate_limiter.enforce(RateLimitScope.LOGIN, ctx.ip_address, ctx)
        check_deadline(ctx)

        with self.database.session_scope() as db:
            identity = LinkedIdentityRepository(db).get(provider, provider_subject)
            principal = PrincipalRepository(db).get_by_id(identity.principal_id) if identity else None
            principal_id = principal.principal_id if principal else None
            email = principal.email if principal else (identity.provider_email if identity else None)
            usable = principal is not None and PrincipalService.is_usable(principal)

        if principal_id is None:
            self._reject(email, None, "user_not_found", ctx)

        if not usable:
            self._reject(email, principal_id, "account_inactive", ctx)

        logger.info(f"Principal {principal_id} authenticated via {provider}")

        return self._after_first_factor(principal_id, email, ctx)

    def after_registration(self, principal_id: str, ctx: RequestContext) -> LoginOutcome:
        """Log a newly registered principal in under the same MFA rules as a password login."""
        with self.database.session_scope() as db:
            email = PrincipalRepository(db).get_by_id(principal_id).email
        return self._after_first_factor(principal_id, email, ctx)

    def _reject(self, email: Optional[str], principal_id: Optional[str], reason: str,
                ctx: RequestContext) -> NoReturn:
        self.events.record_login_attempt(
            email,
            False,
            principal_id=principal_id,
            failure_reason=reason,
            ctx=ctx,
            device=DeviceInfo.from_context(ctx).summary(),
        )
        if email:
            self.threats.on_failure(email, principal_id, ctx)
        raise invalid_credentials()

    def _rehash(self, principal_id: str, password: str, ctx: RequestContext) -> None:
        new_hash = self.hasher.hash(password, ctx)
        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            principal.password_hash = new_hash
        logger.info(f"Rehashed password for principal {principal_id}")

    def _after_first_factor(self, principal_id: str, email: Optional[str], ctx: RequestContext) -> LoginOutcome:
        policy = self.policy_store.get()
        fingerprint = device_fingerprint(ctx.user_agent, ctx.ip_address)
        requirement = self.requirements.requirement_for(principal_id, fingerprint, policy)

        if requirement.setup_required:
            return self._setup_required(principal_id, requirement, ctx)

        if not requirement.required:
            return self._complete(principal_id, email, ctx, policy, mfa_used=False, requirement=requirement)

        self._ensure_not_locked(principal_id)

        if requirement.all_required:
            step = requirement.methods[0]
            allowed = [step]
            if requirement.backup_allowed and step == MfaMethod.TOTP:
                allowed.append(MfaMethod.BACKUP)
            pending = requirement.methods[1:]
        else:
            allowed = list(requirement.available_methods)
            pending = []

        send_email = MfaMethod.EMAIL in allowed and (
            MfaMethod.EMAIL in requirement.methods or requirement.preferred == MfaMethod.EMAIL
        )

        return self._issue_challenge(
            principal_id, allowed, pending, [], fingerprint, policy, ctx,
            send_email=send_email, requirement=requirement,
        )

    # ========== Challenges ==========

    def _issue_challenge(
        self,
        principal_id: str,
        allowed: List[MfaMethod],
        pending: List[MfaMethod],
        completed: List[MfaMethod],
        fingerprint: str,
        policy: MfaPolicy,
        ctx: RequestContext,
        send_email: bool,
        requirement: Optional[MfaRequirement] = None,
    ) -> MfaChallengeIssued:
        minted = self.minter.mint_challenge(
            principal_id,
            [m.value for m in allowed],
            fingerprint,
            completed=[m.value for m in completed],
            pending=[m.value for m in pending],
            ctx=ctx,
        )

        now = self.clock.now()
        with self.database.session_scope() as db:
            ChallengeRepository(db).create({
                "jti": minted.jti,
                "principal_id": principal_id,
                "kind": TokenKind.CHALLENGE.value,
                "created_at": now,
                "expires_at": now + timedelta(seconds=minted.expires_in),
            })

        delivery = self.enrollment.send_login_code(principal_id, policy, ctx=ctx) if send_email else None

        if requirement is not None:
            preferred = requirement.preferred if requirement.preferred in allowed else allowed[0]
        else:
            preferred = allowed[0]

        logger.info(f"MFA challenge issued for principal {principal_id}: {[m.value for m in allowed]}")

        return MfaChallengeIssued(
            challenge=minted.token,
            expires_in=minted.expires_in,
            methods=[m for m in allowed if m != MfaMethod.BACKUP],
            preferred=preferred,
            available_methods=requirement.available_methods if requirement else allowed,
            completed_methods=completed,
            backup_method=MfaMethod.BACKUP in allowed,
            email_code_sent=delivery is not None,
            code_expires_at=delivery.expires_at if delivery else None,
            device_trust_enabled=policy.device_trust_enabled,
            device_trust_days=policy.device_trust_duration_days if policy.device_trust_enabled else 0,
            in_grace=requirement.in_grace if requirement else False,
            grace_deadline=requirement.grace_deadline if requirement else None,
        )

    def _verify_token(self, token: str, kind: TokenKind, ctx: RequestContext) -> TokenClaims:
        """Check a challenge or setup token and its single-use row."""
        try:
            claims = self.minter.verify(token, kind, ctx)
        except TokenError as e:
            if e.reason == TokenError.EXPIRED:
                raise AuthError(ErrorKind.CHALLENGE_EXPIRED)
            logger.warning(f"Rejected {kind.value} token: {e.reason}")
            raise AuthError(ErrorKind.CHALLENGE_INVALID)

        with self.database.session_scope() as db:
            row = ChallengeRepository(db).get(claims.jti)
            if row is None or row.principal_id != claims.sub or row.kind != kind.value:
                raise AuthError(ErrorKind.CHALLENGE_INVALID)
            if row.consumed_at is not None:
                raise AuthError(ErrorKind.CHALLENGE_EXHAUSTED)

            principal = PrincipalRepository(db).get_by_id(claims.sub)
            if principal is None or not PrincipalService.is_usable(principal):
                raise AuthError(ErrorKind.CHALLENGE_INVALID)

        return claims

    def _consume(self, jti: str) -> None:
        with self.database.session_scope() as db:
            won = ChallengeRepository(db).consume(jti, self.clock.now())
        if not won:
            raise AuthError(ErrorKind.CHALLENGE_EXHAUSTED)

    # ========== Second factor ==========

    def verify_mfa(self, challenge: str, code: str, method: Union[MfaMethod, str],
                   ctx: RequestContext, trust_device: bool = False) -> LoginOutcome:
        """
        Verify a second factor against a challenge.

        Args:
            challenge: Challenge token from authenticate
            code: TOTP code, emailed code or backup code
            method: totp, email or backup
            ctx: Request context
            trust_device: Skip MFA on this device for the policy's trust period

        Returns:
            CredentialsIssued, or a new MfaChallengeIssued when another factor is still required

        Raises:
            AuthError: rate_limited, challenge_invalid, challenge_expired,
                challenge_exhausted, code_invalid, code_expired,
                code_attempts_exhausted, locked, invalid_input
        """
        self.rate_limiter.enforce(RateLimitScope.MFA_VERIFY, ctx.ip_address, ctx)
        check_deadline(ctx)

        claims: ChallengeClaims = self._verify_token(challenge, TokenKind.CHALLENGE, ctx)

        try:
            method = MfaMethod(method)
        except ValueError:
            raise AuthError(ErrorKind.INVALID_INPUT, f"Unknown MFA method: {method}")

        if method.value not in claims.allowed_methods:
            raise AuthError(ErrorKind.INVALID_INPUT, f"Method {method.value} is not allowed for this challenge")

        policy = self.policy_store.get()
        principal_id = claims.sub

        self._ensure_not_locked(principal_id)

        if not self._check_factor(principal_id, method, code, policy, ctx):
            self._register_failure(principal_id, method, policy, ctx)

        with self.database.session_scope() as db:
            MfaEnrollmentRepository(db).reset_failures(principal_id, self.clock.now())

        self._consume(claims.jti)

        if claims.pending_methods:
            completed = [MfaMethod(m) for m in claims.completed_methods] + [MfaMethod(claims.allowed_methods[0])]
            pending = [MfaMethod(m) for m in claims.pending_methods]
            step = pending[0]
            logger.info(f"MFA step {completed[-1].value} passed for principal {principal_id}, next: {step.value}")
            return self._issue_challenge(
                principal_id, [step], pending[1:], completed, claims.fp, policy, ctx,
                send_email=step == MfaMethod.EMAIL,
            )

        with self.database.session_scope() as db:
            email = PrincipalRepository(db).get_by_id(principal_id).email

        return self._complete(principal_id, email, ctx, policy, mfa_used=True, trust_device=trust_device)

    def _check_factor(self, principal_id: str, method: MfaMethod, code: str,
                      policy: MfaPolicy, ctx: RequestContext) -> bool:
        if method == MfaMethod.TOTP:
            return self.enrollment.verify_totp(principal_id, code or "")

        if method == MfaMethod.BACKUP:
            return self.backup_codes.consume(principal_id, code or "", ctx)

        try:
            self.code_store.verify(principal_id, CodePurpose.MFA_LOGIN, code or "", policy.max_failed_attempts, ctx)
        except AuthError as e:
            if e.kind == ErrorKind.CODE_INVALID:
                return False
            raise
        return True

    def _register_failure(self, principal_id: str, method: MfaMethod, policy: MfaPolicy,
                          ctx: RequestContext) -> NoReturn:
        now = self.clock.now()
        with self.database.session_scope() as db:
            MfaEnrollmentRepository(db).get_or_create(principal_id, now)
            failures = MfaEnrollmentRepository(db).record_failure(principal_id, now)
            email = PrincipalRepository(db).get_by_id(principal_id).email

        self.events.record_login_attempt(
            email,
            False,
            principal_id=principal_id,
            failure_reason=f"invalid_{method.value}_code",
            mfa_used=True,
            ctx=ctx,
            device=DeviceInfo.from_context(ctx).summary(),
        )

        remaining = policy.max_failed_attempts - failures
        if remaining > 0:
            logger.warning(f"Invalid {method.value} code for principal {principal_id}, {remaining} attempts left")
            raise AuthError(ErrorKind.CODE_INVALID, attempts_remaining=remaining)

        self._lock(principal_id, policy, failures, ctx)

    def _lock(self, principal_id: str, policy: MfaPolicy, failures: int, ctx: RequestContext) -> NoReturn:
        now = self.clock.now()
        behavior = policy.lockout_behavior
        locked_until = None

        with self.database.session_scope() as db:
            repo = MfaEnrollmentRepository(db)
            if behavior == LockoutBehavior.TEMPORARY:
                locked_until = now + timedelta(minutes=policy.lockout_duration_minutes)
                repo.set_lock(principal_id, locked_until, False, True, now)
            elif behavior == LockoutBehavior.ADMIN_ONLY:
                repo.set_lock(principal_id, None, True, False, now)
            else:
                # Start over from the password step
                repo.reset_failures(principal_id, now)
                ChallengeRepository(db).invalidate_for(principal_id, now)

        logger.warning(f"MFA locked for principal {principal_id} ({behavior.value}) after {failures} failures")
        self.events.record_security_event(
            principal_id,
            SecurityEventType.BRUTE_FORCE,
            Severity.CRITICAL,
            {
                "reason": "mfa_lockout",
                "lockout_behavior": behavior.value,
                "failed_attempts": failures,
                "locked_until": locked_until.isoformat() if locked_until else None,
            },
            ctx.ip_address,
        )

        if behavior == LockoutBehavior.TEMPORARY:
            raise AuthError(
                ErrorKind.LOCKED,
                f"Too many failed attempts. Try again in {policy.lockout_duration_minutes} minutes",
                lockout_behavior=behavior.value,
                retry_after=policy.lockout_duration_minutes * 60,
            )
        if behavior == LockoutBehavior.ADMIN_ONLY:
            raise AuthError(
                ErrorKind.LOCKED,
                "Too many failed attempts. Contact an administrator",
                lockout_behavior=behavior.value,
            )
        raise AuthError(
            ErrorKind.LOCKED,
            "Too many failed attempts. Log in again with your password",
            lockout_behavior=behavior.value,
        )

    def _ensure_not_locked(self, principal_id: str) -> None:
        now = self.clock.now()
        with self.database.session_scope() as db:
            repo = MfaEnrollmentRepository(db)
            enrollment = repo.get(principal_id)
            if enrollment is None:
                return
            if enrollment.lock_requires_admin:
                raise AuthError(
                    ErrorKind.LOCKED,
                    "MFA locked. Contact an administrator",
                    lockout_behavior=LockoutBehavior.ADMIN_ONLY.value,
                )
            locked_until = enrollment.locked_until
            if locked_until is not None and now < locked_until:
                raise AuthError(
                    ErrorKind.LOCKED,
                    lockout_behavior=LockoutBehavior.TEMPORARY.value,
                    retry_after=max(1, int((locked_until - now).total_seconds())),
                )
            if locked_until is not None:
                # Temporary lock elapsed
                repo.reset_failures(principal_id, now)

    def resend_email_code(self, challenge: str, ctx: RequestContext) -> CodeDelivery:
        """
        Send (or resend) the email code for a challenge that accepts email.

        Raises:
            AuthError: challenge errors, invalid_input, rate_limited (cooldown or resend limit)
        """
        self.rate_limiter.enforce(RateLimitScope.EMAIL_VERIFY, ctx.ip_address, ctx)
        check_deadline(ctx)

        claims: ChallengeClaims = self._verify_token(challenge, TokenKind.CHALLENGE, ctx)

        if MfaMethod.EMAIL.value not in claims.allowed_methods:
            raise AuthError(ErrorKind.INVALID_INPUT, "Email codes are not available for this challenge")

        policy = self.policy_store.get()
        return self.enrollment.send_login_code(claims.sub, policy, resend=True, ctx=ctx)

    # ========== Setup pivot ==========

    def _setup_required(self, principal_id: str, requirement: MfaRequirement,
                        ctx: RequestContext) -> MfaSetupRequired:
        minted = self.minter.mint_setup(principal_id, ctx)

        now = self.clock.now()
        with self.database.session_scope() as db:
            ChallengeRepository(db).create({
                "jti": minted.jti,
                "principal_id": principal_id,
                "kind": TokenKind.MFA_SETUP.value,
                "created_at": now,
                "expires_at": now + timedelta(seconds=minted.expires_in),
            })

        logger.info(f"MFA setup required for principal {principal_id}")

        return MfaSetupRequired(
            setup_token=minted.token,
            expires_in=minted.expires_in,
            methods=self._methods_to_enroll(principal_id, requirement),
            grace_deadline=requirement.grace_deadline,
        )

    def _methods_to_enroll(self, principal_id: str, requirement: MfaRequirement) -> List[MfaMethod]:
        state = self.requirements.enrollment_state(principal_id)
        methods = [m for m in requirement.methods if not state.has(m)]
        if requirement.mode == MfaMode.TOTP_PRIMARY_EMAIL_FALLBACK and not state.email_enabled:
            methods.append(MfaMethod.EMAIL)
        return methods

    def begin_setup(self, setup_token: str, method: Union[MfaMethod, str],
                    ctx: RequestContext) -> Union[TotpSetup, CodeDelivery]:
        """
        Start enrolling a factor with a setup token.

        Returns:
            TotpSetup for totp, CodeDelivery for email
        """
        check_deadline(ctx)

        claims = self._verify_token(setup_token, TokenKind.MFA_SETUP, ctx)
        method = self._setup_method(method)

        if method == MfaMethod.TOTP:
            return self.enrollment.begin_totp_setup(claims.sub, ctx)
        return self.enrollment.begin_email_setup(claims.sub, ctx)

    def complete_setup(self, setup_token: str, method: Union[MfaMethod, str], code: str,
                       ctx: RequestContext) -> LoginOutcome:
        """
        Confirm a factor with a setup token. Credentials are issued once
        the policy no longer requires setup.

        Returns:
            CredentialsIssued, or MfaSetupRequired when another factor must still be enrolled
        """
        self.rate_limiter.enforce(RateLimitScope.MFA_VERIFY, ctx.ip_address, ctx)
        check_deadline(ctx)

        claims = self._verify_token(setup_token, TokenKind.MFA_SETUP, ctx)
        method = self._setup_method(method)
        principal_id = claims.sub

        if method == MfaMethod.TOTP:
            backup_codes = self.enrollment.confirm_totp_setup(principal_id, code, ctx)
        else:
            backup_codes = self.enrollment.confirm_email_setup(principal_id, code, ctx)

        policy = self.policy_store.get()
        fingerprint = device_fingerprint(ctx.user_agent, ctx.ip_address)
        requirement = self.requirements.requirement_for(principal_id, fingerprint, policy)

        if requirement.setup_required:
            return MfaSetupRequired(
                setup_token=setup_token,
                expires_in=max(0, claims.exp - self.clock.timestamp()),
                methods=self._methods_to_enroll(principal_id, requirement),
                grace_deadline=requirement.grace_deadline,
                backup_codes=backup_codes,
            )

        self._consume(claims.jti)

        with self.database.session_scope() as db:
            email = PrincipalRepository(db).get_by_id(principal_id).email

        outcome = self._complete(principal_id, email, ctx, policy, mfa_used=True)
        outcome.backup_codes = backup_codes
        return outcome

    @staticmethod
    def _setup_method(method: Union[MfaMethod, str]) -> MfaMethod:
        try:
            method = MfaMethod(method)
        except ValueError:
            raise AuthError(ErrorKind.INVALID_INPUT, f"Unknown MFA method: {method}")
        if method == MfaMethod.BACKUP:
            raise AuthError(ErrorKind.INVALID_INPUT, "Backup codes are generated, not enrolled")
        return method

    # ========== Issuance ==========

    def _complete(
        self,
        principal_id: str,
        email: Optional[str],
        ctx: RequestContext,
        policy: MfaPolicy,
        mfa_used: bool,
        requirement: Optional[MfaRequirement] = None,
        trust_device: bool = False,
    ) -> CredentialsIssued:
        session = self.sessions.create(principal_id, ctx)

        trusted_until = None
        if trust_device:
            if policy.device_trust_enabled:
                trusted_until = self.sessions.mark_trusted(
                    session.session_id, policy.device_trust_duration_days, policy.max_trusted_devices
                )
            else:
                logger.info("Device trust requested but disabled by policy")

        credentials = self.credentials.issue(principal_id, session, ctx)

        self.threats.on_success(principal_id, session, ctx)
        self.events.record_login_attempt(
            email,
            True,
            principal_id=principal_id,
            mfa_used=mfa_used,
            ctx=ctx,
            device=DeviceInfo.from_context(ctx).summary(),
        )
        self.credentials.touch_login(principal_id)

        with self.database.session_scope() as db:
            role = PrincipalRepository(db).get_by_id(principal_id).role

        logger.info(f"Login completed for principal {principal_id} (mfa={mfa_used})")

        return CredentialsIssued(
            principal_id=principal_id,
            role=role,
            credentials=credentials,
            mfa_used=mfa_used,
            in_grace=requirement.in_grace if requirement else False,
            grace_deadline=requirement.grace_deadline if requirement else None,
            device_trusted_until=trusted_until,
        )
