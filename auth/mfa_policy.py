"""
MFA policy: configuration, persistence and requirement resolution.

`resolve()` is a pure function of the policy, the principal, its enrollment
state, the device trust expiry and the current time. Everything that needs
storage lives in PolicyStore and MfaRequirementService.
"""
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from auth.clock import Clock
from auth.verification_codes import CodeFormat
from database.connection import Database
from database.repositories import (
    BackupCodeRepository,
    MfaEnrollmentRepository,
    PolicyRepository,
    PrincipalRepository,
    SessionRepository,
)

logger = logging.getLogger(__name__)


class MfaMode(str, Enum):
    """Global (or per-role) MFA mode."""
    DISABLED = "disabled"
    TOTP_ONLY = "totp_only"
    EMAIL_ONLY = "email_only"
    TOTP_AND_EMAIL_REQUIRED = "totp_and_email_required"
    TOTP_PRIMARY_EMAIL_FALLBACK = "totp_primary_email_fallback"


class MfaMethod(str, Enum):
    """Second factors."""
    TOTP = "totp"
    EMAIL = "email"
    BACKUP = "backup"


class LockoutBehavior(str, Enum):
    """What happens when max_failed_attempts is reached."""
    TEMPORARY = "temporary"
    REQUIRE_PASSWORD = "require_password"
    ADMIN_ONLY = "admin_only"


class RolePolicy(BaseModel):
    """Per-role override."""

    role: str
    mfa_mode: Optional[MfaMode] = Field(default=None, description="Overrides the global mode when set")
    exempt_from_enforcement: bool = Field(default=False)


class MfaPolicy(BaseModel):
    """MFA policy (singleton)."""

    mfa_mode: MfaMode = Field(default=MfaMode.DISABLED)

    # Email codes
    code_format: CodeFormat = Field(default=CodeFormat.NUMERIC_6)
    code_expiration_minutes: int = Field(default=5, ge=1, le=60)
    code_resend_limit: int = Field(default=3, ge=0, le=20)
    code_resend_cooldown_seconds: int = Field(default=60, ge=0, le=3600)

    # Lockout
    max_failed_attempts: int = Field(default=5, ge=1, le=50)
    lockout_behavior: LockoutBehavior = Field(default=LockoutBehavior.TEMPORARY)
    lockout_duration_minutes: int = Field(default=15, ge=1, le=24 * 60)

    # Backup codes
    backup_codes_for_totp: bool = Field(default=True)
    backup_codes_for_email: bool = Field(default=False)

    # Device trust
    device_trust_enabled: bool = Field(default=False)
    device_trust_duration_days: int = Field(default=30, ge=1, le=365)
    max_trusted_devices: int = Field(default=5, ge=1, le=50)

    # Roles and enforcement
    role_based_mfa_enabled: bool = Field(default=False)
    enforcement_enabled: bool = Field(default=False)
    grace_period_days: int = Field(default=7, ge=0, le=365)
    enforcement_started_at: Optional[datetime] = Field(
        default=None, description="When enforcement was last switched on; grace never starts earlier"
    )

    role_policies: Dict[str, RolePolicy] = Field(default_factory=dict)

    def column_values(self) -> Dict:
        """Configurable values persisted on the singleton row."""
        return self.model_dump(mode="json", exclude={"role_policies", "enforcement_started_at"})


class MfaPolicyUpdate(BaseModel):
    """Partial policy update; unset fields keep their value."""

    mfa_mode: Optional[MfaMode] = None
    code_format: Optional[CodeFormat] = None
    code_expiration_minutes: Optional[int] = Field(default=None, ge=1, le=60)
    code_resend_limit: Optional[int] = Field(default=None, ge=0, le=20)
    code_resend_cooldown_seconds: Optional[int] = Field(default=None, ge=0, le=3600)
    max_failed_attempts: Optional[int] = Field(default=None, ge=1, le=50)
    lockout_behavior: Optional[LockoutBehavior] = None
    lockout_duration_minutes: Optional[int] = Field(default=None, ge=1, le=24 * 60)
    backup_codes_for_totp: Optional[bool] = None
    backup_codes_for_email: Optional[bool] = None
    device_trust_enabled: Optional[bool] = None
    device_trust_duration_days: Optional[int] = Field(default=None, ge=1, le=365)
    max_trusted_devices: Optional[int] = Field(default=None, ge=1, le=50)
    role_based_mfa_enabled: Optional[bool] = None
    enforcement_enabled: Optional[bool] = None
    grace_period_days: Optional[int] = Field(default=None, ge=0, le=365)


class PrincipalFacts(BaseModel):
    """The principal attributes resolution depends on."""

    principal_id: str
    role: str
    created_at: datetime
    mfa_grace_until: Optional[datetime] = None


class EnrollmentState(BaseModel):
    """The enrollment attributes resolution depends on."""

    totp_enabled: bool = False
    email_enabled: bool = False
    preferred_method: MfaMethod = MfaMethod.TOTP
    backup_codes_remaining: int = 0

    def has(self, method: MfaMethod) -> bool:
        if method == MfaMethod.TOTP:
            return self.totp_enabled
        if method == MfaMethod.EMAIL:
            return self.email_enabled
        return self.backup_codes_remaining > 0

    @property
    def enrolled(self) -> bool:
        return self.totp_enabled or self.email_enabled


class MfaRequirement(BaseModel):
    """Outcome of policy resolution for one login."""

    required: bool
    methods: List[MfaMethod] = Field(default_factory=list, description="Factors to verify (in order when all_required)")
    preferred: Optional[MfaMethod] = None
    in_grace: bool = False
    grace_deadline: Optional[datetime] = None
    setup_required: bool = False
    all_required: bool = False
    available_methods: List[MfaMethod] = Field(default_factory=list)
    backup_allowed: bool = False
    mode: MfaMode = MfaMode.DISABLED
    reason: str = ""


def effective_mode(policy: MfaPolicy, role: str) -> MfaMode:
    """Per-role override when role-based MFA is on, else the global mode."""
    if policy.role_based_mfa_enabled:
        role_policy = policy.role_policies.get(role)
        if role_policy is not None and role_policy.mfa_mode is not None:
            return role_policy.mfa_mode
    return policy.mfa_mode


def is_exempt(policy: MfaPolicy, role: str) -> bool:
    role_policy = policy.role_policies.get(role)
    return bool(role_policy and role_policy.exempt_from_enforcement)


def grace_deadline(policy: MfaPolicy, principal: PrincipalFacts) -> datetime:
    """
    Per-principal override, else the grace period counted from the later of
    creation and enforcement activation.
    """
    if principal.mfa_grace_until is not None:
        return principal.mfa_grace_until
    start = principal.created_at
    if policy.enforcement_started_at is not None and policy.enforcement_started_at > start:
        start = policy.enforcement_started_at
    return start + timedelta(days=policy.grace_period_days)


REQUIRED_BY_MODE: Dict[MfaMode, List[MfaMethod]] = {
    MfaMode.DISABLED: [],
    MfaMode.TOTP_ONLY: [MfaMethod.TOTP],
    MfaMode.EMAIL_ONLY: [MfaMethod.EMAIL],
    MfaMode.TOTP_AND_EMAIL_REQUIRED: [MfaMethod.TOTP, MfaMethod.EMAIL],
    MfaMode.TOTP_PRIMARY_EMAIL_FALLBACK: [MfaMethod.TOTP],
}


def _backup_allowed(policy: MfaPolicy, methods: List[MfaMethod], enrollment: EnrollmentState) -> bool:
    if enrollment.backup_codes_remaining <= 0:
        return False
    return (
        (MfaMethod.TOTP in methods and policy.backup_codes_for_totp)
        or (MfaMethod.EMAIL in methods and policy.backup_codes_for_email)
    )


def resolve(
    policy: MfaPolicy,
    principal: PrincipalFacts,
    enrollment: EnrollmentState,
    now: datetime,
    trusted_until: Optional[datetime] = None,
) -> MfaRequirement:
    """
    Decide which second factors a login must present.

    Args:
        policy: Current MFA policy
        principal: Role, creation time and grace override
        enrollment: Enrolled factors and remaining backup codes
        now: Current time
        trusted_until: Trust expiry of the requesting device, if trusted

    Returns:
        The requirement for this login
    """
    mode = effective_mode(policy, principal.role)

    if policy.device_trust_enabled and trusted_until is not None and trusted_until > now:
        return MfaRequirement(required=False, mode=mode, reason="trusted_device")

    if mode == MfaMode.DISABLED:
        return MfaRequirement(required=False, mode=mode, reason="mfa_disabled")

    wanted = REQUIRED_BY_MODE[mode]
    enrolled = [m for m in wanted if enrollment.has(m)]

    # Email stands in for TOTP when fallback is allowed and TOTP is not enrolled
    fallback_email = (
        mode == MfaMode.TOTP_PRIMARY_EMAIL_FALLBACK and enrollment.email_enabled
    )
    if fallback_email and not enrolled:
        enrolled = [MfaMethod.EMAIL]

    fully_enrolled = len(enrolled) == len(wanted)

    if not fully_enrolled and policy.enforcement_enabled and not is_exempt(policy, principal.role):
        deadline = grace_deadline(policy, principal)
        if now <= deadline:
            # Partially enrolled principals still verify what they have
            if enrolled:
                requirement = _challenge(policy, mode, enrolled, enrollment, fallback_email)
                requirement.in_grace = True
                requirement.grace_deadline = deadline
                return requirement
            return MfaRequirement(
                required=False,
                in_grace=True,
                grace_deadline=deadline,
                methods=list(wanted),
                mode=mode,
                reason="grace_period",
            )
        return MfaRequirement(
            required=True,
            setup_required=True,
            methods=list(wanted),
            all_required=len(wanted) > 1,
            grace_deadline=deadline,
            mode=mode,
            reason="enrollment_required",
        )

    if not enrolled:
        return MfaRequirement(required=False, mode=mode, reason="not_enrolled")

    return _challenge(policy, mode, enrolled, enrollment, fallback_email)


def _challenge(policy: MfaPolicy, mode: MfaMode, methods: List[MfaMethod],
               enrollment: EnrollmentState, fallback_email: bool) -> MfaRequirement:
    available = list(methods)
    if fallback_email and MfaMethod.EMAIL not in available:
        available.append(MfaMethod.EMAIL)

    backup = _backup_allowed(policy, methods, enrollment)
    if backup:
        available.append(MfaMethod.BACKUP)

    preferred = enrollment.preferred_method if enrollment.preferred_method in available else methods[0]

    return MfaRequirement(
        required=True,
        methods=list(methods),
        preferred=preferred,
        all_required=len(methods) > 1,
        available_methods=available,
        backup_allowed=backup,
        mode=mode,
        reason="mfa_required",
    )


class PolicyStore:
    """Load and persist the MFA policy."""

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.database = database
        self.clock = clock or Clock()

    def get(self) -> MfaPolicy:
        """Current policy (defaults when never saved)."""
        with self.database.session_scope() as db:
            repo = PolicyRepository(db)
            row = repo.get()
            roles = {
                r.role: RolePolicy(
                    role=r.role,
                    mfa_mode=MfaMode(r.mfa_mode) if r.mfa_mode else None,
                    exempt_from_enforcement=r.exempt_from_enforcement,
                )
                for r in repo.list_roles()
            }

            if row is None:
                return MfaPolicy(role_policies=roles)

            values = {name: getattr(row, name) for name in MfaPolicy.model_fields if name != "role_policies"}
            return MfaPolicy(**values, role_policies=roles)

    def save(self, policy: MfaPolicy, updated_by: Optional[str] = None) -> MfaPolicy:
        """Persist the singleton row and every role row in one transaction."""
        now = self.clock.now()
        if not policy.enforcement_enabled:
            policy = policy.model_copy(update={"enforcement_started_at": None})
        elif policy.enforcement_started_at is None:
            policy = policy.model_copy(update={"enforcement_started_at": now})
            logger.info(f"MFA enforcement switched on at {now.isoformat()}")
        with self.database.session_scope() as db:
            repo = PolicyRepository(db)
            repo.save(
                {**policy.column_values(), "enforcement_started_at": policy.enforcement_started_at}, now, updated_by
            )
            for role_policy in policy.role_policies.values():
                repo.upsert_role(
                    role_policy.role,
                    role_policy.mfa_mode.value if role_policy.mfa_mode else None,
                    role_policy.exempt_from_enforcement,
                    now,
                )

        logger.info(f"MFA policy saved: mode={policy.mfa_mode.value}, enforcement={policy.enforcement_enabled}")

        return policy

    def update(self, changes: MfaPolicyUpdate, updated_by: Optional[str] = None) -> MfaPolicy:
        """Apply a partial update."""
        current = self.get()
        merged = current.model_copy(update=changes.model_dump(exclude_none=True))
        # Re-validate the merged result
        merged = MfaPolicy.model_validate(merged.model_dump())
        return self.save(merged, updated_by)

    def reset(self, updated_by: Optional[str] = None) -> MfaPolicy:
        """Restore defaults and drop role overrides."""
        now = self.clock.now()
        defaults = MfaPolicy()
        with self.database.session_scope() as db:
            repo = PolicyRepository(db)
            repo.clear_roles()
            repo.save({**defaults.column_values(), "enforcement_started_at": None}, now, updated_by)

        logger.info("MFA policy reset to defaults")

        return defaults

    def set_role_policy(self, role_policy: RolePolicy) -> RolePolicy:
        with self.database.session_scope() as db:
            PolicyRepository(db).upsert_role(
                role_policy.role,
                role_policy.mfa_mode.value if role_policy.mfa_mode else None,
                role_policy.exempt_from_enforcement,
                self.clock.now(),
            )
        return role_policy


class MfaRequirementService:
    """Gather resolution inputs from storage and resolve."""

    def __init__(self, database: Database, policy_store: PolicyStore, clock: Optional[Clock] = None):
        self.database = database
        self.policy_store = policy_store
        self.clock = clock or Clock()

    def enrollment_state(self, principal_id: str) -> EnrollmentState:
        with self.database.session_scope() as db:
            enrollment = MfaEnrollmentRepository(db).get(principal_id)
            remaining = BackupCodeRepository(db).count_unconsumed(principal_id)

        if enrollment is None:
            return EnrollmentState(backup_codes_remaining=remaining)

        return EnrollmentState(
            totp_enabled=enrollment.totp_enabled,
            email_enabled=enrollment.email_2fa_enabled,
            preferred_method=MfaMethod(enrollment.preferred_method),
            backup_codes_remaining=remaining,
        )

    def requirement_for(self, principal_id: str, fingerprint: Optional[str] = None,
                        policy: Optional[MfaPolicy] = None) -> MfaRequirement:
        """
        Resolve the requirement for a principal logging in from a device.

        Args:
            principal_id: Principal
            fingerprint: Device fingerprint of the request
            policy: Policy to use (loaded when omitted)

        Returns:
            Requirement
        """
        policy = policy or self.policy_store.get()
        now = self.clock.now()

        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            facts = PrincipalFacts(
                principal_id=principal.principal_id,
                role=principal.role,
                created_at=principal.created_at,
                mfa_grace_until=principal.mfa_grace_until,
            )
            trusted_until = None
            if fingerprint and policy.device_trust_enabled:
                trusted = SessionRepository(db).find_trusted(principal_id, fingerprint, now)
                trusted_until = trusted.trusted_until if trusted else None

        return resolve(policy, facts, self.enrollment_state(principal_id), now, trusted_until)
