"""
Admin control plane for principals and the MFA policy.

This service manages:
- Principal listing, creation and updates (including role changes)
- Archive / restore / anonymize lifecycle
- MFA policy configuration and per-role overrides
- MFA unlocks and grace period extensions

Every mutation is audited. Ordinary mutations audit after commit through the
event sink; anonymization writes its audit entry first, in its own
transaction, because the mutation destroys the data it refers to.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from auth.auth_middleware import Actor, Permissions, Roles, require_permission
from auth.clock import Clock, RequestContext, check_deadline
from auth.credentials import CredentialService
from auth.errors import AuthError, ErrorKind
from auth.mfa_policy import (
    MfaMode,
    MfaPolicy,
    MfaPolicyUpdate,
    PolicyStore,
    PrincipalFacts,
    RolePolicy,
    grace_deadline,
    is_exempt,
)
from auth.user_manager import HANDLE_PATTERN, LinkedIdentityView, PrincipalService, PrincipalView
from database.connection import Database
from database.repositories import (
    BackupCodeRepository,
    ChallengeRepository,
    LinkedIdentityRepository,
    LoginAttemptRepository,
    MfaEnrollmentRepository,
    PrincipalRepository,
    RefreshFamilyRepository,
    SecurityEventRepository,
    SessionRepository,
    VerificationCodeRepository,
)
from security.audit_logger import AuditAction, AuditEntryView, EventRecorder, Page, SecurityEventType, Severity

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
PRINCIPAL_STATUSES = ("active", "inactive", "archived", "anonymized", "all")
SORT_FIELDS = ("created_at", "email", "handle")
MAX_GRACE_EXTENSION_DAYS = 90
ANONYMIZED_DOMAIN = "anonymized.local"


class PrincipalQuery(BaseModel):
    """Admin listing filters."""

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    role: Optional[str] = Field(default=None, description="Exact role")
    status: str = Field(default="all", description="active, inactive, archived, anonymized or all")
    search: Optional[str] = Field(default=None, description="Email or handle substring")
    sort_by: str = Field(default="created_at")
    descending: bool = Field(default=True)

    @field_validator("status")
    @classmethod
    def _validate_status(cls, value: str) -> str:
        if value not in PRINCIPAL_STATUSES:
            raise ValueError(f"status must be one of {', '.join(PRINCIPAL_STATUSES)}")
        return value

    @field_validator("sort_by")
    @classmethod
    def _validate_sort(cls, value: str) -> str:
        if value not in SORT_FIELDS:
            raise ValueError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
        return value


class PrincipalCreate(BaseModel):
    """Admin-created principal."""

    handle: str
    email: EmailStr
    password: str
    role: str = Field(default=Roles.USER)


class PrincipalUpdate(BaseModel):
    """Partial update; unset fields are left alone."""

    handle: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None


class PrincipalDetail(BaseModel):
    """Principal plus the account state an admin needs to see."""

    principal: PrincipalView
    totp_enabled: bool = False
    email_2fa_enabled: bool = False
    mfa_failed_attempts: int = 0
    mfa_locked_until: Optional[datetime] = None
    mfa_locked_by_admin: bool = False
    backup_codes_remaining: int = 0
    active_sessions: int = 0
    linked_identities: List[LinkedIdentityView] = Field(default_factory=list)


class EnforcementStatistics(BaseModel):
    """MFA rollout overview."""

    mfa_mode: MfaMode
    enforcement_enabled: bool
    total_active: int
    enrolled: int
    not_enrolled: int
    in_grace: int
    past_grace: int
    exempt: int
    totp_enrolled: int
    email_enrolled: int
    by_role: Dict[str, int] = Field(default_factory=dict)


class AdminService:
    """Administrative operations over principals and MFA configuration."""

    def __init__(
        self,
        database: Database,
        principals: PrincipalService,
        credentials: CredentialService,
        policy_store: PolicyStore,
        events: EventRecorder,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize admin service.

        Args:
            database: Relational store
            principals: Principal service (creation)
            credentials: Credential lifecycle (epoch bumps, revocation)
            policy_store: MFA policy persistence
            events: Event recorder (audit and security events)
            clock: Time source
        """
        self.database = database
        self.principals = principals
        self.credentials = credentials
        self.policy_store = policy_store
        self.events = events
        self.clock = clock or Clock()

    @staticmethod
    def _require_super_admin_for(actor: Actor, role: Optional[str]) -> None:
        if role == Roles.SUPER_ADMIN:
            require_permission(actor, Permissions.GRANT_SUPER_ADMIN)

    # ========== Principals ==========

    def list_principals(self, actor: Actor, query: Optional[PrincipalQuery] = None) -> Page[PrincipalView]:
        """Filtered, sorted, paginated listing."""
        require_permission(actor, Permissions.READ_USERS)
        query = query or PrincipalQuery()

        with self.database.session_scope() as db:
            items, total = PrincipalRepository(db).search(
                role=query.role,
                status=query.status,
                search=query.search,
                sort_by=query.sort_by,
                descending=query.descending,
                offset=(query.page - 1) * query.page_size,
                limit=query.page_size,
            )
            views = [PrincipalView.model_validate(item) for item in items]

        return Page[PrincipalView](items=views, total=total, page=query.page, page_size=query.page_size)

    def get_principal(self, actor: Actor, principal_id: str) -> PrincipalDetail:
        require_permission(actor, Permissions.READ_USERS)

        now = self.clock.now()
        idle_cutoff = now - self.credentials.sessions.inactivity_timeout

        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            if principal is None:
                raise AuthError(ErrorKind.NOT_FOUND, "User not found")

            enrollment = MfaEnrollmentRepository(db).get(principal_id)
            detail = PrincipalDetail(
                principal=PrincipalView.model_validate(principal),
                backup_codes_remaining=BackupCodeRepository(db).count_unconsumed(principal_id),
                active_sessions=len(SessionRepository(db).list_active(principal_id, now, idle_cutoff)),
                linked_identities=[
                    LinkedIdentityView.model_validate(identity)
                    for identity in LinkedIdentityRepository(db).list_for(principal_id)
                ],
            )
            if enrollment is not None:
                detail.totp_enabled = enrollment.totp_enabled
                detail.email_2fa_enabled = enrollment.email_2fa_enabled
                detail.mfa_failed_attempts = enrollment.failed_attempts
                detail.mfa_locked_until = enrollment.locked_until
                detail.mfa_locked_by_admin = enrollment.lock_requires_admin

        return detail

    def create_principal(self, actor: Actor, data: PrincipalCreate,
                         ctx: Optional[RequestContext] = None) -> PrincipalView:
        """
        Create a principal on behalf of an admin.

        Raises:
            AuthError: forbidden (super_admin grant by a non super_admin),
                invalid_input, conflict
        """
        require_permission(actor, Permissions.WRITE_USERS)
        if data.role not in Roles.ALL:
            raise AuthError(ErrorKind.INVALID_INPUT, f"Unknown role: {data.role}")
        self._require_super_admin_for(actor, data.role)

        principal = self.principals.register(data.handle, data.email, data.password, role=data.role)

        self.events.record_audit(
            actor.principal_id,
            AuditAction.USER_CREATED,
            "principal",
            principal.principal_id,
            {"role": principal.role},
            ctx,
        )

        return principal

    def update_principal(self, actor: Actor, principal_id: str, changes: PrincipalUpdate,
                         ctx: Optional[RequestContext] = None) -> PrincipalView:
        """
        Update handle, email, role or active flag.

        A role change bumps the credential epoch so the principal's access
        tokens stop carrying the old role. Deactivation logs the principal
        out everywhere.

        Raises:
            AuthError: forbidden, invalid_input, not_found, conflict
        """
        require_permission(actor, Permissions.WRITE_USERS)
        check_deadline(ctx)

        if changes.role is not None and changes.role not in Roles.ALL:
            raise AuthError(ErrorKind.INVALID_INPUT, f"Unknown role: {changes.role}")
        if changes.handle is not None and not HANDLE_PATTERN.match(changes.handle.strip()):
            raise AuthError(ErrorKind.INVALID_INPUT, "Handle must be 3-32 characters: letters, digits, '.', '_' or '-'")

        self._require_super_admin_for(actor, changes.role)

        now = self.clock.now()
        changed: Dict[str, Dict] = {}
        previous_role = None

        try:
            with self.database.session_scope() as db:
                repo = PrincipalRepository(db)
                principal = repo.get_by_id(principal_id)
                if principal is None:
                    raise AuthError(ErrorKind.NOT_FOUND, "User not found")
                if principal.anonymized_at is not None:
                    raise AuthError(ErrorKind.CONFLICT, "Anonymized principals cannot be modified")

                # Demoting a super_admin is as privileged as granting it
                if changes.role is not None and changes.role != principal.role:
                    self._require_super_admin_for(actor, principal.role)

                if changes.handle is not None and changes.handle.strip() != principal.handle:
                    handle = changes.handle.strip()
                    if repo.get_by_handle(handle) is not None:
                        raise AuthError(ErrorKind.CONFLICT, "Handle already taken")
                    # Audit entries outlive anonymization, so PII fields are recorded without values
                    changed["handle"] = {}
                    principal.handle = handle

                if changes.email is not None and changes.email.lower() != principal.email:
                    email = changes.email.lower()
                    if repo.get_by_email(email) is not None:
                        raise AuthError(ErrorKind.CONFLICT, "Email already registered")
                    changed["email"] = {}
                    principal.email = email
                    principal.email_verified = False
                    principal.email_verified_at = None

                if changes.role is not None and changes.role != principal.role:
                    previous_role = principal.role
                    changed["role"] = {"from": principal.role, "to": changes.role}
                    principal.role = changes.role

                if changes.is_active is not None and changes.is_active != principal.is_active:
                    if changes.is_active and principal.archived_at is not None:
                        raise AuthError(ErrorKind.CONFLICT, "Restore the principal before activating it")
                    changed["is_active"] = {"from": principal.is_active, "to": changes.is_active}
                    principal.is_active = changes.is_active

                if changed:
                    principal.updated_at = now
                    db.flush()

                if previous_role is not None:
                    self.credentials.bump_epoch(principal_id, db)

                view = PrincipalView.model_validate(principal)
        except StaleDataError:
            raise AuthError(ErrorKind.CONFLICT, "Principal was modified concurrently, retry")
        except IntegrityError:
            raise AuthError(ErrorKind.CONFLICT, "Email or handle already registered")

        if not changed:
            return view

        if changed.get("is_active", {}).get("to") is False:
            self.credentials.logout_everywhere(principal_id, reason="deactivated", ctx=ctx)

        self.events.record_audit(
            actor.principal_id, AuditAction.USER_UPDATED, "principal", principal_id,
            {"changes": changed}, ctx,
        )

        if previous_role is not None:
            logger.info(f"Role of principal {principal_id} changed {previous_role} -> {view.role}")
            self.events.record_security_event(
                principal_id,
                SecurityEventType.ROLE_CHANGED,
                Severity.CRITICAL,
                {"from": previous_role, "to": view.role, "changed_by": actor.principal_id},
                ctx.ip_address if ctx else None,
            )
            self.events.record_audit(
                actor.principal_id, AuditAction.ROLE_CHANGED, "principal", principal_id,
                {"from": previous_role, "to": view.role}, ctx,
            )

        return view

    def archive(self, actor: Actor, principal_id: str, ctx: Optional[RequestContext] = None) -> PrincipalView:
        """
        Archive a principal: mark archived, deactivate, revoke every session.

        Raises:
            AuthError: forbidden, not_found, conflict (already archived)
        """
        require_permission(actor, Permissions.ARCHIVE_USERS)
        check_deadline(ctx)

        if principal_id == actor.principal_id:
            raise AuthError(ErrorKind.FORBIDDEN, "Cannot archive your own account")

        now = self.clock.now()

        try:
            with self.database.session_scope() as db:
                principal = PrincipalRepository(db).get_by_id(principal_id)
                if principal is None:
                    raise AuthError(ErrorKind.NOT_FOUND, "User not found")
                if principal.archived_at is not None:
                    raise AuthError(ErrorKind.CONFLICT, "User is already archived")
                self._require_super_admin_for(actor, principal.role)

                principal.archived_at = now
                principal.is_active = False
                principal.updated_at = now
                db.flush()

                revoked = SessionRepository(db).revoke_all_except(principal_id, None, now, "archived")
                RefreshFamilyRepository(db).revoke_all_for(principal_id, now, "archived")
                self.credentials.bump_epoch(principal_id, db)

                view = PrincipalView.model_validate(principal)
        except StaleDataError:
            raise AuthError(ErrorKind.CONFLICT, "Principal was modified concurrently, retry")

        logger.info(f"Archived principal {principal_id}, revoked {len(revoked)} sessions")

        self.events.record_audit(
            actor.principal_id, AuditAction.USER_ARCHIVED, "principal", principal_id,
            {"sessions_revoked": len(revoked)}, ctx,
        )

        return view

    def restore(self, actor: Actor, principal_id: str, ctx: Optional[RequestContext] = None) -> PrincipalView:
        """
        Clear archived_at. The principal stays inactive until an admin
        re-activates it.

        Raises:
            AuthError: forbidden, not_found, conflict (not archived, or anonymized)
        """
        require_permission(actor, Permissions.ARCHIVE_USERS)
        check_deadline(ctx)

        now = self.clock.now()

        try:
            with self.database.session_scope() as db:
                principal = PrincipalRepository(db).get_by_id(principal_id)
                if principal is None:
                    raise AuthError(ErrorKind.NOT_FOUND, "User not found")
                if principal.anonymized_at is not None:
                    raise AuthError(ErrorKind.CONFLICT, "Anonymized principals cannot be restored")
                if principal.archived_at is None:
                    raise AuthError(ErrorKind.CONFLICT, "User is not archived")

                principal.archived_at = None
                principal.updated_at = now
                db.flush()

                view = PrincipalView.model_validate(principal)
        except StaleDataError:
            raise AuthError(ErrorKind.CONFLICT, "Principal was modified concurrently, retry")

        logger.info(f"Restored principal {principal_id}")

        self.events.record_audit(actor.principal_id, AuditAction.USER_RESTORED, "principal", principal_id, {}, ctx)

        return view

    def anonymize(self, actor: Actor, principal_id: str, ctx: Optional[RequestContext] = None) -> PrincipalView:
        """
        Irreversibly replace a principal's PII with placeholders.

        Erases the password hash, MFA secrets, backup codes, pending codes and
        linked identities, and redacts login attempts, sessions and security
        events. The audit entry is written before the mutation.

        Raises:
            AuthError: forbidden (super_admin only), not_found,
                conflict (not archived, or already anonymized)
        """
        require_permission(actor, Permissions.ANONYMIZE_USERS)
        check_deadline(ctx)

        with self.database.session_scope() as db:
            principal = PrincipalRepository(db).get_by_id(principal_id)
            if principal is None:
                raise AuthError(ErrorKind.NOT_FOUND, "User not found")
            if principal.anonymized_at is not None:
                raise AuthError(ErrorKind.CONFLICT, "User is already anonymized")
            if principal.archived_at is None:
                raise AuthError(ErrorKind.CONFLICT, "User must be archived before anonymization")

        self.events.write_audit(actor.principal_id, AuditAction.USER_ANONYMIZED, "principal", principal_id, {}, ctx)

        now = self.clock.now()
        placeholder = f"anon_{principal_id}"

        try:
            with self.database.session_scope() as db:
                principal = PrincipalRepository(db).get_by_id(principal_id)

                principal.handle = placeholder
                principal.email = f"{placeholder}@{ANONYMIZED_DOMAIN}"
                principal.email_verified = False
                principal.email_verified_at = None
                principal.password_hash = None
                principal.is_active = False
                principal.mfa_grace_until = None
                principal.last_login_at = None
                principal.anonymized_at = now
                principal.updated_at = now
                db.flush()

                MfaEnrollmentRepository(db).delete(principal_id)
                BackupCodeRepository(db).delete_all(principal_id)
                VerificationCodeRepository(db).delete_all_for(principal_id)
                LinkedIdentityRepository(db).delete_all_for(principal_id)
                ChallengeRepository(db).invalidate_for(principal_id, now)
                LoginAttemptRepository(db).redact_for(principal_id)
                SecurityEventRepository(db).redact_for(principal_id)
                SessionRepository(db).redact_for(principal_id, now)
                RefreshFamilyRepository(db).revoke_all_for(principal_id, now, "anonymized")
                self.credentials.bump_epoch(principal_id, db)

                view = PrincipalView.model_validate(principal)
        except StaleDataError:
            raise AuthError(ErrorKind.CONFLICT, "Principal was modified concurrently, retry")

        logger.info(f"Anonymized principal {principal_id}")

        return view

    # ========== MFA policy ==========

    def get_policy(self, actor: Actor) -> MfaPolicy:
        require_permission(actor, Permissions.READ_MFA_POLICY)
        return self.policy_store.get()

    def update_policy(self, actor: Actor, changes: MfaPolicyUpdate,
                      ctx: Optional[RequestContext] = None) -> MfaPolicy:
        """Apply a partial policy update and audit the changed fields."""
        require_permission(actor, Permissions.WRITE_MFA_POLICY)
        check_deadline(ctx)

        before = self.policy_store.get().column_values()
        policy = self.policy_store.update(changes, updated_by=actor.principal_id)
        after = policy.column_values()

        diff = {
            name: {"from": before[name], "to": value}
            for name, value in after.items()
            if before.get(name) != value
        }

        self.events.record_audit(
            actor.principal_id, AuditAction.MFA_POLICY_UPDATED, "mfa_policy", None, {"changes": diff}, ctx,
        )

        return policy

    def reset_policy(self, actor: Actor, ctx: Optional[RequestContext] = None) -> MfaPolicy:
        """Restore the default policy and drop every role override."""
        require_permission(actor, Permissions.WRITE_MFA_POLICY)
        check_deadline(ctx)

        policy = self.policy_store.reset(updated_by=actor.principal_id)

        self.events.record_audit(actor.principal_id, AuditAction.MFA_POLICY_RESET, "mfa_policy", None, {}, ctx)

        return policy

    def set_role_policy(self, actor: Actor, role_policy: RolePolicy,
                        ctx: Optional[RequestContext] = None) -> RolePolicy:
        require_permission(actor, Permissions.WRITE_MFA_POLICY)

        if role_policy.role not in Roles.ALL:
            raise AuthError(ErrorKind.INVALID_INPUT, f"Unknown role: {role_policy.role}")

        saved = self.policy_store.set_role_policy(role_policy)

        self.events.record_audit(
            actor.principal_id, AuditAction.ROLE_POLICY_UPDATED, "mfa_role_policy", role_policy.role,
            saved.model_dump(mode="json"), ctx,
        )

        return saved

    # ========== MFA administration ==========

    def unlock_mfa(self, actor: Actor, principal_id: str, ctx: Optional[RequestContext] = None) -> None:
        """
        Zero the failed-attempt counter and clear any MFA lock.

        Raises:
            AuthError: forbidden, not_found (principal or enrollment absent)
        """
        require_permission(actor, Permissions.UNLOCK_MFA)

        with self.database.session_scope() as db:
            if PrincipalRepository(db).get_by_id(principal_id) is None:
                raise AuthError(ErrorKind.NOT_FOUND, "User not found")
            repo = MfaEnrollmentRepository(db)
            enrollment = repo.get(principal_id)
            if enrollment is None:
                raise AuthError(ErrorKind.NOT_FOUND, "User has no MFA enrollment")
            previous = {
                "failed_attempts": enrollment.failed_attempts,
                "locked_by_admin": enrollment.lock_requires_admin,
            }
            repo.reset_failures(principal_id, self.clock.now())

        logger.info(f"MFA unlocked for principal {principal_id} by {actor.principal_id}")

        self.events.record_audit(actor.principal_id, AuditAction.MFA_UNLOCKED, "principal", principal_id, previous, ctx)

    def extend_grace_period(self, actor: Actor, principal_id: str, days: int,
                            ctx: Optional[RequestContext] = None) -> datetime:
        """
        Push a principal's MFA enrollment deadline out by N days.

        The extension starts from the later of now and the current deadline.

        Returns:
            The new deadline
        """
        require_permission(actor, Permissions.WRITE_MFA_POLICY)

        if days < 1 or days > MAX_GRACE_EXTENSION_DAYS:
            raise AuthError(ErrorKind.INVALID_INPUT, f"days must be between 1 and {MAX_GRACE_EXTENSION_DAYS}")

        policy = self.policy_store.get()
        now = self.clock.now()

        try:
            with self.database.session_scope() as db:
                principal = PrincipalRepository(db).get_by_id(principal_id)
                if principal is None or principal.anonymized_at is not None:
                    raise AuthError(ErrorKind.NOT_FOUND, "User not found")

                current = grace_deadline(policy, PrincipalFacts(
                    principal_id=principal.principal_id,
                    role=principal.role,
                    created_at=principal.created_at,
                    mfa_grace_until=principal.mfa_grace_until,
                ))
                deadline = max(now, current) + timedelta(days=days)
                principal.mfa_grace_until = deadline
                principal.updated_at = now
        except StaleDataError:
            raise AuthError(ErrorKind.CONFLICT, "Principal was modified concurrently, retry")

        logger.info(f"Grace period for principal {principal_id} extended to {deadline.isoformat()}")

        self.events.record_audit(
            actor.principal_id, AuditAction.GRACE_EXTENDED, "principal", principal_id,
            {"days": days, "grace_until": deadline.isoformat()}, ctx,
        )

        return deadline

    def enforcement_statistics(self, actor: Actor) -> EnforcementStatistics:
        """Enrollment coverage of active principals under the current policy."""
        require_permission(actor, Permissions.READ_MFA_POLICY)

        policy = self.policy_store.get()
        now = self.clock.now()

        with self.database.session_scope() as db:
            active = PrincipalRepository(db).list_active()
            enrolled_ids = set(MfaEnrollmentRepository(db).enrolled_principal_ids())
            per_method = MfaEnrollmentRepository(db).count_enrolled()
            by_role = PrincipalRepository(db).count_by_role()

            enrolled = in_grace = past_grace = exempt = 0
            for principal in active:
                if principal.principal_id in enrolled_ids:
                    enrolled += 1
                    continue
                if is_exempt(policy, principal.role):
                    exempt += 1
                    continue
                deadline = grace_deadline(policy, PrincipalFacts(
                    principal_id=principal.principal_id,
                    role=principal.role,
                    created_at=principal.created_at,
                    mfa_grace_until=principal.mfa_grace_until,
                ))
                if now <= deadline:
                    in_grace += 1
                else:
                    past_grace += 1

        return EnforcementStatistics(
            mfa_mode=policy.mfa_mode,
            enforcement_enabled=policy.enforcement_enabled,
            total_active=len(active),
            enrolled=enrolled,
            not_enrolled=len(active) - enrolled,
            in_grace=in_grace,
            past_grace=past_grace,
            exempt=exempt,
            totp_enrolled=per_method["totp"],
            email_enrolled=per_method["email"],
            by_role=by_role,
        )

    def list_audit_entries(
        self,
        actor: Actor,
        actor_id: Optional[str] = None,
        target_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page[AuditEntryView]:
        require_permission(actor, Permissions.READ_AUDIT)
        return self.events.audit_entries(
            actor_id=actor_id, target_id=target_id, action=action, page=page, page_size=page_size,
        )
