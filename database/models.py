"""
SQLAlchemy database models for the identity core.

Tables:
- principals: Authenticated subjects (with credential epoch)
- linked_identities: External social identities linked to a principal
- mfa_enrollments: Per-principal MFA state
- backup_codes: Single-use recovery codes
- verification_codes: Short-lived side-channel codes
- sessions: Device-bound sessions (with device trust)
- refresh_families: Refresh credential families for reuse detection
- mfa_challenges: Issued MFA challenges (single use)
- login_attempts, security_events, audit_entries: Append-only logs
- mfa_policy, mfa_role_policies: MFA configuration

Rows reference each other by id only; related rows are fetched through
repositories rather than ORM relationships.
"""
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PrincipalModel(Base):
    """Principal (user account) model."""

    __tablename__ = "principals"

    principal_id = Column(String(64), primary_key=True)

    handle = Column(String(64), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)  # stored lowercased
    email_verified = Column(Boolean, default=False, nullable=False)
    email_verified_at = Column(DateTime, nullable=True)
    password_hash = Column(String(255), nullable=True)  # Null for identity-only principals

    role = Column(String(20), default="user", nullable=False)

    # Status
    is_active = Column(Boolean, default=True, nullable=False)
    archived_at = Column(DateTime, nullable=True)
    anonymized_at = Column(DateTime, nullable=True)

    # Access credentials carry the epoch they were minted under
    credential_epoch = Column(Integer, default=0, nullable=False)

    # Per-principal override of the enforcement grace deadline
    mfa_grace_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    last_login_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_principal_role', 'role'),
        Index('idx_principal_created', 'created_at'),
    )


class LinkedIdentityModel(Base):
    """External identity linked to a principal."""

    __tablename__ = "linked_identities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    principal_id = Column(String(64), ForeignKey("principals.principal_id"), nullable=False, index=True)

    provider = Column(String(20), nullable=False)  # google, github
    provider_subject = Column(String(255), nullable=False)
    provider_email = Column(String(255), nullable=True)

    linked_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('provider', 'provider_subject', name='uq_identity_provider_subject'),
    )


class MfaEnrollmentModel(Base):
    """Per-principal MFA configuration and lockout state."""

    __tablename__ = "mfa_enrollments"

    principal_id = Column(String(64), ForeignKey("principals.principal_id"), primary_key=True)

    # TOTP (secret encrypted at rest; set but not enabled while setup is pending)
    totp_secret_encrypted = Column(Text, nullable=True)
    totp_enabled = Column(Boolean, default=False, nullable=False)
    totp_enabled_at = Column(DateTime, nullable=True)

    # Email 2FA
    email_2fa_enabled = Column(Boolean, default=False, nullable=False)
    alternate_email = Column(String(255), nullable=True)
    alternate_email_verified = Column(Boolean, default=False, nullable=False)

    preferred_method = Column(String(10), default="totp", nullable=False)

    # Lockout
    failed_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime, nullable=True)
    lock_requires_admin = Column(Boolean, default=False, nullable=False)

    enrollment_completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class BackupCodeModel(Base):
    """Single-use recovery code (salted hash)."""

    __tablename__ = "backup_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    principal_id = Column(String(64), ForeignKey("principals.principal_id"), nullable=False, index=True)

    code_hash = Column(String(255), nullable=False)

    created_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)


class VerificationCodeModel(Base):
    """Short-lived code delivered over a side channel."""

    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    principal_id = Column(String(64), ForeignKey("principals.principal_id"), nullable=False)

    purpose = Column(String(32), nullable=False)  # email-verify, mfa-login, mfa-setup, password-reset, alternate-email
    code_hash = Column(String(64), nullable=False)
    target_email = Column(String(255), nullable=True)

    attempts = Column(Integer, default=0, nullable=False)
    resend_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_code_principal_purpose', 'principal_id', 'purpose'),
        Index('idx_code_expires', 'expires_at'),
    )


class SessionModel(Base):
    """Device-bound session."""

    __tablename__ = "sessions"

    session_id = Column(String(64), primary_key=True)
    principal_id = Column(String(64), ForeignKey("principals.principal_id"), nullable=False)

    # Device
    fingerprint = Column(String(64), nullable=False)
    device_name = Column(String(255), nullable=True)
    device_type = Column(String(20), nullable=False, default="desktop")  # desktop, mobile, tablet
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)
    user_agent = Column(Text, nullable=True)

    # Network
    ip_address = Column(String(45), nullable=True)
    location = Column(String(255), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    # Revocation
    revoked_at = Column(DateTime, nullable=True)
    revoke_reason = Column(String(50), nullable=True)

    # Device trust
    trusted = Column(Boolean, default=False, nullable=False)
    trusted_at = Column(DateTime, nullable=True)
    trusted_until = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_session_principal_fp', 'principal_id', 'fingerprint'),
        Index('idx_session_expires', 'expires_at'),
    )


class RefreshFamilyModel(Base):
    """Refresh credential family; only current_version may be presented."""

    __tablename__ = "refresh_families"

    family_id = Column(String(64), primary_key=True)
    principal_id = Column(String(64), ForeignKey("principals.principal_id"), nullable=False, index=True)
    session_id = Column(String(64), nullable=False, index=True)

    current_version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, nullable=False)
    rotated_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoke_reason = Column(String(50), nullable=True)


class MfaChallengeModel(Base):
    """Issued MFA challenge or setup token, consumed at most once."""

    __tablename__ = "mfa_challenges"

    jti = Column(String(64), primary_key=True)
    principal_id = Column(String(64), ForeignKey("principals.principal_id"), nullable=False, index=True)

    kind = Column(String(20), nullable=False)  # challenge, mfa_setup
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)


class LoginAttemptModel(Base):
    """Append-only login attempt record."""

    __tablename__ = "login_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    principal_id = Column(String(64), nullable=True)  # Null for unknown-user attempts

    email = Column(String(255), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    device_type = Column(String(20), nullable=True)
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)

    success = Column(Boolean, nullable=False)
    failure_reason = Column(String(50), nullable=True)
    mfa_used = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_login_principal_created', 'principal_id', 'created_at'),
        Index('idx_login_email_created', 'email', 'created_at'),
    )


class SecurityEventModel(Base):
    """Append-only security event."""

    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    principal_id = Column(String(64), nullable=True)

    event_type = Column(String(32), nullable=False)
    severity = Column(String(10), nullable=False)  # info, warning, critical
    details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String(45), nullable=True)

    created_at = Column(DateTime, nullable=False)
    acknowledged_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_event_principal_created', 'principal_id', 'created_at'),
        Index('idx_event_severity', 'severity'),
    )


class AuditEntryModel(Base):
    """Append-only admin audit entry."""

    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(64), nullable=True)

    action = Column(String(64), nullable=False)
    target_type = Column(String(32), nullable=False)
    target_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=False, default=dict)

    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_audit_actor_created', 'actor_id', 'created_at'),
        Index('idx_audit_target_created', 'target_id', 'created_at'),
    )


class MfaPolicyModel(Base):
    """Singleton MFA policy row (id is always 1)."""

    __tablename__ = "mfa_policy"

    id = Column(Integer, primary_key=True)

    mfa_mode = Column(String(40), nullable=False)
    code_format = Column(String(20), nullable=False)
    code_expiration_minutes = Column(Integer, nullable=False)
    code_resend_limit = Column(Integer, nullable=False)
    code_resend_cooldown_seconds = Column(Integer, nullable=False)
    max_failed_attempts = Column(Integer, nullable=False)
    lockout_behavior = Column(String(20), nullable=False)
    lockout_duration_minutes = Column(Integer, nullable=False)
    backup_codes_for_totp = Column(Boolean, nullable=False)
    backup_codes_for_email = Column(Boolean, nullable=False)
    device_trust_enabled = Column(Boolean, nullable=False)
    device_trust_duration_days = Column(Integer, nullable=False)
    max_trusted_devices = Column(Integer, nullable=False)
    role_based_mfa_enabled = Column(Boolean, nullable=False)
    enforcement_enabled = Column(Boolean, nullable=False)
    grace_period_days = Column(Integer, nullable=False)
    enforcement_started_at = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, nullable=True)
    updated_by = Column(String(64), nullable=True)


class MfaRolePolicyModel(Base):
    """Per-role MFA override and enforcement exemption."""

    __tablename__ = "mfa_role_policies"

    role = Column(String(20), primary_key=True)
    mfa_mode = Column(String(40), nullable=True)  # Null means use the global mode
    exempt_from_enforcement = Column(Boolean, default=False, nullable=False)

    updated_at = Column(DateTime, nullable=True)
