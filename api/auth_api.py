"""
FastAPI endpoints for authentication system.

Provides REST API for:
- Registration and email verification
- Login (password, then MFA challenge or setup)
- MFA verification (TOTP, email code, backup code)
- Credential refresh and logout
- Password reset
"""
import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, EmailStr, Field

from api.dependencies import Services, get_current_actor, get_request_context, get_services
from api.responses import ok
from auth.auth_middleware import Actor
from auth.clock import RequestContext
from auth.mfa_policy import MfaMethod

# Initialize logger
logger = logging.getLogger(__name__)

# Initialize router
router = APIRouter(prefix="/auth", tags=["authentication"])


# ============================================================
# Request/Response Models
# ============================================================

class RegisterRequest(BaseModel):
    """Principal registration request."""
    handle: str
    email: str
    password: str


class LoginRequest(BaseModel):
    """Login request."""
    email: str
    password: str


class TotpVerifyRequest(BaseModel):
    """TOTP verification against a challenge."""
    challenge: str
    token: str = Field(description="6-digit code from the authenticator app")
    trust_device: bool = False


class CodeVerifyRequest(BaseModel):
    """Emailed or backup code verification against a challenge."""
    challenge: str
    code: str
    trust_device: bool = False


class ChallengeRequest(BaseModel):
    challenge: str


class SetupBeginRequest(BaseModel):
    """Start enrolling a factor with a setup token."""
    setup_token: str
    method: MfaMethod


class SetupCompleteRequest(BaseModel):
    """Confirm a factor with a setup token."""
    setup_token: str
    method: MfaMethod
    code: str


class RefreshRequest(BaseModel):
    refresh: str = Field(description="Refresh token")


class VerifyEmailRequest(BaseModel):
    code: str


class PasswordResetRequest(BaseModel):
    """Password reset request."""
    email: str


class PasswordResetConfirmRequest(BaseModel):
    """Password reset confirmation."""
    email: EmailStr
    code: str
    new_password: str


# ============================================================
# Authentication Endpoints
# ============================================================

@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    request_data: RegisterRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Register a new principal.

    Creates the account, mails an email verification code and logs the
    principal in under the current MFA policy.
    """
    principal = services.principals.register(
        handle=request_data.handle,
        email=request_data.email,
        password=request_data.password,
        ctx=ctx,
    )

    outcome = services.login.after_registration(principal.principal_id, ctx)

    return ok(
        {"principal": principal, **outcome.model_dump(mode="json")},
        message="User registered successfully",
    )


@router.post("/login")
def login(
    request_data: LoginRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Authenticate with email and password.

    Returns credentials, or an MFA challenge, or a setup token when the
    policy requires enrollment first.
    """
    outcome = services.login.authenticate(request_data.email, request_data.password, ctx)
    return ok(outcome)


@router.post("/logout")
def logout(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Revoke the current session and its refresh tokens."""
    services.credentials.logout(actor.principal_id, actor.session_id, ctx)
    return ok(message="Logged out successfully")


@router.post("/logout-all")
def logout_all_devices(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Revoke every session and invalidate every access token."""
    count = services.credentials.logout_everywhere(actor.principal_id, ctx=ctx)
    return ok({"revoked_count": count}, message=f"Logged out from {count} device(s)")


@router.post("/refresh")
def refresh(
    request_data: RefreshRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Exchange a refresh token for a new pair."""
    credentials = services.credentials.refresh(request_data.refresh, ctx)
    return ok(credentials)


# ============================================================
# Multi-Factor Authentication Endpoints
# ============================================================

@router.post("/mfa/verify")
def verify_totp(
    request_data: TotpVerifyRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Complete a challenge with a TOTP code."""
    outcome = services.login.verify_mfa(
        request_data.challenge, request_data.token, MfaMethod.TOTP, ctx, trust_device=request_data.trust_device
    )
    return ok(outcome)


@router.post("/mfa/email/verify")
def verify_email_code(
    request_data: CodeVerifyRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Complete a challenge with an emailed code."""
    outcome = services.login.verify_mfa(
        request_data.challenge, request_data.code, MfaMethod.EMAIL, ctx, trust_device=request_data.trust_device
    )
    return ok(outcome)


@router.post("/mfa/verify-backup")
def verify_backup_code(
    request_data: CodeVerifyRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Complete a challenge with a single-use backup code."""
    outcome = services.login.verify_mfa(
        request_data.challenge, request_data.code, MfaMethod.BACKUP, ctx, trust_device=request_data.trust_device
    )
    return ok(outcome)


@router.post("/mfa/email/resend")
def resend_email_code(
    request_data: ChallengeRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Send (or resend) the emailed code for a challenge."""
    delivery = services.login.resend_email_code(request_data.challenge, ctx)
    return ok(delivery, message="Verification code sent")


@router.post("/mfa/setup/begin")
def begin_mfa_setup(
    request_data: SetupBeginRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Start enrolling a factor during a login that requires setup.

    TOTP returns the secret and provisioning URI; email sends a code.
    """
    result = services.login.begin_setup(request_data.setup_token, request_data.method, ctx)
    return ok(result)


@router.post("/mfa/setup/complete")
def complete_mfa_setup(
    request_data: SetupCompleteRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Confirm the factor; credentials are issued once setup is complete."""
    outcome = services.login.complete_setup(request_data.setup_token, request_data.method, request_data.code, ctx)
    return ok(outcome)


# ============================================================
# Email Verification Endpoints
# ============================================================

@router.post("/verify-email")
def verify_email(
    request_data: VerifyEmailRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Confirm the primary email with the mailed code."""
    principal = services.principals.verify_email(actor.principal_id, request_data.code, ctx)
    return ok(principal, message="Email verified")


@router.post("/verify-email/resend")
def resend_verification(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    services.principals.resend_verification(actor.principal_id, ctx)
    return ok(message="Verification code sent")


# ============================================================
# Password Reset Endpoints
# ============================================================

@router.post("/password-reset/request")
def request_password_reset(
    request_data: PasswordResetRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Request a password reset code.

    Always answers the same way, whether or not the email exists.
    """
    services.password_reset.request_reset(request_data.email, ctx)
    return ok(message="If the email exists, a reset code has been sent")


@router.post("/password-reset/confirm")
def confirm_password_reset(
    request_data: PasswordResetConfirmRequest,
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Set a new password with the mailed code; logs out everywhere."""
    services.password_reset.reset_password(
        request_data.email, request_data.code, request_data.new_password, ctx
    )
    return ok(message="Password reset successfully")
