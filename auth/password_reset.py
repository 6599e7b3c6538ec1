"""
Password reset functionality via email.

Features:
- Emailed single-use reset codes (hashed at rest, expiring)
- No account enumeration: requests for unknown emails look identical
- Successful reset logs the principal out everywhere
"""
import logging
from typing import Optional

from auth.clock import Clock, RequestContext
from auth.errors import AuthError, ErrorKind
from auth.mailer import LoggingMailer, Mailer, MailMessage, MailTemplate
from auth.user_manager import PrincipalService
from auth.verification_codes import CodeFormat, CodePurpose, CodeStore
from security.rate_limiter import RateLimiter, RateLimitScope

logger = logging.getLogger(__name__)


class PasswordResetManager:
    """Manage password reset flow."""

    def __init__(
        self,
        principals: PrincipalService,
        code_store: CodeStore,
        rate_limiter: Optional[RateLimiter] = None,
        mailer: Optional[Mailer] = None,
        clock: Optional[Clock] = None,
        code_ttl_minutes: int = 30,
        max_attempts: int = 5,
    ):
        """
        Initialize password reset manager.

        Args:
            principals: Principal service (stores the new password)
            code_store: Verification codes
            rate_limiter: Rate limiter for the public endpoints
            mailer: Outbound mail
            clock: Time source
            code_ttl_minutes: Reset code lifetime
            max_attempts: Wrong guesses allowed per code
        """
        self.principals = principals
        self.code_store = code_store
        self.rate_limiter = rate_limiter
        self.mailer = mailer or LoggingMailer()
        self.clock = clock or Clock()
        self.code_ttl_minutes = code_ttl_minutes
        self.max_attempts = max_attempts

    def _limit(self, scope: str, ctx: Optional[RequestContext]) -> None:
        if self.rate_limiter is not None and ctx is not None:
            self.rate_limiter.enforce(scope, ctx.ip_address, ctx)

    def request_reset(self, email: str, ctx: Optional[RequestContext] = None) -> None:
        """
        Initiate password reset flow.

        Returns nothing either way so callers cannot tell whether the
        email belongs to an account.

        Args:
            email: Email address as entered
            ctx: Request context
        """
        self._limit(RateLimitScope.PASSWORD_RESET, ctx)

        principal = self.principals.get_by_email(email or "")

        if principal is None or not principal.is_active:
            # Don't reveal user existence
            logger.info("Password reset requested for unknown or inactive account")
            return

        issued = self.code_store.issue(
            principal.principal_id,
            CodePurpose.PASSWORD_RESET,
            CodeFormat.NUMERIC_8,
            self.code_ttl_minutes,
            ctx=ctx,
        )

        self.mailer.send(MailMessage(
            to=principal.email,
            template=MailTemplate.PASSWORD_RESET,
            context={"code": issued.code, "expires_in_minutes": self.code_ttl_minutes},
        ))

        logger.info(f"Password reset requested for principal {principal.principal_id}")

    def reset_password(self, email: str, code: str, new_password: str,
                       ctx: Optional[RequestContext] = None) -> None:
        """
        Reset a password using an emailed code.

        Raises:
            AuthError: code_invalid (also for unknown emails), code_expired,
                code_attempts_exhausted, invalid_input (weak password)
        """
        self._limit(RateLimitScope.EMAIL_VERIFY, ctx)

        strength = self.principals.hasher.strength(new_password)
        if not strength.ok:
            raise AuthError(ErrorKind.INVALID_INPUT, "Password too weak", reasons=strength.reasons)

        principal = self.principals.get_by_email(email or "")
        if principal is None or not principal.is_active:
            raise AuthError(ErrorKind.CODE_INVALID)

        self.code_store.verify(principal.principal_id, CodePurpose.PASSWORD_RESET, code, self.max_attempts, ctx)

        self.principals.set_password(principal.principal_id, new_password, reason="password_reset", ctx=ctx)

        logger.info(f"Password reset completed for principal {principal.principal_id}")
