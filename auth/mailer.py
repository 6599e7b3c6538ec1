"""
Outbound mail interface.

The core never renders email. It hands a template name and its context to a
Mailer; delivery (SMTP, SendGrid, SES, ...) lives outside this package.
"""
import logging
from typing import Any, Dict

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class MailTemplate:
    """Template names understood by the delivery service."""
    EMAIL_VERIFY = "email_verify"
    MFA_LOGIN_CODE = "mfa_login_code"
    MFA_SETUP_CODE = "mfa_setup_code"
    PASSWORD_RESET = "password_reset"
    ALTERNATE_EMAIL = "alternate_email_verify"
    TEST_EMAIL = "test_email"


class MailMessage(BaseModel):
    """Inputs for one outbound message."""

    to: str = Field(description="Recipient address")
    template: str = Field(description="Template name")
    context: Dict[str, Any] = Field(default_factory=dict, description="Template variables")


class Mailer:
    """Mail delivery interface."""

    def send(self, message: MailMessage) -> bool:
        """
        Hand a message to the delivery service.

        Args:
            message: Message inputs

        Returns:
            True if accepted for delivery
        """
        raise NotImplementedError


class LoggingMailer(Mailer):
    """Development mailer: logs the envelope, never the context."""

    def send(self, message: MailMessage) -> bool:
        logger.info(f"[Mail] template={message.template} to={message.to}")
        return True
