"""Outbound email.

Only a logging implementation exists; swap in an SMTP or provider-backed
sender by implementing ``EmailService``.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


def mask_secret(secret: str, visible: int = 2) -> str:
    """Keep the first characters of a secret for support lookups, hide the rest."""
    if not secret:
        return ""
    if len(secret) <= visible:
        return "*" * len(secret)
    return secret[:visible] + "*" * (len(secret) - visible)


class EmailService(ABC):
    @abstractmethod
    async def send_stadium_manager_credentials(
        self, email: str, full_name: str, temporary_password: str
    ) -> None:
        """Deliver the initial credentials of a provisioned stadium manager."""

    @abstractmethod
    async def send_password_reset_otp(
        self, email: str, full_name: str, otp: str, expires_in_minutes: int
    ) -> None:
        """Deliver a one-time password reset code."""


class LoggingEmailService(EmailService):
    """
    Writes emails to the application log instead of sending them.

    Secrets are masked at INFO. The full value only appears at DEBUG, which
    local development can enable to complete the flows by hand.
    """

    async def send_stadium_manager_credentials(
        self, email: str, full_name: str, temporary_password: str
    ) -> None:
        logger.info(
            "Stadium manager credentials (mock email) to=%s name=%s password=%s. "
            "The manager must change this password after first login.",
            email,
            full_name,
            mask_secret(temporary_password),
        )
        logger.debug("Temporary password for %s: %s", email, temporary_password)

    async def send_password_reset_otp(
        self, email: str, full_name: str, otp: str, expires_in_minutes: int
    ) -> None:
        logger.info(
            "Password reset code (mock email) to=%s name=%s code=%s, valid for %d minutes",
            email,
            full_name,
            mask_secret(otp, visible=0),
            expires_in_minutes,
        )
        logger.debug("Password reset code for %s: %s", email, otp)
