from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Callable, Optional, Protocol

from authkernel.logging import get_logger, hash_identifier
from authkernel.storage.common import is_email_identifier
from authkernel.storage.models import Account, OtpPurpose

logger = get_logger(__name__)


class AccountEvent(str, Enum):
    REGISTERED = "registered"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEACTIVATED = "deactivated"
    REACTIVATED = "reactivated"


class Notifier(Protocol):
    def send_code(self, identifier: str, code: str, purpose: OtpPurpose) -> bool: ...

    def send_account_status(
        self, account: Account, event: AccountEvent, reason: Optional[str] = None
    ) -> bool: ...


def dispatch(action: str, send: Callable[..., bool], *args, **kwargs) -> bool:
    """Run a notifier call; delivery failures are logged and never propagate."""

    try:
        return bool(send(*args, **kwargs))
    except Exception as exc:
        logger.error("notification_failed", action=action, error=str(exc))
        return False


_CODE_SUBJECTS = {
    OtpPurpose.REGISTRATION: "Verify your account",
    OtpPurpose.LOGIN: "Your sign-in code",
    OtpPurpose.PASSWORD_RESET: "Reset your password",
}

_STATUS_SUBJECTS = {
    AccountEvent.REGISTERED: "We received your registration",
    AccountEvent.APPROVED: "Your account has been approved",
    AccountEvent.REJECTED: "Your registration was not approved",
    AccountEvent.DEACTIVATED: "Your account has been deactivated",
    AccountEvent.REACTIVATED: "Your account has been reactivated",
}


class NotificationService:
    """Delivers codes and account status notices.

    Email goes out over SMTP when ``smtp_host`` and a sender address are
    configured; otherwise messages are logged (dev mode). Text messages have
    no gateway in this package and are always logged.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Marketplace",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings) -> "NotificationService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send_code(self, identifier: str, code: str, purpose: OtpPurpose) -> bool:
        purpose = OtpPurpose(purpose)
        text = f"Your code is {code}. Do not share it with anyone."
        if is_email_identifier(identifier):
            return self._send_email(identifier, _CODE_SUBJECTS[purpose], text)
        return self._send_sms(identifier, text)

    def send_account_status(
        self, account: Account, event: AccountEvent, reason: Optional[str] = None
    ) -> bool:
        event = AccountEvent(event)
        subject = _STATUS_SUBJECTS[event]
        name = account.full_name or "there"
        text = f"Hello {name}, {subject[0].lower()}{subject[1:]}."
        if reason:
            text += f" Reason: {reason}"
        if account.email:
            return self._send_email(account.email, subject, text)
        if account.phone:
            return self._send_sms(account.phone, text)
        logger.warning("notification_no_channel", account_id=account.id, event=event.value)
        return False

    def _send_sms(self, phone: str, text: str) -> bool:
        logger.info(
            "sms_dev_mode",
            recipient_hash=hash_identifier(phone),
            length=len(text),
        )
        return True

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient_hash=hash_identifier(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient_hash=hash_identifier(to_email),
                host=self.smtp_host,
                error=str(exc),
            )
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_send_failed",
                recipient_hash=hash_identifier(to_email),
                host=self.smtp_host,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient_hash=hash_identifier(to_email), subject=subject)
        return True
