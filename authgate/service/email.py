from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authgate.logging import get_logger
from authgate.service.errors import DeliveryFailedError

logger = get_logger(__name__)

DELIVERY_SMTP = "smtp"
DELIVERY_LOG = "log"


def redact_address(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP delivery for transactional mail.

    ``smtp_use_tls`` selects STARTTLS on a plain connection; otherwise the
    connection is implicit TLS (``SMTP_SSL``). Without an SMTP host the
    message is logged instead of sent.
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
        from_name: str = "Forum CMS",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to_email: str, subject: str, text: str, html: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))
        return msg

    def send(self, to_email: str, subject: str, text: str, html: str) -> str:
        """Send one message and return the delivery mode used.

        Raises ``DeliveryFailedError`` when the SMTP exchange fails.
        """
        if not self.is_configured:
            logger.warning(
                "email_transport_not_configured",
                to=redact_address(to_email),
                subject=subject,
                body_preview=text[:500],
            )
            return DELIVERY_LOG

        msg = self._build_message(to_email, subject, text, html)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_address(to_email),
                host=self.smtp_host,
                error_code=exc.smtp_code,
            )
            raise DeliveryFailedError("Email delivery failed.") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=redact_address(to_email),
                refused=len(exc.recipients),
            )
            raise DeliveryFailedError("Email delivery failed.") from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_address(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryFailedError("Email delivery failed.") from exc

        logger.info("email_sent", to=redact_address(to_email), subject=subject)
        return DELIVERY_SMTP
