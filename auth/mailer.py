"""
auth/mailer.py -- Delivery of step-up codes by email.

The OTP manager only depends on the send_login_code(to_email, code) contract;
OtpMailer is the SMTP implementation. Without SMTP_HOST the mailer runs in
degraded mode and writes the code to the server log instead of failing the
login.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage

from auth.errors import OtpDeliveryError
from core.config import Settings

logger = logging.getLogger("authority.mailer")

_SUBJECT = "Tu código de acceso"


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class OtpMailer:
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.from_email = settings.smtp_from
        self.ttl_minutes = settings.otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)

    def send_login_code(self, to_email: str, code: str) -> None:
        """Send the code, or log it when SMTP is not configured.

        Raises OtpDeliveryError if a configured server rejects or cannot be
        reached. No retries here.
        """
        if not self.is_configured:
            logger.warning("SMTP not configured. OTP code for %s: %s", _redact_email(to_email), code)
            return

        msg = EmailMessage()
        msg["Subject"] = _SUBJECT
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg.set_content(f"Tu código de verificación es: {code}. Expira en {self.ttl_minutes} minutos.")

        context = ssl.create_default_context()
        try:
            # Port 465 is implicit TLS; anything else negotiates STARTTLS.
            if self.port == 465:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=30) as server:
                    self._login(server)
                    server.send_message(msg)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("OTP email to %s failed: %s", _redact_email(to_email), exc)
            raise OtpDeliveryError() from exc
        logger.info("OTP email sent to %s", _redact_email(to_email))

    def _login(self, server: smtplib.SMTP) -> None:
        if self.user and self.password:
            server.login(self.user, self.password)
