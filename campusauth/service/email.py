from __future__ import annotations

import smtplib
import ssl
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from campusauth.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 32px; font-weight: 700; letter-spacing: 6px; background: #f3f4f6; padding: 12px 24px; border-radius: 8px; display: inline-block; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """SMTP sender for code and security-notice emails.

    Delivery is retried with exponential backoff. When SMTP is not
    configured the message is only logged (subject and redacted recipient,
    never the body, which carries the code).
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
        from_name: str = "Campus Portal",
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_cap_seconds: float = 5.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_cap_seconds = backoff_cap_seconds

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_cap_seconds)

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False once every attempt failed.
        """
        if not self.is_configured:
            logger.info("email_dev_mode", to=self._redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        for attempt in range(1, self.max_attempts + 1):
            try:
                self._deliver(to_email, msg)
                logger.info(
                    "email_sent", to=self._redact_email(to_email), subject=subject, attempt=attempt
                )
                return True
            except smtplib.SMTPAuthenticationError as e:
                # Credentials will not improve on retry
                logger.error(
                    "email_auth_failed",
                    to=self._redact_email(to_email),
                    host=self.smtp_host,
                    error=str(e),
                )
                return False
            except smtplib.SMTPRecipientsRefused as e:
                logger.error(
                    "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
                )
                return False
            except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
                logger.warning(
                    "email_send_attempt_failed",
                    to=self._redact_email(to_email),
                    host=self.smtp_host,
                    attempt=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if attempt < self.max_attempts:
                    time.sleep(self._backoff(attempt))

        logger.error(
            "email_send_failed", to=self._redact_email(to_email), attempts=self.max_attempts
        )
        return False

    def _code_email(self, heading: str, intro: str, code: str, validity: str) -> tuple[str, str]:
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><span class="code">{code}</span></p>
        <p>This code is valid for {validity}. Do not share it with anyone.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>{self.from_name}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""{heading}

{intro}

    {code}

This code is valid for {validity}. Do not share it with anyone.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return html_body, text_body

    def send_password_reset_code(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._code_email(
            "Reset your password",
            "We received a request to reset your password. Enter this code to choose a new one:",
            code,
            "1 hour",
        )
        return self._send_email(to_email, "Your password reset code", html_body, text_body)

    def send_verification_code(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._code_email(
            "Your verification code",
            "Use this code to finish signing in:",
            code,
            "5 minutes",
        )
        return self._send_email(to_email, "Your verification code", html_body, text_body)

    def send_account_locked_notice(self, to_email: str, minutes: int) -> bool:
        subject = "Your account has been locked"
        text_body = f"""Your account has been locked

Your account was locked after several failed sign-in attempts. You can try
again in {minutes} minutes, or reset your password.

If this wasn't you, please contact your campus administrator.

---
{self.from_name}
"""
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Your account has been locked</h1>
        <p>Your account was locked after several failed sign-in attempts. You can try again in {minutes} minutes, or reset your password.</p>
        <p>If this wasn't you, please contact your campus administrator.</p>
        <div class="footer">
            <p>{self.from_name}</p>
        </div>
    </div>
</body>
</html>
"""
        return self._send_email(to_email, subject, html_body, text_body)
