from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

from shopauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{sender}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for account verification, one-time codes and notices.

    When SMTP is not configured (dev mode) messages are only logged, without
    their bodies, and every send reports success.
    Every ``send_*`` method returns False instead of raising when delivery
    fails; callers decide whether that degrades or aborts their flow.
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
        from_name: str = "Shop Accounts",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

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

    def _render(self, title: str, paragraphs: Sequence[str], code: Optional[str] = None) -> tuple[str, str]:
        html_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text_parts = list(paragraphs)
        if code:
            html_parts.insert(1, f'<p class="code">{html.escape(code)}</p>')
            text_parts.insert(1, code)
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            body="\n        ".join(html_parts),
            sender=html.escape(self.from_name),
        )
        text_body = "\n\n".join([title, *text_parts, f"---\n{self.from_name}"]) + "\n"
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # connection refused, DNS failure, timeout
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str, *, lifetime_hours: int = 24) -> bool:
        """Send the account verification link issued at registration."""
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for creating an account. Confirm your email address by visiting the link below:",
                verify_url,
                f"This link expires in {lifetime_hours} hours.",
            ],
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_mfa_code(self, to_email: str, code: str, *, lifetime_minutes: int = 15) -> bool:
        """Send the one-time sign-in code."""
        html_body, text_body = self._render(
            "Your sign-in code",
            [
                "Use this code to finish signing in:",
                f"It expires in {lifetime_minutes} minutes and can be tried 3 times.",
                "If you did not try to sign in, change your password.",
            ],
            code=code,
        )
        return self._send_email(to_email, "Your sign-in code", html_body, text_body)

    def send_recovery_code(self, to_email: str, code: str, *, lifetime_minutes: int = 15) -> bool:
        """Send the one-time code that authorizes a password reset."""
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Enter this code to choose a new one:",
                f"It expires in {lifetime_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            code=code,
        )
        return self._send_email(to_email, "Your password reset code", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        """Notify the account owner that their password changed."""
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your account was just changed and every active session was signed out.",
                "If you didn't make this change, reset your password and contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)
