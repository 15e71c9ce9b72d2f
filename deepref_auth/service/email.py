from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

from deepref_auth.logging import get_logger

logger = get_logger(__name__)


def _redact_email(email: str) -> str:
    """Redact an address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional mail for the credential lifecycle.

    Supports SMTP with STARTTLS or implicit SSL. When SMTP is not configured
    messages are logged instead of sent (dev mode). Senders never raise:
    delivery failures are logged and reported as ``False`` so callers can
    treat mail as fire-and-forget.
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
        from_name: str = "DeepRef",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self, heading: str, paragraphs: Sequence[str], link: Optional[str] = None
    ) -> tuple[str, str]:
        text_parts = [heading, ""] + list(paragraphs)
        html_parts = [f"<h1>{html.escape(heading)}</h1>"]
        html_parts += [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        if link:
            text_parts += ["", link]
            escaped = html.escape(link, quote=True)
            html_parts.append(f'<p><a href="{escaped}">{escaped}</a></p>')
        text_parts += ["", "---", self.from_name]
        html_body = (
            '<!DOCTYPE html><html><head><meta charset="utf-8"></head><body>'
            + "".join(html_parts)
            + f"<p>{html.escape(self.from_name)}</p></body></html>"
        )
        return html_body, "\n".join(text_parts)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=_redact_email(to_email), subject=subject)
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

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

            logger.info("email_sent", to=_redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=_redact_email(to_email), error=str(e)
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            reset_url,
        )
        return self._send_email(to_email, "Reset your DeepRef password", html_body, text_body)

    def send_security_alert(self, to_email: str, subject: str, message: str) -> bool:
        html_body, text_body = self._render(
            subject,
            [message, "If this wasn't you, reset your password and contact support immediately."],
        )
        return self._send_email(to_email, f"Security alert: {subject}", html_body, text_body)

    def send_verification_code(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            [f"Your verification code is {code}.", "This code will expire in 24 hours."],
        )
        return self._send_email(to_email, "Verify your DeepRef email", html_body, text_body)

    def send_magic_link(self, to_email: str, token: str, *, ttl_minutes: int = 15) -> bool:
        link = f"{self.base_url}/auth/magic-link?token={token}"
        html_body, text_body = self._render(
            "Sign in to DeepRef",
            [f"Use the link below to sign in. It expires in {ttl_minutes} minutes."],
            link,
        )
        return self._send_email(to_email, "Your DeepRef sign-in link", html_body, text_body)

    def send_mfa_code(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._render(
            "Your verification code",
            [f"Enter {code} to finish signing in.", "This code will expire in 10 minutes."],
        )
        return self._send_email(to_email, "Your DeepRef verification code", html_body, text_body)

    def send_mfa_setup_confirmation(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication has been enabled on your DeepRef account.",
                "You will now need a code from your authenticator app when signing in.",
            ],
        )
        return self._send_email(
            to_email, "Two-factor authentication enabled", html_body, text_body
        )
