from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

from autohealer.logging import get_logger, mask_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{product}</p>
            {footer}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for account security events.

    Falls back to logging the message when SMTP is not configured, so local
    and test deployments never need a mail server.
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
        from_name: str = "WP-AutoHealer",
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
        self,
        title: str,
        paragraphs: Sequence[str],
        *,
        link: Optional[tuple[str, str]] = None,
    ) -> tuple[str, str]:
        """Build matching HTML and plain-text bodies."""
        html_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text_parts = list(paragraphs)
        footer = ""
        if link:
            label, url = link
            safe_url = html.escape(url, quote=True)
            html_parts.insert(
                1,
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{html.escape(label)}</a></p>',
            )
            text_parts.insert(1, url)
            footer = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            body="\n        ".join(html_parts),
            product=html.escape(self.from_name),
            footer=footer,
        )
        text_body = "\n\n".join([title] + text_parts + [f"---\n{self.from_name}"])
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
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
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
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=mask_email(to_email),
            )

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

            logger.info("email_sent", to=mask_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                refused_count=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int = 60) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=("Reset Password", reset_url),
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_email_verification(self, to_email: str, token: str, ttl_hours: int = 24) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Please confirm your email address using the link below.",
                f"This link will expire in {ttl_hours} hours.",
            ],
            link=("Verify Email", verify_url),
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_account_locked(self, to_email: str, lockout_until: Optional[datetime]) -> bool:
        until = (
            lockout_until.strftime("%Y-%m-%d %H:%M UTC")
            if lockout_until
            else "an administrator unlocks it"
        )
        html_body, text_body = self._render(
            "Your account has been locked",
            [
                "Your account was locked after repeated failed sign-in attempts.",
                f"It will remain locked until {until}.",
                "If these attempts were not made by you, reset your password once the lock expires.",
            ],
        )
        return self._send_email(to_email, "Account locked", html_body, text_body)

    def send_mfa_enabled(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication has been enabled on your account.",
                "You will now need a code from your authenticator app when signing in.",
                "If you didn't make this change, contact your administrator immediately.",
            ],
        )
        return self._send_email(
            to_email, "Two-factor authentication enabled", html_body, text_body
        )

    def send_mfa_disabled(self, to_email: str, *, by_administrator: bool = False) -> bool:
        actor = "an administrator" if by_administrator else "you"
        html_body, text_body = self._render(
            "Two-factor authentication disabled",
            [
                f"Two-factor authentication was disabled on your account by {actor}.",
                "All of your sessions have been signed out where required.",
                "If you didn't expect this change, contact your administrator immediately.",
            ],
        )
        return self._send_email(
            to_email, "Two-factor authentication disabled", html_body, text_body
        )

    def send_backup_codes_low(self, to_email: str, remaining: int) -> bool:
        html_body, text_body = self._render(
            "You are running low on backup codes",
            [
                f"You have {remaining} MFA backup codes left.",
                "Regenerate your backup codes from your security settings before you run out.",
            ],
        )
        return self._send_email(to_email, "Backup codes running low", html_body, text_body)

    def send_backup_codes_regenerated(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Backup codes regenerated",
            [
                "A new set of MFA backup codes was generated. Your previous codes no longer work.",
                "If you didn't make this change, contact your administrator immediately.",
            ],
        )
        return self._send_email(to_email, "Backup codes regenerated", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your account was just changed. Other sessions have been signed out.",
                "If you didn't make this change, reset your password immediately.",
            ],
        )
        return self._send_email(to_email, "Password changed", html_body, text_body)
