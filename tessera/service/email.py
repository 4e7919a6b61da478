from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Tuple

from tessera.config import Settings
from tessera.logging import get_logger, redact_email

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    error: Optional[str] = None


class EmailService:
    """Notification collaborator for transactional email.

    ``send`` renders a named template and delivers it over SMTP with TLS or
    SSL. When SMTP is not configured the message is logged (without its body)
    and reported as delivered, which keeps development setups usable.
    ``send`` never raises: every failure comes back as a
    :class:`DeliveryResult` with ``delivered=False``.
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
        from_name: str = "Tessera",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self._templates: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str, str]]] = {
            "password_reset": self._render_password_reset,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={token}"

    def send(self, destination: str, template_id: str, data: Dict[str, Any]) -> DeliveryResult:
        render = self._templates.get(template_id)
        if render is None:
            logger.error("email_unknown_template", template_id=template_id)
            return DeliveryResult(False, "unknown_template")
        try:
            subject, html_body, text_body = render(data)
        except KeyError as exc:
            logger.error("email_template_data_missing", template_id=template_id, field=str(exc))
            return DeliveryResult(False, "template_data_missing")
        return self._send_email(destination, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> DeliveryResult:
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return DeliveryResult(True)

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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return DeliveryResult(True)

        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, smtp_code=e.smtp_code)
            return DeliveryResult(False, "smtp_auth_failed")
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_email(to_email))
            return DeliveryResult(False, "recipient_refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, "smtp_error")
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, "transport_error")

    def _render_password_reset(self, data: Dict[str, Any]) -> Tuple[str, str, str]:
        otp = data["otp"]
        reset_url = data.get("reset_url") or self.reset_url(data["token"])
        minutes = data.get("expires_in_minutes", 15)
        subject = f"Your {self.from_name} password reset code"

        html_body = f"""
<!DOCTYPE html>
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
        <h1>Reset your password</h1>
        <p>Enter this code to confirm the reset:</p>
        <p class="code">{otp}</p>
        <p>Or continue from this link: <a href="{reset_url}">{reset_url}</a></p>
        <p>The code expires in {minutes} minutes.</p>
        <p>If you didn't request this, you can ignore this email.</p>
        <div class="footer"><p>{self.from_name}</p></div>
    </div>
</body>
</html>
"""

        text_body = f"""Reset your {self.from_name} password

Your code: {otp}

Continue here: {reset_url}

The code expires in {minutes} minutes.

If you didn't request this, you can ignore this email.
"""
        return subject, html_body, text_body
