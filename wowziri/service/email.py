from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from wowziri.config import Settings
from wowziri.logging import get_logger, redact_email
from wowziri.service.errors import ConfigurationError

logger = get_logger(__name__)


@dataclass
class EmailMessage:
    to: str
    subject: str
    text_body: str
    html_body: str


class EmailTransport(Protocol):
    def send(self, message: EmailMessage) -> bool:
        ...


class SmtpTransport:
    """Deliver messages over SMTP, either implicit SSL or STARTTLS."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 465,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_ssl: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Wowziri",
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_ssl = use_ssl
        self.from_email = from_email or user
        self.from_name = from_name
        self.timeout = timeout

    def _build_mime(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = message.to
        msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))
        return msg

    def send(self, message: EmailMessage) -> bool:
        """Send ``message``; returns True on success, False otherwise."""
        to = redact_email(message.to)
        try:
            msg = self._build_mime(message)
            context = ssl.create_default_context()
            logger.debug(
                "email_connecting", host=self.host, port=self.port, use_ssl=self.use_ssl, to=to
            )
            if self.use_ssl:
                with smtplib.SMTP_SSL(
                    self.host, self.port, context=context, timeout=self.timeout
                ) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, message.to, msg.as_string())
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, message.to, msg.as_string())
            logger.info("email_sent", to=to, subject=message.subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=to,
                host=self.host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error("email_connect_failed", to=to, host=self.host, port=self.port, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=to, error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=to,
                host=self.host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error("email_ssl_error", to=to, host=self.host, port=self.port, error=str(e))
            return False
        except OSError as e:
            logger.error(
                "email_send_failed", to=to, error_type=type(e).__name__, error=str(e)
            )
            return False


class LoggingTransport:
    """Development sink: logs the message instead of delivering it."""

    def send(self, message: EmailMessage) -> bool:
        logger.info(
            "email_dev_mode",
            to=redact_email(message.to),
            subject=message.subject,
            body_preview=message.text_body[:200],
        )
        return True


def build_transport(settings: Settings) -> EmailTransport:
    if settings.smtp_host and settings.smtp_user and settings.smtp_password:
        return SmtpTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_ssl=settings.smtp_use_ssl,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    if settings.is_production:
        raise ConfigurationError("SMTP credentials are missing")
    logger.warning("email_transport_logging_only")
    return LoggingTransport()


_HTML_STYLE = (
    "font-family: 'Inter', system-ui, -apple-system, sans-serif; "
    "color: #0f172a; line-height: 1.6; max-width: 600px;"
)


class EmailService:
    """Builds verification emails and hands them to a transport."""

    def __init__(
        self,
        transport: EmailTransport,
        *,
        app_name: str = "Wowziri",
        from_name: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.app_name = app_name
        self.from_name = from_name or app_name

    def send_verification_code(self, to: str, code: str, ttl_minutes: int = 5) -> bool:
        app = self.app_name
        text_body = f"Your {app} verification code is {code}. It expires in {ttl_minutes} minutes."
        html_body = f"""
<div style="{_HTML_STYLE}">
    <p>Your {app} verification code is <strong>{code}</strong>.</p>
    <p>It expires in {ttl_minutes} minutes.</p>
</div>
"""
        return self.transport.send(
            EmailMessage(
                to=to,
                subject=f"{app} verification code",
                text_body=text_body,
                html_body=html_body,
            )
        )

    def send_verification_link(
        self, to: str, full_name: Optional[str], link: str, expires_minutes: int = 60
    ) -> bool:
        app = self.app_name
        name = full_name or "there"
        text_body = "\n".join(
            [
                f"Hi {name},",
                "",
                f"Thanks for creating a {app} account.",
                "Please confirm your email by clicking the link below:",
                link,
                "",
                f"For your security, this link expires in {expires_minutes} minutes.",
                "",
                "If you didn't request this, you can ignore this email.",
                "",
                f"The {app} Team",
            ]
        )
        html_body = f"""
<div style="{_HTML_STYLE}">
    <p>Hi {name},</p>
    <p>Thanks for creating a {app} account.</p>
    <p>Please confirm your email by clicking the button below.</p>
    <p style="text-align: center; margin: 24px 0;">
        <a href="{link}" style="background: #10a37f; color: white; padding: 12px 18px; border-radius: 10px; text-decoration: none; font-weight: 600;">Verify my email</a>
    </p>
    <p style="font-size: 14px; color: #475569;">If the button doesn't work, copy and paste this link into your browser:</p>
    <p style="font-size: 14px; word-break: break-all;">{link}</p>
    <p style="font-size: 14px; color: #475569;">This link expires in {expires_minutes} minutes.</p>
    <p style="font-size: 14px; margin-top: 24px;">The {app} Team</p>
</div>
"""
        return self.transport.send(
            EmailMessage(
                to=to,
                subject=f"Verify your {app} email",
                text_body=text_body,
                html_body=html_body,
            )
        )
