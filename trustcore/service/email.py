from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Deque, List, Optional, Protocol

import httpx

from trustcore.logging import get_logger
from trustcore.service.circuit_breaker import CircuitBreaker
from trustcore.service.errors import CircuitOpenError, EmailDeliveryError, ServiceError

logger = get_logger(__name__)


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


@dataclass
class EmailMessage:
    to: str
    subject: str
    html_body: str
    text_body: str
    tags: List[str] = field(default_factory=list)


class EmailTransport(Protocol):
    def send(self, message: EmailMessage) -> str:
        """Deliver ``message`` and return the provider's message id."""


class SmtpTransport:
    """Blocking SMTP delivery with TLS (STARTTLS) or implicit SSL."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_address: str,
        from_name: str,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout

    def _build(self, message: EmailMessage, message_id: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = message.to
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))
        return msg

    def send(self, message: EmailMessage) -> str:
        message_id = make_msgid(domain=self.from_address.split("@")[-1])
        payload = self._build(message, message_id).as_string()
        context = ssl.create_default_context()
        to = _redact_email(message.to)

        logger.debug(
            "email_connecting",
            host=self.host,
            port=self.port,
            use_tls=self.use_tls,
            to=to,
        )
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_address, message.to, payload)
            else:
                with smtplib.SMTP_SSL(
                    self.host, self.port, context=context, timeout=self.timeout
                ) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_address, message.to, payload)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=to,
                host=self.host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            raise EmailDeliveryError("Email delivery failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=to,
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            raise EmailDeliveryError("Email delivery failed") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=to,
                host=self.host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("Email delivery failed") from e
        except ssl.SSLError as e:
            logger.error("email_ssl_error", to=to, host=self.host, port=self.port, error=str(e))
            raise EmailDeliveryError("Email delivery failed") from e
        except OSError as e:
            # Connection refused, DNS failure, socket timeout
            logger.error(
                "email_connect_failed",
                to=to,
                host=self.host,
                port=self.port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("Email delivery failed") from e
        logger.info("email_sent", transport="smtp", to=to, subject=message.subject)
        return message_id


class ResendTransport:
    """Delivery through the Resend HTTP API."""

    def __init__(
        self,
        *,
        api_key: str,
        from_address: str,
        from_name: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.api_url = api_url
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, message: EmailMessage) -> str:
        to = _redact_email(message.to)
        body = {
            "from": f"{self.from_name} <{self.from_address}>",
            "to": [message.to],
            "subject": message.subject,
            "html": message.html_body,
            "text": message.text_body,
            "tags": [{"name": "category", "value": tag} for tag in message.tags],
        }
        try:
            resp = self._client.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            resp.raise_for_status()
            provider_id = resp.json().get("id")
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_provider_rejected",
                to=to,
                status_code=e.response.status_code,
            )
            raise EmailDeliveryError("Email delivery failed") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "email_provider_unreachable",
                to=to,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("Email delivery failed") from e
        if not provider_id:
            raise EmailDeliveryError("Email provider returned no message id")
        logger.info("email_sent", transport="resend", to=to, subject=message.subject)
        return str(provider_id)

    def close(self) -> None:
        self._client.close()


class LogTransport:
    """Development transport: logs instead of sending and keeps a short outbox."""

    def __init__(self, maxlen: int = 200) -> None:
        self.outbox: Deque[EmailMessage] = deque(maxlen=maxlen)

    def send(self, message: EmailMessage) -> str:
        self.outbox.append(message)
        logger.info(
            "email_dev_mode",
            to=_redact_email(message.to),
            subject=message.subject,
            body_preview=message.text_body[:200],
        )
        return f"log-{uuid.uuid4()}"


class EmailService:
    """Transactional email behind the email circuit breaker.

    ``send`` surfaces delivery problems as ``ServiceError``s. The ``send_*``
    helpers are best-effort: they log failures and return False so that a mail
    outage never blocks the security operation that triggered the message.
    """

    def __init__(
        self,
        transport: EmailTransport,
        breaker: CircuitBreaker,
        *,
        app_name: str = "TrustCore",
        base_url: str = "http://localhost:8000",
    ) -> None:
        self.transport = transport
        self.breaker = breaker
        self.app_name = app_name
        self.base_url = base_url.rstrip("/")

    async def send(self, message: EmailMessage) -> str:
        if not self.breaker.can_execute():
            logger.warning(
                "email_circuit_open",
                to=_redact_email(message.to),
                subject=message.subject,
            )
            raise CircuitOpenError("Email service temporarily unavailable")
        try:
            provider_id = await asyncio.to_thread(self.transport.send, message)
        except EmailDeliveryError:
            self.breaker.record_failure()
            raise
        except Exception as exc:
            self.breaker.record_failure()
            logger.error(
                "email_send_failed",
                to=_redact_email(message.to),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise EmailDeliveryError("Email delivery failed") from exc
        except BaseException:
            # Cancelled mid-delivery: the worker thread may still finish, so no
            # outcome is recorded, but the half-open slot must come back
            self.breaker.release()
            raise
        self.breaker.record_success()
        return provider_id

    async def _deliver(self, message: EmailMessage) -> bool:
        try:
            await self.send(message)
            return True
        except ServiceError as exc:
            logger.warning(
                "email_notification_failed",
                to=_redact_email(message.to),
                subject=message.subject,
                error_code=exc.error_code,
            )
            return False

    def _render(
        self,
        to: str,
        subject: str,
        paragraphs: List[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
        tag: str,
    ) -> EmailMessage:
        body_html = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        if action_url and action_label:
            safe_url = html.escape(action_url, quote=True)
            body_html += (
                f'<p style="margin: 30px 0;"><a href="{safe_url}" '
                f'style="background: #2563eb; color: white; padding: 12px 24px; '
                f'border-radius: 8px; text-decoration: none;">{html.escape(action_label)}</a></p>'
                f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            )
        html_body = (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
            "<body style=\"font-family: sans-serif; line-height: 1.6; color: #1f2933;\">"
            f"<div style=\"max-width: 600px; margin: 0 auto; padding: 40px 20px;\">"
            f"<h1>{html.escape(subject)}</h1>{body_html}"
            f"<p style=\"margin-top: 40px; font-size: 12px; color: #5b6470;\">{html.escape(self.app_name)}</p>"
            "</div></body></html>"
        )
        text_lines = [subject, ""] + paragraphs
        if action_url:
            text_lines += ["", action_url]
        text_lines += ["", "---", self.app_name]
        return EmailMessage(
            to=to,
            subject=subject,
            html_body=html_body,
            text_body="\n".join(text_lines),
            tags=[tag],
        )

    async def send_email_verification(self, to: str, token: str) -> bool:
        url = f"{self.base_url}/verify-email?token={token}"
        return await self._deliver(
            self._render(
                to,
                f"Verify your {self.app_name} email",
                [
                    "Thanks for signing up! Please verify your email address.",
                    "This link will expire in 24 hours.",
                ],
                action_url=url,
                action_label="Verify Email",
                tag="email_verification",
            )
        )

    async def send_password_reset(self, to: str, token: str) -> bool:
        url = f"{self.base_url}/reset-password?token={token}"
        return await self._deliver(
            self._render(
                to,
                f"Reset your {self.app_name} password",
                [
                    "We received a request to reset your password.",
                    "This link will expire in 1 hour.",
                    "If you didn't request this, you can safely ignore this email.",
                ],
                action_url=url,
                action_label="Reset Password",
                tag="password_reset",
            )
        )

    async def send_unlock_email(self, to: str, token: str) -> bool:
        url = f"{self.base_url}/unlock-account?token={token}"
        return await self._deliver(
            self._render(
                to,
                "Unlock your account",
                [
                    "Your account was locked after too many failed sign-in attempts.",
                    "Use the link below to unlock it. The link expires in 1 hour.",
                ],
                action_url=url,
                action_label="Unlock Account",
                tag="account_unlock",
            )
        )

    async def send_account_locked(self, to: str, locked_until: datetime) -> bool:
        return await self._deliver(
            self._render(
                to,
                "Your account has been locked",
                [
                    "We locked your account after several failed sign-in attempts.",
                    f"It will unlock automatically at {locked_until.strftime('%Y-%m-%d %H:%M UTC')}.",
                    "If this wasn't you, reset your password once you regain access.",
                ],
                tag="account_locked",
            )
        )

    async def send_password_changed(self, to: str) -> bool:
        return await self._deliver(
            self._render(
                to,
                "Your password was changed",
                [
                    "The password for your account was just changed.",
                    "If you didn't make this change, please contact support immediately.",
                ],
                tag="password_changed",
            )
        )

    async def send_two_factor_enabled(self, to: str) -> bool:
        return await self._deliver(
            self._render(
                to,
                "Two-factor authentication enabled",
                [
                    f"Two-factor authentication has been enabled on your {self.app_name} account.",
                    "You will now need a code from your authenticator app when signing in.",
                    "If you didn't make this change, please contact support immediately.",
                ],
                tag="two_factor_enabled",
            )
        )

    async def send_two_factor_disabled(self, to: str) -> bool:
        return await self._deliver(
            self._render(
                to,
                "Two-factor authentication disabled",
                [
                    f"Two-factor authentication was turned off for your {self.app_name} account.",
                    "If you didn't make this change, please contact support immediately.",
                ],
                tag="two_factor_disabled",
            )
        )

    async def send_new_device_login(
        self, to: str, ip_address: str, user_agent: Optional[str]
    ) -> bool:
        return await self._deliver(
            self._render(
                to,
                "New sign-in to your account",
                [
                    "We noticed a sign-in from a new device.",
                    f"IP address: {ip_address}",
                    f"Device: {user_agent or 'unknown'}",
                    "If this wasn't you, change your password right away.",
                ],
                tag="new_device",
            )
        )


__all__ = [
    "EmailMessage",
    "EmailService",
    "EmailTransport",
    "LogTransport",
    "ResendTransport",
    "SmtpTransport",
]
