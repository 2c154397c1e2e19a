from __future__ import annotations

import html
from typing import Optional

import httpx

from taskkeeper.logging import get_logger
from taskkeeper.service.http_client import (
    EMAIL_RETRY_POLICY,
    OutboundHttpError,
    ResilientHttpClient,
    RetryPolicy,
)

logger = get_logger(__name__)

DEFAULT_RECIPIENT_NAME = "User"


class EmailService:
    """Transactional email through the Brevo HTTP API.

    Supports:
    - Verification code emails
    - Password reset emails
    - Fallback to logging when not configured (dev mode)

    Sending never raises for delivery problems; callers get False and the
    failure is logged.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_url: str = "https://api.brevo.com/v3/smtp/email",
        from_email: Optional[str] = None,
        from_name: str = "Taskkeeper",
        base_url: Optional[str] = None,
        verification_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 60,
        client: Optional[ResilientHttpClient] = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.from_email = from_email
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8080").rstrip("/")
        self.verification_ttl_minutes = verification_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes
        self.client = client or _brevo_client(api_key)

    @classmethod
    def from_settings(
        cls, settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "EmailService":
        client = _brevo_client(
            settings.brevo_api_key,
            timeout=settings.http_timeout_seconds,
            retry_policy=RetryPolicy.from_millis(
                settings.email_retry_delays_ms, settings.http_max_attempts
            ),
            transport=transport,
        )
        return cls(
            api_key=settings.brevo_api_key,
            api_url=settings.email_api_url,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            verification_ttl_minutes=settings.verification_code_ttl_minutes,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
            client=client,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    async def close(self) -> None:
        await self.client.aclose()

    async def send(
        self,
        to_email: str,
        subject: str,
        *,
        to_name: Optional[str] = None,
        html_body: Optional[str] = None,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one email. Returns True if the provider accepted it."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to_email=to_email,
                subject=subject,
                body_preview=(text_body or html_body or "")[:200],
            )
            return True

        payload = {
            "sender": {"name": self.from_name, "email": self.from_email},
            "to": [{"email": to_email, "name": to_name or DEFAULT_RECIPIENT_NAME}],
            "subject": subject,
        }
        if html_body is not None:
            payload["htmlContent"] = html_body
        else:
            payload["textContent"] = text_body or ""

        try:
            await self.client.post(self.api_url, json=payload)
        except OutboundHttpError as exc:
            logger.error(
                "email_send_failed",
                to_email=to_email,
                subject=subject,
                status_code=exc.status_code,
                error_type=type(exc).__name__,
                error=exc.message,
            )
            return False
        logger.info("email_sent", to_email=to_email, subject=subject)
        return True

    async def send_verification_code(self, to_email: str, name: str, code: str) -> bool:
        subject = f"Your verification code - {self.from_name}"
        safe_name = html.escape(name or DEFAULT_RECIPIENT_NAME)
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 500px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-family: monospace; font-size: 32px; font-weight: 700; letter-spacing: 8px; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Hello {safe_name}!</h1>
        <p>Welcome to {html.escape(self.from_name)}. Use the code below to verify your email address:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {self.verification_ttl_minutes} minutes.</p>
        <p>If you didn't create an account, you can safely ignore this email.</p>
        <div class="footer"><p>{html.escape(self.from_name)}</p></div>
    </div>
</body>
</html>
"""
        return await self.send(to_email, subject, to_name=name, html_body=html_body)

    async def send_password_reset(self, to_email: str, token: str, name: Optional[str] = None) -> bool:
        reset_url = f"{self.base_url}/reset-password.html?token={token}"
        subject = f"Reset your password - {self.from_name}"
        text_body = f"""Hello,

You requested a password reset for your {self.from_name} account.

Click the link below to reset your password:
{reset_url}

This link will expire in {_describe_minutes(self.reset_ttl_minutes)}.

If you didn't request this, please ignore this email.
"""
        return await self.send(to_email, subject, to_name=name, text_body=text_body)


def _brevo_client(api_key: Optional[str], **kwargs) -> ResilientHttpClient:
    kwargs.setdefault("retry_policy", EMAIL_RETRY_POLICY)
    return ResilientHttpClient(
        name="brevo",
        headers={
            "api-key": api_key or "",
            "accept": "application/json",
            "content-type": "application/json",
        },
        **kwargs,
    )


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"
