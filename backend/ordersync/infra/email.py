import logging
import random
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

import anyio
import httpx

from ordersync.infra.metrics import metrics
from ordersync.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class NoopEmailAdapter:
    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:  # noqa: D401
        logger.info("email_send_skipped", extra={"extra": {"subject": subject, "mode": "noop"}})
        metrics.record_email_adapter("skipped")
        return False

    async def close(self) -> None:
        return None


class EmailAdapter:
    def __init__(self, app_settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = app_settings
        self.http_client = http_client
        self._breaker = CircuitBreaker(
            name="email",
            failure_threshold=app_settings.email_circuit_failure_threshold,
            recovery_time=app_settings.email_circuit_recovery_seconds,
        )

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None

    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:
        if self._settings.email_mode == "off" or not recipient:
            metrics.record_email_adapter("skipped")
            return False
        try:
            await self._breaker.call(
                self._send_email, to_email=recipient, subject=subject, body=body, headers=headers
            )
        except CircuitBreakerOpenError:
            logger.warning("email_circuit_open")
            metrics.record_email_adapter("circuit_open")
            return False
        except Exception:
            metrics.record_email_adapter("error")
            raise
        metrics.record_email_adapter("sent")
        return True

    async def _send_email(
        self, to_email: str, subject: str, body: str, headers: dict[str, str] | None = None
    ) -> None:
        if self._settings.email_mode == "sendgrid":
            await self._send_via_sendgrid(to_email=to_email, subject=subject, body=body, headers=headers)
            return
        if self._settings.email_mode == "smtp":
            await self._send_via_smtp(to_email=to_email, subject=subject, body=body, headers=headers)
            return
        raise RuntimeError("unsupported_email_mode")

    async def _send_via_sendgrid(
        self,
        to_email: str,
        subject: str,
        body: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> None:
        api_key = self._settings.sendgrid_api_key
        from_email = self._settings.email_sender
        if not api_key or not from_email:
            raise RuntimeError("sendgrid_not_configured")
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        if self._settings.email_from_name:
            payload["from"]["name"] = self._settings.email_from_name
        if headers:
            payload["headers"] = headers
        if self.http_client is None:
            self.http_client = httpx.AsyncClient()
        response = await self._post_with_retry(headers={"Authorization": f"Bearer {api_key}"}, json=payload)
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")

    async def _post_with_retry(self, *, headers: dict[str, str], json: dict[str, Any]) -> httpx.Response:
        max_attempts = max(1, self._settings.email_http_max_attempts)
        base_backoff = self._settings.email_http_backoff_seconds
        max_backoff = self._settings.email_http_backoff_max_seconds

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self.http_client.post(
                    SENDGRID_URL, headers=headers, json=json, timeout=self._settings.email_timeout_seconds
                )
            except (httpx.TimeoutException, httpx.ConnectError):
                if attempt >= max_attempts:
                    raise
            else:
                retryable = response.status_code == 429 or response.status_code >= 500
                if not retryable or attempt >= max_attempts:
                    return response
            delay = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
            await anyio.sleep(delay + delay * random.uniform(0.0, 0.3))
        raise RuntimeError("email_http_retry_exhausted")  # pragma: no cover

    async def _send_via_smtp(
        self, to_email: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> None:
        app_settings = self._settings
        host = app_settings.smtp_host
        port = app_settings.smtp_port or 587
        from_email = app_settings.email_sender
        if not host or not from_email:
            raise RuntimeError("smtp_not_configured")

        message = EmailMessage()
        message["From"] = (
            formataddr((app_settings.email_from_name, from_email)) if app_settings.email_from_name else from_email
        )
        message["To"] = to_email
        message["Subject"] = subject
        for header_name, header_value in (headers or {}).items():
            message[header_name] = header_value
        message.set_content(body)

        def _send_blocking() -> None:
            smtp_cls = smtplib.SMTP if app_settings.smtp_use_tls else smtplib.SMTP_SSL
            with smtp_cls(host, port, timeout=app_settings.smtp_timeout_seconds) as smtp:
                if app_settings.smtp_use_tls:
                    smtp.starttls()
                if app_settings.smtp_username and app_settings.smtp_password:
                    smtp.login(app_settings.smtp_username, app_settings.smtp_password)
                smtp.send_message(message)

        await anyio.to_thread.run_sync(_send_blocking)


def resolve_email_adapter(app_settings) -> EmailAdapter | NoopEmailAdapter:
    if app_settings.email_mode == "off" or getattr(app_settings, "testing", False):
        return NoopEmailAdapter()
    return EmailAdapter(app_settings)
