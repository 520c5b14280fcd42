"""Resend REST API client (Bearer key)."""

from __future__ import annotations

import logging

import httpx

from mailqueue.config import settings
from mailqueue.schemas.mail import DeliveryResult

logger = logging.getLogger(__name__)


class ResendClient:
    """Send transactional email via ``POST /emails``."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if not settings.resend_api_key or not settings.mail_from:
            raise RuntimeError("Resend not configured: set MAILQ_RESEND_API_KEY and MAILQ_MAIL_FROM")
        self._base_url = settings.resend_base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {settings.resend_api_key}",
            "Content-Type": "application/json",
        }
        self._from = settings.mail_from
        self._client = httpx.AsyncClient(
            timeout=settings.delivery_timeout_seconds,
            transport=transport,
        )

    async def send(
        self,
        recipients: list[str],
        subject: str,
        html: str,
        text: str,
        tags: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> DeliveryResult:
        """Hand one message to Resend.

        Provider rejections come back as ``success=False`` with Resend's
        error message. Transport errors and timeouts are raised.
        """
        payload: dict = {
            "from": self._from,
            "to": recipients,
            "subject": subject,
            "html": html,
            "text": text,
        }
        if tags:
            payload["tags"] = [{"name": name, "value": value} for name, value in tags.items()]

        headers = dict(self._headers)
        if idempotency_key and settings.idempotency_keys:
            headers["Idempotency-Key"] = idempotency_key

        resp = await self._client.post(f"{self._base_url}/emails", json=payload, headers=headers)
        if resp.is_error:
            error = _error_message(resp)
            logger.error("Resend API error %d: %s", resp.status_code, error)
            return DeliveryResult(success=False, error=error)

        message_id = resp.json().get("id")
        logger.info("Resend accepted message %s for %d recipient(s)", message_id, len(recipients))
        return DeliveryResult(success=True, provider_message_id=message_id)

    async def close(self) -> None:
        await self._client.aclose()


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.text[:200]}"
    if isinstance(data, dict) and data.get("message"):
        return f"{data.get('name') or 'error'}: {data['message']}"
    return f"HTTP {resp.status_code}"
