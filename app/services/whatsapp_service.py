"""Outbound WhatsApp Cloud API client."""

import asyncio
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.alert_service import alert_critical

logger = get_logger("whatsapp_service")


class TransportError(Exception):
    """Send failed. `retryable` is False when resending the same request cannot succeed."""

    def __init__(self, message: str, *, retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


def _messages_url(phone_number_id: str) -> str:
    return f"{settings.whatsapp_api_url.rstrip('/')}/{phone_number_id}/messages"


async def send_text_message(
    phone_number_id: Optional[str],
    to: str,
    body: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Send a text message and return the provider message id."""
    if not settings.whatsapp_access_token:
        logger.error("WhatsApp access token is missing (WHATSAPP_ACCESS_TOKEN not set)")
        await asyncio.to_thread(alert_critical, "WhatsApp send failed", {"to": to, "error": "missing_access_token"})
        raise TransportError("whatsapp access token not configured", retryable=False)
    if not phone_number_id:
        raise TransportError("tenant has no phone_number_id", retryable=False)
    if not body:
        raise TransportError("empty message body", retryable=False)

    payload = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "text",
        "text": {"preview_url": False, "body": body},
    }
    headers = {"Authorization": f"Bearer {settings.whatsapp_access_token}"}

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=settings.whatsapp_timeout_seconds)
    try:
        response = await client.post(_messages_url(phone_number_id), json=payload, headers=headers)
    except httpx.HTTPError as exc:
        logger.error(f"Error sending WhatsApp message: {exc}", extra={"context": {"to": to}})
        raise TransportError(f"whatsapp request failed: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()

    logger.info(
        f"WhatsApp response: status={response.status_code}",
        extra={"context": {"to": to, "body": response.text[:200]}},
    )
    if response.status_code == 429 or response.status_code >= 500:
        raise TransportError(f"whatsapp api {response.status_code}", status_code=response.status_code)
    if response.status_code >= 400:
        raise TransportError(
            f"whatsapp api rejected message: {response.status_code} {response.text[:200]}",
            retryable=False,
            status_code=response.status_code,
        )

    data = response.json()
    messages = data.get("messages") or []
    if not messages or not messages[0].get("id"):
        raise TransportError("whatsapp api returned no message id")
    return messages[0]["id"]
