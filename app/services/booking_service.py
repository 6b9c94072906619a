"""Client for the booking engine that turns a finished dialog into a reservation."""

from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("booking_service")


class BookingEngineError(Exception):
    def __init__(self, message: str, *, retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


@dataclass(frozen=True)
class BookingRequest:
    tenant_id: str
    customer_phone: str
    service: str
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    idempotency_key: str
    duration_minutes: Optional[int] = None


@dataclass(frozen=True)
class BookingConfirmation:
    booking_id: str
    status: str = "confirmed"


async def create_booking(request: BookingRequest, *, client: Optional[httpx.AsyncClient] = None) -> BookingConfirmation:
    """Create a booking. The idempotency key makes a repeated call return the same booking.

    A 4xx other than 408/429 is a validation error (retryable=False): the
    customer has to pick something else.
    """
    if not settings.booking_engine_url:
        raise BookingEngineError("booking engine url not configured", retryable=False)

    headers = {"Idempotency-Key": request.idempotency_key}
    if settings.booking_engine_token:
        headers["Authorization"] = f"Bearer {settings.booking_engine_token}"

    payload = {
        "tenant_id": request.tenant_id,
        "customer_phone": request.customer_phone,
        "service": request.service,
        "date": request.date,
        "time": request.time,
        "duration_minutes": request.duration_minutes,
        "source": "whatsapp",
    }

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=settings.booking_engine_timeout_seconds)
    try:
        response = await client.post(f"{settings.booking_engine_url.rstrip('/')}/bookings", json=payload, headers=headers)
    except httpx.HTTPError as exc:
        logger.error(f"Booking engine request failed: {exc}", extra={"context": {"key": request.idempotency_key}})
        raise BookingEngineError(f"booking engine unreachable: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code in (408, 429) or response.status_code >= 500:
        raise BookingEngineError(f"booking engine {response.status_code}", status_code=response.status_code)
    if response.status_code >= 400:
        detail = response.text[:200]
        logger.info(
            "Booking rejected",
            extra={"context": {"key": request.idempotency_key, "status": response.status_code, "detail": detail}},
        )
        raise BookingEngineError(detail or "booking rejected", retryable=False, status_code=response.status_code)

    data = response.json()
    booking_id = data.get("booking_id") or data.get("id")
    if not booking_id:
        raise BookingEngineError("booking engine returned no booking id")
    logger.info("Booking created", extra={"context": {"booking_id": booking_id, "key": request.idempotency_key}})
    return BookingConfirmation(booking_id=str(booking_id), status=data.get("status", "confirmed"))
