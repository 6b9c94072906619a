import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from app.services.booking_service import BookingEngineError, BookingRequest, create_booking
from app.services.whatsapp_service import TransportError, send_text_message

REQUEST = BookingRequest(
    tenant_id="t-1",
    customer_phone="15551234567",
    service="Haircut",
    date="2026-10-20",
    time="14:00",
    idempotency_key="conv-1",
    duration_minutes=45,
)


def _client(status_code, payload=None, text=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if payload is not None:
            return httpx.Response(status_code, json=payload)
        return httpx.Response(status_code, text=text or "")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def whatsapp_settings():
    with patch("app.services.whatsapp_service.settings.whatsapp_access_token", "wa-token"), patch(
        "app.services.whatsapp_service.settings.whatsapp_api_url", "https://graph.test/v19.0"
    ):
        yield


@pytest.fixture
def engine_settings():
    with patch("app.services.booking_service.settings.booking_engine_url", "https://engine.test"), patch(
        "app.services.booking_service.settings.booking_engine_token", "engine-token"
    ):
        yield


class TestSendTextMessage:
    def test_returns_provider_id(self, whatsapp_settings):
        seen = []
        client = _client(200, {"messages": [{"id": "wamid.out"}]}, seen=seen)

        message_id = asyncio.run(send_text_message("1000200030004000", "15551234567", "Hi!", client=client))

        assert message_id == "wamid.out"
        request = seen[0]
        assert str(request.url) == "https://graph.test/v19.0/1000200030004000/messages"
        assert request.headers["Authorization"] == "Bearer wa-token"
        body = json.loads(request.content)
        assert body["to"] == "15551234567"
        assert body["text"]["body"] == "Hi!"

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_transient_errors_are_retryable(self, whatsapp_settings, status_code):
        with pytest.raises(TransportError) as exc_info:
            asyncio.run(send_text_message("1", "2", "Hi", client=_client(status_code, text="busy")))
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == status_code

    def test_client_error_is_not_retryable(self, whatsapp_settings):
        with pytest.raises(TransportError) as exc_info:
            asyncio.run(send_text_message("1", "2", "Hi", client=_client(400, {"error": {"message": "bad number"}})))
        assert exc_info.value.retryable is False

    @patch("app.services.whatsapp_service.alert_critical")
    def test_missing_token(self, mock_alert):
        with patch("app.services.whatsapp_service.settings.whatsapp_access_token", None):
            with pytest.raises(TransportError) as exc_info:
                asyncio.run(send_text_message("1", "2", "Hi"))
        assert exc_info.value.retryable is False
        mock_alert.assert_called_once()

    def test_empty_body(self, whatsapp_settings):
        with pytest.raises(TransportError) as exc_info:
            asyncio.run(send_text_message("1", "2", "", client=_client(200, {"messages": [{"id": "x"}]})))
        assert exc_info.value.retryable is False


class TestCreateBooking:
    def test_sends_idempotency_key(self, engine_settings):
        seen = []
        client = _client(201, {"booking_id": "bk_1", "status": "confirmed"}, seen=seen)

        confirmation = asyncio.run(create_booking(REQUEST, client=client))

        assert confirmation.booking_id == "bk_1"
        request = seen[0]
        assert str(request.url) == "https://engine.test/bookings"
        assert request.headers["Idempotency-Key"] == "conv-1"
        assert request.headers["Authorization"] == "Bearer engine-token"
        assert json.loads(request.content)["service"] == "Haircut"

    def test_accepts_plain_id(self, engine_settings):
        confirmation = asyncio.run(create_booking(REQUEST, client=_client(200, {"id": 42})))
        assert confirmation.booking_id == "42"

    @pytest.mark.parametrize("status_code", [408, 429, 502])
    def test_transient_errors_are_retryable(self, engine_settings, status_code):
        with pytest.raises(BookingEngineError) as exc_info:
            asyncio.run(create_booking(REQUEST, client=_client(status_code)))
        assert exc_info.value.retryable is True

    def test_validation_error(self, engine_settings):
        with pytest.raises(BookingEngineError) as exc_info:
            asyncio.run(create_booking(REQUEST, client=_client(409, text="slot is taken")))
        assert exc_info.value.retryable is False
        assert str(exc_info.value) == "slot is taken"

    def test_not_configured(self):
        with patch("app.services.booking_service.settings.booking_engine_url", None):
            with pytest.raises(BookingEngineError) as exc_info:
                asyncio.run(create_booking(REQUEST))
        assert exc_info.value.retryable is False
