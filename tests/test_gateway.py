import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from app.models import DeduplicationRecord, PipelineAlert, QueueItem, SequenceState
from app.schemas.whatsapp import InboundMessage
from app.services import dedup_service
from app.services.gateway_service import (
    compute_signature,
    ingest_message,
    ingest_raw_payload,
    parse_envelope,
    resolve_tenant,
    verify_handshake,
    verify_signature,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
TS = int(NOW.timestamp())


class TestHandshake:
    @patch("app.services.gateway_service.settings.whatsapp_verify_token", "verify-me")
    def test_echoes_challenge(self):
        assert verify_handshake("subscribe", "verify-me", "12345") == "12345"

    @patch("app.services.gateway_service.settings.whatsapp_verify_token", "verify-me")
    def test_wrong_token(self):
        assert verify_handshake("subscribe", "guess", "12345") is None

    @patch("app.services.gateway_service.settings.whatsapp_verify_token", "verify-me")
    def test_wrong_mode(self):
        assert verify_handshake("unsubscribe", "verify-me", "12345") is None

    @patch("app.services.gateway_service.settings.whatsapp_verify_token", None)
    def test_not_configured(self):
        assert verify_handshake("subscribe", "anything", "12345") is None


class TestSignature:
    BODY = b'{"object":"whatsapp_business_account","entry":[]}'

    @patch("app.services.gateway_service.settings.whatsapp_app_secret", "app-secret")
    def test_valid_with_prefix(self):
        header = "sha256=" + compute_signature(self.BODY, "app-secret")
        assert verify_signature(self.BODY, header) is True

    @patch("app.services.gateway_service.settings.whatsapp_app_secret", "app-secret")
    def test_valid_without_prefix(self):
        assert verify_signature(self.BODY, compute_signature(self.BODY, "app-secret")) is True

    @patch("app.services.gateway_service.settings.whatsapp_app_secret", "app-secret")
    def test_tampered_body(self):
        header = "sha256=" + compute_signature(self.BODY, "app-secret")
        assert verify_signature(self.BODY + b" ", header) is False

    @patch("app.services.gateway_service.settings.whatsapp_app_secret", "app-secret")
    def test_missing_header(self):
        assert verify_signature(self.BODY, None) is False

    @patch("app.services.gateway_service.settings.whatsapp_app_secret", None)
    def test_missing_secret_rejects_everything(self):
        assert verify_signature(self.BODY, "sha256=" + compute_signature(self.BODY, "")) is False


class TestParseEnvelope:
    def test_not_json(self):
        with pytest.raises(ValueError):
            parse_envelope(b"not json")

    def test_wrong_object(self):
        with pytest.raises(ValueError):
            parse_envelope(json.dumps({"object": "page", "entry": []}).encode())

    def test_unknown_message_type(self, build_envelope):
        body = build_envelope(messages=[{"from": "1", "id": "x", "timestamp": "1", "type": "hologram"}])
        with pytest.raises(ValueError):
            parse_envelope(json.dumps(body).encode())

    def test_text_message(self, build_envelope, text_event):
        envelope = parse_envelope(json.dumps(build_envelope(messages=[text_event("wamid.1", "Hi", TS)])).encode())

        message = envelope.entry[0].changes[0].value.messages[0]
        assert message.from_ == "15551234567"
        assert message.text.body == "Hi"
        assert message.timestamp == TS


class TestResolveTenant:
    def test_by_slug(self, db, tenant):
        assert resolve_tenant(db, tenant_slug="demo-salon").id == tenant.id

    def test_by_phone_number_id(self, db, tenant):
        assert resolve_tenant(db, phone_number_id="1000200030004000").id == tenant.id

    def test_inactive_tenant(self, db, tenant):
        tenant.is_active = False
        db.commit()
        assert resolve_tenant(db, tenant_slug="demo-salon") is None


class TestIngestMessage:
    def _message(self, tenant, message_id, text="I want to book"):
        return InboundMessage(
            message_id=message_id,
            tenant_id=tenant.id,
            sender="15551234567",
            recipient="15550009999",
            text=text,
            timestamp=NOW,
        )

    def test_queues_and_tracks(self, db, tenant):
        assert ingest_message(db, self._message(tenant, "wamid.1"), now=NOW) == "queued"

        item = db.query(QueueItem).one()
        assert item.item_metadata["sequence_number"] == 1
        assert item.item_metadata["in_order"] is True
        assert db.query(SequenceState).count() == 1
        assert db.query(DeduplicationRecord).count() == 1

    def test_duplicate_content_is_not_queued(self, db, tenant):
        ingest_message(db, self._message(tenant, "wamid.1"), now=NOW)
        assert ingest_message(db, self._message(tenant, "wamid.2"), now=NOW) == "duplicate"
        assert db.query(QueueItem).count() == 1


class TestIngestRawPayload:
    def _raw(self, build_envelope, *events, **kwargs):
        return json.dumps(build_envelope(messages=list(events), **kwargs)).encode()

    def test_queues_text_messages(self, db, tenant, session_factory, build_envelope, text_event):
        raw = self._raw(build_envelope, text_event("wamid.1", "Hi", TS), text_event("wamid.2", "book", TS + 5))

        summary = ingest_raw_payload(raw, None, session_factory=session_factory)

        assert summary == {"queued": 2}
        items = db.query(QueueItem).order_by(QueueItem.sent_at).all()
        assert [i.message_id for i in items] == ["wamid.1", "wamid.2"]
        assert items[0].tenant_id == tenant.id
        assert items[0].to_number == "15550009999"

    def test_redelivered_webhook_is_absorbed(self, db, tenant, session_factory, build_envelope, text_event):
        raw = self._raw(build_envelope, text_event("wamid.1", "Hi", TS))

        ingest_raw_payload(raw, None, session_factory=session_factory)
        summary = ingest_raw_payload(raw, None, session_factory=session_factory)

        assert summary == {"duplicate": 1}
        assert db.query(QueueItem).count() == 1

    def test_same_message_id_new_text_is_already_queued(
        self, db, tenant, session_factory, build_envelope, text_event
    ):
        ingest_raw_payload(self._raw(build_envelope, text_event("wamid.1", "Hi", TS)), None, session_factory=session_factory)

        summary = ingest_raw_payload(
            self._raw(build_envelope, text_event("wamid.1", "Hi there", TS)), None, session_factory=session_factory
        )

        assert summary == {"already_queued": 1}

    def test_media_and_statuses_are_not_queued(self, db, tenant, session_factory, build_envelope):
        body = build_envelope(
            messages=[{"from": "15551234567", "id": "wamid.img", "timestamp": str(TS), "type": "image", "image": {}}],
            statuses=[{"id": "wamid.out", "status": "delivered", "timestamp": str(TS), "recipient_id": "15551234567"}],
        )

        summary = ingest_raw_payload(json.dumps(body).encode(), None, session_factory=session_factory)

        assert summary == {"status_delivered": 1, "skipped_non_text": 1}
        assert db.query(QueueItem).count() == 0

    def test_unknown_tenant(self, db, tenant, session_factory, build_envelope, text_event):
        raw = self._raw(build_envelope, text_event("wamid.1", "Hi", TS), phone_number_id="999")

        assert ingest_raw_payload(raw, None, session_factory=session_factory) == {"unknown_tenant": 1}

    def test_slug_wins_over_phone_number_id(self, db, tenant, session_factory, build_envelope, text_event):
        raw = self._raw(build_envelope, text_event("wamid.1", "Hi", TS), phone_number_id="999")

        assert ingest_raw_payload(raw, "demo-salon", session_factory=session_factory) == {"queued": 1}

    @patch("app.services.alert_service.send_alert")
    def test_failing_message_does_not_drop_the_rest(
        self, mock_send, db, tenant, session_factory, build_envelope, text_event
    ):
        raw = self._raw(build_envelope, text_event("wamid.1", "Hi", TS), text_event("wamid.2", "book", TS + 5))
        real_check = dedup_service.check_duplicate

        def flaky_check(session, **kwargs):
            if kwargs["message_id"] == "wamid.1":
                raise RuntimeError("dedup store unavailable")
            return real_check(session, **kwargs)

        with patch.object(dedup_service, "check_duplicate", side_effect=flaky_check):
            summary = ingest_raw_payload(raw, None, session_factory=session_factory)

        assert summary == {"failed": 1, "queued": 1}
        assert [item.message_id for item in db.query(QueueItem).all()] == ["wamid.2"]
        alert = db.query(PipelineAlert).one()
        assert alert.kind == "ingest_failure"
        assert alert.context["message_id"] == "wamid.1"
        mock_send.assert_called_once()

    @patch("app.services.alert_service.send_alert")
    def test_malformed_body_is_alerted(self, mock_send, db, tenant, session_factory):
        assert ingest_raw_payload(b"{broken", "demo-salon", session_factory=session_factory) is None

        alert = db.query(PipelineAlert).one()
        assert alert.kind == "malformed_payload"
        assert alert.context["tenant_slug"] == "demo-salon"
        assert db.query(QueueItem).count() == 0

    @patch("app.services.gateway_service.alert_error")
    def test_unexpected_error_never_raises(self, mock_alert, tenant, session_factory, build_envelope, text_event):
        raw = self._raw(build_envelope, text_event("wamid.1", "Hi", TS))

        with patch("app.services.gateway_service.ingest_envelope", side_effect=RuntimeError("db down")):
            assert ingest_raw_payload(raw, None, session_factory=session_factory) is None

        mock_alert.assert_called_once()
