"""Inbound side of the WhatsApp transport: authenticity checks and hand-off to the queue."""

from __future__ import annotations

import hashlib
import hmac
import json
from collections import Counter
from datetime import datetime
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import Tenant
from app.schemas.whatsapp import InboundMessage, TextMessage, WebhookEnvelope
from app.services import dedup_service, queue_service, sequence_service
from app.services.alert_service import alert_error, forward_pending_alerts, record_alert
from app.services.time_utils import from_epoch_seconds, utc_now

logger = get_logger("gateway_service")

SIGNATURE_PREFIX = "sha256="
INGEST_ATTEMPTS = 3


def verify_handshake(mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
    """Return the challenge to echo back, or None when the subscription must be refused."""
    expected = settings.whatsapp_verify_token
    if not expected or mode != "subscribe" or not token or challenge is None:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        return None
    return challenge


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: Optional[str]) -> bool:
    """HMAC-SHA256 over the raw body. Missing secret or header is a rejection."""
    secret = settings.whatsapp_app_secret
    if not secret or not signature_header:
        return False
    provided = signature_header.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX) :]
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, provided.lower())


def resolve_tenant(db: Session, *, tenant_slug: Optional[str] = None, phone_number_id: Optional[str] = None) -> Optional[Tenant]:
    query = db.query(Tenant).filter(Tenant.is_active.is_(True))
    if tenant_slug:
        return query.filter(Tenant.slug == tenant_slug).first()
    if phone_number_id:
        return query.filter(Tenant.phone_number_id == phone_number_id).first()
    return None


def ingest_message(db: Session, message: InboundMessage, *, metadata: Optional[dict] = None, now: Optional[datetime] = None) -> str:
    """Dedup, sequence and enqueue one message in a single transaction.

    Returns "queued", "duplicate" or "already_queued".
    """
    now = now or utc_now()
    for attempt in range(1, INGEST_ATTEMPTS + 1):
        try:
            dedup = dedup_service.check_duplicate(
                db,
                tenant_id=message.tenant_id,
                sender=message.sender,
                message_id=message.message_id,
                content=message.text,
                timestamp=message.timestamp,
                now=now,
            )
            if dedup.duplicate:
                db.commit()
                return "duplicate"

            sequence = sequence_service.validate_sequence(
                db,
                tenant_id=message.tenant_id,
                sender=message.sender,
                message_id=message.message_id,
                timestamp=message.timestamp,
                now=now,
            )
            item_id = queue_service.enqueue(
                db,
                message,
                metadata={
                    **(metadata or {}),
                    "sequence_number": sequence.sequence_number,
                    "in_order": sequence.in_order,
                    "gap_detected": sequence.gap_detected,
                },
                now=now,
            )
            db.commit()
            return "queued" if item_id else "already_queued"
        except (StaleDataError, IntegrityError) as exc:
            db.rollback()
            if attempt == INGEST_ATTEMPTS:
                raise
            logger.info(
                "Concurrent ingest, retrying",
                extra={"context": {"message_id": message.message_id, "attempt": attempt, "error": str(exc)}},
            )
    return "already_queued"


def ingest_envelope(db: Session, envelope: WebhookEnvelope, *, tenant_slug: Optional[str] = None) -> dict[str, int]:
    counts: Counter = Counter()
    for entry in envelope.entry:
        for change in entry.changes:
            value = change.value
            tenant = resolve_tenant(db, tenant_slug=tenant_slug, phone_number_id=value.metadata.phone_number_id)
            if tenant is None:
                counts["unknown_tenant"] += len(value.messages)
                logger.warning(
                    "Webhook for unknown tenant",
                    extra={"context": {"tenant_slug": tenant_slug, "phone_number_id": value.metadata.phone_number_id}},
                )
                continue

            for status in value.statuses:
                counts[f"status_{status.status}"] += 1
                logger.info(
                    "Delivery status",
                    extra={
                        "context": {
                            "tenant_id": str(tenant.id),
                            "provider_message_id": status.id,
                            "status": status.status,
                            "recipient": status.recipient_id,
                        }
                    },
                )

            for event in value.messages:
                if not isinstance(event, TextMessage):
                    counts["skipped_non_text"] += 1
                    logger.info(
                        "Non-text message skipped",
                        extra={"context": {"tenant_id": str(tenant.id), "message_id": event.id, "type": event.type}},
                    )
                    continue
                try:
                    message = InboundMessage(
                        message_id=event.id,
                        tenant_id=tenant.id,
                        sender=event.from_,
                        recipient=value.metadata.display_phone_number,
                        text=event.text.body,
                        timestamp=from_epoch_seconds(event.timestamp),
                    )
                    outcome = ingest_message(db, message, metadata={"phone_number_id": value.metadata.phone_number_id})
                except Exception as exc:
                    # The provider already has its 200; the rest of the envelope must still be queued.
                    db.rollback()
                    counts["failed"] += 1
                    logger.exception(
                        "Message ingestion failed",
                        extra={"context": {"tenant_id": str(tenant.id), "message_id": event.id}},
                    )
                    record_alert(
                        db,
                        kind="ingest_failure",
                        level="ERROR",
                        message=f"Message {event.id} could not be queued",
                        tenant_id=tenant.id,
                        context={"message_id": event.id, "sender": event.from_, "error": str(exc)[:500]},
                    )
                    db.commit()
                else:
                    counts[outcome] += 1
                forward_pending_alerts(db)
    return dict(counts)


def parse_envelope(raw_body: bytes) -> WebhookEnvelope:
    """Raises ValueError for bodies that are not JSON or not a known envelope."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"webhook body is not JSON: {exc}") from exc
    try:
        return WebhookEnvelope.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"unrecognized webhook payload: {exc.error_count()} error(s)") from exc


def ingest_raw_payload(
    raw_body: bytes,
    tenant_slug: Optional[str] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Optional[dict[str, int]]:
    """Background half of a webhook delivery. Never raises: failures become logs and alerts."""
    db = session_factory()
    try:
        try:
            envelope = parse_envelope(raw_body)
        except ValueError as exc:
            logger.warning("Malformed webhook payload", extra={"context": {"tenant_slug": tenant_slug, "error": str(exc)}})
            record_alert(
                db,
                kind="malformed_payload",
                level="WARNING",
                message="Malformed WhatsApp webhook payload",
                context={"tenant_slug": tenant_slug, "error": str(exc)[:500]},
            )
            db.commit()
            forward_pending_alerts(db)
            return None

        summary = ingest_envelope(db, envelope, tenant_slug=tenant_slug)
        logger.info("Webhook ingested", extra={"context": {"tenant_slug": tenant_slug, **summary}})
        return summary
    except Exception as exc:
        db.rollback()
        logger.exception("Webhook ingestion failed", extra={"context": {"tenant_slug": tenant_slug}})
        alert_error("WhatsApp webhook ingestion failed", {"tenant_slug": tenant_slug, "error": str(exc)[:500]})
        return None
    finally:
        db.close()
