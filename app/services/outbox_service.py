from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.database import dialect_insert
from app.logging_config import get_logger
from app.models import OutboxDelivery, OutboxEvent, Tenant
from app.services.time_utils import utc_now
from app.services.whatsapp_service import TransportError, send_text_message

logger = get_logger("outbox_service")

BOOKING_CREATED = "booking.created"
SENDING = "sending"


def compute_event_hash(event_type: str, tenant_id, payload: dict[str, Any]) -> str:
    canonical = json.dumps(
        {"type": event_type, "tenant_id": str(tenant_id) if tenant_id else None, "payload": payload},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def publish_event(db: Session, event_type: str, tenant_id, payload: dict[str, Any]) -> Optional[uuid.UUID]:
    """Insert-or-ignore a domain event. Returns None when it was already published.

    Runs inside the caller's transaction so the event commits with the state
    change it describes.
    """
    event_id = uuid.uuid4()
    event_hash = compute_event_hash(event_type, tenant_id, payload)
    stmt = (
        dialect_insert(db, OutboxEvent)
        .values(
            id=event_id,
            type=event_type,
            tenant_id=tenant_id,
            payload=payload,
            hash=event_hash,
            created_at=utc_now(),
        )
        .on_conflict_do_nothing(index_elements=["hash"])
    )
    if db.execute(stmt).rowcount > 0:
        logger.info(
            "Event published",
            extra={"context": {"event_id": str(event_id), "type": event_type, "tenant_id": str(tenant_id)}},
        )
        return event_id
    logger.info("Event already published", extra={"context": {"type": event_type, "hash": event_hash}})
    return None


def pending_events(db: Session, limit: int = 20) -> list[OutboxEvent]:
    """Events with no delivery row. A row in `sending` is a live claim and hides the event."""
    return list(
        db.scalars(
            select(OutboxEvent)
            .outerjoin(OutboxDelivery, OutboxDelivery.event_id == OutboxEvent.id)
            .where(OutboxDelivery.event_id.is_(None))
            .order_by(OutboxEvent.created_at)
            .limit(limit)
        )
    )


def _record_delivery(db: Session, event_id, status: str, detail: Optional[str] = None) -> bool:
    """Insert the delivery row. Returns False when another dispatcher already owns the event."""
    stmt = (
        dialect_insert(db, OutboxDelivery)
        .values(event_id=event_id, status=status, detail=detail, recorded_at=utc_now())
        .on_conflict_do_nothing(index_elements=["event_id"])
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount > 0


def _finish_delivery(db: Session, event_id, status: str, detail: Optional[str] = None) -> None:
    db.execute(
        update(OutboxDelivery)
        .where(OutboxDelivery.event_id == event_id, OutboxDelivery.status == SENDING)
        .values(status=status, detail=detail, recorded_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def _release_claim(db: Session, event_id) -> None:
    db.execute(
        delete(OutboxDelivery)
        .where(OutboxDelivery.event_id == event_id, OutboxDelivery.status == SENDING)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def release_stale_claims(db: Session, now: Optional[datetime] = None) -> int:
    """Drop `sending` claims left behind by a dispatcher that died mid-send."""
    now = now or utc_now()
    cutoff = now - timedelta(minutes=settings.queue_stale_processing_minutes)
    result = db.execute(
        delete(OutboxDelivery)
        .where(OutboxDelivery.status == SENDING, OutboxDelivery.recorded_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning("Released stale outbox claims", extra={"context": {"released": result.rowcount}})
    return result.rowcount


def format_owner_notification(payload: dict[str, Any]) -> str:
    reference = str(payload.get("booking_id") or "")[-6:].upper()
    return (
        "📅 *New Booking Confirmed*\n\n"
        "A customer has just booked via WhatsApp:\n\n"
        f"📱 Phone: {payload.get('customer_phone')}\n"
        f"📋 Service: {payload.get('service') or 'Not specified'}\n"
        f"📆 Date: {payload.get('date') or 'Not specified'}\n"
        f"🕐 Time: {payload.get('time') or 'Not specified'}\n\n"
        f"Ref: #{reference}"
    )


async def dispatch_pending_events(
    db: Session,
    *,
    limit: int = 20,
    send: Callable[..., Awaitable[str]] = send_text_message,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """Deliver pending events. Owner notification is the only subscriber today.

    Each event is claimed with an insert-or-ignore `sending` row before the
    send, so concurrent dispatchers never notify twice for one event.
    """
    results = {"delivered": 0, "skipped": 0, "rejected": 0, "deferred": 0, "claimed_elsewhere": 0}
    release_stale_claims(db, now)
    for event in pending_events(db, limit=limit):
        event_id = event.id
        if event.type != BOOKING_CREATED:
            if _record_delivery(db, event_id, "skipped", "no subscriber"):
                results["skipped"] += 1
            continue

        tenant = db.query(Tenant).filter(Tenant.id == event.tenant_id).first()
        if not tenant or not tenant.owner_phone:
            if _record_delivery(db, event_id, "skipped", "owner phone not configured"):
                results["skipped"] += 1
            continue

        text = format_owner_notification(event.payload or {})
        phone_number_id, owner_phone = tenant.phone_number_id, tenant.owner_phone
        if not _record_delivery(db, event_id, SENDING):
            results["claimed_elsewhere"] += 1
            continue

        try:
            await send(phone_number_id, owner_phone, text)
        except TransportError as exc:
            if exc.retryable:
                logger.warning(
                    "Owner notification deferred",
                    extra={"context": {"event_id": str(event_id), "error": str(exc)}},
                )
                _release_claim(db, event_id)
                results["deferred"] += 1
                continue
            logger.error(
                "Owner notification rejected",
                extra={"context": {"event_id": str(event_id), "error": str(exc)}},
            )
            _finish_delivery(db, event_id, "rejected", str(exc)[:500])
            results["rejected"] += 1
            continue

        _finish_delivery(db, event_id, "delivered")
        results["delivered"] += 1
    return results
