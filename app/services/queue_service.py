"""Durable inbound queue.

Status moves strictly pending/retry -> processing -> completed|failed and
every move is a conditional UPDATE checked through rowcount, so several
pollers can share the table without double-processing an item.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import case, exists, func, select, update
from sqlalchemy.orm import Session, aliased

from app.config import settings
from app.database import dialect_insert
from app.logging_config import get_logger
from app.models import QueueItem
from app.schemas.whatsapp import InboundMessage
from app.services.retry_service import handle_failure
from app.services.time_utils import ensure_utc, utc_now

logger = get_logger("queue_service")

PRIORITIES = ("low", "normal", "high", "urgent")
CLAIMABLE_STATUSES = ("pending", "retry")
TERMINAL_STATUSES = ("completed", "failed")

_PRIORITY_RANK = case(
    {"urgent": 3, "high": 2, "normal": 1, "low": 0},
    value=QueueItem.priority,
    else_=1,
)


def enqueue(
    db: Session,
    message: InboundMessage,
    *,
    priority: str = "normal",
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Optional[uuid.UUID]:
    """Insert a queue item; None when (tenant, message_id) is already queued.

    Flushed into the caller's transaction.
    """
    if priority not in PRIORITIES:
        raise ValueError(f"Unknown priority: {priority}")
    now = now or utc_now()
    item_id = uuid.uuid4()
    stmt = (
        dialect_insert(db, QueueItem)
        .values(
            id=item_id,
            tenant_id=message.tenant_id,
            message_id=message.message_id,
            from_number=message.sender,
            to_number=message.recipient,
            content=message.text,
            priority=priority,
            status="pending",
            retry_count=0,
            max_retries=settings.queue_max_retries,
            scheduled_at=now,
            sent_at=message.timestamp,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "message_id"])
    )
    if db.execute(stmt).rowcount > 0:
        logger.info(
            "Message queued",
            extra={
                "context": {
                    "queue_item_id": str(item_id),
                    "tenant_id": str(message.tenant_id),
                    "message_id": message.message_id,
                    "priority": priority,
                }
            },
        )
        return item_id
    logger.info(
        "Message already queued",
        extra={"context": {"tenant_id": str(message.tenant_id), "message_id": message.message_id}},
    )
    return None


def get_item(db: Session, item_id) -> Optional[QueueItem]:
    return db.query(QueueItem).filter(QueueItem.id == item_id).first()


def claim_batch(db: Session, *, limit: Optional[int] = None, now: Optional[datetime] = None) -> list[uuid.UUID]:
    """Move up to `limit` due items to processing and return their ids.

    Highest priority first, then oldest. Only each sender's head item is a
    candidate and a sender with an item already in processing is skipped, so
    one conversation is never advanced by two workers at once and a chatty
    sender cannot crowd other senders out of the batch.
    """
    limit = limit or settings.queue_batch_size
    now = now or utc_now()

    busy = aliased(QueueItem)
    sender_busy = exists().where(
        busy.tenant_id == QueueItem.tenant_id,
        busy.from_number == QueueItem.from_number,
        busy.status == "processing",
    )
    due = (
        select(
            QueueItem.id.label("id"),
            QueueItem.created_at.label("created_at"),
            QueueItem.sent_at.label("sent_at"),
            _PRIORITY_RANK.label("priority_rank"),
            func.row_number()
            .over(
                partition_by=(QueueItem.tenant_id, QueueItem.from_number),
                order_by=(_PRIORITY_RANK.desc(), QueueItem.created_at.asc(), QueueItem.sent_at.asc()),
            )
            .label("sender_position"),
        )
        .where(
            QueueItem.status.in_(CLAIMABLE_STATUSES),
            QueueItem.scheduled_at <= now,
            ~sender_busy,
        )
        .subquery()
    )
    candidates = db.scalars(
        select(due.c.id)
        .where(due.c.sender_position == 1)
        .order_by(due.c.priority_rank.desc(), due.c.created_at.asc(), due.c.sent_at.asc())
        .limit(limit)
    ).all()

    claimed: list[uuid.UUID] = []
    for item_id in candidates:
        result = db.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status.in_(CLAIMABLE_STATUSES))
            .values(status="processing", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(item_id)
    db.commit()

    if claimed:
        logger.debug(f"Claimed {len(claimed)} queue item(s)")
    return claimed


def mark_completed(db: Session, item_id, now: Optional[datetime] = None) -> bool:
    now = now or utc_now()
    result = db.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status == "processing")
        .values(status="completed", processed_at=now, error_message=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_stale_processing(db: Session, now: Optional[datetime] = None) -> int:
    """Route items stuck in processing (worker died mid-attempt) through the retry path."""
    now = now or utc_now()
    cutoff = now - timedelta(minutes=settings.queue_stale_processing_minutes)
    stale = (
        db.query(QueueItem)
        .filter(QueueItem.status == "processing", QueueItem.updated_at < cutoff)
        .order_by(QueueItem.updated_at)
        .limit(settings.queue_batch_size)
        .all()
    )
    released = 0
    for item in stale:
        if handle_failure(db, item, "processing timed out", now=now) is not None:
            released += 1
    if released:
        logger.warning("Released stale processing items", extra={"context": {"released": released}})
    return released


def get_queue_stats(db: Session, tenant_id=None, now: Optional[datetime] = None) -> dict:
    now = now or utc_now()
    filters = []
    if tenant_id is not None:
        filters.append(QueueItem.tenant_id == tenant_id)

    counts = {status: 0 for status in ("pending", "processing", "completed", "failed", "retry")}
    for status, count in db.execute(
        select(QueueItem.status, func.count(QueueItem.id)).where(*filters).group_by(QueueItem.status)
    ):
        counts[status] = int(count)

    oldest_due = db.scalar(
        select(func.min(QueueItem.scheduled_at)).where(QueueItem.status.in_(CLAIMABLE_STATUSES), *filters)
    )
    oldest_due = ensure_utc(oldest_due)
    return {
        **counts,
        "total": sum(counts.values()),
        "oldest_due_seconds": max((now - oldest_due).total_seconds(), 0.0) if oldest_due else 0.0,
    }
