from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import QueueItem
from app.services.time_utils import utc_now

logger = get_logger("retry_service")

MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class RetryDecision:
    status: str  # "retry" or "failed"
    retry_count: int
    delay_ms: int
    scheduled_at: Optional[datetime]
    error_message: str

    @property
    def permanent(self) -> bool:
        return self.status == "failed"


def backoff_delay_ms(retry_count: int, base_ms: Optional[int] = None, cap_ms: Optional[int] = None) -> int:
    base_ms = settings.retry_base_ms if base_ms is None else base_ms
    cap_ms = settings.retry_cap_ms if cap_ms is None else cap_ms
    exponent = min(max(retry_count, 0), 32)
    return min(cap_ms, base_ms * (2**exponent))


def compute_retry_decision(
    retry_count: int,
    max_retries: int,
    error: str,
    now: datetime,
    terminal: bool = False,
) -> RetryDecision:
    """Decide what a failed attempt turns into. Pure: depends only on the item's counters."""
    error_message = (error or "unknown error")[:MAX_ERROR_LENGTH]
    delay_ms = backoff_delay_ms(retry_count)
    next_count = retry_count + 1

    if terminal or next_count > max_retries:
        return RetryDecision(
            status="failed",
            retry_count=min(retry_count, max_retries),
            delay_ms=0,
            scheduled_at=None,
            error_message=error_message,
        )
    return RetryDecision(
        status="retry",
        retry_count=next_count,
        delay_ms=delay_ms,
        scheduled_at=now + timedelta(milliseconds=delay_ms),
        error_message=error_message,
    )


def handle_failure(
    db: Session,
    item: QueueItem,
    error: str,
    *,
    terminal: bool = False,
    now: Optional[datetime] = None,
) -> Optional[RetryDecision]:
    """Reschedule or fail an item that is currently processing.

    The update only applies while the item is still in the attempt that
    failed, so calling this twice for one failure changes nothing the
    second time and returns None.
    """
    now = now or utc_now()
    decision = compute_retry_decision(item.retry_count, item.max_retries, error, now, terminal=terminal)

    values = {
        "status": decision.status,
        "retry_count": decision.retry_count,
        "error_message": decision.error_message,
        "updated_at": now,
    }
    if decision.permanent:
        values["processed_at"] = now
    else:
        values["scheduled_at"] = decision.scheduled_at

    result = db.execute(
        update(QueueItem)
        .where(
            QueueItem.id == item.id,
            QueueItem.status == "processing",
            QueueItem.retry_count == item.retry_count,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        logger.info(
            "Retry already applied",
            extra={"context": {"queue_item_id": str(item.id), "message_id": item.message_id}},
        )
        return None

    db.refresh(item)
    log = logger.error if decision.permanent else logger.warning
    log(
        "Queue item failed permanently" if decision.permanent else "Queue item scheduled for retry",
        extra={
            "context": {
                "queue_item_id": str(item.id),
                "message_id": item.message_id,
                "retry_count": decision.retry_count,
                "delay_ms": decision.delay_ms,
                "error": decision.error_message,
            }
        },
    )
    return decision
