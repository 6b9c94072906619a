"""Per-sender sequence tracking: ordinals, gap detection and delayed re-checks.

A message's ordinal is the number of queued messages from the same sender
with an earlier provider timestamp, plus one. The per-sender state row is
written through the ORM with a version column, so two workers updating the
same sender raise StaleDataError instead of overwriting each other.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import QueueItem, SequenceState
from app.services.alert_service import record_alert
from app.services.time_utils import ensure_utc, utc_now

logger = get_logger("sequence_service")


@dataclass(frozen=True)
class SequenceResult:
    sequence_number: int
    in_order: bool
    gap_detected: bool
    missing: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class RecheckOutcome:
    tenant_id: object
    sender: str
    resolved: bool
    missing: list[int]


def compute_ordinal(db: Session, tenant_id, sender: str, timestamp: datetime) -> int:
    earlier = db.scalar(
        select(func.count(QueueItem.id)).where(
            QueueItem.tenant_id == tenant_id,
            QueueItem.from_number == sender,
            QueueItem.sent_at < timestamp,
        )
    )
    return int(earlier or 0) + 1


def get_sequence_state(db: Session, tenant_id, sender: str) -> Optional[SequenceState]:
    return (
        db.query(SequenceState)
        .filter(SequenceState.tenant_id == tenant_id, SequenceState.sender == sender)
        .first()
    )


def validate_sequence(
    db: Session,
    *,
    tenant_id,
    sender: str,
    message_id: str,
    timestamp: datetime,
    now: Optional[datetime] = None,
) -> SequenceResult:
    """Place a message in its sender's sequence. Never blocks the message on a gap."""
    now = now or utc_now()
    state = get_sequence_state(db, tenant_id, sender)

    if state is None:
        state = SequenceState(
            tenant_id=tenant_id,
            sender=sender,
            sequence_number=1,
            expected_next=2,
            gap_detected=False,
            out_of_order_messages=[],
            missing_sequences=[],
            last_message_id=message_id,
            last_message_time=timestamp,
            created_at=now,
            updated_at=now,
        )
        db.add(state)
        db.flush()
        return SequenceResult(sequence_number=1, in_order=True, gap_detected=False)

    expected = state.expected_next
    actual = compute_ordinal(db, tenant_id, sender, timestamp)
    missing: list[int] = []

    if actual >= expected:
        if actual > expected:
            missing = list(range(expected, actual))
            state.gap_detected = True
            state.missing_sequences = sorted(set(state.missing_sequences or []) | set(missing))
            state.recheck_at = now + timedelta(minutes=settings.sequence_recheck_minutes)
            logger.warning(
                "Sequence gap detected",
                extra={
                    "context": {
                        "tenant_id": str(tenant_id),
                        "sender": sender,
                        "message_id": message_id,
                        "expected": expected,
                        "actual": actual,
                        "missing": missing,
                    }
                },
            )
        state.sequence_number = max(state.sequence_number, actual)
        state.expected_next = state.sequence_number + 1
        state.last_message_id = message_id
        state.last_message_time = timestamp
    else:
        state.out_of_order_messages = [*(state.out_of_order_messages or []), message_id]
        logger.info(
            "Out-of-order message",
            extra={
                "context": {
                    "tenant_id": str(tenant_id),
                    "sender": sender,
                    "message_id": message_id,
                    "expected": expected,
                    "actual": actual,
                }
            },
        )

    state.updated_at = now
    db.flush()
    return SequenceResult(
        sequence_number=actual,
        in_order=actual == expected,
        gap_detected=bool(missing),
        missing=missing,
    )


def _late_arrival_ordinals(db: Session, state: SequenceState) -> list[int]:
    """Ordinals of messages queued since the gap was detected, the gap trigger excluded."""
    detected_at = ensure_utc(state.recheck_at) - timedelta(minutes=settings.sequence_recheck_minutes)
    query = select(QueueItem.message_id, QueueItem.sent_at).where(
        QueueItem.tenant_id == state.tenant_id,
        QueueItem.from_number == state.sender,
        QueueItem.created_at >= detected_at,
    )
    ordinals = []
    for message_id, sent_at in db.execute(query.order_by(QueueItem.sent_at)):
        if message_id == state.last_message_id:
            continue
        ordinals.append(compute_ordinal(db, state.tenant_id, state.sender, sent_at))
    return ordinals


def recalculate_sequence(db: Session, state: SequenceState, now: Optional[datetime] = None) -> None:
    now = now or utc_now()
    rows = db.execute(
        select(QueueItem.message_id, QueueItem.sent_at)
        .where(QueueItem.tenant_id == state.tenant_id, QueueItem.from_number == state.sender)
        .order_by(QueueItem.sent_at)
    ).all()
    if rows:
        state.sequence_number = max(state.sequence_number, len(rows))
        state.last_message_id = rows[-1].message_id
        state.last_message_time = rows[-1].sent_at
    state.expected_next = state.sequence_number + 1
    state.gap_detected = False
    state.missing_sequences = []
    state.out_of_order_messages = []
    state.recheck_at = None
    state.updated_at = now


def recheck_gap(db: Session, state: SequenceState, now: Optional[datetime] = None) -> RecheckOutcome:
    now = now or utc_now()
    missing = list(state.missing_sequences or [])
    found = [ordinal for ordinal in _late_arrival_ordinals(db, state) if ordinal in missing]

    if found:
        recalculate_sequence(db, state, now)
        logger.info(
            "Sequence gap resolved",
            extra={"context": {"tenant_id": str(state.tenant_id), "sender": state.sender, "filled": found}},
        )
    else:
        state.recheck_at = None
        state.updated_at = now
        record_alert(
            db,
            kind="sequence_gap",
            level="WARNING",
            message=f"{len(missing)} message(s) from {state.sender} never arrived",
            tenant_id=state.tenant_id,
            context={"sender": state.sender, "missing": missing},
        )
    db.commit()
    return RecheckOutcome(tenant_id=state.tenant_id, sender=state.sender, resolved=bool(found), missing=missing)


def run_due_rechecks(db: Session, now: Optional[datetime] = None, limit: int = 50) -> list[RecheckOutcome]:
    """Re-check every gap whose grace period has elapsed. Driven by the queue poller."""
    now = now or utc_now()
    due = (
        db.query(SequenceState)
        .filter(SequenceState.gap_detected.is_(True), SequenceState.recheck_at.isnot(None), SequenceState.recheck_at <= now)
        .order_by(SequenceState.recheck_at)
        .limit(limit)
        .all()
    )
    return [recheck_gap(db, state, now) for state in due]
