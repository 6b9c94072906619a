"""Content-hash deduplication of inbound WhatsApp messages.

The database is authoritative. Redis (when REDIS_URL is set) only remembers
which record a hash maps to so the common repeat skips a SELECT.
"""

from __future__ import annotations

import hashlib
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import redis
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.database import dialect_insert
from app.logging_config import get_logger
from app.models import DeduplicationRecord, SequenceState
from app.services.alert_service import record_alert
from app.services.time_utils import ensure_utc, utc_now

logger = get_logger("dedup_service")

DEDUP_CACHE_PREFIX = "boka:dedup"
DEDUP_CACHE_SOCKET_TIMEOUT_SECONDS = 0.3

_cache_client = None
_cache_url = None

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class DedupResult:
    duplicate: bool
    duplicate_count: int = 1
    record_id: Optional[uuid.UUID] = None


def normalize_content(content: str) -> str:
    return _WHITESPACE_RE.sub(" ", (content or "").strip().lower())


def minute_bucket_ms(timestamp: datetime) -> int:
    epoch_ms = int(ensure_utc(timestamp).timestamp() * 1000)
    return epoch_ms - (epoch_ms % 60000)


def compute_content_hash(content: str, sender: str, timestamp: datetime) -> str:
    raw = f"{normalize_content(content)}:{sender}:{minute_bucket_ms(timestamp)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _get_cache_client():
    global _cache_client, _cache_url
    if not settings.redis_url:
        return None
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return None
    if _cache_client is None or _cache_url != settings.redis_url:
        _cache_url = settings.redis_url
        _cache_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=DEDUP_CACHE_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=DEDUP_CACHE_SOCKET_TIMEOUT_SECONDS,
        )
    return _cache_client


def _cache_key(tenant_id, sender: str, content_hash: str) -> str:
    return f"{DEDUP_CACHE_PREFIX}:{tenant_id}:{sender}:{content_hash}"


def _read_cache(key: str) -> Optional[uuid.UUID]:
    cache = _get_cache_client()
    if not cache:
        return None
    try:
        value = cache.get(key)
    except redis.RedisError as exc:
        logger.warning(f"Dedup cache read failed: {exc}")
        return None
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def _write_cache(key: str, record_id: uuid.UUID) -> None:
    cache = _get_cache_client()
    if not cache:
        return
    try:
        cache.set(key, str(record_id), ex=settings.dedup_cache_ttl_seconds)
    except redis.RedisError as exc:
        logger.warning(f"Dedup cache write failed: {exc}")


def _bump_duplicate(db: Session, record_id, cutoff: datetime, now: datetime) -> Optional[int]:
    """Atomically count one more sighting; None when the record is gone or outside the window."""
    result = db.execute(
        update(DeduplicationRecord)
        .where(DeduplicationRecord.id == record_id, DeduplicationRecord.first_seen >= cutoff)
        .values(duplicate_count=DeduplicationRecord.duplicate_count + 1, last_seen=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return db.scalar(select(DeduplicationRecord.duplicate_count).where(DeduplicationRecord.id == record_id))


def _duplicate(db: Session, *, tenant_id, sender: str, message_id: str, record_id, count: int) -> DedupResult:
    logger.info(
        "Duplicate message absorbed",
        extra={
            "context": {
                "tenant_id": str(tenant_id),
                "sender": sender,
                "message_id": message_id,
                "duplicate_count": count,
            }
        },
    )
    if count == settings.dedup_alert_threshold:
        record_alert(
            db,
            kind="excessive_duplicates",
            level="WARNING",
            message=f"Message from {sender} re-delivered {count} times",
            tenant_id=tenant_id,
            context={"sender": sender, "message_id": message_id, "duplicate_count": count},
        )
    return DedupResult(duplicate=True, duplicate_count=count, record_id=record_id)


def check_duplicate(
    db: Session,
    *,
    tenant_id,
    sender: str,
    message_id: str,
    content: str,
    timestamp: datetime,
    now: Optional[datetime] = None,
) -> DedupResult:
    """Record a sighting of (sender, content, minute) and report whether it was seen before.

    Writes are flushed into the caller's transaction; the caller commits.
    """
    now = now or utc_now()
    cutoff = now - timedelta(hours=settings.dedup_window_hours)
    content_hash = compute_content_hash(content, sender, timestamp)
    key = _cache_key(tenant_id, sender, content_hash)

    cached_id = _read_cache(key)
    if cached_id is not None:
        count = _bump_duplicate(db, cached_id, cutoff, now)
        if count is not None:
            return _duplicate(db, tenant_id=tenant_id, sender=sender, message_id=message_id, record_id=cached_id, count=count)

    existing_id = db.scalar(
        select(DeduplicationRecord.id).where(
            DeduplicationRecord.tenant_id == tenant_id,
            DeduplicationRecord.sender == sender,
            DeduplicationRecord.content_hash == content_hash,
            DeduplicationRecord.first_seen >= cutoff,
        )
    )
    if existing_id is not None:
        count = _bump_duplicate(db, existing_id, cutoff, now)
        if count is not None:
            _write_cache(key, existing_id)
            return _duplicate(db, tenant_id=tenant_id, sender=sender, message_id=message_id, record_id=existing_id, count=count)

    record_id = uuid.uuid4()
    stmt = (
        dialect_insert(db, DeduplicationRecord)
        .values(
            id=record_id,
            tenant_id=tenant_id,
            sender=sender,
            content_hash=content_hash,
            original_message_id=message_id,
            duplicate_count=1,
            first_seen=now,
            last_seen=now,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "sender", "content_hash"])
    )
    if db.execute(stmt).rowcount > 0:
        _write_cache(key, record_id)
        return DedupResult(duplicate=False, duplicate_count=1, record_id=record_id)

    # Lost an insert race, or the hash belongs to a record that aged out of the window.
    conflicting = db.execute(
        select(DeduplicationRecord.id, DeduplicationRecord.first_seen).where(
            DeduplicationRecord.tenant_id == tenant_id,
            DeduplicationRecord.sender == sender,
            DeduplicationRecord.content_hash == content_hash,
        )
    ).one()
    if ensure_utc(conflicting.first_seen) < cutoff:
        db.execute(
            update(DeduplicationRecord)
            .where(DeduplicationRecord.id == conflicting.id, DeduplicationRecord.first_seen < cutoff)
            .values(original_message_id=message_id, duplicate_count=1, first_seen=now, last_seen=now)
            .execution_options(synchronize_session=False)
        )
        _write_cache(key, conflicting.id)
        return DedupResult(duplicate=False, duplicate_count=1, record_id=conflicting.id)

    count = _bump_duplicate(db, conflicting.id, cutoff, now) or 2
    return _duplicate(db, tenant_id=tenant_id, sender=sender, message_id=message_id, record_id=conflicting.id, count=count)


def cleanup_expired_records(db: Session, now: Optional[datetime] = None) -> int:
    """Delete dedup records whose window has elapsed."""
    now = now or utc_now()
    cutoff = now - timedelta(hours=settings.dedup_window_hours)
    result = db.execute(
        delete(DeduplicationRecord)
        .where(DeduplicationRecord.first_seen < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    deleted = result.rowcount or 0
    if deleted:
        logger.info("Expired dedup records deleted", extra={"context": {"deleted": deleted}})
    return deleted


def get_dedup_stats(db: Session, tenant_id=None, hours: int = 24, now: Optional[datetime] = None) -> dict:
    now = now or utc_now()
    since = now - timedelta(hours=hours)

    record_filter = [DeduplicationRecord.first_seen >= since]
    if tenant_id is not None:
        record_filter.append(DeduplicationRecord.tenant_id == tenant_id)
    total_records, total_sightings = db.execute(
        select(func.count(DeduplicationRecord.id), func.coalesce(func.sum(DeduplicationRecord.duplicate_count), 0)).where(
            *record_filter
        )
    ).one()
    total_sightings = int(total_sightings or 0)
    duplicates = max(total_sightings - int(total_records), 0)

    sequence_query = select(SequenceState.gap_detected, SequenceState.out_of_order_messages)
    if tenant_id is not None:
        sequence_query = sequence_query.where(SequenceState.tenant_id == tenant_id)
    gaps = 0
    out_of_order = 0
    for gap_detected, out_of_order_messages in db.execute(sequence_query):
        if gap_detected:
            gaps += 1
        out_of_order += len(out_of_order_messages or [])

    return {
        "window_hours": hours,
        "unique_messages": int(total_records),
        "duplicates": duplicates,
        "duplicate_rate": round(duplicates / total_sightings, 4) if total_sightings else 0.0,
        "sequence_gaps": gaps,
        "out_of_order_messages": out_of_order,
    }
