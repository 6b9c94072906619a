"""Queue poller and per-item processing.

Every item is processed in its own session. The conversation update, the
outbox event and the reply stored on the queue item commit together before
the reply is sent, so a failed send is retried by resending the stored reply
instead of advancing the dialog twice, even after later messages from the
same sender have moved the conversation on.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.database import SessionLocal
from app.logging_config import bind_logger, get_logger
from app.models import QueueItem, Tenant
from app.services import outbox_service, queue_service, sequence_service
from app.services.alert_service import forward_pending_alerts, record_alert
from app.services.booking_knowledge import default_services, render_reply
from app.services.booking_service import BookingEngineError, BookingRequest, create_booking
from app.services.conversation_service import (
    apply_transition,
    close_conversation,
    get_active_conversation,
    get_or_start_conversation,
)
from app.services.dedup_service import cleanup_expired_records
from app.services.dialog_service import Transition, advance, complete_booking, reject_booking
from app.services.intent_service import IntentResult, classify_intent
from app.services.result import Result
from app.services.retry_service import handle_failure
from app.services.state_machine import BookingStep, InvalidTransitionError, is_terminal
from app.services.time_utils import ensure_utc, utc_now
from app.services.whatsapp_service import TransportError, send_text_message

logger = get_logger("queue_worker")

REPLY_KEY = "reply"  # queue item metadata: reply computed by the applied transition


@dataclass
class WorkerDeps:
    session_factory: Callable[[], Session] = SessionLocal
    classify: Callable[[str], IntentResult] = classify_intent
    book: Callable[[BookingRequest], Awaitable[Any]] = create_booking
    send: Callable[..., Awaitable[str]] = send_text_message
    clock: Callable[[], datetime] = utc_now


def tenant_services(tenant: Tenant) -> list[dict[str, Any]]:
    return list(tenant.services or []) or default_services()


async def _resolve_booking(
    db: Session,
    tenant: Tenant,
    item: QueueItem,
    conversation,
    deps: WorkerDeps,
) -> Transition:
    context = dict(conversation.context or {})
    request = BookingRequest(
        tenant_id=str(tenant.id),
        customer_phone=item.from_number,
        service=context.get("service"),
        date=context.get("date"),
        time=context.get("time"),
        duration_minutes=context.get("duration"),
        idempotency_key=str(conversation.id),
    )
    try:
        confirmation = await deps.book(request)
    except BookingEngineError as exc:
        if exc.retryable:
            raise
        return reject_booking(str(exc))

    result = complete_booking(context, confirmation.booking_id)
    outbox_service.publish_event(
        db,
        outbox_service.BOOKING_CREATED,
        tenant.id,
        {
            "booking_id": confirmation.booking_id,
            "session_id": str(conversation.id),
            "customer_phone": item.from_number,
            "service": context.get("service"),
            "date": context.get("date"),
            "time": context.get("time"),
        },
    )
    return result


async def _advance_conversation(db: Session, tenant: Tenant, item: QueueItem, deps: WorkerDeps) -> str:
    """Apply the item to the sender's conversation and return the reply to send."""
    stored_reply = (item.item_metadata or {}).get(REPLY_KEY)
    if stored_reply is not None:
        logger.info("Replaying stored reply", extra={"context": {"queue_item_id": str(item.id)}})
        return stored_reply

    now = deps.clock()
    conversation = get_or_start_conversation(db, tenant.id, item.from_number, now)
    db.commit()

    intent = await asyncio.to_thread(deps.classify, item.content)
    result = advance(
        BookingStep(conversation.current_step),
        dict(conversation.context or {}),
        item.content,
        intent.intent.value,
        tenant_services(tenant),
        now,
    )
    if result.booking_requested:
        result = await _resolve_booking(db, tenant, item, conversation, deps)

    apply_transition(db, conversation, result, inbound_text=item.content, message_id=item.message_id, now=now)
    item.item_metadata = {**(item.item_metadata or {}), REPLY_KEY: result.reply}
    db.commit()
    logger.info(
        "Conversation advanced",
        extra={
            "context": {
                "queue_item_id": str(item.id),
                "conversation_id": str(conversation.id),
                "step": result.next_step.value,
                "intent": intent.intent.value,
                "intent_source": intent.source,
            }
        },
    )
    return result.reply


async def process_item(item_id, deps: WorkerDeps) -> Result[str]:
    """Process one claimed item. Failures come back as a Result, never raised."""
    db = deps.session_factory()
    try:
        item = queue_service.get_item(db, item_id)
        if item is None or item.status != "processing":
            return Result.failure(f"item {item_id} is not processing", "invalid_item")
        log = bind_logger("queue_worker", queue_item_id=str(item.id), message_id=item.message_id)

        tenant = db.query(Tenant).filter(Tenant.id == item.tenant_id).first()
        if tenant is None:
            return Result.failure("tenant not found", "tenant_not_found")
        if not tenant.is_active:
            return Result.failure("tenant is inactive", "tenant_inactive")

        try:
            reply = await _advance_conversation(db, tenant, item, deps)
        except StaleDataError as exc:
            db.rollback()
            return Result.failure(f"conversation changed concurrently: {exc}", "conflict")
        except BookingEngineError as exc:
            db.rollback()
            return Result.failure(str(exc), "booking_engine_unavailable")
        except InvalidTransitionError as exc:
            db.rollback()
            return Result.failure(str(exc), "invalid_transition")

        try:
            provider_message_id = await deps.send(tenant.phone_number_id, item.from_number, reply)
        except TransportError as exc:
            log.warning(f"Reply not sent: {exc}")
            return Result.failure(str(exc), "transport_failed" if exc.retryable else "transport_rejected")

        queue_service.mark_completed(db, item.id, deps.clock())
        log.info("Queue item completed", context={"provider_message_id": provider_message_id})
        return Result.success(provider_message_id)
    finally:
        db.close()


async def _notify_permanent_failure(item_id, error: str, deps: WorkerDeps) -> None:
    """Move the conversation to error and send the single generic fallback message."""
    db = deps.session_factory()
    try:
        item = queue_service.get_item(db, item_id)
        if item is None:
            return
        tenant = db.query(Tenant).filter(Tenant.id == item.tenant_id).first()
        conversation = get_active_conversation(db, item.tenant_id, item.from_number) if tenant else None
        if conversation is not None and not is_terminal(BookingStep(conversation.current_step)):
            close_conversation(db, conversation, BookingStep.ERROR, deps.clock())
        record_alert(
            db,
            kind="permanent_failure",
            level="ERROR",
            message=f"Message {item.message_id} failed after {item.retry_count} retries",
            tenant_id=item.tenant_id,
            context={"queue_item_id": item.id, "sender": item.from_number, "error": error},
        )
        db.commit()
        await asyncio.to_thread(forward_pending_alerts, db)
        if tenant is None:
            return
        try:
            await deps.send(tenant.phone_number_id, item.from_number, render_reply("fallback"))
        except TransportError as exc:
            logger.error(
                "Fallback message not sent",
                extra={"context": {"queue_item_id": str(item.id), "error": str(exc)}},
            )
    finally:
        db.close()


async def run_item(item_id, deps: WorkerDeps) -> Result[str]:
    """Process an item and route a failure through the retry scheduler."""
    try:
        result = await process_item(item_id, deps)
    except Exception as exc:
        logger.exception("Unexpected error while processing queue item", extra={"context": {"queue_item_id": str(item_id)}})
        result = Result.failure(f"unexpected error: {exc}", "unexpected_error")
    if result.ok or result.error_code == "invalid_item":
        return result

    db = deps.session_factory()
    try:
        item = queue_service.get_item(db, item_id)
        decision = handle_failure(db, item, result.error, terminal=not result.retryable, now=deps.clock()) if item else None
    finally:
        db.close()
    if decision is not None and decision.permanent:
        await _notify_permanent_failure(item_id, result.error or "", deps)
    return result


class QueuePoller:
    """Fixed-interval poller with bounded fan-out and graceful drain.

    stop() lets the batch in flight finish and then returns; no new batch
    is claimed after it is called.
    """

    def __init__(
        self,
        deps: Optional[WorkerDeps] = None,
        *,
        interval_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.deps = deps or WorkerDeps()
        self.interval_seconds = max(interval_seconds or settings.queue_poll_interval_seconds, 0.1)
        self.batch_size = batch_size or settings.queue_batch_size
        self.concurrency = max(concurrency or settings.queue_concurrency, 1)
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._last_cleanup: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("Queue poller started", extra={"context": {"interval_seconds": self.interval_seconds}})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Queue poller stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Queue poller tick failed", extra={"context": {"error": str(exc)}})
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def process_batch(self, item_ids: list) -> list[Result]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(item_id):
            async with semaphore:
                return await run_item(item_id, self.deps)

        results = await asyncio.gather(*(_guarded(item_id) for item_id in item_ids), return_exceptions=True)
        for item_id, outcome in zip(item_ids, results):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Queue item crashed outside processing",
                    extra={"context": {"queue_item_id": str(item_id), "error": str(outcome)}},
                )
        return results

    def _maintenance(self, db: Session, now: datetime) -> dict[str, int]:
        stats = {
            "rechecked": len(sequence_service.run_due_rechecks(db, now)),
            "released": queue_service.release_stale_processing(db, now),
            "cleaned": 0,
        }
        last = ensure_utc(self._last_cleanup)
        if last is None or (now - last).total_seconds() >= settings.dedup_cleanup_interval_seconds:
            stats["cleaned"] = cleanup_expired_records(db, now)
            self._last_cleanup = now
        return stats

    async def tick(self) -> dict[str, Any]:
        """One poll: claim and process a batch, then housekeeping."""
        now = self.deps.clock()
        db = self.deps.session_factory()
        try:
            item_ids = queue_service.claim_batch(db, limit=self.batch_size, now=now)
        finally:
            db.close()

        results = await self.process_batch(item_ids) if item_ids else []

        db = self.deps.session_factory()
        try:
            maintenance = self._maintenance(db, now)
            await asyncio.to_thread(forward_pending_alerts, db)
            dispatched = await outbox_service.dispatch_pending_events(db, send=self.deps.send)
        finally:
            db.close()

        summary = {
            "claimed": len(item_ids),
            "completed": sum(1 for r in results if isinstance(r, Result) and r.ok),
            "failed": sum(1 for r in results if not (isinstance(r, Result) and r.ok)),
            **maintenance,
            "events_delivered": dispatched["delivered"],
        }
        if item_ids or any(maintenance.values()):
            logger.info("Queue poller processed", extra={"context": summary})
        return summary
