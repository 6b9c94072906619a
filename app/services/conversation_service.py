from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings
from app.models import Conversation
from app.services.dialog_service import Transition
from app.services.state_machine import BookingStep, cancel, fail, is_terminal
from app.services.time_utils import ensure_utc, utc_now


def get_active_conversation(db: Session, tenant_id: UUID, sender: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.sender == sender, Conversation.is_active.is_(True))
        .first()
    )


def start_conversation(db: Session, tenant_id: UUID, sender: str, now: Optional[datetime] = None) -> Conversation:
    now = now or utc_now()
    conversation = Conversation(
        tenant_id=tenant_id,
        sender=sender,
        current_step=BookingStep.GREETING.value,
        context={},
        history=[],
        is_active=True,
        started_at=now,
        last_activity=now,
    )
    db.add(conversation)
    db.flush()
    return conversation


def is_idle(conversation: Conversation, now: datetime) -> bool:
    last_activity = ensure_utc(conversation.last_activity)
    return last_activity is not None and now - last_activity > timedelta(hours=settings.conversation_timeout_hours)


def close_conversation(db: Session, conversation: Conversation, step: BookingStep, now: Optional[datetime] = None) -> None:
    """Close a conversation, moving it to `step` first when it is not terminal yet."""
    now = now or utc_now()
    current = BookingStep(conversation.current_step)
    if not is_terminal(current):
        current = cancel(current) if step == BookingStep.CANCELLED else fail(current)
        conversation.current_step = current.value
    conversation.is_active = False
    conversation.closed_at = now
    db.flush()


def get_or_start_conversation(db: Session, tenant_id: UUID, sender: str, now: Optional[datetime] = None) -> Conversation:
    """Active conversation for the sender; abandoned or finished ones are closed and replaced."""
    now = now or utc_now()
    conversation = get_active_conversation(db, tenant_id, sender)
    if conversation is not None:
        step = BookingStep(conversation.current_step)
        if is_terminal(step):
            close_conversation(db, conversation, step, now)
            conversation = None
        elif is_idle(conversation, now):
            close_conversation(db, conversation, BookingStep.CANCELLED, now)
            conversation = None
    if conversation is None:
        conversation = start_conversation(db, tenant_id, sender, now)
    return conversation


def _append_history(conversation: Conversation, role: str, text: str, now: datetime) -> None:
    history = list(conversation.history or [])
    history.append({"role": role, "text": text, "at": now.isoformat()})
    max_turns = settings.history_max_turns
    if max_turns and len(history) > max_turns:
        history = history[-max_turns:]
    conversation.history = history


def apply_transition(
    db: Session,
    conversation: Conversation,
    result: Transition,
    *,
    inbound_text: str,
    message_id: str,
    now: Optional[datetime] = None,
) -> None:
    """Write the authoritative state change for one processed message."""
    now = now or utc_now()
    context: dict[str, Any] = dict(conversation.context or {})
    for key, value in result.context_patch.items():
        if value is None:
            context.pop(key, None)
        else:
            context[key] = value
    conversation.context = context
    conversation.current_step = result.next_step.value
    _append_history(conversation, "customer", inbound_text, now)
    _append_history(conversation, "assistant", result.reply, now)
    conversation.last_message_id = message_id
    conversation.last_reply = result.reply
    conversation.last_activity = now
    if is_terminal(result.next_step):
        conversation.is_active = False
        conversation.closed_at = now
    db.flush()
