"""Booking dialog: decides the next step and reply for one customer message.

Everything here is pure. The booking engine call happens outside: a
confirmation yields a transition with `booking_requested` set, and the
caller resolves it with `complete_booking` or `reject_booking`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from app.services.booking_knowledge import (
    format_service_list,
    match_service,
    matches_phrase,
    parse_date_time,
    render_reply,
)
from app.services.state_machine import BookingStep, InvalidTransitionError, is_terminal, transition

BOOKING_INTENTS = {"booking"}


@dataclass(frozen=True)
class Transition:
    next_step: BookingStep
    reply: str
    context_patch: dict[str, Any] = field(default_factory=dict)
    booking_requested: bool = False


def _move(current: BookingStep, target: BookingStep, reply: str, patch: Optional[dict] = None, **kwargs) -> Transition:
    return Transition(next_step=transition(current, target), reply=reply, context_patch=patch or {}, **kwargs)


def booking_reference(booking_id: str) -> str:
    return str(booking_id)[-6:].upper()


def advance(
    step: BookingStep,
    context: dict[str, Any],
    text: str,
    intent: Optional[str],
    services: list[dict[str, Any]],
    now: datetime,
) -> Transition:
    """Map one inbound message onto the booking FSM. Exactly one reply per call."""
    step = BookingStep(step)
    if is_terminal(step):
        raise InvalidTransitionError(step, step)

    if intent == "cancel" or matches_phrase(text, "cancel"):
        return _move(step, BookingStep.CANCELLED, render_reply("cancelled"))

    if step == BookingStep.GREETING:
        if intent in BOOKING_INTENTS or matches_phrase(text, "booking"):
            return _move(step, BookingStep.SERVICE_SELECTION, format_service_list(services))
        return _move(step, step, render_reply("menu"))

    if step == BookingStep.SERVICE_SELECTION:
        service = match_service(text, services)
        if service is None:
            return _move(step, step, render_reply("service_unknown"))
        patch = {"service": service.get("name"), "duration": service.get("duration")}
        return _move(step, BookingStep.DATE_TIME, render_reply("ask_date_time", service=service.get("name")), patch)

    if step == BookingStep.DATE_TIME:
        parsed = parse_date_time(text, now)
        if parsed is None:
            return _move(step, step, render_reply("date_time_unparsed"))
        slot_date, slot_time = parsed
        reply = render_reply("confirm_details", service=context.get("service"), date=slot_date, time=slot_time)
        return _move(step, BookingStep.CONFIRMATION, reply, {"date": slot_date, "time": slot_time})

    # confirmation
    if intent == "confirm" or matches_phrase(text, "affirmative") or matches_phrase(text, "booking"):
        if context.get("booking_id"):
            return complete_booking(context, context["booking_id"])
        return Transition(next_step=step, reply="", booking_requested=True)
    if intent == "change" or matches_phrase(text, "change"):
        return _move(step, BookingStep.DATE_TIME, render_reply("change_date_time"), {"date": None, "time": None})
    return _move(step, step, render_reply("confirm_prompt"))


def complete_booking(context: dict[str, Any], booking_id: str) -> Transition:
    reply = render_reply(
        "booking_confirmed",
        service=context.get("service"),
        date=context.get("date"),
        time=context.get("time"),
        reference=booking_reference(booking_id),
    )
    return _move(BookingStep.CONFIRMATION, BookingStep.COMPLETED, reply, {"booking_id": str(booking_id)})


def reject_booking(reason: str) -> Transition:
    """The engine refused the slot; stay on confirmation and let the customer change it."""
    return _move(BookingStep.CONFIRMATION, BookingStep.CONFIRMATION, render_reply("booking_failed", reason=reason))
