from enum import Enum


class BookingStep(str, Enum):
    GREETING = "greeting"
    SERVICE_SELECTION = "service_selection"
    DATE_TIME = "date_time"
    CONFIRMATION = "confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STEPS = frozenset({BookingStep.COMPLETED, BookingStep.CANCELLED, BookingStep.ERROR})

# Staying in place ("ask again") is always allowed and not listed.
VALID_TRANSITIONS = {
    BookingStep.GREETING: [BookingStep.SERVICE_SELECTION, BookingStep.CANCELLED, BookingStep.ERROR],
    BookingStep.SERVICE_SELECTION: [BookingStep.DATE_TIME, BookingStep.CANCELLED, BookingStep.ERROR],
    BookingStep.DATE_TIME: [BookingStep.CONFIRMATION, BookingStep.CANCELLED, BookingStep.ERROR],
    BookingStep.CONFIRMATION: [
        BookingStep.COMPLETED,
        BookingStep.DATE_TIME,
        BookingStep.CANCELLED,
        BookingStep.ERROR,
    ],
    BookingStep.COMPLETED: [],
    BookingStep.CANCELLED: [],
    BookingStep.ERROR: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_step: BookingStep, to_step: BookingStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(f"Invalid transition: {from_step.value} -> {to_step.value}")


def is_terminal(step: BookingStep) -> bool:
    return step in TERMINAL_STEPS


def can_transition(from_step: BookingStep, to_step: BookingStep) -> bool:
    """Check if transition is valid."""
    if from_step == to_step and not is_terminal(from_step):
        return True
    allowed = VALID_TRANSITIONS.get(from_step, [])
    return to_step in allowed


def transition(from_step: BookingStep, to_step: BookingStep) -> BookingStep:
    """Perform step transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_step, to_step):
        raise InvalidTransitionError(from_step, to_step)
    return to_step


def fail(current_step: BookingStep) -> BookingStep:
    """Unrecoverable failure while handling the conversation."""
    return transition(current_step, BookingStep.ERROR)


def cancel(current_step: BookingStep) -> BookingStep:
    """Customer abandoned or cancelled the booking."""
    return transition(current_step, BookingStep.CANCELLED)
