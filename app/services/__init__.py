from app.services.conversation_service import (
    apply_transition,
    get_or_start_conversation,
)
from app.services.state_machine import (
    BookingStep,
    InvalidTransitionError,
    can_transition,
    transition,
)
