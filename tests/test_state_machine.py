import pytest

from app.services.state_machine import (
    BookingStep,
    InvalidTransitionError,
    can_transition,
    cancel,
    fail,
    is_terminal,
    transition,
)


class TestValidTransitions:
    def test_greeting_to_service_selection(self):
        assert transition(BookingStep.GREETING, BookingStep.SERVICE_SELECTION) == BookingStep.SERVICE_SELECTION

    def test_service_selection_to_date_time(self):
        assert transition(BookingStep.SERVICE_SELECTION, BookingStep.DATE_TIME) == BookingStep.DATE_TIME

    def test_date_time_to_confirmation(self):
        assert transition(BookingStep.DATE_TIME, BookingStep.CONFIRMATION) == BookingStep.CONFIRMATION

    def test_confirmation_to_completed(self):
        assert transition(BookingStep.CONFIRMATION, BookingStep.COMPLETED) == BookingStep.COMPLETED

    def test_confirmation_back_to_date_time(self):
        assert transition(BookingStep.CONFIRMATION, BookingStep.DATE_TIME) == BookingStep.DATE_TIME

    def test_staying_is_allowed_in_open_steps(self):
        for step in (BookingStep.GREETING, BookingStep.SERVICE_SELECTION, BookingStep.DATE_TIME, BookingStep.CONFIRMATION):
            assert transition(step, step) == step


class TestInvalidTransitions:
    def test_greeting_cannot_skip_to_confirmation(self):
        with pytest.raises(InvalidTransitionError):
            transition(BookingStep.GREETING, BookingStep.CONFIRMATION)

    def test_service_selection_cannot_complete(self):
        with pytest.raises(InvalidTransitionError):
            transition(BookingStep.SERVICE_SELECTION, BookingStep.COMPLETED)

    def test_terminal_steps_have_no_exits(self):
        for step in (BookingStep.COMPLETED, BookingStep.CANCELLED, BookingStep.ERROR):
            assert is_terminal(step)
            for target in BookingStep:
                assert can_transition(step, target) is False

    def test_error_message_names_both_steps(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(BookingStep.COMPLETED, BookingStep.GREETING)
        assert "completed -> greeting" in str(exc_info.value)


class TestHelperFunctions:
    def test_fail_reaches_error_from_any_open_step(self):
        for step in (BookingStep.GREETING, BookingStep.SERVICE_SELECTION, BookingStep.DATE_TIME, BookingStep.CONFIRMATION):
            assert fail(step) == BookingStep.ERROR

    def test_cancel(self):
        assert cancel(BookingStep.DATE_TIME) == BookingStep.CANCELLED

    def test_cancel_after_completion_is_invalid(self):
        with pytest.raises(InvalidTransitionError):
            cancel(BookingStep.COMPLETED)
