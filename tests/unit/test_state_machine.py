"""
Unit tests for booking status state machine validations.
"""
import pytest

from app.exceptions import StateError
from app.models.booking import Booking
from app.services.booking import VALID_TRANSITIONS, is_valid_transition, transition


class TestBookingStateMachine:
    def test_pending_to_confirmed(self):
        assert is_valid_transition("PENDING", "CONFIRMED")

    def test_confirmed_to_in_progress(self):
        assert is_valid_transition("CONFIRMED", "IN_PROGRESS")

    def test_in_progress_to_completed(self):
        assert is_valid_transition("IN_PROGRESS", "COMPLETED")

    @pytest.mark.parametrize("state", ["PENDING", "CONFIRMED", "IN_PROGRESS"])
    def test_cancellable_from_every_live_state(self, state):
        assert is_valid_transition(state, "CANCELLED")

    def test_completed_is_terminal(self):
        assert VALID_TRANSITIONS["COMPLETED"] == set()
        assert not is_valid_transition("COMPLETED", "CANCELLED")

    def test_cancelled_is_terminal(self):
        assert not is_valid_transition("CANCELLED", "PENDING")
        assert not is_valid_transition("CANCELLED", "CONFIRMED")

    def test_invalid_forward_skip(self):
        # Cannot start a trip that was never paid for
        assert not is_valid_transition("PENDING", "IN_PROGRESS")
        assert not is_valid_transition("PENDING", "COMPLETED")

    def test_invalid_backward_step(self):
        assert not is_valid_transition("IN_PROGRESS", "CONFIRMED")

    def test_unknown_state(self):
        assert not is_valid_transition("REQUESTED", "CONFIRMED")


class TestTransition:
    def test_applies_valid_transition(self):
        booking = Booking(id="bk-1", status="PENDING")
        transition(booking, "CONFIRMED")
        assert booking.status == "CONFIRMED"

    def test_rejects_invalid_transition(self):
        booking = Booking(id="bk-1", status="COMPLETED")
        with pytest.raises(StateError) as exc:
            transition(booking, "CANCELLED")
        assert exc.value.code == "INVALID_TRANSITION"
        assert exc.value.details == {"from": "COMPLETED", "to": "CANCELLED"}
        assert booking.status == "COMPLETED"
