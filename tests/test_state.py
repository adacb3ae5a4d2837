"""
Tests for the conversation state blob and tri-state sub-flags.
"""

import json

import pytest
from msgspec import UNSET

from src.frontdesk.errors import StateDecodeError, StatePersistenceFailure
from src.frontdesk.models import FlowKind, Mode, SubFlag
from src.frontdesk.state import (
    COMPLETE_STEP,
    BookingCursor,
    ConversationState,
    SlotSource,
    SlotValue,
    clone_state,
    decode_state,
    encode_state,
    new_state,
)


class TestTriStateFlags:
    """Absent, true and false must all survive a round trip as themselves."""

    def test_absent_flag_is_omitted_from_blob(self):
        state = new_state("s1", "demo", Mode.BOOKING)
        state.booking_cursor = BookingCursor(flow=FlowKind.BOOKING, step_id="lastName")
        state.booking_cursor.set_flag(SubFlag.ASKED)

        raw = json.loads(encode_state(state))
        cursor = raw["booking_cursor"]
        assert cursor["asked"] is True
        assert "awaiting_spelling" not in cursor
        assert "awaiting_confirmation" not in cursor

    def test_absent_survives_round_trip_as_absent(self):
        state = new_state("s1", "demo")
        state.booking_cursor = BookingCursor(flow=FlowKind.BOOKING, step_id="lastName")

        decoded = decode_state(encode_state(state))
        cursor = decoded.cursor()
        assert cursor.asked is UNSET
        assert cursor.awaiting_spelling is UNSET
        assert cursor.flags() == {}

    def test_explicit_false_survives_round_trip_as_false(self):
        cursor = BookingCursor(flow=FlowKind.BOOKING, step_id="phone", awaiting_confirmation=False)
        state = new_state("s1", "demo")
        state.booking_cursor = cursor

        decoded = decode_state(encode_state(state)).cursor()
        assert decoded.awaiting_confirmation is False
        assert decoded.is_set(SubFlag.AWAITING_CONFIRMATION) is False
        assert decoded.flags() == {"awaiting_confirmation": False}

    def test_clear_returns_flag_to_unset_not_false(self):
        cursor = BookingCursor(flow=FlowKind.BOOKING, step_id="name")
        cursor.set_flag(SubFlag.AWAITING_SPELLING)
        cursor.clear_flag(SubFlag.AWAITING_SPELLING)
        assert cursor.awaiting_spelling is UNSET

        cursor.set_flag(SubFlag.ASKED)
        cursor.set_flag(SubFlag.AWAITING_CONFIRMATION)
        cursor.clear_flags()
        assert cursor.flags() == {}

    def test_undeclared_flag_is_rejected(self):
        cursor = BookingCursor(flow=FlowKind.MESSAGE, step_id="message")
        with pytest.raises(ValueError):
            cursor.set_flag(SubFlag.AWAITING_SPELLING, (SubFlag.ASKED,))


class TestStateBlob:
    """Tests for encoding, decoding and copying state."""

    def test_round_trip_keeps_slots_and_cursor(self):
        state = new_state("call-42", "demo", Mode.BOOKING)
        state.turn_count = 2
        state.collected_slots["name"] = SlotValue("Mark Gonzalez", 1.0, SlotSource.UTTERANCE, 2)
        state.booking_cursor = BookingCursor(flow=FlowKind.BOOKING, step_id="phone", attempts=1)
        state.last_prompt = "And what's the best phone number to reach you?"

        decoded = decode_state(encode_state(state))
        assert decoded == state
        assert decoded.slot_value("name") == "Mark Gonzalez"
        assert decoded.cursor().attempts == 1

    def test_decode_accepts_str(self):
        blob = encode_state(new_state("s1", "demo")).decode("utf-8")
        assert decode_state(blob).session_id == "s1"

    def test_unset_optional_fields_are_omitted(self):
        raw = json.loads(encode_state(new_state("s1", "demo")))
        assert "booking_cursor" not in raw
        assert "escalation_reason" not in raw
        assert "last_prompt" not in raw

    def test_garbage_blob_raises_decode_error(self):
        with pytest.raises(StateDecodeError):
            decode_state(b"{not json")

        with pytest.raises(StatePersistenceFailure):
            decode_state(b'{"session_id": 3}')

    def test_clone_is_independent(self):
        state = new_state("s1", "demo")
        state.collected_slots["phone"] = SlotValue("(555) 123-4567", 0.7, SlotSource.CALLER_ID)

        copy = clone_state(state)
        copy.collected_slots.pop("phone")
        copy.mode = Mode.BOOKING

        assert state.has_slot("phone")
        assert state.mode == Mode.DISCOVERY

    def test_terminal_cursor(self):
        assert BookingCursor(flow=FlowKind.BOOKING, step_id=COMPLETE_STEP).terminal
        assert not BookingCursor(flow=FlowKind.BOOKING, step_id="phone").terminal

    def test_cursor_accessor(self):
        state = ConversationState(session_id="s1", tenant_id="demo")
        assert state.cursor() is None
        assert state.slot_values() == {}
