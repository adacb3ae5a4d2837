"""
Per-call conversation state and its wire format.

The state travels between turns as an opaque JSON blob. Sub-step booleans are
tri-state: `msgspec.UNSET` means "never set" and is omitted from the blob, so it
decodes back to UNSET instead of collapsing to False. Clearing a flag means
setting it back to UNSET, never to False.
"""

from enum import Enum
from typing import Dict, Iterable, Optional, Union

import msgspec
from msgspec import UNSET, UnsetType

from src.frontdesk.errors import StateDecodeError
from src.frontdesk.models import FlowKind, Mode, SubFlag

# Terminal / summary cursor positions. Declared step ids may not start with "__".
CONFIRM_STEP = "__confirm__"
COMPLETE_STEP = "__complete__"
ESCALATED_STEP = "__escalated__"
TERMINAL_STEPS = frozenset({COMPLETE_STEP, ESCALATED_STEP})

TriState = Union[bool, UnsetType]


class SlotSource(str, Enum):
    UTTERANCE = "utterance"
    CALLER_ID = "caller_id"
    SPELLED = "spelled"
    CONFIRMED = "confirmed"


class SlotValue(msgspec.Struct):
    value: str
    confidence: float
    source: SlotSource = SlotSource.UTTERANCE
    turn: int = 0


class BookingCursor(msgspec.Struct):
    """Position inside a flow plus the current step's sub-flags."""

    flow: FlowKind
    step_id: str
    attempts: int = 0
    asked: TriState = UNSET
    awaiting_spelling: TriState = UNSET
    awaiting_confirmation: TriState = UNSET

    def flag(self, name: SubFlag) -> TriState:
        return getattr(self, name.value)

    def is_set(self, name: SubFlag) -> bool:
        """True only when the flag is explicitly True."""
        return self.flag(name) is True

    def set_flag(self, name: SubFlag, allowed: Iterable[SubFlag] = tuple(SubFlag)) -> None:
        if name not in tuple(allowed):
            raise ValueError(f"sub-flag '{name.value}' is not declared for step '{self.step_id}'")
        setattr(self, name.value, True)

    def clear_flag(self, name: SubFlag) -> None:
        setattr(self, name.value, UNSET)

    def clear_flags(self) -> None:
        for name in SubFlag:
            self.clear_flag(name)

    def flags(self) -> Dict[str, bool]:
        """Only the flags that are actually present."""
        out = {}
        for name in SubFlag:
            value = self.flag(name)
            if value is not UNSET:
                out[name.value] = value
        return out

    @property
    def terminal(self) -> bool:
        return self.step_id in TERMINAL_STEPS


class ConversationState(msgspec.Struct):
    session_id: str
    tenant_id: str
    mode: Mode = Mode.DISCOVERY
    turn_count: int = 0
    collected_slots: Dict[str, SlotValue] = msgspec.field(default_factory=dict)
    booking_cursor: Union[BookingCursor, UnsetType] = UNSET
    escalation_reason: Union[str, UnsetType] = UNSET
    last_prompt: Union[str, UnsetType] = UNSET
    last_scenario_id: Union[str, UnsetType] = UNSET

    def slot_value(self, key: str) -> Optional[str]:
        slot = self.collected_slots.get(key)
        return slot.value if slot is not None else None

    def has_slot(self, key: str) -> bool:
        return key in self.collected_slots

    def cursor(self) -> Optional[BookingCursor]:
        return None if self.booking_cursor is UNSET else self.booking_cursor

    def slot_values(self) -> Dict[str, str]:
        return {key: slot.value for key, slot in self.collected_slots.items()}


# Global msgspec encoder/decoder
encoder = msgspec.json.Encoder()
decoder = msgspec.json.Decoder(ConversationState)


def encode_state(state: ConversationState) -> bytes:
    return encoder.encode(state)


def decode_state(blob: Union[bytes, str]) -> ConversationState:
    try:
        return decoder.decode(blob)
    except msgspec.DecodeError as e:
        raise StateDecodeError(f"invalid state blob: {e}") from e


def clone_state(state: ConversationState) -> ConversationState:
    """Deep copy through the wire format, so a copy is exactly what would persist."""
    return decoder.decode(encoder.encode(state))


def new_state(session_id: str, tenant_id: str, mode: Mode = Mode.DISCOVERY) -> ConversationState:
    return ConversationState(session_id=session_id, tenant_id=tenant_id, mode=mode)
