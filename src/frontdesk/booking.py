"""
Slot-filling state machine for booking and message-taking flows.

Per step: AskPrompt -> AwaitUtterance -> Extract -> Validate, then one of
Advance, Reprompt, SpellingFallback or Escalate. After the last declared step the
cursor moves to a read-back confirmation, then to completion.

Progress rules:
- the cursor only moves forward through the declared steps, or to a terminal
  position (complete / escalated)
- a turn that does not move the cursor increments the attempt counter, except
  the very first ask of a step
- reaching the attempt ceiling escalates, whatever the utterance contains
- sub-flags are cleared by deletion (UNSET), never by writing False
- starting a completed flow again opens a new booking: the caller's name and
  phone carry over, the rest of the previous booking is dropped
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import structlog
from msgspec import UNSET

from src.frontdesk.errors import FailureReason
from src.frontdesk.models import (
    BookingStepDefinition,
    FlowDefinition,
    FlowKind,
    Mode,
    SlotKind,
    SubFlag,
    TenantConfig,
    TenantSettings,
)
from src.frontdesk.slots import SlotCandidate, SlotExtractor
from src.frontdesk.state import (
    COMPLETE_STEP,
    CONFIRM_STEP,
    ESCALATED_STEP,
    BookingCursor,
    ConversationState,
    SlotSource,
    SlotValue,
)
from src.frontdesk.text import is_affirmative, is_negative, render_placeholders

logger = structlog.get_logger(__name__)

FIRST_NAME_SLOT = "firstName"
LAST_NAME_SLOT = "lastName"

_IDENTITY_KINDS = (SlotKind.NAME, SlotKind.LAST_NAME, SlotKind.PHONE)


DEFAULT_BOOKING_FLOW = FlowDefinition(
    kind=FlowKind.BOOKING,
    steps=(
        BookingStepDefinition(id="name", slot="name", kind=SlotKind.NAME),
        BookingStepDefinition(id="lastName", slot=LAST_NAME_SLOT, kind=SlotKind.LAST_NAME),
        BookingStepDefinition(id="phone", slot="phone", kind=SlotKind.PHONE),
        BookingStepDefinition(id="address", slot="address", kind=SlotKind.ADDRESS),
        BookingStepDefinition(id="time", slot="time", kind=SlotKind.TIME),
    ),
)

DEFAULT_MESSAGE_FLOW = FlowDefinition(
    kind=FlowKind.MESSAGE,
    steps=(
        BookingStepDefinition(id="name", slot="name", kind=SlotKind.NAME),
        BookingStepDefinition(id="phone", slot="phone", kind=SlotKind.PHONE),
        BookingStepDefinition(
            id="message",
            slot="message",
            kind=SlotKind.FREE_TEXT,
            sub_flags=(SubFlag.ASKED,),
        ),
    ),
    confirmation_template=(
        "Let me read that back. This is {name} at {phone}, and the message is: {message}. "
        "Did I get that right?"
    ),
    completion_template=(
        "Thank you. I'll make sure they get your message and someone will call you back. "
        "Is there anything else I can help you with?"
    ),
)

DEFAULT_FLOWS: Dict[FlowKind, FlowDefinition] = {
    FlowKind.BOOKING: DEFAULT_BOOKING_FLOW,
    FlowKind.MESSAGE: DEFAULT_MESSAGE_FLOW,
}


def flow_for(tenant: TenantConfig, kind: FlowKind) -> FlowDefinition:
    return tenant.flows.get(kind) or DEFAULT_FLOWS[kind]


class OutcomeKind(str, Enum):
    ASK = "ask"
    REPROMPT = "reprompt"
    SPELLING_FALLBACK = "spelling_fallback"
    CONFIRM_VALUE = "confirm_value"
    CONFIRM_SUMMARY = "confirm_summary"
    COMPLETE = "complete"
    ESCALATE = "escalate"


@dataclass
class StepOutcome:
    """What one turn of the flow produced."""

    kind: OutcomeKind
    reply_text: str
    step_id: str
    accepted: List[SlotCandidate] = field(default_factory=list)
    reason: Optional[FailureReason] = None

    @property
    def terminal(self) -> bool:
        return self.kind in (OutcomeKind.COMPLETE, OutcomeKind.ESCALATE)


@dataclass(frozen=True)
class RunnerDefaults:
    acceptance_threshold: float = 0.6
    explicit_floor: float = 0.4
    auto_confirm_threshold: float = 0.85
    max_attempts: int = 3
    spelling_fallback_after: int = 2

    @classmethod
    def from_config(cls, config) -> "RunnerDefaults":
        return cls(
            acceptance_threshold=config.default_acceptance_threshold,
            explicit_floor=config.explicit_name_floor,
            auto_confirm_threshold=config.auto_confirm_threshold,
            max_attempts=config.default_max_attempts,
            spelling_fallback_after=config.default_spelling_fallback_after,
        )


@dataclass(frozen=True)
class StepPolicy:
    max_attempts: int
    spelling_fallback_after: Optional[int]
    acceptance_threshold: float


class BookingFlowRunner:
    """Drives a `FlowDefinition` one utterance at a time, mutating the given state."""

    def __init__(self, extractor: SlotExtractor, defaults: RunnerDefaults = RunnerDefaults()):
        self.extractor = extractor
        self.defaults = defaults

    def policy(self, step: Optional[BookingStepDefinition], settings: TenantSettings) -> StepPolicy:
        def pick(step_value, tenant_value, default):
            if step_value is not None:
                return step_value
            if tenant_value is not None:
                return tenant_value
            return default

        return StepPolicy(
            max_attempts=pick(
                step.max_attempts if step else None,
                settings.default_max_attempts,
                self.defaults.max_attempts,
            ),
            spelling_fallback_after=(
                pick(
                    step.spelling_fallback_after,
                    settings.default_spelling_fallback_after,
                    self.defaults.spelling_fallback_after,
                )
                if step is not None and step.spellable
                else None
            ),
            acceptance_threshold=pick(
                step.acceptance_threshold if step else None,
                settings.default_acceptance_threshold,
                self.defaults.acceptance_threshold,
            ),
        )

    # ----------------------------------------------------------------- entry

    def run(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        utterance: str,
        settings: TenantSettings,
    ) -> StepOutcome:
        cursor = state.cursor()
        if cursor is not None and cursor.flow == flow.kind and cursor.step_id == COMPLETE_STEP:
            self._clear_previous(state, flow)
            return self.start(state, flow, utterance, settings)
        if cursor is None or cursor.flow != flow.kind:
            return self.start(state, flow, utterance, settings)

        if cursor.step_id == ESCALATED_STEP:
            return StepOutcome(
                OutcomeKind.ESCALATE, self._render(settings.transfer_message, settings), ESCALATED_STEP
            )

        if cursor.step_id == CONFIRM_STEP:
            return self._handle_summary(state, flow, cursor, utterance, settings)

        step = flow.step(cursor.step_id)
        if step is None:
            logger.warning(
                "Cursor points at a step the flow no longer declares",
                session_id=state.session_id,
                step_id=cursor.step_id,
                flow=flow.kind.value,
            )
            return self._escalate(
                state, cursor, cursor.step_id, FailureReason.ATTEMPTS_EXHAUSTED, settings,
                detail="unknown_step",
            )

        policy = self.policy(step, settings)
        if cursor.attempts >= policy.max_attempts:
            return self._escalate(state, cursor, step.id, FailureReason.ATTEMPTS_EXHAUSTED, settings)

        if cursor.is_set(SubFlag.AWAITING_CONFIRMATION):
            return self._handle_value_confirmation(state, flow, cursor, step, policy, utterance, settings)

        candidate = self.extractor.extract(
            step.kind,
            utterance,
            expecting=True,
            spelling=cursor.is_set(SubFlag.AWAITING_SPELLING),
        )
        if candidate is not None:
            candidate.attempt = cursor.attempts
            if self.extractor.validate(candidate, policy.acceptance_threshold):
                return self._accept(state, flow, step, candidate, utterance, settings)

        reason = (
            FailureReason.EXTRACTION_FAILURE if candidate is None else FailureReason.VALIDATION_REJECTED
        )
        return self._reject(state, flow, cursor, step, policy, reason, settings)

    def start(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        utterance: str,
        settings: TenantSettings,
    ) -> StepOutcome:
        """Position on the first step that still needs data and try the entry utterance on it."""
        logger.info(
            "Flow started",
            session_id=state.session_id,
            flow=flow.kind.value,
            prefilled=sorted(state.collected_slots),
        )
        return self._advance_from(state, flow, 0, utterance, settings, [])

    def pending(
        self, state: ConversationState, flow: FlowDefinition, settings: TenantSettings
    ) -> Optional[StepOutcome]:
        """
        Repeat the question the caller still owes an answer to.

        Returns None when the flow has not asked anything yet (no cursor, another
        flow, completed, or a step that was never asked), in which case the caller
        should `run` the flow instead. Nothing is extracted and attempts are
        left alone.
        """
        cursor = state.cursor()
        if cursor is None or cursor.flow != flow.kind or cursor.step_id == COMPLETE_STEP:
            return None

        if cursor.step_id == ESCALATED_STEP:
            return StepOutcome(
                OutcomeKind.ESCALATE, self._render(settings.transfer_message, settings), ESCALATED_STEP
            )
        if cursor.step_id == CONFIRM_STEP:
            reply = self._render(flow.confirmation_template, settings, state, flow)
            return StepOutcome(OutcomeKind.CONFIRM_SUMMARY, reply, CONFIRM_STEP)

        step = flow.step(cursor.step_id)
        if step is None or not cursor.is_set(SubFlag.ASKED):
            return None

        existing = state.collected_slots.get(step.slot)
        if cursor.is_set(SubFlag.AWAITING_CONFIRMATION) and existing is not None:
            reply = render_placeholders(step.confirm_prompt_text(), {"value": existing.value})
            return StepOutcome(OutcomeKind.CONFIRM_VALUE, reply, step.id)
        if cursor.is_set(SubFlag.AWAITING_SPELLING):
            return StepOutcome(OutcomeKind.ASK, step.spelling_prompt_text(), step.id)
        return StepOutcome(OutcomeKind.ASK, step.prompt_text(), step.id)

    def capture(
        self, state: ConversationState, flow: FlowDefinition, utterance: str, settings: TenantSettings
    ) -> List[SlotCandidate]:
        """Store explicitly stated values outside the flow, never over a more confident value."""
        captured = []
        for candidate in self.extractor.extract_all(utterance):
            step = flow.first_of_kind(candidate.kind)
            if step is None:
                continue
            if not self.extractor.validate(candidate, self.policy(step, settings).acceptance_threshold):
                continue
            existing = state.collected_slots.get(step.slot)
            if existing is not None and existing.confidence >= candidate.score:
                continue
            self._store(state, flow, step, candidate)
            captured.append(candidate)
        return captured

    # ------------------------------------------------------------ transitions

    def _advance_from(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        start: int,
        utterance: str,
        settings: TenantSettings,
        accepted: List[SlotCandidate],
    ) -> StepOutcome:
        for step in flow.steps[start:]:
            policy = self.policy(step, settings)
            if self._satisfied(state, flow, step):
                continue

            cursor = BookingCursor(flow=flow.kind, step_id=step.id)
            state.booking_cursor = cursor

            existing = state.collected_slots.get(step.slot)
            if existing is not None:
                return self._ask_value_confirmation(cursor, step, existing.value, accepted)

            if utterance:
                candidate = self.extractor.extract(step.kind, utterance, expecting=False)
                if candidate is not None and self.extractor.validate(
                    candidate, policy.acceptance_threshold
                ):
                    self._store(state, flow, step, candidate)
                    accepted.append(candidate)
                    continue

            return self._ask(cursor, step, accepted)

        return self._finish(state, flow, settings, accepted)

    def _satisfied(
        self, state: ConversationState, flow: FlowDefinition, step: BookingStepDefinition
    ) -> bool:
        slot = state.collected_slots.get(step.slot)
        if slot is None:
            if step.kind == SlotKind.LAST_NAME:
                full = state.slot_value(self._name_key(flow))
                return bool(full) and len(full.split()) >= 2
            return False
        if SubFlag.AWAITING_CONFIRMATION not in step.sub_flags:
            return True
        if slot.source == SlotSource.CALLER_ID:
            return False
        return (
            slot.source in (SlotSource.CONFIRMED, SlotSource.SPELLED)
            or slot.confidence >= self.defaults.auto_confirm_threshold
        )

    def _ask(
        self, cursor: BookingCursor, step: BookingStepDefinition, accepted: List[SlotCandidate]
    ) -> StepOutcome:
        cursor.set_flag(SubFlag.ASKED, step.sub_flags)
        return StepOutcome(OutcomeKind.ASK, step.prompt_text(), step.id, accepted)

    def _ask_value_confirmation(
        self,
        cursor: BookingCursor,
        step: BookingStepDefinition,
        value: str,
        accepted: List[SlotCandidate],
    ) -> StepOutcome:
        cursor.set_flag(SubFlag.ASKED, step.sub_flags)
        cursor.set_flag(SubFlag.AWAITING_CONFIRMATION, step.sub_flags)
        reply = render_placeholders(step.confirm_prompt_text(), {"value": value})
        return StepOutcome(OutcomeKind.CONFIRM_VALUE, reply, step.id, accepted)

    def _accept(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        step: BookingStepDefinition,
        candidate: SlotCandidate,
        utterance: str,
        settings: TenantSettings,
    ) -> StepOutcome:
        self._store(state, flow, step, candidate)
        logger.info(
            "Step completed",
            session_id=state.session_id,
            step_id=step.id,
            pattern=candidate.pattern,
            score=candidate.score,
            source=candidate.source.value,
        )
        return self._advance_from(
            state, flow, flow.index_of(step.id) + 1, utterance, settings, [candidate]
        )

    def _reject(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        cursor: BookingCursor,
        step: BookingStepDefinition,
        policy: StepPolicy,
        reason: FailureReason,
        settings: TenantSettings,
    ) -> StepOutcome:
        if not cursor.is_set(SubFlag.ASKED):
            return self._ask(cursor, step, [])

        if step.escalate_on_first_failure:
            return self._escalate(state, cursor, step.id, reason, settings)

        if not step.required:
            logger.info("Optional step skipped", session_id=state.session_id, step_id=step.id)
            return self._advance_from(state, flow, flow.index_of(step.id) + 1, "", settings, [])

        cursor.attempts += 1
        if cursor.attempts >= policy.max_attempts:
            return self._escalate(state, cursor, step.id, FailureReason.ATTEMPTS_EXHAUSTED, settings)

        logger.info(
            "Step rejected",
            session_id=state.session_id,
            step_id=step.id,
            reason=reason.value,
            attempts=cursor.attempts,
            max_attempts=policy.max_attempts,
        )

        if (
            policy.spelling_fallback_after is not None
            and SubFlag.AWAITING_SPELLING in step.sub_flags
            and cursor.attempts >= policy.spelling_fallback_after
        ):
            switching = not cursor.is_set(SubFlag.AWAITING_SPELLING)
            cursor.set_flag(SubFlag.AWAITING_SPELLING, step.sub_flags)
            return StepOutcome(
                OutcomeKind.SPELLING_FALLBACK if switching else OutcomeKind.REPROMPT,
                step.spelling_prompt_text(),
                step.id,
                reason=reason,
            )

        return StepOutcome(OutcomeKind.REPROMPT, step.reprompt_text(), step.id, reason=reason)

    def _handle_value_confirmation(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        cursor: BookingCursor,
        step: BookingStepDefinition,
        policy: StepPolicy,
        utterance: str,
        settings: TenantSettings,
    ) -> StepOutcome:
        existing = state.collected_slots.get(step.slot)

        # "No, it's 555 867 5309" carries the correction in the same breath.
        # Repeating the held value back counts as a yes.
        candidate = self.extractor.extract(step.kind, utterance, expecting=False)
        if candidate is not None and self.extractor.validate(candidate, policy.acceptance_threshold):
            if existing is None or candidate.value.casefold() != existing.value.casefold():
                return self._accept(state, flow, step, candidate, "", settings)
            return self._confirm_existing(state, flow, step, existing, settings)

        if existing is not None and is_affirmative(utterance):
            return self._confirm_existing(state, flow, step, existing, settings)

        cursor.attempts += 1
        declined = existing is None or is_negative(utterance)
        reason = FailureReason.CALLER_DECLINED if declined else FailureReason.EXTRACTION_FAILURE
        if cursor.attempts >= policy.max_attempts:
            return self._escalate(state, cursor, step.id, FailureReason.ATTEMPTS_EXHAUSTED, settings)

        if declined:
            state.collected_slots.pop(step.slot, None)
            cursor.clear_flag(SubFlag.AWAITING_CONFIRMATION)
            return StepOutcome(OutcomeKind.REPROMPT, step.prompt_text(), step.id, reason=reason)

        reply = render_placeholders(step.confirm_prompt_text(), {"value": existing.value})
        return StepOutcome(OutcomeKind.CONFIRM_VALUE, reply, step.id, reason=reason)

    def _confirm_existing(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        step: BookingStepDefinition,
        existing: SlotValue,
        settings: TenantSettings,
    ) -> StepOutcome:
        state.collected_slots[step.slot] = SlotValue(
            value=existing.value,
            confidence=1.0,
            source=SlotSource.CONFIRMED,
            turn=state.turn_count,
        )
        logger.info("Value confirmed", session_id=state.session_id, step_id=step.id)
        return self._advance_from(state, flow, flow.index_of(step.id) + 1, "", settings, [])

    def _finish(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        settings: TenantSettings,
        accepted: List[SlotCandidate],
    ) -> StepOutcome:
        if not flow.confirm_summary:
            return self._complete(state, flow, settings, accepted)
        cursor = BookingCursor(flow=flow.kind, step_id=CONFIRM_STEP)
        cursor.set_flag(SubFlag.ASKED)
        state.booking_cursor = cursor
        reply = self._render(flow.confirmation_template, settings, state, flow)
        return StepOutcome(OutcomeKind.CONFIRM_SUMMARY, reply, CONFIRM_STEP, accepted)

    def _handle_summary(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        cursor: BookingCursor,
        utterance: str,
        settings: TenantSettings,
    ) -> StepOutcome:
        policy = self.policy(None, settings)
        if cursor.attempts >= policy.max_attempts:
            return self._escalate(state, cursor, CONFIRM_STEP, FailureReason.ATTEMPTS_EXHAUSTED, settings)
        if is_negative(utterance):
            return self._escalate(
                state, cursor, CONFIRM_STEP, FailureReason.CALLER_DECLINED, settings,
                detail="caller_rejected_summary",
            )
        if is_affirmative(utterance):
            return self._complete(state, flow, settings, [])

        cursor.attempts += 1
        if cursor.attempts >= policy.max_attempts:
            return self._escalate(state, cursor, CONFIRM_STEP, FailureReason.ATTEMPTS_EXHAUSTED, settings)
        return StepOutcome(
            OutcomeKind.REPROMPT,
            flow.summary_reprompt,
            CONFIRM_STEP,
            reason=FailureReason.EXTRACTION_FAILURE,
        )

    def _complete(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        settings: TenantSettings,
        accepted: List[SlotCandidate],
    ) -> StepOutcome:
        state.booking_cursor = BookingCursor(flow=flow.kind, step_id=COMPLETE_STEP)
        state.mode = Mode.DISCOVERY
        logger.info(
            "Flow completed",
            session_id=state.session_id,
            flow=flow.kind.value,
            slots=sorted(state.collected_slots),
        )
        reply = self._render(flow.completion_template, settings, state, flow)
        return StepOutcome(OutcomeKind.COMPLETE, reply, COMPLETE_STEP, accepted)

    def _escalate(
        self,
        state: ConversationState,
        cursor: BookingCursor,
        step_id: str,
        reason: FailureReason,
        settings: TenantSettings,
        *,
        detail: Optional[str] = None,
    ) -> StepOutcome:
        state.booking_cursor = BookingCursor(
            flow=cursor.flow, step_id=ESCALATED_STEP, attempts=cursor.attempts
        )
        state.escalation_reason = f"{detail or reason.value}:{step_id}"
        logger.warning(
            "Flow escalated",
            session_id=state.session_id,
            step_id=step_id,
            reason=state.escalation_reason,
            attempts=cursor.attempts,
        )
        return StepOutcome(
            OutcomeKind.ESCALATE,
            self._render(settings.transfer_message, settings),
            ESCALATED_STEP,
            reason=reason,
        )

    # ---------------------------------------------------------------- storage

    def _clear_previous(self, state: ConversationState, flow: FlowDefinition) -> None:
        """
        A completed flow that starts again is a new booking. The caller's name and
        phone carry over; everything else the last booking collected is dropped,
        except values captured on the current turn.
        """
        dropped = []
        for step in flow.steps:
            if step.kind in _IDENTITY_KINDS:
                continue
            slot = state.collected_slots.get(step.slot)
            if slot is not None and slot.turn != state.turn_count:
                del state.collected_slots[step.slot]
                dropped.append(step.slot)
        state.booking_cursor = UNSET
        logger.info(
            "Previous flow cleared",
            session_id=state.session_id,
            flow=flow.kind.value,
            dropped=dropped,
        )

    def _name_key(self, flow: FlowDefinition) -> str:
        step = flow.first_of_kind(SlotKind.NAME)
        return step.slot if step else "name"

    def _store(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        step: BookingStepDefinition,
        candidate: SlotCandidate,
    ) -> None:
        turn = state.turn_count

        def put(key: str, value: str, confidence: float = candidate.score) -> None:
            state.collected_slots[key] = SlotValue(
                value=value, confidence=confidence, source=candidate.source, turn=turn
            )

        if step.kind == SlotKind.NAME:
            parts = candidate.parts
            put(step.slot, candidate.value)
            put(FIRST_NAME_SLOT, parts[0])
            if len(parts) >= 2:
                last_step = flow.first_of_kind(SlotKind.LAST_NAME)
                put(last_step.slot if last_step else LAST_NAME_SLOT, parts[-1])
        elif step.kind == SlotKind.LAST_NAME:
            put(step.slot, candidate.value)
            name_key = self._name_key(flow)
            first = state.slot_value(FIRST_NAME_SLOT) or state.slot_value(name_key)
            if first:
                existing = state.collected_slots.get(FIRST_NAME_SLOT) or state.collected_slots[name_key]
                put(
                    name_key,
                    f"{first.split()[0]} {candidate.value}",
                    min(existing.confidence, candidate.score),
                )
            else:
                put(name_key, candidate.value)
        else:
            put(step.slot, candidate.value)

    def _render(
        self,
        template: str,
        settings: TenantSettings,
        state: Optional[ConversationState] = None,
        flow: Optional[FlowDefinition] = None,
    ) -> str:
        variables: Dict[str, str] = {"company_name": settings.company_name}
        variables.update(settings.variables)
        if flow is not None:
            variables.update({s.slot: "not provided" for s in flow.steps})
        if state is not None:
            variables.update(state.slot_values())
        return render_placeholders(template, variables)
