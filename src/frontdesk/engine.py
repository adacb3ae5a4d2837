"""
Per-turn orchestration.

`ConversationEngine.process_turn()` is pure with respect to its inputs: it works
on a copy of the loaded state, holds no per-session data between calls and does
no I/O. Loading/saving state and pulling tenant configuration happen in
`src.frontdesk.service.TurnService`.

Order of decisions for one utterance:
1. triage rules (deterministic, may short-circuit via a playbook)
2. the active flow, when the mode is booking / afterhours / vendor
3. otherwise scenario selection, which may start the booking flow
4. nothing matched -> NO_MATCH with an empty reply (the caller's LLM tier answers)
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from src.frontdesk.booking import (
    BookingFlowRunner,
    OutcomeKind,
    RunnerDefaults,
    StepOutcome,
    flow_for,
)
from src.frontdesk.errors import StateMismatchError
from src.frontdesk.models import (
    FlowDefinition,
    FlowKind,
    Mode,
    Scenario,
    TenantConfig,
    TenantSettings,
    TriageAction,
    TriageRule,
)
from src.frontdesk.names import get_name_validator
from src.frontdesk.scenarios import ScenarioSelector, choose_reply
from src.frontdesk.slots import SlotExtractor, format_phone
from src.frontdesk.state import (
    ConversationState,
    SlotSource,
    SlotValue,
    clone_state,
    new_state,
)
from src.frontdesk.text import (
    apply_synonyms,
    normalize,
    redact_for_logs,
    render_placeholders,
)
from src.frontdesk.triage import TriageMatcher

logger = structlog.get_logger(__name__)

CALLER_ID_CONFIDENCE = 0.7

_FLOW_MODES: Dict[Mode, FlowKind] = {
    Mode.BOOKING: FlowKind.BOOKING,
    Mode.AFTERHOURS: FlowKind.MESSAGE,
    Mode.VENDOR: FlowKind.MESSAGE,
}


class TurnAction(str, Enum):
    """What the transport should do with the reply."""

    RESPOND = "respond"
    ASK = "ask"
    BOOKING_COMPLETE = "booking_complete"
    MESSAGE_TAKEN = "message_taken"
    ESCALATE = "escalate"
    END_CALL = "end_call"
    NO_MATCH = "no_match"
    REPEAT_LAST_PROMPT = "repeat_last_prompt"


@dataclass(frozen=True)
class TenantContext:
    """Everything tenant-specific a turn needs, resolved by the caller."""

    tenant: TenantConfig
    pool: Sequence[Scenario]

    @property
    def settings(self) -> TenantSettings:
        return self.tenant.settings

    @property
    def triage_rules(self) -> Sequence[TriageRule]:
        return self.tenant.triage_rules

    def flow(self, kind: FlowKind) -> FlowDefinition:
        return flow_for(self.tenant, kind)

    def variables(self) -> Dict[str, str]:
        return self.tenant.variables()


@dataclass
class TurnTrace:
    """Observability record for one turn."""

    triage_rule_id: Optional[str] = None
    scenario_id: Optional[str] = None
    confidence: float = 0.0
    alternates: List[Tuple[str, float]] = field(default_factory=list)
    ambiguous: bool = False
    outcome: Optional[str] = None
    step_id: Optional[str] = None
    captured: List[str] = field(default_factory=list)


@dataclass
class TurnResult:
    reply_text: str
    state: ConversationState
    action: TurnAction
    trace: TurnTrace = field(default_factory=TurnTrace)


@dataclass
class _Turn:
    utterance: str
    normalized: str
    state: ConversationState
    context: TenantContext
    trace: TurnTrace


def _join(*parts: str) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


class ConversationEngine:
    """Combines triage, scenario selection and the booking flow into one reply per turn."""

    def __init__(
        self,
        *,
        runner: BookingFlowRunner,
        selector: Optional[ScenarioSelector] = None,
        triage: Optional[TriageMatcher] = None,
    ):
        self.runner = runner
        self.selector = selector or ScenarioSelector()
        self.triage = triage or TriageMatcher()

    @classmethod
    def from_config(cls, config) -> "ConversationEngine":
        validator = get_name_validator(config.names_dir or None)
        extractor = SlotExtractor(validator, explicit_floor=config.explicit_name_floor)
        return cls(
            runner=BookingFlowRunner(extractor, RunnerDefaults.from_config(config)),
            selector=ScenarioSelector.from_config(config),
        )

    def process_turn(
        self,
        tenant_id: str,
        session_id: str,
        utterance: str,
        loaded_state: Optional[ConversationState],
        context: TenantContext,
        *,
        caller_phone: Optional[str] = None,
        mode: Optional[Mode] = None,
    ) -> TurnResult:
        if loaded_state is None:
            state = new_state(session_id, tenant_id, mode or context.settings.initial_mode)
            self._seed_caller_id(state, caller_phone)
        else:
            if loaded_state.tenant_id != tenant_id or loaded_state.session_id != session_id:
                raise StateMismatchError(
                    f"state belongs to {loaded_state.tenant_id}/{loaded_state.session_id}, "
                    f"not {tenant_id}/{session_id}"
                )
            state = clone_state(loaded_state)

        state.turn_count += 1
        normalized = apply_synonyms(normalize(utterance), context.settings.synonyms)
        turn = _Turn(utterance or "", normalized, state, context, TurnTrace())

        logger.debug(
            "Processing turn",
            tenant_id=tenant_id,
            session_id=session_id,
            turn=state.turn_count,
            mode=state.mode.value,
            utterance=redact_for_logs(utterance or ""),
        )

        result = self._triage(turn)
        if result is None:
            if state.mode in _FLOW_MODES:
                result = self._continue_flow(turn)
            else:
                result = self._discover(turn)

        if result.reply_text:
            result.state.last_prompt = result.reply_text

        logger.info(
            "Turn processed",
            tenant_id=tenant_id,
            session_id=session_id,
            turn=state.turn_count,
            action=result.action.value,
            mode=state.mode.value,
            triage_rule=result.trace.triage_rule_id,
            scenario=result.trace.scenario_id,
            confidence=result.trace.confidence,
            step=result.trace.step_id,
        )
        return result

    # ----------------------------------------------------------------- layers

    def _triage(self, turn: _Turn) -> Optional[TurnResult]:
        if not turn.normalized:
            return None
        rule = self.triage.match(turn.normalized, turn.context.triage_rules)
        if rule is None:
            return None
        turn.trace.triage_rule_id = rule.id
        playbook = _PLAYBOOKS[rule.action]
        return playbook(self, turn, rule)

    def _continue_flow(self, turn: _Turn) -> TurnResult:
        kind = _FLOW_MODES[turn.state.mode]
        outcome = self.runner.run(
            turn.state, turn.context.flow(kind), turn.utterance, turn.context.settings
        )
        return self._flow_result(turn, outcome, kind)

    def _discover(self, turn: _Turn) -> TurnResult:
        state, context = turn.state, turn.context
        booking_flow = context.flow(FlowKind.BOOKING)

        captured = self.runner.capture(state, booking_flow, turn.utterance, context.settings)
        turn.trace.captured = [c.kind.value for c in captured]

        selection = self.selector.select(
            turn.normalized,
            context.pool,
            filler_words=context.settings.filler_words,
            default_threshold=context.settings.default_confidence_threshold,
        )
        turn.trace.confidence = selection.confidence
        turn.trace.alternates = [(a.scenario.id, a.confidence) for a in selection.alternates]
        turn.trace.ambiguous = selection.ambiguity is not None

        if not selection.matched:
            return TurnResult("", state, TurnAction.NO_MATCH, turn.trace)

        scenario = selection.scenario
        turn.trace.scenario_id = scenario.id
        state.last_scenario_id = scenario.id
        reply = choose_reply(scenario, state.turn_count, context.variables())

        if not scenario.starts_booking:
            return TurnResult(reply, state, TurnAction.RESPOND, turn.trace)

        reply = reply or self._render(turn, context.settings.booking_intro)
        state.mode = Mode.BOOKING
        outcome = self.runner.run(state, booking_flow, turn.utterance, context.settings)
        result = self._flow_result(turn, outcome, FlowKind.BOOKING)
        result.reply_text = _join(reply, result.reply_text)
        return result

    def _flow_result(self, turn: _Turn, outcome: StepOutcome, kind: FlowKind) -> TurnResult:
        turn.trace.outcome = outcome.kind.value
        turn.trace.step_id = outcome.step_id
        turn.trace.captured.extend(c.kind.value for c in outcome.accepted)
        if outcome.kind == OutcomeKind.ESCALATE:
            action = TurnAction.ESCALATE
        elif outcome.kind == OutcomeKind.COMPLETE:
            action = TurnAction.BOOKING_COMPLETE if kind == FlowKind.BOOKING else TurnAction.MESSAGE_TAKEN
        else:
            action = TurnAction.ASK
        return TurnResult(outcome.reply_text, turn.state, action, turn.trace)

    def _seed_caller_id(self, state: ConversationState, caller_phone: Optional[str]) -> None:
        digits = re.sub(r"\D+", "", caller_phone or "")
        if len(digits) == 11 and digits.startswith("1"):
            digits = digits[1:]
        if len(digits) != 10:
            return
        state.collected_slots["phone"] = SlotValue(
            value=format_phone(digits),
            confidence=CALLER_ID_CONFIDENCE,
            source=SlotSource.CALLER_ID,
            turn=0,
        )

    # -------------------------------------------------------------- playbooks

    def _play_route_to_scenarios(self, turn: _Turn, rule: TriageRule) -> Optional[TurnResult]:
        return None

    def _play_explain_and_push(self, turn: _Turn, rule: TriageRule) -> TurnResult:
        # Mid-booking, repeat the open step as-is.
        flow = turn.context.flow(FlowKind.BOOKING)
        turn.state.mode = Mode.BOOKING
        outcome = self.runner.pending(turn.state, flow, turn.context.settings)
        if outcome is None:
            outcome = self.runner.run(turn.state, flow, turn.utterance, turn.context.settings)
        result = self._flow_result(turn, outcome, FlowKind.BOOKING)
        result.reply_text = _join(self._render(turn, rule.reply), result.reply_text)
        return result

    def _play_escalate(self, turn: _Turn, rule: TriageRule) -> TurnResult:
        turn.state.escalation_reason = f"triage:{rule.id}"
        reply = self._render(turn, rule.reply or turn.context.settings.triage_transfer_message)
        return TurnResult(reply, turn.state, TurnAction.ESCALATE, turn.trace)

    def _play_take_message(self, turn: _Turn, rule: TriageRule) -> TurnResult:
        if turn.state.mode != Mode.VENDOR:
            turn.state.mode = Mode.AFTERHOURS
        outcome = self.runner.run(
            turn.state, turn.context.flow(FlowKind.MESSAGE), turn.utterance, turn.context.settings
        )
        result = self._flow_result(turn, outcome, FlowKind.MESSAGE)
        intro = rule.reply or turn.context.settings.take_message_intro
        result.reply_text = _join(self._render(turn, intro), result.reply_text)
        return result

    def _play_end_call(self, turn: _Turn, rule: TriageRule) -> TurnResult:
        reply = self._render(turn, rule.reply or turn.context.settings.goodbye_message)
        return TurnResult(reply, turn.state, TurnAction.END_CALL, turn.trace)

    def _render(self, turn: _Turn, template: str) -> str:
        return render_placeholders(template, turn.context.variables())


_PLAYBOOKS: Dict[TriageAction, Callable[[ConversationEngine, _Turn, TriageRule], Optional[TurnResult]]] = {
    TriageAction.ROUTE_TO_SCENARIOS: ConversationEngine._play_route_to_scenarios,
    TriageAction.EXPLAIN_AND_PUSH: ConversationEngine._play_explain_and_push,
    TriageAction.ESCALATE: ConversationEngine._play_escalate,
    TriageAction.TAKE_MESSAGE: ConversationEngine._play_take_message,
    TriageAction.END_CALL: ConversationEngine._play_end_call,
}

def check_playbooks(playbooks: Dict[TriageAction, Callable]) -> None:
    missing = set(TriageAction) - set(playbooks)
    if missing:
        raise RuntimeError(f"triage actions without a playbook: {sorted(a.value for a in missing)}")


check_playbooks(_PLAYBOOKS)
