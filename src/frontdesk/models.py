"""
Tenant configuration models.

Scenarios, triage rules and booking flows arrive from a configuration source as
JSON and are validated here with pydantic. Unknown fields (legacy `status`,
`isActive`, admin metadata) are ignored: `enabled` is the only inclusion gate.
"""

from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Mode(str, Enum):
    """Top-level conversation mode."""

    DISCOVERY = "discovery"
    BOOKING = "booking"
    AFTERHOURS = "afterhours"
    VENDOR = "vendor"


class TriageAction(str, Enum):
    """Closed set of triage outcomes. Every member needs a playbook in the engine."""

    ROUTE_TO_SCENARIOS = "route_to_scenarios"
    EXPLAIN_AND_PUSH = "explain_and_push"
    ESCALATE = "escalate"
    TAKE_MESSAGE = "take_message"
    END_CALL = "end_call"


class SlotKind(str, Enum):
    NAME = "name"
    LAST_NAME = "last_name"
    PHONE = "phone"
    ADDRESS = "address"
    EMAIL = "email"
    TIME = "time"
    FREE_TEXT = "free_text"


SPELLABLE_KINDS = frozenset({SlotKind.NAME, SlotKind.LAST_NAME, SlotKind.EMAIL})


class FlowKind(str, Enum):
    BOOKING = "booking"
    MESSAGE = "message"


class SubFlag(str, Enum):
    """Per-step booleans kept on the booking cursor."""

    ASKED = "asked"
    AWAITING_SPELLING = "awaiting_spelling"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


# (prompt, reprompt) per slot kind.
DEFAULT_PROMPTS: Dict[SlotKind, Tuple[str, str]] = {
    SlotKind.NAME: (
        "May I have your name, please?",
        "I didn't quite catch that. Could you tell me your name?",
    ),
    SlotKind.LAST_NAME: (
        "And what's your last name?",
        "Sorry, could you repeat your last name?",
    ),
    SlotKind.PHONE: (
        "And what's the best phone number to reach you?",
        "I'm sorry, I didn't get that number. Can you repeat your phone number?",
    ),
    SlotKind.ADDRESS: (
        "What is the service address?",
        "I want to make sure I have the right address. Can you say it one more time?",
    ),
    SlotKind.EMAIL: (
        "What's your email address?",
        "Sorry, could you say your email address again?",
    ),
    SlotKind.TIME: (
        "When would work best for you?",
        "Would a morning or an afternoon work better for you?",
    ),
    SlotKind.FREE_TEXT: (
        "What message would you like me to pass along?",
        "Sorry, what would you like the message to say?",
    ),
}

DEFAULT_SPELLING_PROMPTS: Dict[SlotKind, str] = {
    SlotKind.NAME: "Could you spell your name for me, letter by letter?",
    SlotKind.LAST_NAME: "Could you spell your last name for me, letter by letter?",
    SlotKind.EMAIL: "Could you spell your email address for me, letter by letter?",
}

DEFAULT_CONFIRM_PROMPTS: Dict[SlotKind, str] = {
    SlotKind.NAME: "I have your name as {value}. Is that correct?",
    SlotKind.LAST_NAME: "I have your last name as {value}. Is that correct?",
    SlotKind.PHONE: "I can send confirmations to {value}. Is this the best number to reach you?",
    SlotKind.ADDRESS: "I have the service address as {value}. Is that right?",
    SlotKind.EMAIL: "I have your email as {value}. Is that correct?",
    SlotKind.TIME: "I have you down for {value}. Does that work?",
    SlotKind.FREE_TEXT: "I have your message as: {value}. Is that right?",
}

RESERVED_STEP_PREFIX = "__"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class BookingStepDefinition(_ConfigModel):
    """One step of a slot-filling flow."""

    id: str
    slot: str
    kind: SlotKind
    prompt: Optional[str] = None
    reprompt: Optional[str] = None
    spelling_prompt: Optional[str] = None
    confirm_prompt: Optional[str] = None
    sub_flags: Tuple[SubFlag, ...] = (
        SubFlag.ASKED,
        SubFlag.AWAITING_SPELLING,
        SubFlag.AWAITING_CONFIRMATION,
    )
    # None = inherit from tenant settings, then process config.
    max_attempts: Optional[int] = Field(default=None, ge=1)
    spelling_fallback_after: Optional[int] = Field(default=None, ge=1)
    spelling_fallback: bool = True
    acceptance_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    escalate_on_first_failure: bool = False
    required: bool = True

    @field_validator("id")
    @classmethod
    def _id_not_reserved(cls, value: str) -> str:
        if not value or value.startswith(RESERVED_STEP_PREFIX):
            raise ValueError(f"step id '{value}' is empty or reserved")
        return value

    @field_validator("sub_flags")
    @classmethod
    def _asked_declared(cls, value: Tuple[SubFlag, ...]) -> Tuple[SubFlag, ...]:
        if SubFlag.ASKED not in value:
            raise ValueError("every step must declare the 'asked' sub-flag")
        return value

    def prompt_text(self) -> str:
        return self.prompt or DEFAULT_PROMPTS[self.kind][0]

    def reprompt_text(self) -> str:
        return self.reprompt or DEFAULT_PROMPTS[self.kind][1]

    def spelling_prompt_text(self) -> str:
        return self.spelling_prompt or DEFAULT_SPELLING_PROMPTS.get(
            self.kind, self.reprompt_text()
        )

    def confirm_prompt_text(self) -> str:
        return self.confirm_prompt or DEFAULT_CONFIRM_PROMPTS[self.kind]

    @property
    def spellable(self) -> bool:
        return self.spelling_fallback and self.kind in SPELLABLE_KINDS


class FlowDefinition(_ConfigModel):
    """Ordered steps plus the read-back and completion texts."""

    kind: FlowKind = FlowKind.BOOKING
    steps: Tuple[BookingStepDefinition, ...]
    confirm_summary: bool = True
    confirmation_template: str = (
        "Let me confirm: I have {name} at {phone}, service address {address}. Is that correct?"
    )
    completion_template: str = (
        "Your appointment has been scheduled. Is there anything else I can help you with?"
    )
    summary_reprompt: str = "Sorry, was that information correct? Please say yes or no."

    @model_validator(mode="after")
    def _unique_step_ids(self) -> "FlowDefinition":
        if not self.steps:
            raise ValueError("a flow needs at least one step")
        ids = [s.id for s in self.steps]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate step ids in flow: {ids}")
        return self

    def step(self, step_id: str) -> Optional[BookingStepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def index_of(self, step_id: str) -> int:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return -1

    def first_of_kind(self, kind: SlotKind) -> Optional[BookingStepDefinition]:
        for step in self.steps:
            if step.kind == kind:
                return step
        return None


class Scenario(_ConfigModel):
    """A matchable caller intent with canned reply variants."""

    id: str
    name: str = ""
    category: str = "general"
    trigger_keywords: Tuple[str, ...] = ()
    negative_keywords: Tuple[str, ...] = ()
    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    priority: int = 0
    replies: Tuple[str, ...] = ()
    enabled: bool = True
    starts_booking: bool = False


class ScenarioTemplate(_ConfigModel):
    """A shared library of scenarios that tenants opt into."""

    id: str
    name: str = ""
    scenarios: Tuple[Scenario, ...] = ()


class ScenarioOverride(_ConfigModel):
    """Tenant-level control applied on top of a template scenario."""

    scenario_id: str
    enabled: Optional[bool] = None
    priority: Optional[int] = None
    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    replies: Optional[Tuple[str, ...]] = None

    def apply(self, scenario: Scenario) -> Scenario:
        update = {
            key: value
            for key, value in (
                ("enabled", self.enabled),
                ("priority", self.priority),
                ("confidence_threshold", self.confidence_threshold),
                ("replies", self.replies),
            )
            if value is not None
        }
        return scenario.model_copy(update=update) if update else scenario


class TriageRule(_ConfigModel):
    """Deterministic AND/NOT keyword rule evaluated before scenario matching."""

    id: str
    must_have_keywords: Tuple[str, ...] = ()
    exclude_keywords: Tuple[str, ...] = ()
    action: TriageAction
    priority: int = 0
    reply: str = ""
    enabled: bool = True


class TenantSettings(_ConfigModel):
    company_name: str = "our office"
    variables: Dict[str, str] = Field(default_factory=dict)
    synonyms: Dict[str, str] = Field(default_factory=dict)
    filler_words: Tuple[str, ...] = ()
    initial_mode: Mode = Mode.DISCOVERY

    default_confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    default_acceptance_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    default_max_attempts: Optional[int] = Field(default=None, ge=1)
    default_spelling_fallback_after: Optional[int] = Field(default=None, ge=1)

    transfer_message: str = (
        "I'm having trouble getting that information. "
        "Let me connect you with someone who can help."
    )
    triage_transfer_message: str = "Let me connect you with someone right away."
    goodbye_message: str = "Thank you for calling {company_name}. Goodbye!"
    take_message_intro: str = "I can take a message and have someone call you back."
    booking_intro: str = "I can help you get that scheduled."


class TenantConfig(_ConfigModel):
    tenant_id: str
    template_ids: Tuple[str, ...] = ()
    overrides: Tuple[ScenarioOverride, ...] = ()
    custom_scenarios: Tuple[Scenario, ...] = ()
    triage_rules: Tuple[TriageRule, ...] = ()
    flows: Dict[FlowKind, FlowDefinition] = Field(default_factory=dict)
    settings: TenantSettings = Field(default_factory=TenantSettings)

    def variables(self) -> Dict[str, str]:
        merged = {"company_name": self.settings.company_name}
        merged.update(self.settings.variables)
        return merged
