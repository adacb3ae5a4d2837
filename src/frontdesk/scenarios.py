"""
Scenario pool materialization and fuzzy scenario selection.

Pool: template library scenarios, then tenant overrides, then tenant custom
scenarios, filtered on `enabled` only. Pools are cached per tenant by
`ScenarioPoolCache`, an explicit object owned by the service. Entries are
stamped with the config source generation and dropped on `invalidate()`.

Selection: negative keywords block a scenario outright. Otherwise each trigger
gets a keyword score (1.0 on exact phrase containment, else weighted term
overlap) fused with a rapidfuzz similarity into one confidence. Candidates that
clear their own threshold are ranked by priority, then confidence, then
declaration order.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import structlog
from rapidfuzz import fuzz

from src.frontdesk.config_source import ConfigSource
from src.frontdesk.errors import AmbiguousMatch
from src.frontdesk.models import Scenario
from src.frontdesk.text import contains_phrase, normalize, remove_fillers, render_placeholders

logger = structlog.get_logger(__name__)

_FORWARD_WEIGHT = 0.7
_REVERSE_WEIGHT = 0.3


@dataclass(frozen=True)
class ScenarioPool:
    """Immutable, enabled-only scenario list for one tenant."""

    tenant_id: str
    scenarios: Tuple[Scenario, ...]
    generation: Hashable = None

    def __iter__(self) -> Iterator[Scenario]:
        return iter(self.scenarios)

    def __len__(self) -> int:
        return len(self.scenarios)

    def get(self, scenario_id: str) -> Optional[Scenario]:
        for scenario in self.scenarios:
            if scenario.id == scenario_id:
                return scenario
        return None

    @classmethod
    def build(
        cls, tenant_id: str, source: ConfigSource, *, generation: Hashable = None
    ) -> "ScenarioPool":
        tenant = source.get_tenant(tenant_id)

        merged: Dict[str, Scenario] = {}
        for template_id in tenant.template_ids:
            for scenario in source.get_template(template_id).scenarios:
                merged[scenario.id] = scenario

        for override in tenant.overrides:
            base = merged.get(override.scenario_id)
            if base is None:
                logger.warning(
                    "Override for unknown scenario ignored",
                    tenant_id=tenant_id,
                    scenario_id=override.scenario_id,
                )
                continue
            merged[override.scenario_id] = override.apply(base)

        for scenario in tenant.custom_scenarios:
            merged[scenario.id] = scenario

        scenarios = tuple(s for s in merged.values() if s.enabled)
        logger.info(
            "Scenario pool built",
            tenant_id=tenant_id,
            total=len(merged),
            enabled=len(scenarios),
            templates=list(tenant.template_ids),
        )
        return cls(tenant_id=tenant_id, scenarios=scenarios, generation=generation)


class ScenarioPoolCache:
    """Per-tenant pool cache. No TTL: entries change on invalidate or generation bump."""

    def __init__(self, source: ConfigSource):
        self._source = source
        self._entries: Dict[str, ScenarioPool] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, tenant_id: str) -> ScenarioPool:
        generation = self._source.generation(tenant_id)
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is not None and entry.generation == generation:
                self.hits += 1
                return entry
            self.misses += 1

        pool = ScenarioPool.build(tenant_id, self._source, generation=generation)
        with self._lock:
            self._entries[tenant_id] = pool
        return pool

    def invalidate(self, tenant_id: str) -> bool:
        with self._lock:
            dropped = self._entries.pop(tenant_id, None) is not None
        logger.info("Scenario pool invalidated", tenant_id=tenant_id, dropped=dropped)
        return dropped

    def invalidate_all(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("All scenario pools invalidated", count=count)

    def stats(self) -> Dict[str, int]:
        return {"tenants": len(self._entries), "hits": self.hits, "misses": self.misses}


@dataclass(frozen=True)
class ScoredScenario:
    scenario: Scenario
    confidence: float
    keyword_score: float
    fuzzy_score: float
    trigger: str
    index: int


@dataclass
class SelectionResult:
    scenario: Optional[Scenario]
    confidence: float
    alternates: List[ScoredScenario] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    ambiguity: Optional[AmbiguousMatch] = None

    @property
    def matched(self) -> bool:
        return self.scenario is not None


class ScenarioSelector:
    """Scores an utterance against a scenario pool."""

    def __init__(
        self,
        *,
        keyword_weight: float = 0.6,
        fuzzy_weight: float = 0.4,
        default_threshold: float = 0.45,
        ambiguity_margin: float = 0.02,
        max_alternates: int = 3,
    ):
        self.keyword_weight = keyword_weight
        self.fuzzy_weight = fuzzy_weight
        self.default_threshold = default_threshold
        self.ambiguity_margin = ambiguity_margin
        self.max_alternates = max_alternates

    @classmethod
    def from_config(cls, config) -> "ScenarioSelector":
        return cls(
            keyword_weight=config.keyword_weight,
            fuzzy_weight=config.fuzzy_weight,
            default_threshold=config.default_confidence_threshold,
            ambiguity_margin=config.ambiguity_margin,
            max_alternates=config.max_alternates,
        )

    def keyword_score(
        self, normalized: str, trigger: str, filler_words: Iterable[str] = ()
    ) -> float:
        if contains_phrase(normalized, trigger):
            return 1.0
        trigger_words = set(remove_fillers(normalize(trigger).split(), filler_words))
        utterance_words = set(remove_fillers(normalized.split(), filler_words))
        if not trigger_words or not utterance_words:
            return 0.0
        overlap = len(trigger_words & utterance_words)
        forward = overlap / len(trigger_words)
        reverse = overlap / len(utterance_words)
        return forward * _FORWARD_WEIGHT + reverse * _REVERSE_WEIGHT

    def fuzzy_score(self, normalized: str, trigger: str, filler_words: Iterable[str] = ()) -> float:
        core = " ".join(remove_fillers(normalized.split(), filler_words))
        trig = normalize(trigger)
        if not core or not trig:
            return 0.0
        return fuzz.token_set_ratio(trig, core) / 100.0

    def score(
        self,
        normalized: str,
        scenario: Scenario,
        index: int,
        filler_words: Iterable[str] = (),
    ) -> Optional[ScoredScenario]:
        """None when a negative keyword blocks the scenario."""
        if any(contains_phrase(normalized, neg) for neg in scenario.negative_keywords):
            return None

        best: Optional[ScoredScenario] = None
        for trigger in scenario.trigger_keywords:
            kw = self.keyword_score(normalized, trigger, filler_words)
            fz = self.fuzzy_score(normalized, trigger, filler_words)
            confidence = round(self.keyword_weight * kw + self.fuzzy_weight * fz, 4)
            if best is None or confidence > best.confidence:
                best = ScoredScenario(
                    scenario=scenario,
                    confidence=confidence,
                    keyword_score=kw,
                    fuzzy_score=fz,
                    trigger=trigger,
                    index=index,
                )
        if best is None:
            return ScoredScenario(scenario, 0.0, 0.0, 0.0, "", index)
        return best

    def select(
        self,
        utterance: str,
        pool: Sequence[Scenario],
        *,
        filler_words: Iterable[str] = (),
        default_threshold: Optional[float] = None,
    ) -> SelectionResult:
        normalized = normalize(utterance)
        if not normalized:
            return SelectionResult(scenario=None, confidence=0.0)

        filler_words = tuple(filler_words)
        fallback_threshold = (
            default_threshold if default_threshold is not None else self.default_threshold
        )

        scored: List[ScoredScenario] = []
        blocked: List[str] = []
        for index, scenario in enumerate(pool):
            result = self.score(normalized, scenario, index, filler_words)
            if result is None:
                blocked.append(scenario.id)
                continue
            scored.append(result)

        candidates = [
            s
            for s in scored
            if s.confidence >= (
                s.scenario.confidence_threshold
                if s.scenario.confidence_threshold is not None
                else fallback_threshold
            )
        ]
        candidates.sort(key=lambda s: (-s.scenario.priority, -s.confidence, s.index))

        winner = candidates[0] if candidates else None
        alternates = sorted(
            (s for s in scored if winner is None or s.scenario.id != winner.scenario.id),
            key=lambda s: (-s.confidence, s.index),
        )[: self.max_alternates]

        ambiguity = None
        if len(candidates) > 1:
            runner_up = candidates[1]
            if (
                runner_up.scenario.priority == winner.scenario.priority
                and abs(runner_up.confidence - winner.confidence) <= self.ambiguity_margin
            ):
                ambiguity = AmbiguousMatch(
                    (winner.scenario.id, runner_up.scenario.id), winner.confidence
                )
                logger.info(
                    "Ambiguous scenario match resolved by declaration order",
                    chosen=winner.scenario.id,
                    runner_up=runner_up.scenario.id,
                    confidence=winner.confidence,
                )

        if winner is None:
            return SelectionResult(
                scenario=None,
                confidence=alternates[0].confidence if alternates else 0.0,
                alternates=alternates,
                blocked=blocked,
            )

        logger.debug(
            "Scenario selected",
            scenario_id=winner.scenario.id,
            confidence=winner.confidence,
            trigger=winner.trigger,
            priority=winner.scenario.priority,
            alternates=[(a.scenario.id, a.confidence) for a in alternates],
            blocked=blocked,
        )
        return SelectionResult(
            scenario=winner.scenario,
            confidence=winner.confidence,
            alternates=alternates,
            blocked=blocked,
            ambiguity=ambiguity,
        )


def choose_reply(scenario: Scenario, turn_count: int, variables: Mapping[str, str]) -> str:
    """Deterministic variant rotation keyed on turn count, with placeholders filled."""
    if not scenario.replies:
        return ""
    template = scenario.replies[turn_count % len(scenario.replies)]
    return render_placeholders(template, variables)
