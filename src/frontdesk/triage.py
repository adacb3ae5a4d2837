"""
Deterministic keyword triage.

A rule matches when every must-have phrase is present and no exclude phrase is
present in the normalized utterance (token-boundary containment). Among matching
rules the highest priority wins; equal priorities resolve to declaration order.
No scoring, no fuzziness: triage exists so safety-critical phrases
("gas leak", "smell smoke") can never be outvoted by a scenario.
"""

from typing import List, Optional, Sequence

import structlog

from src.frontdesk.models import TriageRule
from src.frontdesk.text import contains_phrase, normalize, redact_for_logs

logger = structlog.get_logger(__name__)


def rule_matches(normalized_text: str, rule: TriageRule) -> bool:
    """AND over must-have, NOT over exclude. An empty must-have list is vacuously true."""
    if any(contains_phrase(normalized_text, kw) for kw in rule.exclude_keywords):
        return False
    return all(contains_phrase(normalized_text, kw) for kw in rule.must_have_keywords)


class TriageMatcher:
    """Evaluates triage rules against an utterance."""

    def match_all(self, utterance: str, rules: Sequence[TriageRule]) -> List[TriageRule]:
        """All passing rules in resolution order (priority desc, then declaration order)."""
        normalized = normalize(utterance)
        passing = [
            (index, rule)
            for index, rule in enumerate(rules)
            if rule.enabled and rule_matches(normalized, rule)
        ]
        passing.sort(key=lambda item: (-item[1].priority, item[0]))
        return [rule for _, rule in passing]

    def match(self, utterance: str, rules: Sequence[TriageRule]) -> Optional[TriageRule]:
        matched = self.match_all(utterance, rules)
        if not matched:
            return None
        winner = matched[0]
        logger.debug(
            "Triage rule matched",
            rule_id=winner.id,
            action=winner.action.value,
            priority=winner.priority,
            also_matched=[r.id for r in matched[1:]],
            utterance=redact_for_logs(utterance),
        )
        return winner
