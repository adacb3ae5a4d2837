"""
Name plausibility scoring against reference first- and last-name sets.

Scores are floats in [0, 1]:
- exact membership in the expected set: 1.0 (0.9 if found in the other set)
- close fuzzy match (rapidfuzz ratio >= cutoff): scaled into [0.6, 0.9)
- plausible shape (alphabetic, 2-20 chars, not a stop word): 0.5
- everything else: 0.0

Explicit phrasing ("my last name is X") may accept a borderline score; see
`accepts()`.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional

import structlog
from rapidfuzz import fuzz, process

from src.frontdesk.models import SlotKind

logger = structlog.get_logger(__name__)

_DATA_DIR = Path(__file__).resolve().parent / "data"

_NAME_SHAPE_RE = re.compile(r"^[a-z][a-z'\-]{1,19}$")

NAME_STOP_WORDS: FrozenSet[str] = frozenset(
    {
        # grammar and fillers
        "is", "are", "was", "were", "be", "been", "am", "the", "my", "its", "it's",
        "a", "an", "name", "last", "first", "full", "yes", "yeah", "yep", "sure", "ok",
        "okay", "no", "nope", "hi", "hello", "hey", "please", "thanks", "thank", "you",
        "it", "that", "this", "what", "and", "or", "but", "to", "for", "with", "got",
        "about", "from", "of", "on", "in", "at", "by",
        "two", "there", "uh", "um", "hmm", "erm", "huh", "mhm", "yup", "so", "well", "just",
        "actually", "really",
        "like", "know", "think", "need", "want", "told", "said", "gave", "already",
        "mentioned", "repeat", "i", "im", "i'm", "me", "we", "our", "your", "call",
        "calling", "spell", "spelled", "space", "letter", "letters", "mean",
        # relationship and courtesy words
        "longtime", "regular", "returning", "customer", "client", "homeowner",
        "resident", "tenant", "owner", "caller", "sir", "maam", "ma'am", "mr", "mrs",
        "ms", "miss", "mister",
        # time words
        "morning", "afternoon", "evening", "night", "today", "tomorrow", "asap",
        "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
        # business words
        "service", "appointment", "schedule", "scheduling", "technician", "tech",
        "visit", "company", "business", "help", "support", "assistance", "again",
        "same", "correct", "wrong", "information", "how", "soon", "when", "where",
        "why", "which", "who", "whom", "can", "could", "would", "should", "will",
        "shall", "may", "might", "get", "somebody", "someone", "something",
        "possible", "good", "great", "ready", "done", "finished", "alright", "fine",
        "perfect", "right", "understood", "gotcha",
        # verbs that follow "I'm"
        "having", "looking", "trying", "needing", "wanting", "experiencing",
        "dealing", "getting", "seeing", "hearing", "feeling", "wondering",
        "thinking", "asking", "waiting", "working", "living", "staying", "running",
        "going", "coming", "blowing", "leaking", "making", "cooling", "heating",
        # problem words
        "issues", "issue", "problem", "problems", "trouble", "early", "not", "here",
        "now", "later", "then", "still", "case", "time", "thing", "stuff", "way",
        "broken", "hot", "cold", "warm", "noise", "noisy", "smell", "emergency",
        # adjectives and intensifiers
        "smart", "fast", "slow", "quick", "nice", "kind", "friendly", "long",
        "short", "big", "small", "old", "new", "young", "super", "extremely",
        "very", "pretty", "quite", "totally", "absolutely", "seriously",
        "literally", "basically", "honestly", "terrible", "awful", "horrible",
        # address words
        "street", "st", "avenue", "ave", "road", "rd", "drive", "dr", "lane", "ln",
        "boulevard", "blvd", "court", "ct", "circle", "cir", "place", "pl",
        "parkway", "pkwy", "highway", "hwy", "north", "south", "east", "west",
        "main", "center", "suite", "apt", "apartment", "unit", "floor", "building",
        # equipment words
        "ac", "a/c", "hvac", "air", "conditioner", "conditioning", "heat", "heater",
        "furnace", "boiler", "thermostat", "system", "duct", "ducts", "vent",
        "filter", "compressor", "pump", "water", "plumbing", "leak",
    }
)


def _load_names(path: Path) -> FrozenSet[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            names = frozenset(
                line.strip().lower() for line in f if line.strip() and not line.startswith("#")
            )
    except OSError as e:
        logger.warning("Name reference file not readable", path=str(path), error=str(e))
        return frozenset()
    return names


class NameValidator:
    """Scores candidate name tokens against reference name sets."""

    def __init__(
        self,
        first_names: Iterable[str],
        last_names: Iterable[str],
        *,
        fuzzy_cutoff: float = 85.0,
        stop_words: Iterable[str] = NAME_STOP_WORDS,
    ):
        self._first = frozenset(n.strip().lower() for n in first_names if n.strip())
        self._last = frozenset(n.strip().lower() for n in last_names if n.strip())
        self._first_choices: List[str] = sorted(self._first)
        self._last_choices: List[str] = sorted(self._last)
        self._stop_words = frozenset(w.lower() for w in stop_words)
        self._fuzzy_cutoff = fuzzy_cutoff

    @classmethod
    def from_data_dir(cls, data_dir: Optional[str] = None) -> "NameValidator":
        base = Path(data_dir) if data_dir else _DATA_DIR
        first = _load_names(base / "first_names.txt")
        last = _load_names(base / "last_names.txt")
        logger.debug("Name reference sets loaded", first=len(first), last=len(last))
        return cls(first, last)

    def is_stop_word(self, token: str) -> bool:
        return (token or "").strip().lower() in self._stop_words

    def is_known_first_name(self, token: str) -> bool:
        return (token or "").strip().lower() in self._first

    def is_known_last_name(self, token: str) -> bool:
        return (token or "").strip().lower() in self._last

    def score(self, token: str, kind: SlotKind = SlotKind.NAME) -> float:
        t = (token or "").strip().lower()
        if not t or not _NAME_SHAPE_RE.match(t):
            return 0.0
        if t in self._stop_words:
            return 0.0

        if kind == SlotKind.LAST_NAME:
            primary, secondary = self._last, self._first
            choices = self._last_choices
        else:
            primary, secondary = self._first, self._last
            choices = self._first_choices

        if t in primary:
            return 1.0
        if t in secondary:
            return 0.9

        if choices:
            match = process.extractOne(
                t, choices, scorer=fuzz.ratio, score_cutoff=self._fuzzy_cutoff
            )
            if match is not None:
                ratio = match[1]
                span = max(100.0 - self._fuzzy_cutoff, 1.0)
                return round(0.6 + 0.29 * (ratio - self._fuzzy_cutoff) / span, 4)

        return 0.5

    def score_full(self, value: str) -> float:
        """Score "First [Middle] Last"; the weakest part decides."""
        parts = [p for p in re.split(r"\s+", (value or "").strip()) if p]
        if not parts:
            return 0.0
        if len(parts) == 1:
            return self.score(parts[0], SlotKind.NAME)
        scores = [self.score(parts[0], SlotKind.NAME)]
        scores.extend(self.score(p, SlotKind.LAST_NAME) for p in parts[1:])
        return min(scores)

    def accepts(
        self,
        score: float,
        threshold: float,
        *,
        explicit: bool = False,
        explicit_floor: float = 0.4,
    ) -> bool:
        if score >= threshold:
            return True
        return explicit and score >= explicit_floor


@lru_cache(maxsize=4)
def get_name_validator(data_dir: Optional[str] = None) -> NameValidator:
    """Shared read-only validator; the reference sets are loaded once per data dir."""
    return NameValidator.from_data_dir(data_dir or None)
