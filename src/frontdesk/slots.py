"""
Rule-based slot extraction from caller utterances.

Each extractor returns zero or one `SlotCandidate`. Extraction only finds and
scores; acceptance against a threshold is decided by `SlotExtractor.validate()`
so the booking runner can apply per-step thresholds.

`expecting=True` means the agent just asked for this slot, which unlocks bare
answers ("Gonzalez", "five five five ..."). Without it only explicit phrasing is
trusted ("my name is ...", a full 10-digit number).
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from src.frontdesk.models import SlotKind
from src.frontdesk.names import NameValidator
from src.frontdesk.state import SlotSource
from src.frontdesk.text import normalize

logger = structlog.get_logger(__name__)


@dataclass
class SlotCandidate:
    """A value pulled out of an utterance, plus how it was found and how it scored."""

    kind: SlotKind
    value: str
    raw_span: str
    score: float = 0.0
    accepted: bool = False
    explicit: bool = False
    pattern: str = ""
    source: SlotSource = SlotSource.UTTERANCE
    attempt: int = 0

    @property
    def parts(self) -> List[str]:
        return self.value.split()

    @property
    def first_name_only(self) -> bool:
        return self.kind == SlotKind.NAME and len(self.parts) == 1


_LEADING_FILLER_RE = re.compile(
    r"^(?:(?:um+|uh+|erm+|hmm+|yeah|yes|sure|okay|ok|so|well|oh)\s+)+"
)

_NAME_PATTERNS: tuple[tuple[str, re.Pattern[str], bool], ...] = (
    ("correction", re.compile(r"\b(?:actually|i mean|sorry)\s+(?:my name is|it's|its|it is)\s+(?P<rest>.+)"), True),
    ("my_name_is", re.compile(r"(?<!last )(?<!family )\b(?:my\s+)?(?:first\s+)?name(?:\s+is|'s|\s+s)\s+(?P<rest>.+)"), True),
    ("call_me", re.compile(r"\b(?:call me|you can call me)\s+(?P<rest>.+)"), True),
    ("this_is", re.compile(r"\b(?:this is|it's|its|it is)\s+(?P<rest>.+)"), False),
    ("i_am", re.compile(r"\b(?:i am|i'm|im)\s+(?P<rest>.+)"), False),
)

_GREETING_RE = re.compile(r"^(?:hi|hello|hey)(?:\s+there)?\s+(?P<rest>.+)")

_LAST_NAME_PATTERNS: tuple[tuple[str, re.Pattern[str], bool], ...] = (
    ("last_name_is", re.compile(r"\b(?:my\s+)?(?:last|family|sur)\s*name(?:\s+is|'s|\s+s)?\s+(?P<rest>.+)"), True),
    ("its", re.compile(r"^(?:it's|its|it is)\s+(?P<rest>.+)"), False),
)

_NAME_TOKEN_RE = re.compile(r"^[a-z][a-z'\-]*$")

_NATO_RE = re.compile(r"\b([a-z])\s+as\s+in\s+\w+")

_WORD_DIGITS: Dict[str, str] = {
    "zero": "0", "oh": "0", "o": "0", "one": "1", "two": "2", "three": "3",
    "four": "4", "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}

_PHONE_RE = re.compile(r"(?:\+?1[\s\-.]?)?\(?\d{3}\)?[\s\-.]?\d{3}[\s\-.]?\d{4}\b")

_EMAIL_RE = re.compile(r"\b[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}\b")

_STREET_SUFFIXES = (
    "street|st|avenue|ave|road|rd|drive|dr|lane|ln|boulevard|blvd|court|ct|way|"
    "place|pl|circle|cir|parkway|pkwy|highway|hwy|terrace|ter|trail|trl"
)
_ADDRESS_STRONG_RE = re.compile(
    rf"\b(?P<number>\d{{1,6}})\s+(?P<street>(?:[a-z0-9']+\s+){{0,4}}?(?:{_STREET_SUFFIXES}))\b"
    r"(?P<unit>\s+(?:apt|apartment|unit|suite)\s+\w+)?"
)
_ADDRESS_WEAK_RE = re.compile(r"\b(?P<number>\d{1,6})\s+(?P<street>[a-z][a-z']*(?:\s+[a-z][a-z']*){0,4})")
_ADDRESS_PREFIX_RE = re.compile(
    r"^(?:my address is|my address|the address is|address is|address|i live at|it's|it is|its)\s+"
)
_TIME_OF_DAY_RE = re.compile(r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm|a m|p m|o'clock)\b")

_DAY_WORDS = (
    "today", "tomorrow", "monday", "tuesday", "wednesday", "thursday", "friday",
    "saturday", "sunday", "this week", "next week",
)
_PART_WORDS = ("morning", "afternoon", "evening")
_ASAP_RE = re.compile(r"\b(?:asap|as soon as possible|right away|first available|earliest)\b")

_MESSAGE_PREFIX_RE = re.compile(
    r"^(?:can you |could you |please )?(?:tell (?:them|him|her)|let (?:them|him|her) know|the message is)\s+(?:that\s+)?"
)


def _overlapping(pattern: re.Pattern[str], text: str) -> List[re.Match[str]]:
    """Every match start, including ones inside an earlier greedy match."""
    found = []
    match = pattern.search(text)
    while match:
        found.append(match)
        match = pattern.search(text, match.start() + 1)
    return found


def format_phone(digits: str) -> str:
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


class SlotExtractor:
    """Pulls candidate slot values out of utterance text."""

    def __init__(self, validator: NameValidator, *, explicit_floor: float = 0.4):
        self.validator = validator
        self.explicit_floor = explicit_floor

    # ------------------------------------------------------------------ names

    def _name_tokens(self, rest: str, limit: int = 3) -> List[str]:
        """Consecutive name-shaped tokens from the start of `rest`, stopping at a stop word."""
        out: List[str] = []
        for tok in rest.split():
            tok = tok.strip("'-")
            if not _NAME_TOKEN_RE.match(tok) or self.validator.is_stop_word(tok):
                break
            out.append(tok)
            if len(out) >= limit:
                break
        return out

    def extract_name(self, text: str, *, expecting: bool = False) -> Optional[SlotCandidate]:
        n = normalize(text)
        if not n:
            return None

        for pattern_name, pattern, explicit in _NAME_PATTERNS:
            # Last occurrence wins: "my name is... my name is Mark".
            for match in reversed(_overlapping(pattern, n)):
                parts = self._name_tokens(match.group("rest"))
                if not parts:
                    continue
                candidate = self._name_candidate(parts, match.group(0), pattern_name, explicit)
                # "I'm Mark" is only trusted when the token is a known name.
                if not explicit and candidate.score < 1.0 and not expecting:
                    continue
                return candidate

        greeting = _GREETING_RE.match(n)
        if greeting:
            parts = self._name_tokens(greeting.group("rest"), limit=2)
            if parts and self.validator.is_known_first_name(parts[0]):
                return self._name_candidate(parts, greeting.group(0), "greeting", False)

        if expecting:
            bare = _LEADING_FILLER_RE.sub("", n)
            if not re.search(r"\d", bare):
                parts = self._name_tokens(bare)
                # Long rambling answers are not a name.
                if parts and len(bare.split()) <= len(parts) + 2:
                    return self._name_candidate(parts, bare, "bare", False)
        return None

    def _name_candidate(
        self, parts: List[str], span: str, pattern_name: str, explicit: bool
    ) -> SlotCandidate:
        value = " ".join(p.capitalize() for p in parts)
        return SlotCandidate(
            kind=SlotKind.NAME,
            value=value,
            raw_span=span,
            score=self.validator.score_full(value),
            explicit=explicit,
            pattern=pattern_name,
        )

    def extract_last_name(self, text: str, *, expecting: bool = False) -> Optional[SlotCandidate]:
        n = normalize(text)
        if not n:
            return None

        for pattern_name, pattern, explicit in _LAST_NAME_PATTERNS:
            if not expecting and not explicit:
                continue
            match = pattern.search(n)
            if not match:
                continue
            parts = self._name_tokens(match.group("rest"), limit=2)
            if parts:
                return self._last_name_candidate(parts, match.group(0), pattern_name, explicit)

        if expecting:
            bare = _LEADING_FILLER_RE.sub("", n)
            parts = self._name_tokens(bare, limit=2)
            if parts and len(bare.split()) <= len(parts) + 2:
                return self._last_name_candidate(parts, bare, "bare", False)
        return None

    def _last_name_candidate(
        self, parts: List[str], span: str, pattern_name: str, explicit: bool
    ) -> SlotCandidate:
        # "Gonzalez G O N Z" keeps only the word; compound surnames keep both.
        words = [p for p in parts if len(p) > 1] or parts
        value = "-".join(w.capitalize() for w in words) if len(words) > 1 else words[0].capitalize()
        return SlotCandidate(
            kind=SlotKind.LAST_NAME,
            value=value,
            raw_span=span,
            score=min(self.validator.score(w, SlotKind.LAST_NAME) for w in words),
            explicit=explicit,
            pattern=pattern_name,
        )

    def extract_spelled(self, text: str, kind: SlotKind) -> Optional[SlotCandidate]:
        """
        Extract a value spelled letter-by-letter.

        Supports formats like:
        - "J O H N space D O E"
        - "M as in Mary, A, R, K"
        - "J O H N DOE" (mixed spelled + word)
        """
        n = normalize(text)
        if not n:
            return None
        n = _NATO_RE.sub(r"\1", n)
        n = re.sub(
            r"^(?:(?:my\s+)?(?:last\s+|first\s+)?name is|it's|it is|its|that's|thats)\s+", "", n
        )

        if kind == SlotKind.EMAIL:
            return self._spelled_email(n)

        n = re.sub(r"\bspace\b", " | ", n)
        words: List[str] = []
        letters: List[str] = []
        for tok in n.split():
            if tok == "|":
                if letters:
                    words.append("".join(letters))
                    letters = []
                continue
            if len(tok) == 1 and tok.isalpha():
                letters.append(tok)
                continue
            if tok.isalpha() and not self.validator.is_stop_word(tok):
                if letters:
                    words.append("".join(letters))
                    letters = []
                words.append(tok)
        if letters:
            words.append("".join(letters))

        words = [w for w in words if len(w) >= 2]
        if not words:
            return None
        if kind == SlotKind.LAST_NAME:
            value = "-".join(w.capitalize() for w in words)
        else:
            value = " ".join(w.capitalize() for w in words)
        return SlotCandidate(
            kind=kind,
            value=value,
            raw_span=n,
            score=1.0,
            explicit=True,
            pattern="spelled",
            source=SlotSource.SPELLED,
        )

    def _spelled_email(self, n: str) -> Optional[SlotCandidate]:
        out: List[str] = []
        for tok in n.split():
            if tok in ("at", "arobase"):
                out.append("@")
            elif tok in ("dot", "period", "point"):
                out.append(".")
            elif tok in ("dash", "hyphen"):
                out.append("-")
            elif tok == "underscore":
                out.append("_")
            elif tok.isalnum():
                out.append(tok)
        joined = "".join(out)
        match = _EMAIL_RE.search(joined)
        if not match:
            return None
        return SlotCandidate(
            kind=SlotKind.EMAIL,
            value=match.group(0),
            raw_span=n,
            score=1.0,
            explicit=True,
            pattern="spelled",
            source=SlotSource.SPELLED,
        )

    # ---------------------------------------------------------------- contact

    def extract_phone(self, text: str, *, expecting: bool = False) -> Optional[SlotCandidate]:
        t = (text or "").strip()
        if not t:
            return None

        shaped = _PHONE_RE.search(t)
        if shaped:
            digits_only = re.sub(r"\D+", "", shaped.group(0))
            if len(digits_only) == 11 and digits_only.startswith("1"):
                digits_only = digits_only[1:]
            if len(digits_only) == 10:
                return SlotCandidate(
                    kind=SlotKind.PHONE,
                    value=format_phone(digits_only),
                    raw_span=shaped.group(0),
                    score=1.0,
                    explicit=True,
                    pattern="digits",
                )
        if not expecting:
            return None

        # Spoken digits: "five five five, one two three, double four ..."
        n = normalize(t)
        digits = []
        for tok in n.split():
            if tok.isdigit():
                digits.append(tok)
            elif tok in _WORD_DIGITS:
                digits.append(_WORD_DIGITS[tok])
            elif tok in ("double", "triple"):
                digits.append(tok)

        expanded: List[str] = []
        repeat = 1
        for tok in digits:
            if tok == "double":
                repeat = 2
                continue
            if tok == "triple":
                repeat = 3
                continue
            expanded.append(tok[0] * repeat + tok[1:] if repeat > 1 else tok)
            repeat = 1

        all_digits = re.sub(r"\D+", "", "".join(expanded))
        if not all_digits:
            return None
        if len(all_digits) == 11 and all_digits.startswith("1"):
            all_digits = all_digits[1:]

        if len(all_digits) == 10:
            return SlotCandidate(
                kind=SlotKind.PHONE,
                value=format_phone(all_digits),
                raw_span=n,
                score=1.0,
                pattern="spoken_digits",
            )
        if len(all_digits) < 3:
            return None
        # Partial number: found something, but it will not validate.
        return SlotCandidate(
            kind=SlotKind.PHONE, value=all_digits, raw_span=n, score=0.2, pattern="partial"
        )

    def extract_email(self, text: str, *, expecting: bool = False) -> Optional[SlotCandidate]:
        t = (text or "").strip().lower()
        if not t:
            return None
        normalized = (
            f" {t} ".replace(" at ", "@")
            .replace(" dot ", ".")
            .replace(" period ", ".")
            .replace(" underscore ", "_")
            .strip()
        )
        normalized = re.sub(r"\s*@\s*", "@", normalized)
        match = _EMAIL_RE.search(normalized)
        if not match:
            return None
        return SlotCandidate(
            kind=SlotKind.EMAIL,
            value=match.group(0).strip("."),
            raw_span=match.group(0),
            score=1.0,
            explicit=True,
            pattern="email",
        )

    def extract_address(self, text: str, *, expecting: bool = False) -> Optional[SlotCandidate]:
        n = normalize(text)
        if not n:
            return None
        n = _LEADING_FILLER_RE.sub("", n)
        n = _ADDRESS_PREFIX_RE.sub("", n)
        # "at 10 am" is a time, not a house number.
        cleaned = _TIME_OF_DAY_RE.sub(" ", n)

        strong = _ADDRESS_STRONG_RE.search(cleaned)
        if strong:
            value = f"{strong.group('number')} {strong.group('street')}{strong.group('unit') or ''}"
            return SlotCandidate(
                kind=SlotKind.ADDRESS,
                value=_title_address(value),
                raw_span=strong.group(0),
                score=0.95,
                explicit=True,
                pattern="street_suffix",
            )
        if not expecting:
            return None

        weak = _ADDRESS_WEAK_RE.search(cleaned)
        if weak:
            value = f"{weak.group('number')} {weak.group('street')}"
            return SlotCandidate(
                kind=SlotKind.ADDRESS,
                value=_title_address(value),
                raw_span=weak.group(0),
                score=0.7,
                pattern="house_number",
            )
        if len(cleaned.split()) >= 2:
            return SlotCandidate(
                kind=SlotKind.ADDRESS,
                value=_title_address(cleaned),
                raw_span=cleaned,
                score=0.3,
                pattern="no_number",
            )
        return None

    def extract_time(self, text: str, *, expecting: bool = False) -> Optional[SlotCandidate]:
        n = normalize(text)
        if not n:
            return None
        if _ASAP_RE.search(n):
            return SlotCandidate(
                kind=SlotKind.TIME, value="ASAP", raw_span=n, score=0.95, explicit=True, pattern="asap"
            )

        day = next((d for d in _DAY_WORDS if re.search(rf"\b{d}\b", n)), None)
        part = next((p for p in _PART_WORDS if re.search(rf"\b{p}\b", n)), None)
        clock = _TIME_OF_DAY_RE.search(n)
        pieces = [p for p in (day, part, clock.group(0) if clock else None) if p]
        if not pieces:
            return None
        # A bare "morning" inside a greeting ("good morning") is not a booking time.
        if not expecting and day is None and clock is None:
            return None
        return SlotCandidate(
            kind=SlotKind.TIME,
            value=" ".join(pieces),
            raw_span=n,
            score=0.9,
            explicit=day is not None or clock is not None,
            pattern="time_words",
        )

    def extract_free_text(self, text: str, *, expecting: bool = False) -> Optional[SlotCandidate]:
        if not expecting:
            return None
        t = (text or "").strip()
        n = _MESSAGE_PREFIX_RE.sub("", normalize(t))
        if len(n.split()) < 2:
            return None
        return SlotCandidate(
            kind=SlotKind.FREE_TEXT, value=t, raw_span=t, score=0.9, pattern="free_text"
        )

    # --------------------------------------------------------------- dispatch

    def extract(
        self,
        kind: SlotKind,
        text: str,
        *,
        expecting: bool = False,
        spelling: bool = False,
    ) -> Optional[SlotCandidate]:
        if spelling:
            return self.extract_spelled(text, kind)
        extractor = {
            SlotKind.NAME: self.extract_name,
            SlotKind.LAST_NAME: self.extract_last_name,
            SlotKind.PHONE: self.extract_phone,
            SlotKind.ADDRESS: self.extract_address,
            SlotKind.EMAIL: self.extract_email,
            SlotKind.TIME: self.extract_time,
            SlotKind.FREE_TEXT: self.extract_free_text,
        }[kind]
        return extractor(text, expecting=expecting)

    def validate(self, candidate: SlotCandidate, threshold: float) -> bool:
        """Set and return the candidate's verdict."""
        candidate.accepted = self.validator.accepts(
            candidate.score,
            threshold,
            explicit=candidate.explicit and candidate.kind in (SlotKind.NAME, SlotKind.LAST_NAME),
            explicit_floor=self.explicit_floor,
        )
        logger.debug(
            "Slot candidate validated",
            kind=candidate.kind.value,
            pattern=candidate.pattern,
            score=candidate.score,
            explicit=candidate.explicit,
            accepted=candidate.accepted,
        )
        return candidate.accepted

    def extract_all(self, text: str) -> List[SlotCandidate]:
        """Opportunistic capture outside the booking flow; explicit phrasing only."""
        found = []
        for kind in (SlotKind.NAME, SlotKind.PHONE, SlotKind.EMAIL, SlotKind.ADDRESS):
            candidate = self.extract(kind, text, expecting=False)
            if candidate is not None:
                found.append(candidate)
        return found


_DIRECTIONALS = frozenset({"n", "s", "e", "w", "nw", "ne", "sw", "se"})


def _title_address(value: str) -> str:
    words = []
    for w in value.split():
        words.append(w.upper() if w in _DIRECTIONALS else w.capitalize())
    return " ".join(words)
