"""
Text helpers shared by triage, scenario matching and slot extraction.

Everything that compares caller speech with configured keywords goes through
`normalize()` first so casing, accents, apostrophes and punctuation never decide
a match.
"""

import re
import unicodedata
from typing import Dict, Iterable, List, Mapping, Optional

_PUNCT_RE = re.compile(r"[^\w\s']+")
_SPACE_RE = re.compile(r"\s+")
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")

DEFAULT_FILLER_WORDS = frozenset(
    {
        "um", "uh", "erm", "hmm", "like", "you", "know", "i", "me", "my", "the", "a",
        "an", "is", "are", "it", "its", "it's", "so", "just", "well", "ok", "okay",
        "please", "that", "this", "to", "do", "can", "could", "would", "have", "has",
        "with", "for", "of", "on", "at", "and", "or", "be", "was", "were", "im", "i'm",
    }
)

_YES_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"(^|\b)(yes|yeah|yep|yup|correct|thats right|that's right|right|ok|okay|sure)(\b|$)",
        r"(^|\b)(perfect|sounds good|that works|absolutely|affirmative|uh huh|mhm)(\b|$)",
    )
)

_NO_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"(^|\b)(no|nope|nah|wrong|not correct|incorrect|not right)(\b|$)",
        r"(^|\b)(that's not|thats not|different number|wrong number)(\b|$)",
    )
)

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_LOG_PHONE_RE = re.compile(
    r"(?:\+?1[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}"
)
_LOG_ZIP_RE = re.compile(r"\b\d{5}(?:-\d{4})?\b")


def normalize(text: Optional[str]) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _PUNCT_RE.sub(" ", text)
    text = _SPACE_RE.sub(" ", text)
    return text.strip()


def tokens(text: Optional[str]) -> List[str]:
    return normalize(text).split()


def contains_phrase(normalized_text: str, phrase: str) -> bool:
    """
    Token-boundary containment: "ac" matches "my ac is out" but not "back".

    `normalized_text` must already be normalized; the phrase is normalized here.
    """
    needle = normalize(phrase)
    if not needle or not normalized_text:
        return False
    return f" {needle} " in f" {normalized_text} "


def apply_synonyms(normalized_text: str, synonyms: Mapping[str, str]) -> str:
    """Rewrite colloquial phrases into their canonical form ("air con" -> "ac")."""
    if not synonyms or not normalized_text:
        return normalized_text
    padded = f" {normalized_text} "
    # Longest phrases first so "air con unit" wins over "air con".
    for colloquial in sorted(synonyms, key=len, reverse=True):
        needle = normalize(colloquial)
        if not needle:
            continue
        canonical = normalize(synonyms[colloquial])
        padded = padded.replace(f" {needle} ", f" {canonical} ")
    return _SPACE_RE.sub(" ", padded).strip()


def remove_fillers(words: Iterable[str], filler_words: Iterable[str] = ()) -> List[str]:
    fillers = DEFAULT_FILLER_WORDS.union(filler_words)
    return [w for w in words if w not in fillers]


def render_placeholders(template: str, variables: Mapping[str, str]) -> str:
    """Substitute `{name}` placeholders; unknown placeholders are left as-is."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        value = variables.get(key)
        return str(value) if value is not None else match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, template or "")


def _matches_any(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
    t = normalize(text)
    if not t:
        return False
    return any(p.search(t) for p in patterns)


def is_affirmative(text: str) -> bool:
    return _matches_any(_YES_PATTERNS, text) and not _matches_any(_NO_PATTERNS, text)


def is_negative(text: str) -> bool:
    return _matches_any(_NO_PATTERNS, text)


def redact_for_logs(text: str) -> str:
    """
    Best-effort redaction for logs (to reduce accidental PII exposure).

    This is not a compliance-grade scrubber; it masks common patterns:
    - emails -> [EMAIL]
    - phone numbers -> [PHONE-***1234]
    - US zip codes -> [ZIP]
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match[str]) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        last4 = digits[-4:] if len(digits) >= 4 else digits
        return f"[PHONE-***{last4}]"

    redacted = _LOG_PHONE_RE.sub(_mask_phone, redacted)
    redacted = _LOG_ZIP_RE.sub("[ZIP]", redacted)
    return redacted


def merge_variables(*layers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    merged: Dict[str, str] = {}
    for layer in layers:
        if layer:
            merged.update({k: str(v) for k, v in layer.items() if v is not None})
    return merged
