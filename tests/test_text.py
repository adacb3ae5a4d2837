"""
Tests for shared text helpers.
"""

from src.frontdesk.text import (
    apply_synonyms,
    contains_phrase,
    is_affirmative,
    is_negative,
    normalize,
    redact_for_logs,
    remove_fillers,
    render_placeholders,
)


def test_normalize():
    assert normalize("  Hi, I’m  JOSÉ!  ") == "hi i'm jose"
    assert normalize(None) == ""


def test_contains_phrase_respects_tokens():
    assert contains_phrase("my ac is out", "AC")
    assert not contains_phrase("my back is out", "ac")
    assert not contains_phrase("", "ac")


def test_synonyms_longest_first():
    synonyms = {"air con": "ac", "air con unit": "ac unit"}
    assert apply_synonyms("my air con unit died", synonyms) == "my ac unit died"
    assert apply_synonyms("the air con died", synonyms) == "the ac died"


def test_remove_fillers():
    assert remove_fillers(["um", "my", "furnace", "honestly"], ["honestly"]) == ["furnace"]


def test_placeholders():
    assert render_placeholders("Hi {name}, {missing}", {"name": "Mark"}) == "Hi Mark, {missing}"


def test_yes_no():
    assert is_affirmative("Yeah, that's right")
    assert not is_affirmative("no that's not right")
    assert is_negative("nope")
    assert not is_negative("sure")


def test_redaction():
    redacted = redact_for_logs("call me at 555-123-4567 or mark@example.com, zip 85001")
    assert "[PHONE-***4567]" in redacted
    assert "[EMAIL]" in redacted
    assert "[ZIP]" in redacted
    assert "mark@example.com" not in redacted
