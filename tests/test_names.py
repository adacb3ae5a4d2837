"""
Tests for name plausibility scoring.
"""

from src.frontdesk.models import SlotKind
from src.frontdesk.names import NameValidator, get_name_validator


class TestNameValidator:
    """Tests against the bundled reference sets."""

    def test_known_names(self, name_validator):
        assert name_validator.score("Mark", SlotKind.NAME) == 1.0
        assert name_validator.score("gonzalez", SlotKind.LAST_NAME) == 1.0

    def test_name_from_the_other_set(self, name_validator):
        assert name_validator.score("gonzalez", SlotKind.NAME) == 0.9

    def test_fuzzy_match_lands_between_shape_and_exact(self, name_validator):
        score = name_validator.score("marck", SlotKind.NAME)
        assert 0.6 <= score < 0.9

    def test_plausible_unknown_token(self, name_validator):
        assert name_validator.score("qwzx", SlotKind.LAST_NAME) == 0.5

    def test_stop_words_and_bad_shapes_score_zero(self, name_validator):
        assert name_validator.score("service") == 0.0
        assert name_validator.score("having") == 0.0
        assert name_validator.score("r2d2") == 0.0
        assert name_validator.score("") == 0.0

    def test_full_name_takes_weakest_part(self, name_validator):
        assert name_validator.score_full("Mark Gonzalez") == 1.0
        assert name_validator.score_full("Mark Qwzx") == 0.5
        assert name_validator.score_full("Mark Service") == 0.0

    def test_explicit_phrasing_lowers_the_bar(self, name_validator):
        assert not name_validator.accepts(0.5, 0.6)
        assert name_validator.accepts(0.5, 0.6, explicit=True, explicit_floor=0.4)
        assert not name_validator.accepts(0.0, 0.6, explicit=True, explicit_floor=0.4)

    def test_validator_is_shared(self):
        assert get_name_validator() is get_name_validator()

    def test_custom_sets(self):
        validator = NameValidator(["Ada"], ["Lovelace"])
        assert validator.is_known_first_name("ada")
        assert validator.is_known_last_name("LOVELACE")
        assert validator.score("lovelace", SlotKind.NAME) == 0.9

    def test_missing_data_dir_loads_empty_sets(self, tmp_path):
        validator = NameValidator.from_data_dir(str(tmp_path))
        assert validator.score("mark") == 0.5
