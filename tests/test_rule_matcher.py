import pytest

from api.app.classification.patterns import first_matching_pattern, parse_year_range
from api.app.classification.rule_matcher import (
    Predicate,
    match_rules,
    parse_predicates,
    predicates_from_mapping,
    rule_from_row,
    evaluate_predicate,
)
from api.app.models import LearnedPattern

METADATA = {
    "title": "Akira",
    "year": 1988,
    "genres": ["Animation", "Science Fiction"],
    "keywords": ["cyberpunk", "dystopia"],
    "certification": "R",
    "original_language": "ja",
    "rating": 7.9,
    "clarifications": {"is_anime": "yes"},
}


class TestPredicates:
    @pytest.mark.parametrize(
        "predicate, expected",
        [
            (Predicate("equals", "original_language", "JA"), True),
            (Predicate("equals", "genres", "animation"), True),
            (Predicate("equals", "year", "1988"), True),
            (Predicate("includes", "genres", ["animation", "science fiction"]), True),
            (Predicate("includes", "genres", ["animation", "comedy"]), False),
            (Predicate("is_one_of", "original_language", ["ja", "ko"]), True),
            (Predicate("is_one_of", "genres", ["Horror", "Animation"]), True),
            (Predicate("contains", "title", "kir"), True),
            (Predicate("contains", "keywords", "punk"), True),
            (Predicate("greater_than", "rating", 7.5), True),
            (Predicate("greater_than", "year", 1990), False),
            (Predicate("less_than", "year", 1990), True),
            (Predicate("equals", "overview", "anything"), False),
        ],
    )
    def test_evaluate(self, predicate, expected):
        assert evaluate_predicate(predicate, METADATA) is expected

    def test_numeric_comparison_with_text_is_false(self):
        assert evaluate_predicate(Predicate("greater_than", "title", 3), METADATA) is False


class TestParsing:
    def test_legacy_mapping_conversion(self):
        predicates = predicates_from_mapping(
            {"genres": "Animation", "original_language": ["ja", "ko"], "certification": "R"}
        )

        assert predicates == (
            Predicate("includes", "genres", "Animation"),
            Predicate("is_one_of", "original_language", ["ja", "ko"]),
            Predicate("equals", "certification", "R"),
        )

    def test_list_form_accepts_operator_alias(self):
        predicates = parse_predicates([{"operator": "greater_than", "field": "rating", "value": 7}])

        assert predicates == (Predicate("greater_than", "rating", 7),)

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValueError):
            parse_predicates([{"kind": "regex", "field": "title", "value": ".*"}])

    def test_missing_field_is_rejected(self):
        with pytest.raises(ValueError):
            parse_predicates([{"kind": "equals", "value": "x"}])


class TestMatchRules:
    def test_first_matching_rule_wins(self):
        rules = [
            rule_from_row({"id": 1, "library_id": 10, "name": "Horror", "priority": 9, "conditions": {"genres": "Horror"}}),
            rule_from_row({"id": 2, "library_id": 11, "name": "Anime", "priority": 5, "conditions": {"original_language": "ja"}}),
            rule_from_row({"id": 3, "library_id": 12, "name": "Sci-fi", "priority": 1, "conditions": {"genres": "Science Fiction"}}),
        ]

        assert match_rules(METADATA, rules).rule_id == 2

    def test_rule_without_predicates_never_matches(self):
        rule = rule_from_row({"id": 1, "library_id": 10, "name": "Empty", "conditions": {}})

        assert match_rules(METADATA, [rule]) is None


class TestLearnedPatternMatching:
    def _pattern(self, pattern_type, key, value, score=0.9):
        return LearnedPattern(
            pattern_type=pattern_type,
            pattern_key=key,
            pattern_value=value,
            library_id=1,
            confidence_score=score,
        )

    def test_year_range_parse(self):
        assert parse_year_range("1980-1989") == (1980, 1989)
        assert parse_year_range("1980s") is None

    @pytest.mark.parametrize(
        "pattern_type, key, value",
        [
            ("genre", "animation", "animation"),
            ("keyword", "cyberpunk", "Cyberpunk"),
            ("rating", "r", "R"),
            ("year_range", "1980s", "1980-1989"),
            ("clarification_pattern", "is_anime", "yes"),
        ],
    )
    def test_each_pattern_type_matches(self, pattern_type, key, value):
        pattern = self._pattern(pattern_type, key, value)

        assert first_matching_pattern([pattern], METADATA) is pattern

    def test_out_of_range_decade_does_not_match(self):
        pattern = self._pattern("year_range", "1990s", "1990-1999")

        assert first_matching_pattern([pattern], METADATA) is None
