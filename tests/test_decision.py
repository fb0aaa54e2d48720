"""
Tests for the tiered decision engine.

The store is mocked so each test can assert which tiers were consulted.
"""

from unittest.mock import AsyncMock

import pytest

from api.app.ai_client import AIChoice, AIResponseParseError
from api.app.classification import Predicate, Rule, decide
from api.app.errors import TransientCollaboratorError
from api.app.models import LearnedPattern, Library

LIBRARIES = [
    Library(id=1, name="Movies", media_type="movie", priority=10),
    Library(id=2, name="Anime Movies", media_type="movie", priority=5),
]

METADATA = {
    "external_id": "129",
    "media_type": "movie",
    "title": "Spirited Away",
    "year": 2001,
    "genres": ["Animation", "Family"],
    "keywords": ["anime", "spirit"],
    "certification": "PG",
}


@pytest.fixture
def store():
    mock = AsyncMock()
    mock.list_enabled_libraries.return_value = LIBRARIES
    mock.find_exact_match.return_value = None
    mock.list_patterns.return_value = []
    mock.list_rules.return_value = []
    return mock


@pytest.fixture
def ai_client():
    mock = AsyncMock()
    mock.classify.return_value = AIChoice(library_index=1, confidence=88, reason="AI: animated feature")
    return mock


def _pattern(score: float, library_id: int = 2, value: str = "Animation") -> LearnedPattern:
    return LearnedPattern(
        pattern_type="genre",
        pattern_key=value.lower(),
        pattern_value=value,
        library_id=library_id,
        confidence_score=score,
        occurrence_count=4,
    )


class TestNoLibraries:
    async def test_returns_no_libraries_decision(self, store, ai_client):
        store.list_enabled_libraries.return_value = []

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.method == "no_libraries"
        assert decision.library_id is None
        assert decision.confidence == 0
        store.find_exact_match.assert_not_awaited()
        ai_client.classify.assert_not_awaited()


class TestExactMatch:
    async def test_exact_match_short_circuits_lower_tiers(self, store, ai_client):
        store.find_exact_match.return_value = {"library_id": 2, "library_name": "Anime Movies"}

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.method == "exact_match"
        assert decision.confidence == 100
        assert decision.library_id == 2
        store.find_exact_match.assert_awaited_once_with("129", "movie")
        store.list_patterns.assert_not_awaited()
        store.list_rules.assert_not_awaited()
        ai_client.classify.assert_not_awaited()


class TestLearnedPatterns:
    async def test_pattern_at_threshold_is_accepted(self, store, ai_client):
        store.list_patterns.return_value = [_pattern(0.80)]

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.method == "learned_pattern"
        assert decision.confidence == 80
        assert decision.library_id == 2
        assert decision.library_name == "Anime Movies"
        store.list_rules.assert_not_awaited()

    async def test_weak_pattern_falls_through(self, store, ai_client):
        store.list_patterns.return_value = [_pattern(0.65)]

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.method == "ai_classification"
        store.list_rules.assert_awaited_once()

    async def test_non_matching_pattern_is_ignored(self, store, ai_client):
        store.list_patterns.return_value = [_pattern(0.95, value="Horror")]

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.method == "ai_classification"


class TestRules:
    async def test_rule_match_uses_fixed_confidence(self, store, ai_client):
        store.list_rules.return_value = [
            Rule(
                rule_id=7,
                library_id=2,
                name="Japanese animation",
                priority=10,
                predicates=(Predicate("includes", "genres", "animation"),),
            )
        ]

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.method == "rule_match"
        assert decision.confidence == 85
        assert decision.library_id == 2
        assert "Japanese animation" in decision.reason
        ai_client.classify.assert_not_awaited()

    async def test_rule_with_failing_predicate_is_skipped(self, store, ai_client):
        store.list_rules.return_value = [
            Rule(7, 2, "Old animation", 10, (Predicate("less_than", "year", 1990),)),
        ]

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.method == "ai_classification"


class TestAIFallbacks:
    async def test_ai_choice_is_used(self, store, ai_client):
        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.method == "ai_classification"
        assert decision.library_id == 2
        assert decision.confidence == 88
        assert decision.reason == "AI: animated feature"

    async def test_parse_failure_falls_back_to_first_library(self, store, ai_client):
        ai_client.classify.side_effect = AIResponseParseError("garbage")

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.library_id == 1
        assert decision.confidence == 30
        assert decision.reason == "Fallback classification (parsing failed)"

    async def test_out_of_range_index_counts_as_parse_failure(self, store, ai_client):
        ai_client.classify.return_value = AIChoice(library_index=9, confidence=90, reason="AI: ?")

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.library_id == 1
        assert decision.confidence == 30

    async def test_transport_failure_falls_back_with_higher_confidence(self, store, ai_client):
        ai_client.classify.side_effect = TransientCollaboratorError("connection refused")

        decision = await decide(METADATA, "movie", store, ai_client)

        assert decision.library_id == 1
        assert decision.confidence == 50
        assert decision.reason == "Fallback classification (AI failed)"
