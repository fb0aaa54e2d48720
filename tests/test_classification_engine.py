"""
Tests for the classification pipeline: payload parsing, enrichment,
decision, routing and persistence.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from api.app.ai_client import AIChoice
from api.app.classification import ClassificationEngine, ClassificationRequest, parse_classification_payload
from api.app.db import create_custom_rule, get_classification, list_enabled_libraries, set_library_enabled
from api.app.errors import PermanentValidationError
from api.app.library_router import RouteResult
from api.app.metadata_client import MetadataClient
from api.app.models import MediaMetadata


class TestParsePayload:
    def test_direct_payload(self):
        request = parse_classification_payload({"external_id": 603, "media_type": "MOVIE", "title": "The Matrix"})

        assert request == ClassificationRequest(external_id="603", media_type="movie", title="The Matrix")

    def test_overseerr_webhook(self):
        request = parse_classification_payload(
            {
                "notification_type": "MEDIA_APPROVED",
                "subject": "Spirited Away (2001)",
                "media": {"media_type": "movie", "tmdbId": "129"},
            }
        )

        assert request.external_id == "129"
        assert request.media_type == "movie"
        assert request.title == "Spirited Away (2001)"

    def test_missing_id_is_rejected(self):
        with pytest.raises(PermanentValidationError):
            parse_classification_payload({"media_type": "movie"})

    def test_unknown_media_type_is_rejected(self):
        with pytest.raises(PermanentValidationError):
            parse_classification_payload({"external_id": "1", "media_type": "music"})


class StaticMetadata:
    def __init__(self, **fields) -> None:
        self.fields = fields

    async def enrich(self, external_id, media_type, title=None):
        return MediaMetadata(external_id=external_id, media_type=media_type, title=title, **self.fields)


@pytest.fixture
def router():
    mock = AsyncMock()
    mock.route.return_value = RouteResult(True, details={"arr_type": "radarr"})
    return mock


@pytest.fixture
def ai_client():
    mock = AsyncMock()
    mock.classify.return_value = AIChoice(library_index=0, confidence=72, reason="AI: general audience")
    return mock


class TestClassify:
    async def test_rule_match_is_routed_and_stored(self, movie_libraries, router, ai_client):
        await create_custom_rule(
            movie_libraries["anime"],
            "Japanese animation",
            {"genres": "Animation", "original_language": "ja"},
            priority=10,
        )
        engine = ClassificationEngine(
            ai_client,
            StaticMetadata(genres=["Animation"], original_language="ja", year=2001),
            router,
        )

        outcome = await engine.classify(ClassificationRequest("129", "movie", "Spirited Away"))

        record = await get_classification(outcome.classification_id)
        assert outcome.decision.method == "rule_match"
        assert outcome.decision.confidence == 85
        assert outcome.routed is True
        assert record.library_id == movie_libraries["anime"]
        assert record.method == "rule_match"
        assert record.metadata["genres"] == ["Animation"]
        router.route.assert_awaited_once()
        ai_client.classify.assert_not_awaited()

    async def test_ai_tier_when_nothing_else_matches(self, movie_libraries, router, ai_client):
        engine = ClassificationEngine(ai_client, StaticMetadata(genres=["Drama"]), router)

        result = await engine.handle_task({"external_id": "13", "media_type": "movie", "title": "Forrest Gump"})

        assert result["method"] == "ai_classification"
        assert result["library_id"] == movie_libraries["general"]
        assert result["confidence"] == 72
        assert result["routed"] is True

    async def test_routing_failure_keeps_decision(self, movie_libraries, router, ai_client):
        router.route.return_value = RouteResult(False, "radarr returned 500: boom", transient=True)
        engine = ClassificationEngine(ai_client, StaticMetadata(), router)

        outcome = await engine.classify(ClassificationRequest("13", "movie", "Forrest Gump"))

        record = await get_classification(outcome.classification_id)
        assert outcome.routed is False
        assert outcome.routing_error == "radarr returned 500: boom"
        assert record.library_id == movie_libraries["general"]

    async def test_library_disabled_after_decision_is_not_routed(self, movie_libraries, router, ai_client):
        store = AsyncMock()
        store.list_enabled_libraries.return_value = await list_enabled_libraries("movie")
        store.find_exact_match.return_value = {"library_id": movie_libraries["anime"], "library_name": "Anime Movies"}
        engine = ClassificationEngine(ai_client, StaticMetadata(), router, store=store)
        await set_library_enabled(movie_libraries["anime"], False)

        outcome = await engine.classify(ClassificationRequest("129", "movie", "Spirited Away"))

        record = await get_classification(outcome.classification_id)
        assert outcome.decision.method == "exact_match"
        assert outcome.routed is False
        assert "no longer enabled" in outcome.routing_error
        assert record.library_id == movie_libraries["anime"]
        router.route.assert_not_awaited()

    async def test_no_libraries_stores_unassigned_record(self, database, router, ai_client):
        engine = ClassificationEngine(ai_client, StaticMetadata(), router)

        outcome = await engine.classify(ClassificationRequest("13", "movie", "Forrest Gump"))

        record = await get_classification(outcome.classification_id)
        assert outcome.decision.method == "no_libraries"
        assert record.library_id is None
        assert record.confidence == 0
        router.route.assert_not_awaited()


class TestMetadataClient:
    async def test_movie_enrichment(self, monkeypatch):
        monkeypatch.setenv("TMDB_API_KEY", "tmdb-key")
        monkeypatch.setenv("TMDB_BASE_URL", "https://tmdb.test/3")

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/3/movie/129"
            return httpx.Response(
                200,
                json={
                    "title": "Spirited Away",
                    "release_date": "2001-07-20",
                    "genres": [{"id": 16, "name": "Animation"}],
                    "keywords": {"keywords": [{"name": "spirit"}]},
                    "releases": {"countries": [{"iso_3166_1": "US", "certification": "PG"}]},
                    "original_language": "ja",
                },
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            metadata = await MetadataClient(http, asyncio.Semaphore(1)).enrich("129", "movie")

        assert metadata.title == "Spirited Away"
        assert metadata.year == 2001
        assert metadata.genres == ["Animation"]
        assert metadata.keywords == ["spirit"]
        assert metadata.certification == "PG"
        assert metadata.error is None

    async def test_failure_returns_degraded_metadata(self, monkeypatch):
        monkeypatch.setenv("TMDB_API_KEY", "tmdb-key")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"status_message": "not found"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            metadata = await MetadataClient(http, asyncio.Semaphore(1)).enrich("0", "movie", "Unknown")

        assert metadata.title == "Unknown"
        assert metadata.genres == []
        assert metadata.error is not None
        assert "tmdb-key" not in metadata.error
