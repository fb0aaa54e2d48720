"""
Tests for the reclassification primitive and the Arr router it drives.

Radarr is replaced by an ``httpx.MockTransport`` so the real request
building and response handling run.
"""

import asyncio
import json

import httpx
import pytest

from api.app.db import (
    find_exact_match,
    get_classification,
    list_corrections,
    list_patterns,
    set_library_enabled,
)
from api.app.errors import NotFoundError, PermanentValidationError
from api.app.library_router import LibraryRouter
from api.app.reclassification import ReclassificationService


class ArrStub:
    def __init__(self, status_code: int = 201, body: str = "{}") -> None:
        self.status_code = status_code
        self.body = body
        self.existing: list = []
        self.update_status = 202
        self.requests: list = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/system/status"):
            return httpx.Response(200, json={"version": "5.0"})
        if request.method == "GET":
            return httpx.Response(200, json=self.existing)
        if request.method == "PUT":
            return httpx.Response(self.update_status, json=json.loads(request.content))
        return httpx.Response(self.status_code, text=self.body)


@pytest.fixture
def arr():
    return ArrStub()


@pytest.fixture
async def service(arr):
    client = httpx.AsyncClient(transport=httpx.MockTransport(arr))
    yield ReclassificationService(LibraryRouter(client, asyncio.Semaphore(2)))
    await client.aclose()


@pytest.fixture
async def record_id(make_classification, movie_libraries):
    return await make_classification(
        external_id="129",
        title="Spirited Away",
        library_id=movie_libraries["general"],
        metadata={
            "external_id": "129",
            "title": "Spirited Away",
            "year": 2001,
            "genres": ["Animation", "Fantasy"],
            "keywords": ["spirit"],
            "certification": "PG",
        },
    )


class TestExecute:
    async def test_successful_move_updates_record_and_learns(self, service, arr, record_id, movie_libraries):
        result = await service.execute(record_id, movie_libraries["anime"], corrected_by="alice")

        record = await get_classification(record_id)
        corrections = await list_corrections(record_id)
        patterns = await list_patterns(movie_libraries["anime"])
        body = json.loads(arr.requests[-1].content)

        assert result["success"] is True
        assert record.library_id == movie_libraries["anime"]
        assert record.confidence == 100
        assert record.status == "reclassified"
        assert len(corrections) == 1
        assert corrections[0].original_library_id == movie_libraries["general"]
        assert corrections[0].corrected_by == "alice"
        assert {(p.pattern_type, p.pattern_key) for p in patterns} == {
            ("genre", "animation"),
            ("genre", "fantasy"),
            ("keyword", "spirit"),
            ("rating", "pg"),
            ("year_range", "2000s"),
        }
        assert all(p.confidence_score == pytest.approx(0.60) for p in patterns)
        assert body["tmdbId"] == 129
        assert body["rootFolderPath"] == "/anime"
        assert [request.method for request in arr.requests] == ["GET", "POST"]
        assert arr.requests[0].url.params["tmdbId"] == "129"
        assert arr.requests[0].headers["X-Api-Key"] == "secret"

    async def test_exact_match_follows_correction(self, service, record_id, movie_libraries):
        await service.execute(record_id, movie_libraries["anime"])

        match = await find_exact_match("129", "movie")

        assert match["library_id"] == movie_libraries["anime"]

    async def test_repeat_correction_reinforces_patterns(self, service, record_id, movie_libraries):
        await service.execute(record_id, movie_libraries["anime"])
        await service.execute(record_id, movie_libraries["anime"])

        patterns = {p.pattern_key: p for p in await list_patterns(movie_libraries["anime"])}

        assert patterns["animation"].confidence_score == pytest.approx(0.65)
        assert patterns["animation"].occurrence_count == 2

    async def test_routing_failure_leaves_record_untouched(self, service, arr, record_id, movie_libraries):
        arr.status_code = 500
        arr.body = "internal error"

        result = await service.execute(record_id, movie_libraries["anime"])

        record = await get_classification(record_id)
        assert result["success"] is False
        assert result["transient"] is True
        assert record.library_id == movie_libraries["general"]
        assert record.confidence == 75
        assert await list_corrections(record_id) == []

    async def test_already_added_counts_as_success(self, service, arr, record_id, movie_libraries):
        arr.status_code = 400
        arr.body = '[{"errorMessage": "This movie has already been added"}]'

        result = await service.execute(record_id, movie_libraries["anime"])

        assert result["success"] is True

    async def test_tracked_movie_is_moved_to_target_root(self, service, arr, record_id, movie_libraries):
        arr.existing = [{"id": 7, "tmdbId": 129, "path": "/movies/Spirited Away (2001)", "monitored": True}]

        result = await service.execute(record_id, movie_libraries["anime"])

        update = arr.requests[-1]
        body = json.loads(update.content)
        assert [request.method for request in arr.requests] == ["GET", "PUT"]
        assert update.url.path == "/api/v3/movie/7"
        assert update.url.params["moveFiles"] == "true"
        assert body["path"] == "/anime/Spirited Away (2001)"
        assert body["rootFolderPath"] == "/anime"
        assert body["monitored"] is True
        assert result["success"] is True
        assert result["details"]["from"] == "/movies/Spirited Away (2001)"
        assert result["details"]["to"] == "/anime/Spirited Away (2001)"
        assert (await get_classification(record_id)).library_id == movie_libraries["anime"]

    async def test_failed_move_leaves_record_untouched(self, service, arr, record_id, movie_libraries):
        arr.existing = [{"id": 7, "tmdbId": 129, "path": "/movies/Spirited Away (2001)"}]
        arr.update_status = 400

        result = await service.execute(record_id, movie_libraries["anime"])

        assert result["success"] is False
        assert result["transient"] is False
        assert (await get_classification(record_id)).library_id == movie_libraries["general"]
        assert await list_corrections(record_id) == []

    async def test_cross_media_type_is_rejected(self, service, arr, record_id, movie_libraries):
        with pytest.raises(PermanentValidationError):
            await service.execute(record_id, movie_libraries["tv"])
        assert arr.requests == []

    async def test_disabled_library_is_rejected(self, service, record_id, movie_libraries):
        await set_library_enabled(movie_libraries["anime"], False)

        with pytest.raises(PermanentValidationError):
            await service.execute(record_id, movie_libraries["anime"])

    async def test_missing_records_raise_not_found(self, service, record_id, movie_libraries):
        with pytest.raises(NotFoundError):
            await service.execute(9999, movie_libraries["anime"])
        with pytest.raises(NotFoundError):
            await service.execute(record_id, 9999)


class TestPreview:
    async def test_preview_does_not_mutate(self, service, arr, record_id, movie_libraries):
        preview = await service.preview(record_id, movie_libraries["anime"])

        record = await get_classification(record_id)
        assert preview["can_proceed"] is True
        assert preview["target_path"] == "/anime"
        assert record.library_id == movie_libraries["general"]
        assert [request.method for request in arr.requests] == ["GET"]

    async def test_preview_reports_type_mismatch(self, service, record_id, movie_libraries):
        preview = await service.preview(record_id, movie_libraries["tv"])

        assert preview["can_proceed"] is False
        assert "tv library" in preview["warning"]
