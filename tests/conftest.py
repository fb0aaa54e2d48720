"""
Pytest configuration and shared fixtures.

Every database test runs against a fresh SQLite file under ``tmp_path`` so
tests never share queue rows, libraries or batches.
"""

from datetime import datetime, timezone

import pytest

from api.app.db import close_db_pool, init_db, init_db_pool
from api.app.db import create_library, insert_classification, upsert_library_mapping
from api.app.models import LibraryMapping


@pytest.fixture
async def database(tmp_path):
    """Initialise a pooled SQLite database with the full schema."""
    await init_db_pool(pool_size=4, database_url=f"sqlite:///{tmp_path}/mediasort-test.db")
    await init_db()
    yield
    await close_db_pool()


class FixedClock:
    """Callable clock the tests can move forward by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
async def movie_libraries(database):
    """Two mapped movie libraries plus one tv library."""
    general = await create_library("Movies", "movie", priority=10, description="Everything else")
    anime = await create_library("Anime Movies", "movie", priority=5, description="Japanese animation")
    shows = await create_library("TV Shows", "tv", priority=10)
    for library_id, folder in ((general, "/movies"), (anime, "/anime")):
        await upsert_library_mapping(
            LibraryMapping(
                library_id=library_id,
                arr_type="radarr",
                base_url="http://radarr:7878",
                api_key="secret",
                root_folder_path=folder,
                quality_profile_id=1,
            )
        )
    await upsert_library_mapping(
        LibraryMapping(
            library_id=shows,
            arr_type="sonarr",
            base_url="http://sonarr:8989",
            api_key="secret",
            root_folder_path="/tv",
            quality_profile_id=1,
        )
    )
    return {"general": general, "anime": anime, "tv": shows}


@pytest.fixture
async def make_classification(database):
    async def _make(
        external_id: str = "603",
        media_type: str = "movie",
        title: str = "The Matrix",
        library_id: int | None = None,
        metadata: dict | None = None,
        confidence: int = 75,
    ) -> int:
        return await insert_classification(
            external_id,
            media_type,
            title,
            metadata or {"external_id": external_id, "title": title, "genres": ["Action"], "year": 1999},
            library_id,
            confidence,
            "ai_classification",
            "AI: test",
        )

    return _make
