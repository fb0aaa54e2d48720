import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .ai_client import _mask_secrets_in_text
from .config import get_settings
from .models import MediaMetadata

logger = logging.getLogger("mediasort.metadata")


def _year_from(date_value: Optional[str]) -> Optional[int]:
    if not date_value or len(date_value) < 4:
        return None
    try:
        return int(date_value[:4])
    except ValueError:
        return None


def _names(entries: Any) -> List[str]:
    return [str(entry["name"]) for entry in entries or [] if isinstance(entry, dict) and entry.get("name")]


def _movie_certification(data: Dict[str, Any]) -> Optional[str]:
    for country in (data.get("releases") or {}).get("countries") or []:
        if country.get("iso_3166_1") == "US" and country.get("certification"):
            return str(country["certification"])
    return None


def _tv_certification(data: Dict[str, Any]) -> Optional[str]:
    for rating in (data.get("content_ratings") or {}).get("results") or []:
        if rating.get("iso_3166_1") == "US" and rating.get("rating"):
            return str(rating["rating"])
    return None


def degraded_metadata(external_id: str, media_type: str, title: Optional[str], error: str) -> MediaMetadata:
    return MediaMetadata(external_id=str(external_id), media_type=media_type, title=title, error=error)


class MetadataClient:
    """TMDB enrichment. Failures come back as a degraded object, never as an exception."""

    def __init__(self, client: httpx.AsyncClient, semaphore: asyncio.Semaphore) -> None:
        self._client = client
        self._semaphore = semaphore

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        settings = get_settings()
        url = f"{settings.tmdb_base_url.rstrip('/')}/{path.lstrip('/')}"
        async with self._semaphore:
            response = await self._client.get(
                url,
                params={"api_key": settings.tmdb_api_key, **params},
                timeout=settings.tmdb_timeout,
            )
        response.raise_for_status()
        return response.json()

    async def enrich(self, external_id: str, media_type: str, title: Optional[str] = None) -> MediaMetadata:
        if not get_settings().tmdb_api_key:
            return degraded_metadata(external_id, media_type, title, "TMDB_API_KEY is not configured")
        try:
            if media_type == "movie":
                data = await self._get(
                    f"movie/{external_id}",
                    {"append_to_response": "keywords,releases"},
                )
                keywords = _names((data.get("keywords") or {}).get("keywords"))
                certification = _movie_certification(data)
                year = _year_from(data.get("release_date"))
                tvdb_id = None
            else:
                data = await self._get(
                    f"tv/{external_id}",
                    {"append_to_response": "keywords,content_ratings,external_ids"},
                )
                keywords = _names((data.get("keywords") or {}).get("results"))
                certification = _tv_certification(data)
                year = _year_from(data.get("first_air_date"))
                tvdb_id = (data.get("external_ids") or {}).get("tvdb_id")
        except (httpx.HTTPError, ValueError) as exc:
            message = _mask_secrets_in_text(f"{exc.__class__.__name__}: {exc}")
            logger.warning("Metadata enrichment failed for %s %s: %s", media_type, external_id, message)
            return degraded_metadata(external_id, media_type, title, message)

        return MediaMetadata(
            external_id=str(external_id),
            media_type=media_type,
            title=data.get("title") or data.get("name") or title,
            original_title=data.get("original_title") or data.get("original_name"),
            year=year,
            overview=data.get("overview"),
            genres=_names(data.get("genres")),
            keywords=keywords,
            certification=certification,
            rating=data.get("vote_average"),
            popularity=data.get("popularity"),
            original_language=data.get("original_language"),
            tvdb_id=tvdb_id,
        )
