import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from . import db
from .ai_client import _mask_secrets_in_text, _sanitize_response_body
from .config import get_settings
from .models import LibraryMapping

logger = logging.getLogger("mediasort.router")

ARR_FOR_MEDIA_TYPE = {"movie": "radarr", "tv": "sonarr"}


@dataclass(frozen=True)
class RouteResult:
    success: bool
    error: Optional[str] = None
    transient: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RoutePreview:
    can_proceed: bool
    warning: Optional[str] = None
    arr_type: Optional[str] = None
    target_path: Optional[str] = None


def _already_added(response: httpx.Response) -> bool:
    return response.status_code in (400, 409) and "already" in response.text.lower()


class LibraryRouter:
    """Hands items to the Radarr/Sonarr instance mapped to a library."""

    def __init__(self, client: httpx.AsyncClient, semaphore: asyncio.Semaphore) -> None:
        self._client = client
        self._semaphore = semaphore

    def _build_body(self, mapping: LibraryMapping, item: Dict[str, Any]) -> Dict[str, Any]:
        common = {
            "title": item.get("title"),
            "qualityProfileId": mapping.quality_profile_id,
            "rootFolderPath": mapping.root_folder_path,
            "monitored": mapping.monitored,
        }
        if mapping.arr_type == "radarr":
            return {
                **common,
                "tmdbId": int(item["external_id"]),
                "year": item.get("year"),
                "minimumAvailability": "released",
                "addOptions": {"searchForMovie": mapping.search_on_add},
            }
        if not item.get("tvdb_id"):
            raise ValueError(f"No TVDB id for '{item.get('title')}'; Sonarr requires one")
        return {
            **common,
            "tvdbId": int(item["tvdb_id"]),
            "seasonFolder": True,
            "addOptions": {"searchForMissingEpisodes": mapping.search_on_add},
        }

    async def route(self, library_id: int, item: Dict[str, Any]) -> RouteResult:
        mapping = await db.get_library_mapping(library_id)
        if mapping is None:
            return RouteResult(False, f"No routing mapping configured for library {library_id}")
        endpoint = "movie" if mapping.arr_type == "radarr" else "series"
        url = f"{mapping.base_url.rstrip('/')}/api/v3/{endpoint}"
        try:
            body = self._build_body(mapping, item)
        except (KeyError, TypeError, ValueError) as exc:
            return RouteResult(False, f"Cannot build {mapping.arr_type} request: {exc}")
        try:
            async with self._semaphore:
                response = await self._client.post(
                    url,
                    json=body,
                    headers={"X-Api-Key": mapping.api_key},
                    timeout=get_settings().router_timeout,
                )
        except httpx.TransportError as exc:
            message = _mask_secrets_in_text(f"{mapping.arr_type} unreachable: {exc.__class__.__name__}: {exc}")
            return RouteResult(False, message, transient=True)

        if response.is_success or _already_added(response):
            logger.info("Routed '%s' to library %s via %s", item.get("title"), library_id, mapping.arr_type)
            return RouteResult(
                True,
                details={"arr_type": mapping.arr_type, "root_folder_path": mapping.root_folder_path},
            )
        detail = _sanitize_response_body(response.text)[:500]
        return RouteResult(
            False,
            f"{mapping.arr_type} returned {response.status_code}: {detail}",
            transient=response.status_code >= 500,
        )

    async def move(self, library_id: int, item: Dict[str, Any]) -> RouteResult:
        """Relocate an item the Arr instance already tracks into the library's root folder.

        Items the instance does not know yet are added through ``route``.
        """
        mapping = await db.get_library_mapping(library_id)
        if mapping is None:
            return RouteResult(False, f"No routing mapping configured for library {library_id}")
        if mapping.arr_type == "radarr":
            endpoint, lookup = "movie", {"tmdbId": item.get("external_id")}
        else:
            endpoint, lookup = "series", {"tvdbId": item.get("tvdb_id")}
        if not all(lookup.values()):
            return await self.route(library_id, item)

        url = f"{mapping.base_url.rstrip('/')}/api/v3/{endpoint}"
        headers = {"X-Api-Key": mapping.api_key}
        timeout = get_settings().router_timeout
        try:
            async with self._semaphore:
                response = await self._client.get(url, params=lookup, headers=headers, timeout=timeout)
            if not response.is_success:
                detail = _sanitize_response_body(response.text)[:500]
                return RouteResult(
                    False,
                    f"{mapping.arr_type} lookup returned {response.status_code}: {detail}",
                    transient=response.status_code >= 500,
                )
            found = response.json()
            if not found:
                return await self.route(library_id, item)

            existing = found[0]
            current_path = existing.get("path") or ""
            folder = current_path.rstrip("/").split("/")[-1]
            new_path = f"{mapping.root_folder_path.rstrip('/')}/{folder}"
            details = {
                "arr_type": mapping.arr_type,
                "root_folder_path": mapping.root_folder_path,
                "from": current_path,
                "to": new_path,
            }
            if current_path.rstrip("/") == new_path:
                return RouteResult(True, details=details)

            body = {
                **existing,
                "path": new_path,
                "rootFolderPath": mapping.root_folder_path,
                "qualityProfileId": mapping.quality_profile_id,
            }
            async with self._semaphore:
                response = await self._client.put(
                    f"{url}/{existing['id']}",
                    params={"moveFiles": "true"},
                    json=body,
                    headers=headers,
                    timeout=timeout,
                )
        except httpx.TransportError as exc:
            message = _mask_secrets_in_text(f"{mapping.arr_type} unreachable: {exc.__class__.__name__}: {exc}")
            return RouteResult(False, message, transient=True)
        except (KeyError, TypeError, ValueError) as exc:
            return RouteResult(False, f"Unexpected {mapping.arr_type} lookup response: {exc}")

        if not response.is_success:
            detail = _sanitize_response_body(response.text)[:500]
            return RouteResult(
                False,
                f"{mapping.arr_type} update returned {response.status_code}: {detail}",
                transient=response.status_code >= 500,
            )
        logger.info("Moved '%s' from %s to %s via %s", item.get("title"), current_path, new_path, mapping.arr_type)
        return RouteResult(True, details=details)

    async def preview(self, library_id: int) -> RoutePreview:
        """Non-mutating check that a mapping exists and its Arr instance answers."""
        mapping = await db.get_library_mapping(library_id)
        if mapping is None:
            return RoutePreview(False, f"No routing mapping configured for library {library_id}")
        url = f"{mapping.base_url.rstrip('/')}/api/v3/system/status"
        try:
            async with self._semaphore:
                response = await self._client.get(
                    url,
                    headers={"X-Api-Key": mapping.api_key},
                    timeout=get_settings().router_timeout,
                )
        except httpx.HTTPError as exc:
            return RoutePreview(
                False,
                f"{mapping.arr_type} unreachable: {exc.__class__.__name__}",
                mapping.arr_type,
                mapping.root_folder_path,
            )
        if not response.is_success:
            return RoutePreview(
                False,
                f"{mapping.arr_type} status check returned {response.status_code}",
                mapping.arr_type,
                mapping.root_folder_path,
            )
        return RoutePreview(True, None, mapping.arr_type, mapping.root_folder_path)
