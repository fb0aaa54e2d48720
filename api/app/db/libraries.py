from typing import Any, Dict, List

from ..models import Library, LibraryMapping
from .helpers import _dump_json, _load_json_list, _now_iso, _retry_on_lock, _row_to_library, _safe_json_dict
from .pool import get_connection


@_retry_on_lock()
async def create_library(
    name: str,
    media_type: str,
    *,
    priority: int = 0,
    enabled: bool = True,
    description: str | None = None,
) -> int:
    timestamp = _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            INSERT INTO libraries (name, media_type, enabled, priority, description, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (name, media_type, 1 if enabled else 0, priority, description, timestamp, timestamp),
        )
        await conn.commit()
        return int(cursor.lastrowid)


@_retry_on_lock()
async def set_library_enabled(library_id: int, enabled: bool) -> bool:
    async with get_connection() as conn:
        cursor = await conn.execute(
            "UPDATE libraries SET enabled = ?, updated_at = ? WHERE id = ?",
            (1 if enabled else 0, _now_iso(), library_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)


async def get_library(library_id: int) -> Library | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            "SELECT id, name, media_type, enabled, priority, description FROM libraries WHERE id = ?",
            (library_id,),
        )).fetchone()
    if not row:
        return None
    return _row_to_library(row)


async def list_enabled_libraries(media_type: str) -> List[Library]:
    async with get_connection() as conn:
        rows = await (await conn.execute(
            """
            SELECT id, name, media_type, enabled, priority, description
            FROM libraries
            WHERE media_type = ? AND enabled = 1
            ORDER BY priority DESC, id ASC
            """,
            (media_type,),
        )).fetchall()
    return [_row_to_library(row) for row in rows]


@_retry_on_lock()
async def upsert_library_mapping(mapping: LibraryMapping) -> None:
    async with get_connection() as conn:
        await conn.execute(
            """
            INSERT INTO library_mappings (
                library_id,
                arr_type,
                base_url,
                api_key,
                root_folder_path,
                quality_profile_id,
                monitored,
                search_on_add,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(library_id) DO UPDATE SET
                arr_type = excluded.arr_type,
                base_url = excluded.base_url,
                api_key = excluded.api_key,
                root_folder_path = excluded.root_folder_path,
                quality_profile_id = excluded.quality_profile_id,
                monitored = excluded.monitored,
                search_on_add = excluded.search_on_add,
                updated_at = excluded.updated_at
            """,
            (
                mapping.library_id,
                mapping.arr_type,
                mapping.base_url,
                mapping.api_key,
                mapping.root_folder_path,
                mapping.quality_profile_id,
                1 if mapping.monitored else 0,
                1 if mapping.search_on_add else 0,
                _now_iso(),
            ),
        )
        await conn.commit()


async def get_library_mapping(library_id: int) -> LibraryMapping | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            """
            SELECT library_id, arr_type, base_url, api_key, root_folder_path,
                   quality_profile_id, monitored, search_on_add
            FROM library_mappings
            WHERE library_id = ?
            """,
            (library_id,),
        )).fetchone()
    if not row:
        return None
    return LibraryMapping(
        library_id=row["library_id"],
        arr_type=row["arr_type"],
        base_url=row["base_url"],
        api_key=row["api_key"] or "",
        root_folder_path=row["root_folder_path"],
        quality_profile_id=row["quality_profile_id"],
        monitored=bool(row["monitored"]),
        search_on_add=bool(row["search_on_add"]),
    )


@_retry_on_lock()
async def create_custom_rule(
    library_id: int,
    name: str,
    rule: Dict[str, Any] | List[Dict[str, Any]],
    *,
    priority: int = 0,
    enabled: bool = True,
) -> int:
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            INSERT INTO library_custom_rules (library_id, name, rule_json, priority, enabled, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (library_id, name, _dump_json(rule), priority, 1 if enabled else 0, _now_iso()),
        )
        await conn.commit()
        return int(cursor.lastrowid)


async def list_enabled_rules(media_type: str) -> List[Dict[str, Any]]:
    """Enabled rules of enabled libraries for one media type, highest priority first."""
    async with get_connection() as conn:
        rows = await (await conn.execute(
            """
            SELECT r.id, r.library_id, r.name, r.rule_json, r.priority
            FROM library_custom_rules r
            JOIN libraries l ON l.id = r.library_id
            WHERE r.enabled = 1 AND l.enabled = 1 AND l.media_type = ?
            ORDER BY r.priority DESC, r.id ASC
            """,
            (media_type,),
        )).fetchall()
    rules: List[Dict[str, Any]] = []
    for row in rows:
        raw = row["rule_json"]
        conditions: Any = _load_json_list(raw) or _safe_json_dict(raw)
        rules.append(
            {
                "id": row["id"],
                "library_id": row["library_id"],
                "name": row["name"],
                "priority": row["priority"],
                "conditions": conditions,
            }
        )
    return rules
