from typing import List

import aiosqlite

from ..models import LearnedPattern
from .helpers import _now_iso, _retry_on_lock, _row_to_pattern
from .pool import get_connection


async def _upsert_pattern(
    conn: aiosqlite.Connection,
    pattern: LearnedPattern,
    step: float,
    cap: float,
) -> None:
    timestamp = _now_iso()
    await conn.execute(
        """
        INSERT INTO learning_patterns (
            pattern_type,
            pattern_key,
            pattern_value,
            library_id,
            confidence_score,
            occurrence_count,
            created_at,
            last_seen
        )
        VALUES (?, ?, ?, ?, ?, 1, ?, ?)
        ON CONFLICT(pattern_type, pattern_key, library_id) DO UPDATE SET
            pattern_value = excluded.pattern_value,
            occurrence_count = learning_patterns.occurrence_count + 1,
            confidence_score = MIN(?, learning_patterns.confidence_score + ?),
            last_seen = excluded.last_seen
        """,
        (
            pattern.pattern_type,
            pattern.pattern_key,
            pattern.pattern_value,
            pattern.library_id,
            min(cap, pattern.confidence_score),
            timestamp,
            timestamp,
            cap,
            step,
        ),
    )


@_retry_on_lock()
async def record_patterns(patterns: List[LearnedPattern], step: float, cap: float) -> int:
    count = 0
    async with get_connection() as conn:
        try:
            for pattern in patterns:
                await _upsert_pattern(conn, pattern, step, cap)
                count += 1
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return count


async def list_patterns_for_enabled_libraries(media_type: str) -> List[LearnedPattern]:
    async with get_connection() as conn:
        rows = await (await conn.execute(
            """
            SELECT p.id, p.pattern_type, p.pattern_key, p.pattern_value, p.library_id,
                   p.confidence_score, p.occurrence_count, p.last_seen
            FROM learning_patterns p
            JOIN libraries l ON l.id = p.library_id
            WHERE l.enabled = 1 AND l.media_type = ?
            ORDER BY p.confidence_score DESC, p.occurrence_count DESC, p.id ASC
            """,
            (media_type,),
        )).fetchall()
    return [_row_to_pattern(row) for row in rows]


async def list_patterns(library_id: int | None = None, limit: int = 100) -> List[LearnedPattern]:
    sql = """
        SELECT id, pattern_type, pattern_key, pattern_value, library_id,
               confidence_score, occurrence_count, last_seen
        FROM learning_patterns
    """
    params: list = []
    if library_id is not None:
        sql += " WHERE library_id = ?"
        params.append(library_id)
    sql += " ORDER BY confidence_score DESC, occurrence_count DESC LIMIT ?"
    params.append(limit)
    async with get_connection() as conn:
        rows = await (await conn.execute(sql, params)).fetchall()
    return [_row_to_pattern(row) for row in rows]
