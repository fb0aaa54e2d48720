from typing import Any, Dict, List

from ..models import ClassificationRecord, Correction, LearnedPattern
from .helpers import _dump_json, _now_iso, _retry_on_lock, _row_to_classification, _row_to_correction
from .patterns import _upsert_pattern
from .pool import get_connection

_RECORD_SELECT = """
    SELECT
        h.id,
        h.external_id,
        h.media_type,
        h.title,
        h.metadata,
        h.library_id,
        l.name AS library_name,
        h.confidence,
        h.method,
        h.reason,
        h.status,
        h.created_at,
        h.updated_at
    FROM classification_history h
    LEFT JOIN libraries l ON l.id = h.library_id
"""


@_retry_on_lock()
async def insert_classification(
    external_id: str,
    media_type: str,
    title: str | None,
    metadata: Dict[str, Any],
    library_id: int | None,
    confidence: int,
    method: str,
    reason: str | None,
) -> int:
    timestamp = _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            INSERT INTO classification_history (
                external_id,
                media_type,
                title,
                metadata,
                library_id,
                confidence,
                method,
                reason,
                status,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'classified', ?, ?)
            """,
            (
                external_id,
                media_type,
                title,
                _dump_json(metadata),
                library_id,
                confidence,
                method,
                reason,
                timestamp,
                timestamp,
            ),
        )
        await conn.commit()
        return int(cursor.lastrowid)


async def get_classification(classification_id: int) -> ClassificationRecord | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            f"{_RECORD_SELECT} WHERE h.id = ?",
            (classification_id,),
        )).fetchone()
    if not row:
        return None
    return _row_to_classification(row)


async def list_classifications(
    limit: int = 50,
    offset: int = 0,
    media_type: str | None = None,
) -> List[ClassificationRecord]:
    sql = _RECORD_SELECT
    params: List[Any] = []
    if media_type:
        sql += " WHERE h.media_type = ?"
        params.append(media_type)
    sql += " ORDER BY h.created_at DESC, h.id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    async with get_connection() as conn:
        rows = await (await conn.execute(sql, params)).fetchall()
    return [_row_to_classification(row) for row in rows]


async def find_exact_match(external_id: str, media_type: str) -> Dict[str, Any] | None:
    """Most recent correction for the item whose target library is still enabled."""
    async with get_connection() as conn:
        row = await (await conn.execute(
            """
            SELECT cc.id AS correction_id,
                   cc.corrected_library_id AS library_id,
                   l.name AS library_name
            FROM classification_corrections cc
            JOIN classification_history h ON h.id = cc.classification_id
            JOIN libraries l ON l.id = cc.corrected_library_id
            WHERE h.external_id = ?
              AND h.media_type = ?
              AND l.enabled = 1
            ORDER BY cc.created_at DESC, cc.id DESC
            LIMIT 1
            """,
            (external_id, media_type),
        )).fetchone()
    if not row:
        return None
    return {
        "correction_id": row["correction_id"],
        "library_id": row["library_id"],
        "library_name": row["library_name"],
    }


async def list_corrections(classification_id: int) -> List[Correction]:
    async with get_connection() as conn:
        rows = await (await conn.execute(
            """
            SELECT id, classification_id, original_library_id, corrected_library_id, corrected_by, created_at
            FROM classification_corrections
            WHERE classification_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (classification_id,),
        )).fetchall()
    return [_row_to_correction(row) for row in rows]


@_retry_on_lock()
async def apply_reclassification(
    classification_id: int,
    original_library_id: int | None,
    target_library_id: int,
    corrected_by: str | None,
    patterns: List[LearnedPattern],
    pattern_step: float,
    pattern_cap: float,
) -> int:
    """Library change, correction audit row and learned patterns in one transaction."""
    timestamp = _now_iso()
    async with get_connection() as conn:
        try:
            await conn.execute(
                """
                UPDATE classification_history
                SET library_id = ?,
                    confidence = 100,
                    status = 'reclassified',
                    updated_at = ?
                WHERE id = ?
                """,
                (target_library_id, timestamp, classification_id),
            )
            cursor = await conn.execute(
                """
                INSERT INTO classification_corrections (
                    classification_id,
                    original_library_id,
                    corrected_library_id,
                    corrected_by,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (classification_id, original_library_id, target_library_id, corrected_by, timestamp),
            )
            correction_id = int(cursor.lastrowid)
            for pattern in patterns:
                await _upsert_pattern(conn, pattern, pattern_step, pattern_cap)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return correction_id


async def count_classifications_by_method() -> Dict[str, int]:
    async with get_connection() as conn:
        rows = await (await conn.execute(
            "SELECT method, COUNT(*) AS total FROM classification_history GROUP BY method"
        )).fetchall()
    return {row["method"]: int(row["total"]) for row in rows}
