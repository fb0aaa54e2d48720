from typing import Any, Dict, List

from ..models import LearnedPattern
from .helpers import _dump_json, _now_iso, _retry_on_lock, _safe_json_dict
from .patterns import _upsert_pattern
from .pool import get_connection


@_retry_on_lock()
async def create_question(
    question_key: str,
    question_text: str,
    response_options: Dict[str, Dict[str, Any]],
) -> int:
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            INSERT INTO clarification_questions (question_key, question_text, response_options, enabled, created_at)
            VALUES (?, ?, ?, 1, ?)
            """,
            (question_key, question_text, _dump_json(response_options), _now_iso()),
        )
        await conn.commit()
        return int(cursor.lastrowid)


async def get_question(question_id: int) -> Dict[str, Any] | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            """
            SELECT id, question_key, question_text, response_options, enabled
            FROM clarification_questions
            WHERE id = ?
            """,
            (question_id,),
        )).fetchone()
    if not row:
        return None
    return {
        "id": row["id"],
        "question_key": row["question_key"],
        "question_text": row["question_text"],
        "response_options": _safe_json_dict(row["response_options"]),
        "enabled": bool(row["enabled"]),
    }


@_retry_on_lock()
async def save_clarification_response(
    classification_id: int,
    question_id: int,
    response_value: str,
    confidence_before: int,
    confidence_after: int,
    responded_by: str | None,
    metadata: Dict[str, Any],
    patterns: List[LearnedPattern],
    pattern_step: float,
    pattern_cap: float,
) -> int:
    timestamp = _now_iso()
    async with get_connection() as conn:
        try:
            cursor = await conn.execute(
                """
                INSERT INTO clarification_responses (
                    classification_id,
                    question_id,
                    response_value,
                    confidence_before,
                    confidence_after,
                    responded_by,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    classification_id,
                    question_id,
                    response_value,
                    confidence_before,
                    confidence_after,
                    responded_by,
                    timestamp,
                ),
            )
            response_id = int(cursor.lastrowid)
            await conn.execute(
                """
                UPDATE classification_history
                SET confidence = ?,
                    metadata = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (confidence_after, _dump_json(metadata), timestamp, classification_id),
            )
            for pattern in patterns:
                await _upsert_pattern(conn, pattern, pattern_step, pattern_cap)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return response_id
