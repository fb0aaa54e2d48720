import json
from typing import Any, Dict, Iterable, List

from ..models import Task
from .helpers import _dump_json, _now_iso, _retry_on_lock, _row_to_task
from .pool import get_connection

_TASK_COLUMNS = """
    id,
    task_type,
    payload,
    status,
    priority,
    attempts,
    max_attempts,
    next_retry_at,
    source,
    created_at,
    started_at,
    completed_at,
    error_message
"""


@_retry_on_lock()
async def insert_task(
    task_type: str,
    payload: Dict[str, Any] | None,
    *,
    priority: int = 0,
    max_attempts: int = 5,
    source: str | None = None,
    now_iso: str | None = None,
) -> int:
    timestamp = now_iso or _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            INSERT INTO task_queue (
                task_type,
                payload,
                status,
                priority,
                attempts,
                max_attempts,
                next_retry_at,
                source,
                created_at
            )
            VALUES (?, ?, 'pending', ?, 0, ?, ?, ?, ?)
            """,
            (
                task_type,
                _dump_json(payload or {}),
                priority,
                max_attempts,
                timestamp,
                source,
                timestamp,
            ),
        )
        await conn.commit()
        return int(cursor.lastrowid)


@_retry_on_lock()
async def claim_next_task(now_iso: str) -> Task | None:
    """Flip the best eligible pending row to processing in one statement.

    SQLite takes the write lock before evaluating the subquery, so two
    callers can never both see the same row as pending.
    """
    async with get_connection() as conn:
        cursor = await conn.execute(
            f"""
            UPDATE task_queue
            SET status = 'processing',
                started_at = ?
            WHERE id = (
                SELECT id
                FROM task_queue
                WHERE status = 'pending'
                  AND next_retry_at <= ?
                ORDER BY priority DESC, created_at ASC, id ASC
                LIMIT 1
            )
              AND status = 'pending'
            RETURNING {_TASK_COLUMNS}
            """,
            (now_iso, now_iso),
        )
        row = await cursor.fetchone()
        await cursor.close()
        await conn.commit()
    if not row:
        return None
    return _row_to_task(row)


@_retry_on_lock()
async def mark_task_completed(task_id: int, result: Dict[str, Any] | None, now_iso: str | None = None) -> bool:
    timestamp = now_iso or _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            UPDATE task_queue
            SET status = 'completed',
                completed_at = ?,
                error_message = NULL,
                payload = json_set(COALESCE(payload, '{}'), '$.result', json(?))
            WHERE id = ?
            """,
            (timestamp, json.dumps(result if result is not None else {}), task_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)


@_retry_on_lock()
async def mark_task_failed(task_id: int, attempts: int, error_message: str, now_iso: str | None = None) -> bool:
    timestamp = now_iso or _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            UPDATE task_queue
            SET status = 'failed',
                attempts = ?,
                error_message = ?,
                completed_at = ?
            WHERE id = ?
            """,
            (attempts, error_message, timestamp, task_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)


@_retry_on_lock()
async def schedule_task_retry(
    task_id: int,
    attempts: int,
    error_message: str,
    next_retry_at: str,
) -> bool:
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            UPDATE task_queue
            SET status = 'pending',
                attempts = ?,
                error_message = ?,
                next_retry_at = ?,
                started_at = NULL
            WHERE id = ?
            """,
            (attempts, error_message, next_retry_at, task_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)


@_retry_on_lock()
async def reset_processing_tasks() -> int:
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            UPDATE task_queue
            SET status = 'pending',
                started_at = NULL
            WHERE status = 'processing'
            """
        )
        await conn.commit()
        return int(cursor.rowcount or 0)


@_retry_on_lock()
async def cancel_pending_task(task_id: int, now_iso: str | None = None) -> bool:
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            UPDATE task_queue
            SET status = 'cancelled',
                completed_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (now_iso or _now_iso(), task_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)


@_retry_on_lock()
async def requeue_failed_task(task_id: int, now_iso: str | None = None) -> bool:
    timestamp = now_iso or _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            UPDATE task_queue
            SET status = 'pending',
                attempts = 0,
                error_message = NULL,
                next_retry_at = ?,
                started_at = NULL,
                completed_at = NULL
            WHERE id = ? AND status = 'failed'
            """,
            (timestamp, task_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)


@_retry_on_lock()
async def requeue_all_failed_tasks(now_iso: str | None = None) -> int:
    timestamp = now_iso or _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            UPDATE task_queue
            SET status = 'pending',
                attempts = 0,
                error_message = NULL,
                next_retry_at = ?,
                started_at = NULL,
                completed_at = NULL
            WHERE status = 'failed'
            """,
            (timestamp,),
        )
        await conn.commit()
        return int(cursor.rowcount or 0)


@_retry_on_lock()
async def cancel_all_pending_tasks(now_iso: str | None = None) -> int:
    async with get_connection() as conn:
        cursor = await conn.execute(
            "UPDATE task_queue SET status = 'cancelled', completed_at = ? WHERE status = 'pending'",
            (now_iso or _now_iso(),),
        )
        await conn.commit()
        return int(cursor.rowcount or 0)


@_retry_on_lock()
async def delete_tasks(status: str, completed_before: str | None = None) -> int:
    sql = "DELETE FROM task_queue WHERE status = ?"
    params: List[Any] = [status]
    if completed_before is not None:
        sql += " AND COALESCE(completed_at, created_at) < ?"
        params.append(completed_before)
    async with get_connection() as conn:
        cursor = await conn.execute(sql, params)
        await conn.commit()
        return int(cursor.rowcount or 0)


async def get_task(task_id: int) -> Task | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM task_queue WHERE id = ?",
            (task_id,),
        )).fetchone()
    if not row:
        return None
    return _row_to_task(row)


async def list_tasks(statuses: Iterable[str], limit: int = 20, newest_first: bool = False) -> List[Task]:
    status_list = list(statuses)
    placeholders = ", ".join("?" for _ in status_list)
    order = (
        "COALESCE(completed_at, created_at) DESC, id DESC"
        if newest_first
        else "priority DESC, created_at ASC, id ASC"
    )
    async with get_connection() as conn:
        rows = await (await conn.execute(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM task_queue
            WHERE status IN ({placeholders})
            ORDER BY {order}
            LIMIT ?
            """,
            (*status_list, limit),
        )).fetchall()
    return [_row_to_task(row) for row in rows]


async def count_tasks_by_status() -> Dict[str, int]:
    counts = {status: 0 for status in ("pending", "processing", "completed", "failed", "cancelled")}
    async with get_connection() as conn:
        rows = await (await conn.execute(
            "SELECT status, COUNT(*) AS total FROM task_queue GROUP BY status"
        )).fetchall()
    for row in rows:
        counts[row["status"]] = int(row["total"])
    return counts
