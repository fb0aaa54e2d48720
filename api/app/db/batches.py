from typing import Any, Dict, Iterable, List, Tuple

from ..models import Batch, BatchItem
from .helpers import _dump_json, _now_iso, _retry_on_lock, _row_to_batch, _row_to_batch_item
from .pool import get_connection

_UNSET: Any = object()

_BATCH_COLUMNS = """
    id,
    status,
    total_items,
    completed_items,
    failed_items,
    skipped_items,
    paused_at_item,
    pause_on_error,
    created_by,
    error_message,
    created_at,
    started_at,
    completed_at
"""

_ITEM_SELECT = """
    SELECT
        i.id,
        i.batch_id,
        i.classification_id,
        i.target_library_id,
        i.status,
        i.validation_result,
        i.execution_result,
        i.error_message,
        i.execution_order,
        h.title,
        h.media_type,
        cl.name AS current_library_name,
        tl.name AS target_library_name
    FROM reclassification_batch_items i
    LEFT JOIN classification_history h ON h.id = i.classification_id
    LEFT JOIN libraries cl ON cl.id = h.library_id
    LEFT JOIN libraries tl ON tl.id = i.target_library_id
"""


@_retry_on_lock()
async def insert_batch(
    items: List[Tuple[int, int]],
    pause_on_error: bool,
    created_by: str | None,
) -> int:
    """Persist a batch and its (classification_id, target_library_id) items in order."""
    timestamp = _now_iso()
    async with get_connection() as conn:
        try:
            cursor = await conn.execute(
                """
                INSERT INTO reclassification_batches (status, total_items, pause_on_error, created_by, created_at)
                VALUES ('pending', ?, ?, ?, ?)
                """,
                (len(items), 1 if pause_on_error else 0, created_by, timestamp),
            )
            batch_id = int(cursor.lastrowid)
            await conn.executemany(
                """
                INSERT INTO reclassification_batch_items (
                    batch_id,
                    classification_id,
                    target_library_id,
                    status,
                    execution_order,
                    updated_at
                )
                VALUES (?, ?, ?, 'pending', ?, ?)
                """,
                [
                    (batch_id, classification_id, target_library_id, order, timestamp)
                    for order, (classification_id, target_library_id) in enumerate(items, start=1)
                ],
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return batch_id


async def get_batch(batch_id: int) -> Batch | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            f"SELECT {_BATCH_COLUMNS} FROM reclassification_batches WHERE id = ?",
            (batch_id,),
        )).fetchone()
    if not row:
        return None
    return _row_to_batch(row)


async def list_batches(limit: int = 20) -> List[Batch]:
    async with get_connection() as conn:
        rows = await (await conn.execute(
            f"""
            SELECT {_BATCH_COLUMNS}
            FROM reclassification_batches
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )).fetchall()
    return [_row_to_batch(row) for row in rows]


async def list_batch_items(batch_id: int, statuses: Iterable[str] | None = None) -> List[BatchItem]:
    sql = f"{_ITEM_SELECT} WHERE i.batch_id = ?"
    params: List[Any] = [batch_id]
    if statuses is not None:
        status_list = list(statuses)
        sql += f" AND i.status IN ({', '.join('?' for _ in status_list)})"
        params.extend(status_list)
    sql += " ORDER BY i.execution_order ASC"
    async with get_connection() as conn:
        rows = await (await conn.execute(sql, params)).fetchall()
    return [_row_to_batch_item(row) for row in rows]


async def get_batch_item(batch_id: int, item_id: int) -> BatchItem | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            f"{_ITEM_SELECT} WHERE i.batch_id = ? AND i.id = ?",
            (batch_id, item_id),
        )).fetchone()
    if not row:
        return None
    return _row_to_batch_item(row)


@_retry_on_lock()
async def update_batch(
    batch_id: int,
    *,
    status: str | None = None,
    error_message: Any = _UNSET,
    paused_at_item: Any = _UNSET,
    started_at_if_missing: str | None = None,
    completed_at: Any = _UNSET,
    increments: Dict[str, int] | None = None,
    expected_status: Iterable[str] | None = None,
) -> bool:
    """Single-row update; counters move by SQL increments, never read-modify-write."""
    fields: List[str] = []
    params: List[Any] = []
    if status is not None:
        fields.append("status = ?")
        params.append(status)
    if error_message is not _UNSET:
        fields.append("error_message = ?")
        params.append(error_message)
    if paused_at_item is not _UNSET:
        fields.append("paused_at_item = ?")
        params.append(paused_at_item)
    if started_at_if_missing is not None:
        fields.append("started_at = COALESCE(started_at, ?)")
        params.append(started_at_if_missing)
    if completed_at is not _UNSET:
        fields.append("completed_at = ?")
        params.append(completed_at)
    for column, delta in (increments or {}).items():
        if column not in ("completed_items", "failed_items", "skipped_items"):
            raise ValueError(f"Unknown batch counter: {column}")
        fields.append(f"{column} = MAX(0, {column} + ?)")
        params.append(delta)
    if not fields:
        return False
    sql = f"UPDATE reclassification_batches SET {', '.join(fields)} WHERE id = ?"
    params.append(batch_id)
    if expected_status is not None:
        status_list = list(expected_status)
        sql += f" AND status IN ({', '.join('?' for _ in status_list)})"
        params.extend(status_list)
    async with get_connection() as conn:
        cursor = await conn.execute(sql, params)
        await conn.commit()
        return bool(cursor.rowcount)


@_retry_on_lock()
async def update_batch_item(
    item_id: int,
    status: str,
    *,
    validation_result: Any = _UNSET,
    execution_result: Any = _UNSET,
    error_message: Any = _UNSET,
    expected_status: Iterable[str] | None = None,
) -> bool:
    fields = ["status = ?", "updated_at = ?"]
    params: List[Any] = [status, _now_iso()]
    if validation_result is not _UNSET:
        fields.append("validation_result = ?")
        params.append(_dump_json(validation_result))
    if execution_result is not _UNSET:
        fields.append("execution_result = ?")
        params.append(_dump_json(execution_result))
    if error_message is not _UNSET:
        fields.append("error_message = ?")
        params.append(error_message)
    sql = f"UPDATE reclassification_batch_items SET {', '.join(fields)} WHERE id = ?"
    params.append(item_id)
    if expected_status is not None:
        status_list = list(expected_status)
        sql += f" AND status IN ({', '.join('?' for _ in status_list)})"
        params.extend(status_list)
    async with get_connection() as conn:
        cursor = await conn.execute(sql, params)
        await conn.commit()
        return bool(cursor.rowcount)


@_retry_on_lock()
async def cancel_open_items(batch_id: int, open_statuses: List[str]) -> int:
    placeholders = ", ".join("?" for _ in open_statuses)
    async with get_connection() as conn:
        cursor = await conn.execute(
            f"""
            UPDATE reclassification_batch_items
            SET status = 'cancelled', updated_at = ?
            WHERE batch_id = ? AND status IN ({placeholders})
            """,
            (_now_iso(), batch_id, *open_statuses),
        )
        await conn.commit()
        return int(cursor.rowcount or 0)
