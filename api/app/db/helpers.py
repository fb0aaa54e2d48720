import asyncio
import functools
import json
import logging
import os
import random
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import aiosqlite

from ..models import Batch, BatchItem, ClassificationRecord, Correction, LearnedPattern, Library, Task

logger = logging.getLogger("mediasort.db")


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r, fallback to %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("Out-of-range %s=%r, fallback to %s", name, raw, default)
        return default
    return value


def _retry_on_lock(
    max_attempts: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 0.5,
) -> Callable:
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except sqlite3.OperationalError as exc:
                    message = str(exc).lower()
                    if "database is locked" not in message and "database table is locked" not in message:
                        raise
                    if attempt >= max_attempts - 1:
                        raise
                    delay = min(max_delay, base_delay * (2**attempt))
                    jitter = random.uniform(0, delay)
                    logger.warning("SQLite locked, retrying in %.2fs", delay + jitter)
                    await asyncio.sleep(delay + jitter)
                    attempt += 1
        return wrapper
    return decorator


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _sqlite_path(database_url: str) -> str:
    if database_url.startswith("sqlite:////"):
        return "/" + database_url[len("sqlite:////"):]
    if database_url.startswith("sqlite:///"):
        return database_url[len("sqlite:///"):]
    raise ValueError("Only sqlite is supported")


def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def _load_json_object(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        loaded = json.loads(value)
        if isinstance(loaded, dict):
            return loaded
    except json.JSONDecodeError:
        return None
    return None


def _safe_json_dict(value: Optional[str]) -> Dict[str, Any]:
    return _load_json_object(value) or {}


def _load_json_list(value: Optional[str]) -> List[Any]:
    if not value:
        return []
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return []
    if isinstance(loaded, list):
        return loaded
    return []


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _row_to_task(row: aiosqlite.Row) -> Task:
    return Task(
        id=row["id"],
        task_type=row["task_type"],
        payload=_safe_json_dict(row["payload"]),
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        next_retry_at=row["next_retry_at"],
        source=row["source"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        error_message=row["error_message"],
    )


def _row_to_library(row: aiosqlite.Row) -> Library:
    return Library(
        id=row["id"],
        name=row["name"],
        media_type=row["media_type"],
        enabled=bool(row["enabled"]),
        priority=row["priority"] or 0,
        description=row["description"],
    )


def _row_to_classification(row: aiosqlite.Row) -> ClassificationRecord:
    keys = row.keys()
    return ClassificationRecord(
        id=row["id"],
        external_id=row["external_id"],
        media_type=row["media_type"],
        title=row["title"],
        metadata=_safe_json_dict(row["metadata"]),
        library_id=row["library_id"],
        library_name=row["library_name"] if "library_name" in keys else None,
        confidence=row["confidence"] or 0,
        method=row["method"],
        reason=row["reason"],
        status=row["status"] or "classified",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_correction(row: aiosqlite.Row) -> Correction:
    return Correction(
        id=row["id"],
        classification_id=row["classification_id"],
        original_library_id=row["original_library_id"],
        corrected_library_id=row["corrected_library_id"],
        corrected_by=row["corrected_by"],
        created_at=row["created_at"],
    )


def _row_to_pattern(row: aiosqlite.Row) -> LearnedPattern:
    return LearnedPattern(
        id=row["id"],
        pattern_type=row["pattern_type"],
        pattern_key=row["pattern_key"],
        pattern_value=row["pattern_value"],
        library_id=row["library_id"],
        confidence_score=float(row["confidence_score"] or 0.0),
        occurrence_count=row["occurrence_count"] or 0,
        last_seen=row["last_seen"],
    )


def _row_to_batch(row: aiosqlite.Row) -> Batch:
    return Batch(
        id=row["id"],
        status=row["status"],
        total_items=row["total_items"] or 0,
        completed_items=row["completed_items"] or 0,
        failed_items=row["failed_items"] or 0,
        skipped_items=row["skipped_items"] or 0,
        paused_at_item=row["paused_at_item"],
        pause_on_error=bool(row["pause_on_error"]),
        created_by=row["created_by"],
        error_message=row["error_message"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _row_to_batch_item(row: aiosqlite.Row) -> BatchItem:
    keys = row.keys()
    return BatchItem(
        id=row["id"],
        batch_id=row["batch_id"],
        classification_id=row["classification_id"],
        target_library_id=row["target_library_id"],
        status=row["status"],
        validation_result=_load_json_object(row["validation_result"]),
        execution_result=_load_json_object(row["execution_result"]),
        error_message=row["error_message"],
        execution_order=row["execution_order"],
        title=row["title"] if "title" in keys else None,
        media_type=row["media_type"] if "media_type" in keys else None,
        current_library_name=row["current_library_name"] if "current_library_name" in keys else None,
        target_library_name=row["target_library_name"] if "target_library_name" in keys else None,
    )
