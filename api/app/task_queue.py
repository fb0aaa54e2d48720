"""Durable task queue over the ``task_queue`` table.

Claiming is a single atomic UPDATE so concurrent pollers never receive the
same row. Failures are retried on a fixed backoff table until
``max_attempts`` is reached, after which the row stays ``failed`` until an
explicit manual retry.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from . import db
from .errors import ExhaustedRetriesError, InvalidStateError, NotFoundError, PermanentValidationError
from .models import Task

logger = logging.getLogger("mediasort.queue")

RETRY_DELAYS = (30, 60, 120, 300, 600)
CLEARABLE_STATUSES = ("completed", "failed", "cancelled")


def backoff_delay(attempt: int) -> int:
    """Seconds to wait before retry number ``attempt`` (1-based), clamped to the last entry."""
    index = min(max(attempt - 1, 0), len(RETRY_DELAYS) - 1)
    return RETRY_DELAYS[index]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskQueue:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow

    def _now_iso(self) -> str:
        return self._clock().isoformat(timespec="microseconds")

    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any] | None = None,
        *,
        priority: int = 0,
        max_attempts: int = 5,
        source: str | None = None,
    ) -> int:
        if not task_type:
            raise PermanentValidationError("task_type is required")
        if max_attempts < 1:
            raise PermanentValidationError("max_attempts must be at least 1")
        task_id = await db.insert_task(
            task_type,
            payload,
            priority=priority,
            max_attempts=max_attempts,
            source=source,
            now_iso=self._now_iso(),
        )
        logger.info("Enqueued %s task %s (priority=%s, source=%s)", task_type, task_id, priority, source)
        return task_id

    async def dequeue(self) -> Task | None:
        task = await db.claim_next_task(self._now_iso())
        if task:
            logger.debug("Claimed task %s (%s)", task.id, task.task_type)
        return task

    async def complete_task(self, task_id: int, result: Dict[str, Any] | None = None) -> None:
        await db.mark_task_completed(task_id, result, self._now_iso())
        logger.info("Task %s completed", task_id)

    async def fail_task(
        self,
        task_id: int,
        error_message: str,
        attempts: int,
        max_attempts: int,
        *,
        permanent: bool = False,
    ) -> str:
        """Record a failure and return the task's resulting status."""
        next_attempt = attempts + 1
        if permanent or next_attempt >= max_attempts:
            final_attempts = min(next_attempt, max_attempts)
            message = error_message
            if not permanent:
                message = ExhaustedRetriesError(final_attempts, max_attempts, error_message).message
            await db.mark_task_failed(task_id, final_attempts, message, self._now_iso())
            logger.error("Task %s failed permanently: %s", task_id, message)
            return "failed"

        delay = backoff_delay(next_attempt)
        next_retry_at = (self._clock() + timedelta(seconds=delay)).isoformat(timespec="microseconds")
        await db.schedule_task_retry(task_id, next_attempt, error_message, next_retry_at)
        logger.warning(
            "Task %s failed (attempt %s/%s), retrying in %ss: %s",
            task_id,
            next_attempt,
            max_attempts,
            delay,
            error_message,
        )
        return "pending"

    async def reset_stale_processing_tasks(self) -> int:
        count = await db.reset_processing_tasks()
        if count:
            logger.warning("Reset %s stale processing tasks to pending", count)
        return count

    async def cancel_task(self, task_id: int) -> Task:
        task = await self.get_task(task_id)
        if task.status == "cancelled":
            return task
        if task.status != "pending" or not await db.cancel_pending_task(task_id, self._now_iso()):
            raise InvalidStateError(f"Task {task_id} is {task.status}; only pending tasks can be cancelled")
        logger.info("Task %s cancelled", task_id)
        return await self.get_task(task_id)

    async def retry_task(self, task_id: int) -> Task:
        task = await self.get_task(task_id)
        if task.status != "failed" or not await db.requeue_failed_task(task_id, self._now_iso()):
            raise InvalidStateError(f"Task {task_id} is {task.status}; only failed tasks can be retried")
        logger.info("Task %s manually re-queued", task_id)
        return await self.get_task(task_id)

    async def get_task(self, task_id: int) -> Task:
        task = await db.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    async def get_pending_tasks(self, limit: int = 20) -> List[Task]:
        return await db.list_tasks(("pending", "processing"), limit=limit)

    async def get_failed_tasks(self, limit: int = 50) -> List[Task]:
        return await db.list_tasks(("failed",), limit=limit, newest_first=True)

    async def get_counts(self) -> Dict[str, int]:
        return await db.count_tasks_by_status()

    async def clear_tasks(self, status: str, older_than_days: int | None = None) -> int:
        if status not in CLEARABLE_STATUSES:
            raise PermanentValidationError(f"Cannot clear tasks with status {status!r}")
        cutoff = None
        if older_than_days is not None:
            cutoff = (self._clock() - timedelta(days=older_than_days)).isoformat(timespec="microseconds")
        count = await db.delete_tasks(status, cutoff)
        logger.info("Cleared %s %s tasks", count, status)
        return count

    async def retry_all_failed(self) -> int:
        count = await db.requeue_all_failed_tasks(self._now_iso())
        logger.info("Re-queued %s failed tasks", count)
        return count

    async def cancel_all_pending(self) -> int:
        count = await db.cancel_all_pending_tasks(self._now_iso())
        logger.info("Cancelled %s pending tasks", count)
        return count
