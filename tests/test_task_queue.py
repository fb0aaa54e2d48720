"""
Tests for the durable task queue.

Covers atomic claiming, ordering, the retry backoff table, the attempts
bound, startup recovery and the manual lifecycle operations.
"""

import asyncio
from datetime import timedelta

import pytest

from api.app.errors import InvalidStateError, NotFoundError, PermanentValidationError
from api.app.task_queue import RETRY_DELAYS, TaskQueue, backoff_delay


@pytest.fixture
def queue(database, clock):
    return TaskQueue(clock=clock)


class TestEnqueue:
    """Tests for TaskQueue.enqueue."""

    async def test_enqueue_creates_pending_task(self, queue):
        task_id = await queue.enqueue("classification", {"external_id": "603"}, source="manual")
        task = await queue.get_task(task_id)

        assert task.status == "pending"
        assert task.attempts == 0
        assert task.max_attempts == 5
        assert task.payload == {"external_id": "603"}
        assert task.source == "manual"

    async def test_rejects_zero_max_attempts(self, queue):
        with pytest.raises(PermanentValidationError):
            await queue.enqueue("classification", {}, max_attempts=0)

    async def test_rejects_empty_task_type(self, queue):
        with pytest.raises(PermanentValidationError):
            await queue.enqueue("", {})


class TestDequeue:
    """Tests for claiming tasks."""

    async def test_empty_queue_returns_none(self, queue):
        assert await queue.dequeue() is None

    async def test_claim_marks_processing(self, queue):
        task_id = await queue.enqueue("classification", {})
        task = await queue.dequeue()

        assert task is not None
        assert task.id == task_id
        assert task.status == "processing"
        assert task.started_at is not None

    async def test_priority_then_age_ordering(self, queue, clock):
        low = await queue.enqueue("classification", {"n": 1}, priority=0)
        clock.now += timedelta(seconds=1)
        high_old = await queue.enqueue("classification", {"n": 2}, priority=5)
        clock.now += timedelta(seconds=1)
        high_new = await queue.enqueue("classification", {"n": 3}, priority=5)

        claimed = [(await queue.dequeue()).id for _ in range(3)]

        assert claimed == [high_old, high_new, low]

    async def test_same_timestamp_falls_back_to_id(self, queue):
        first = await queue.enqueue("classification", {})
        second = await queue.enqueue("classification", {})

        assert (await queue.dequeue()).id == first
        assert (await queue.dequeue()).id == second

    async def test_future_retry_is_not_claimed(self, queue, clock):
        task_id = await queue.enqueue("classification", {})
        task = await queue.dequeue()
        await queue.fail_task(task.id, "boom", task.attempts, task.max_attempts)

        assert await queue.dequeue() is None

        clock.now += timedelta(seconds=RETRY_DELAYS[0])
        retried = await queue.dequeue()
        assert retried is not None
        assert retried.id == task_id
        assert retried.attempts == 1

    async def test_concurrent_dequeue_never_shares_a_task(self, queue):
        ids = {await queue.enqueue("classification", {"n": n}) for n in range(5)}

        results = await asyncio.gather(*(queue.dequeue() for _ in range(3)))

        claimed = [task.id for task in results if task is not None]
        assert len(claimed) == 3
        assert len(set(claimed)) == 3
        assert set(claimed) <= ids

    async def test_more_pollers_than_tasks(self, queue):
        for n in range(2):
            await queue.enqueue("classification", {"n": n})

        results = await asyncio.gather(*(queue.dequeue() for _ in range(5)))

        claimed = [task.id for task in results if task is not None]
        assert len(claimed) == 2
        assert len(set(claimed)) == 2
        assert results.count(None) == 3


class TestFailTask:
    """Tests for retry scheduling and the attempts bound."""

    def test_backoff_table_clamps_to_last_entry(self):
        assert [backoff_delay(n) for n in range(1, 8)] == [30, 60, 120, 300, 600, 600, 600]

    async def test_backoff_sequence(self, queue, clock):
        task_id = await queue.enqueue("classification", {}, max_attempts=10)

        for attempts, expected in enumerate([30, 60, 120, 300, 600, 600]):
            status = await queue.fail_task(task_id, "timeout", attempts, 10)
            task = await queue.get_task(task_id)

            assert status == "pending"
            assert task.status == "pending"
            assert task.attempts == attempts + 1
            assert task.next_retry_at == (clock.now + timedelta(seconds=expected)).isoformat(
                timespec="microseconds"
            )

    async def test_attempts_never_exceed_max(self, queue, clock):
        task_id = await queue.enqueue("classification", {}, max_attempts=3)

        statuses = []
        for _ in range(3):
            clock.now += timedelta(hours=1)
            task = await queue.dequeue()
            assert task is not None
            statuses.append(await queue.fail_task(task.id, "boom", task.attempts, task.max_attempts))

        task = await queue.get_task(task_id)
        assert statuses == ["pending", "pending", "failed"]
        assert task.status == "failed"
        assert task.attempts == 3
        assert task.error_message == "Failed after 3/3 attempts: boom"

        clock.now += timedelta(hours=1)
        assert await queue.dequeue() is None

    async def test_permanent_failure_skips_retries(self, queue):
        task_id = await queue.enqueue("classification", {}, max_attempts=5)
        task = await queue.dequeue()

        status = await queue.fail_task(task.id, "bad payload", task.attempts, task.max_attempts, permanent=True)

        stored = await queue.get_task(task_id)
        assert status == "failed"
        assert stored.attempts == 1
        assert stored.error_message == "bad payload"

    async def test_single_attempt_task_fails_immediately(self, queue):
        task_id = await queue.enqueue("classification", {}, max_attempts=1)
        task = await queue.dequeue()

        assert await queue.fail_task(task.id, "boom", task.attempts, task.max_attempts) == "failed"
        assert (await queue.get_task(task_id)).attempts == 1


class TestRecovery:
    """Tests for resetting tasks left processing by a crash."""

    async def test_reset_only_touches_processing(self, queue):
        processing = await queue.enqueue("classification", {"n": 1})
        completed = await queue.enqueue("classification", {"n": 2})
        failed = await queue.enqueue("classification", {"n": 3})
        cancelled = await queue.enqueue("classification", {"n": 4})

        claimed = [await queue.dequeue() for _ in range(3)]
        assert [task.id for task in claimed] == [processing, completed, failed]
        await queue.complete_task(completed, {"ok": True})
        await queue.fail_task(failed, "boom", 0, 5, permanent=True)
        await queue.cancel_task(cancelled)

        assert await queue.reset_stale_processing_tasks() == 1

        assert (await queue.get_task(processing)).status == "pending"
        assert (await queue.get_task(completed)).status == "completed"
        assert (await queue.get_task(failed)).status == "failed"
        assert (await queue.get_task(cancelled)).status == "cancelled"

    async def test_complete_stores_result_in_payload(self, queue):
        task_id = await queue.enqueue("classification", {"external_id": "603"})
        await queue.dequeue()
        await queue.complete_task(task_id, {"library_id": 2})

        task = await queue.get_task(task_id)
        assert task.status == "completed"
        assert task.payload == {"external_id": "603", "result": {"library_id": 2}}


class TestManualOperations:
    """Tests for cancel, retry, clear and bulk operations."""

    async def test_cancel_pending_is_idempotent(self, queue):
        task_id = await queue.enqueue("classification", {})

        first = await queue.cancel_task(task_id)
        second = await queue.cancel_task(task_id)

        assert first.status == "cancelled"
        assert second.status == "cancelled"

    async def test_cancel_processing_raises(self, queue):
        await queue.enqueue("classification", {})
        task = await queue.dequeue()

        with pytest.raises(InvalidStateError):
            await queue.cancel_task(task.id)

    async def test_retry_failed_resets_attempts(self, queue):
        task_id = await queue.enqueue("classification", {}, max_attempts=1)
        task = await queue.dequeue()
        await queue.fail_task(task.id, "boom", task.attempts, task.max_attempts)

        retried = await queue.retry_task(task_id)

        assert retried.status == "pending"
        assert retried.attempts == 0
        assert retried.error_message is None

    async def test_manual_requeue_uses_queue_clock(self, queue, clock):
        first = await queue.enqueue("classification", {}, max_attempts=1)
        second = await queue.enqueue("classification", {}, max_attempts=1)
        for _ in range(2):
            task = await queue.dequeue()
            await queue.fail_task(task.id, "boom", task.attempts, task.max_attempts)

        retried = await queue.retry_task(first)
        failed = await queue.get_task(second)
        assert retried.next_retry_at == clock.now.isoformat(timespec="microseconds")
        assert failed.completed_at == clock.now.isoformat(timespec="microseconds")
        assert (await queue.dequeue()).id == first

        assert await queue.retry_all_failed() == 1
        claimed = await queue.dequeue()
        await queue.complete_task(claimed.id)
        assert claimed.id == second
        assert (await queue.get_task(second)).completed_at == clock.now.isoformat(timespec="microseconds")

    async def test_retry_pending_raises(self, queue):
        task_id = await queue.enqueue("classification", {})
        with pytest.raises(InvalidStateError):
            await queue.retry_task(task_id)

    async def test_missing_task_raises_not_found(self, queue):
        with pytest.raises(NotFoundError):
            await queue.get_task(999)

    async def test_counts_and_clear(self, queue):
        done = await queue.enqueue("classification", {})
        await queue.enqueue("classification", {})
        await queue.dequeue()
        await queue.complete_task(done)

        counts = await queue.get_counts()
        assert counts == {"pending": 1, "processing": 0, "completed": 1, "failed": 0, "cancelled": 0}

        assert await queue.clear_tasks("completed") == 1
        assert (await queue.get_counts())["completed"] == 0

    async def test_clear_rejects_active_status(self, queue):
        with pytest.raises(PermanentValidationError):
            await queue.clear_tasks("pending")

    async def test_bulk_retry_and_cancel(self, queue):
        for _ in range(2):
            task_id = await queue.enqueue("classification", {}, max_attempts=1)
            task = await queue.dequeue()
            await queue.fail_task(task_id, "boom", task.attempts, task.max_attempts)
        await queue.enqueue("classification", {})

        assert len(await queue.get_failed_tasks()) == 2
        assert await queue.retry_all_failed() == 2
        assert await queue.cancel_all_pending() == 3
        assert (await queue.get_counts())["cancelled"] == 3
