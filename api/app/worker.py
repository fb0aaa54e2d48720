import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .deps import _handle_task_exception
from .errors import NotFoundError, PermanentValidationError
from .models import Task
from .task_queue import TaskQueue

logger = logging.getLogger("mediasort.worker")

TaskHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any] | None]]
HealthProbe = Callable[[], Awaitable[bool]]


@dataclass
class WorkerState:
    """Lifecycle flags owned by one QueueWorker; mutate only through the transition methods."""

    running: bool = False
    ai_available: bool = False
    in_flight: int = 0

    def start(self) -> bool:
        if self.running:
            return False
        self.running = True
        return True

    def stop(self) -> bool:
        if not self.running:
            return False
        self.running = False
        return True

    def mark_available(self) -> bool:
        changed = not self.ai_available
        self.ai_available = True
        return changed

    def mark_unavailable(self) -> bool:
        changed = self.ai_available
        self.ai_available = False
        return changed

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "ai_available": self.ai_available,
            "in_flight": self.in_flight,
        }


class QueueWorker:
    def __init__(
        self,
        queue: TaskQueue,
        handlers: Dict[str, TaskHandler],
        health_probe: HealthProbe,
        *,
        poll_interval: float = 5.0,
        max_concurrent: int = 1,
    ) -> None:
        self._queue = queue
        self._handlers = handlers
        self._health_probe = health_probe
        self._poll_interval = poll_interval
        self._max_concurrent = max(1, max_concurrent)
        self._state = WorkerState()
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight_tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> WorkerState:
        return self._state

    def start(self) -> bool:
        if not self._state.start():
            return False
        # A loop that has not yet noticed a stop picks the running flag back up.
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run())
            self._loop_task.add_done_callback(_handle_task_exception)
        logger.info(
            "Queue worker started (poll=%ss, max_concurrent=%s)",
            self._poll_interval,
            self._max_concurrent,
        )
        return True

    def stop(self) -> bool:
        if not self._state.stop():
            return False
        logger.info("Queue worker stopping")
        return True

    async def shutdown(self) -> None:
        self.stop()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._in_flight_tasks:
            await asyncio.gather(*self._in_flight_tasks, return_exceptions=True)

    async def _probe(self) -> bool:
        try:
            available = await self._health_probe()
        except Exception as exc:
            logger.debug("Health probe raised: %s", exc)
            available = False
        if available:
            if self._state.mark_available():
                logger.info("AI backend available, resuming dequeue")
        elif self._state.mark_unavailable():
            logger.warning("AI backend unavailable, pausing dequeue")
        return available

    async def run(self) -> None:
        try:
            while self._state.running:
                try:
                    if await self._probe() and self._state.in_flight < self._max_concurrent:
                        task = await self._queue.dequeue()
                        if task is not None:
                            self._dispatch(task)
                            continue
                except Exception:
                    logger.exception("Worker loop error")
                await asyncio.sleep(self._poll_interval)
        finally:
            self._state.stop()
            logger.info("Queue worker stopped")

    def _dispatch(self, task: Task) -> None:
        self._state.in_flight += 1
        running = asyncio.create_task(self._process(task))
        self._in_flight_tasks.add(running)
        running.add_done_callback(self._in_flight_tasks.discard)
        running.add_done_callback(_handle_task_exception)

    async def _process(self, task: Task) -> None:
        try:
            handler = self._handlers.get(task.task_type)
            if handler is None:
                await self._queue.fail_task(
                    task.id,
                    f"Unknown task type: {task.task_type}",
                    task.attempts,
                    task.max_attempts,
                    permanent=True,
                )
                return
            try:
                result = await handler(task.payload)
            except (PermanentValidationError, NotFoundError) as exc:
                await self._queue.fail_task(
                    task.id, exc.message, task.attempts, task.max_attempts, permanent=True
                )
                return
            except Exception as exc:
                logger.warning("Task %s (%s) raised: %s", task.id, task.task_type, exc)
                await self._queue.fail_task(
                    task.id, str(exc) or exc.__class__.__name__, task.attempts, task.max_attempts
                )
                return
            await self._queue.complete_task(task.id, result)
        finally:
            self._state.in_flight -= 1

    async def run_once(self) -> bool:
        """Claim and process at most one task inline; used by tests and manual drains."""
        if not await self._probe():
            return False
        task = await self._queue.dequeue()
        if task is None:
            return False
        self._state.in_flight += 1
        await self._process(task)
        return True
