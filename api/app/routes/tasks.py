from fastapi import APIRouter, Depends, Query, Request

from ..deps import get_queue, get_worker, require_admin
from ..models import Task
from ..rate_limit import limiter, RATE_LIMIT_ADMIN
from ..schemas import (
    CountResponse,
    EnqueueRequest,
    QueueStatsResponse,
    TaskListResponse,
    TaskQueuedResponse,
    WorkerStateOut,
)

router = APIRouter(prefix="/queue")


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(queue=Depends(get_queue), worker=Depends(get_worker)) -> QueueStatsResponse:
    counts = await queue.get_counts()
    return QueueStatsResponse(
        **counts,
        total=sum(counts.values()),
        worker=WorkerStateOut(**worker.state.snapshot()),
    )


@router.get("/pending", response_model=TaskListResponse)
async def pending_tasks(limit: int = Query(20, ge=1, le=200), queue=Depends(get_queue)) -> TaskListResponse:
    return TaskListResponse(tasks=await queue.get_pending_tasks(limit))


@router.get("/failed", response_model=TaskListResponse)
async def failed_tasks(limit: int = Query(50, ge=1, le=200), queue=Depends(get_queue)) -> TaskListResponse:
    return TaskListResponse(tasks=await queue.get_failed_tasks(limit))


@router.post(
    "/tasks",
    response_model=TaskQueuedResponse,
    status_code=202,
    dependencies=[Depends(require_admin)],
)
async def enqueue_task(payload: EnqueueRequest, queue=Depends(get_queue)) -> TaskQueuedResponse:
    task_id = await queue.enqueue(
        payload.task_type,
        payload.payload,
        priority=payload.priority,
        max_attempts=payload.max_attempts,
        source=payload.source,
    )
    return TaskQueuedResponse(task_id=task_id, status="pending")


@router.get("/tasks/{task_id}", response_model=Task)
async def task_status(task_id: int, queue=Depends(get_queue)) -> Task:
    return await queue.get_task(task_id)


@router.post("/tasks/{task_id}/retry", response_model=Task, dependencies=[Depends(require_admin)])
async def retry_task(task_id: int, queue=Depends(get_queue)) -> Task:
    return await queue.retry_task(task_id)


@router.post("/tasks/{task_id}/cancel", response_model=Task, dependencies=[Depends(require_admin)])
async def cancel_task(task_id: int, queue=Depends(get_queue)) -> Task:
    return await queue.cancel_task(task_id)


@router.post("/clear-completed", response_model=CountResponse, dependencies=[Depends(require_admin)])
async def clear_completed(
    older_than_days: int | None = Query(None, ge=0),
    queue=Depends(get_queue),
) -> CountResponse:
    count = await queue.clear_tasks("completed", older_than_days)
    return CountResponse(count=count, message=f"Cleared {count} completed tasks")


@router.post("/clear-failed", response_model=CountResponse, dependencies=[Depends(require_admin)])
async def clear_failed(
    older_than_days: int | None = Query(None, ge=0),
    queue=Depends(get_queue),
) -> CountResponse:
    count = await queue.clear_tasks("failed", older_than_days)
    return CountResponse(count=count, message=f"Cleared {count} failed tasks")


@router.post("/retry-all-failed", response_model=CountResponse, dependencies=[Depends(require_admin)])
async def retry_all_failed(queue=Depends(get_queue)) -> CountResponse:
    count = await queue.retry_all_failed()
    return CountResponse(count=count, message=f"Re-queued {count} failed tasks")


@router.post("/cancel-all-pending", response_model=CountResponse, dependencies=[Depends(require_admin)])
async def cancel_all_pending(queue=Depends(get_queue)) -> CountResponse:
    count = await queue.cancel_all_pending()
    return CountResponse(count=count, message=f"Cancelled {count} pending tasks")


@router.post("/worker/start", response_model=WorkerStateOut, dependencies=[Depends(require_admin)])
@limiter.limit(RATE_LIMIT_ADMIN)
async def start_worker(request: Request, worker=Depends(get_worker)) -> WorkerStateOut:
    worker.start()
    return WorkerStateOut(**worker.state.snapshot())


@router.post("/worker/stop", response_model=WorkerStateOut, dependencies=[Depends(require_admin)])
@limiter.limit(RATE_LIMIT_ADMIN)
async def stop_worker(request: Request, worker=Depends(get_worker)) -> WorkerStateOut:
    worker.stop()
    return WorkerStateOut(**worker.state.snapshot())
