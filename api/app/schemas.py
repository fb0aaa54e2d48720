from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import Batch, BatchItem, ClassificationRecord, Correction, Task


class EnqueueRequest(BaseModel):
    task_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    max_attempts: int = Field(default=5, ge=1, le=50)
    source: str | None = None


class TaskQueuedResponse(BaseModel):
    task_id: int
    status: str
    message: str | None = None


class WorkerStateOut(BaseModel):
    running: bool
    ai_available: bool
    in_flight: int


class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    cancelled: int
    total: int
    worker: WorkerStateOut


class TaskListResponse(BaseModel):
    tasks: List[Task]


class CountResponse(BaseModel):
    count: int
    message: str | None = None


class ClassifyRequest(BaseModel):
    external_id: str
    media_type: str
    title: str | None = None
    priority: int = 0
    source: str | None = "manual"


class ClassificationDetailResponse(BaseModel):
    classification: ClassificationRecord
    corrections: List[Correction]


class ClassificationListResponse(BaseModel):
    items: List[ClassificationRecord]
    limit: int
    offset: int


class CorrectionRequest(BaseModel):
    library_id: int
    corrected_by: str | None = None


class ReclassificationResponse(BaseModel):
    success: bool
    message: str | None = None
    error: str | None = None
    details: Dict[str, Any] | None = None


class ClarificationRequest(BaseModel):
    question_id: int
    response_value: str
    confidence_before: int | None = Field(default=None, ge=0, le=100)
    responded_by: str | None = None


class ClarificationResponse(BaseModel):
    response_id: int
    confidence_before: int
    confidence_after: int
    should_reclassify: bool


class BatchItemIn(BaseModel):
    classification_id: int
    target_library_id: int


class CreateBatchRequest(BaseModel):
    items: List[BatchItemIn] = Field(min_length=1)
    pause_on_error: bool = True
    created_by: str | None = None


class BatchProgress(BaseModel):
    total: int
    completed: int
    failed: int
    skipped: int
    remaining: int
    percentage: int


class BatchStatusResponse(BaseModel):
    batch: Batch
    items: List[BatchItem]
    progress: BatchProgress


class BatchProgressResponse(BaseModel):
    batch_id: int
    status: str
    progress: BatchProgress
    paused_at_item: Optional[int] = None
    error_message: Optional[str] = None


class BatchListResponse(BaseModel):
    batches: List[Batch]


class ConfirmationResponse(BaseModel):
    classification_id: int
    patterns_updated: int
