from fastapi import APIRouter, Depends, Query, Request

from .. import db
from ..classification.engine import MEDIA_TYPES
from ..config import get_settings
from ..deps import get_learning, get_queue, get_reclassifier, require_admin
from ..errors import NotFoundError, PermanentValidationError
from ..rate_limit import limiter, RATE_LIMIT_DEFAULT
from ..schemas import (
    ClarificationRequest,
    ClarificationResponse,
    ClassificationDetailResponse,
    ClassificationListResponse,
    ClassifyRequest,
    ConfirmationResponse,
    CorrectionRequest,
    ReclassificationResponse,
    TaskQueuedResponse,
)

router = APIRouter()


@router.post("/classify", response_model=TaskQueuedResponse, status_code=202)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def classify(request: Request, payload: ClassifyRequest, queue=Depends(get_queue)) -> TaskQueuedResponse:
    media_type = payload.media_type.lower()
    if media_type not in MEDIA_TYPES:
        raise PermanentValidationError(f"Unsupported media type: {payload.media_type}")
    task_id = await queue.enqueue(
        "classification",
        {"external_id": payload.external_id, "media_type": media_type, "title": payload.title},
        priority=payload.priority,
        max_attempts=get_settings().task_default_max_attempts,
        source=payload.source,
    )
    return TaskQueuedResponse(task_id=task_id, status="pending", message="Classification queued")


@router.get("/classifications", response_model=ClassificationListResponse)
async def list_classifications(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    media_type: str | None = None,
) -> ClassificationListResponse:
    items = await db.list_classifications(limit=limit, offset=offset, media_type=media_type)
    return ClassificationListResponse(items=items, limit=limit, offset=offset)


@router.get("/classifications/{classification_id}", response_model=ClassificationDetailResponse)
async def get_classification(classification_id: int) -> ClassificationDetailResponse:
    record = await db.get_classification(classification_id)
    if record is None:
        raise NotFoundError("Classification", classification_id)
    corrections = await db.list_corrections(classification_id)
    return ClassificationDetailResponse(classification=record, corrections=corrections)


@router.post(
    "/classifications/{classification_id}/correct",
    response_model=ReclassificationResponse,
    dependencies=[Depends(require_admin)],
)
async def correct_classification(
    classification_id: int,
    payload: CorrectionRequest,
    reclassifier=Depends(get_reclassifier),
) -> ReclassificationResponse:
    result = await reclassifier.execute(classification_id, payload.library_id, corrected_by=payload.corrected_by)
    return ReclassificationResponse(**{key: result.get(key) for key in ReclassificationResponse.model_fields})


@router.post(
    "/classifications/{classification_id}/confirm",
    response_model=ConfirmationResponse,
    dependencies=[Depends(require_admin)],
)
async def confirm_classification(classification_id: int, learning=Depends(get_learning)) -> ConfirmationResponse:
    updated = await learning.confirm_classification(classification_id)
    return ConfirmationResponse(classification_id=classification_id, patterns_updated=updated)


@router.get("/classifications/{classification_id}/preview/{library_id}")
async def preview_correction(classification_id: int, library_id: int, reclassifier=Depends(get_reclassifier)) -> dict:
    return await reclassifier.preview(classification_id, library_id)


@router.post(
    "/classifications/{classification_id}/clarifications",
    response_model=ClarificationResponse,
)
async def record_clarification(
    classification_id: int,
    payload: ClarificationRequest,
    learning=Depends(get_learning),
) -> ClarificationResponse:
    result = await learning.record_response(
        classification_id,
        payload.question_id,
        payload.response_value,
        confidence_before=payload.confidence_before,
        responded_by=payload.responded_by,
    )
    return ClarificationResponse(
        response_id=result.response_id,
        confidence_before=result.confidence_before,
        confidence_after=result.confidence_after,
        should_reclassify=result.should_reclassify,
    )


@router.get("/classifications-stats")
async def classification_stats() -> dict:
    return {"by_method": await db.count_classifications_by_method()}
