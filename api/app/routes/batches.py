from fastapi import APIRouter, Depends, Query, Request

from ..deps import get_batches, require_admin
from ..models import Batch, BatchItem
from ..rate_limit import limiter, RATE_LIMIT_HEAVY
from ..schemas import (
    BatchListResponse,
    BatchProgressResponse,
    BatchStatusResponse,
    CreateBatchRequest,
)

router = APIRouter(prefix="/reclassification", dependencies=[Depends(require_admin)])


@router.post("/batch", response_model=Batch, status_code=201)
async def create_batch(payload: CreateBatchRequest, batches=Depends(get_batches)) -> Batch:
    return await batches.create_batch(
        [item.model_dump() for item in payload.items],
        pause_on_error=payload.pause_on_error,
        created_by=payload.created_by,
    )


@router.post("/batch/{batch_id}/validate", response_model=Batch)
@limiter.limit(RATE_LIMIT_HEAVY)
async def validate_batch(request: Request, batch_id: int, batches=Depends(get_batches)) -> Batch:
    return await batches.validate_batch(batch_id)


@router.post("/batch/{batch_id}/execute", response_model=Batch)
@limiter.limit(RATE_LIMIT_HEAVY)
async def execute_batch(request: Request, batch_id: int, batches=Depends(get_batches)) -> Batch:
    return await batches.execute_batch(batch_id)


@router.post("/batch/{batch_id}/pause", response_model=Batch)
async def pause_batch(batch_id: int, batches=Depends(get_batches)) -> Batch:
    return await batches.pause_batch(batch_id)


@router.post("/batch/{batch_id}/resume", response_model=Batch)
@limiter.limit(RATE_LIMIT_HEAVY)
async def resume_batch(request: Request, batch_id: int, batches=Depends(get_batches)) -> Batch:
    return await batches.resume_batch(batch_id)


@router.post("/batch/{batch_id}/cancel", response_model=Batch)
async def cancel_batch(batch_id: int, batches=Depends(get_batches)) -> Batch:
    return await batches.cancel_batch(batch_id)


@router.post("/batch/{batch_id}/item/{item_id}/skip", response_model=BatchItem)
async def skip_item(batch_id: int, item_id: int, batches=Depends(get_batches)) -> BatchItem:
    return await batches.skip_item(batch_id, item_id)


@router.post("/batch/{batch_id}/item/{item_id}/retry", response_model=BatchItem)
async def retry_item(batch_id: int, item_id: int, batches=Depends(get_batches)) -> BatchItem:
    return await batches.retry_item(batch_id, item_id)


@router.get("/batch/{batch_id}", response_model=BatchStatusResponse)
async def batch_status(batch_id: int, batches=Depends(get_batches)) -> BatchStatusResponse:
    return BatchStatusResponse(**await batches.get_batch_status(batch_id))


@router.get("/batch/{batch_id}/progress", response_model=BatchProgressResponse)
async def batch_progress(batch_id: int, batches=Depends(get_batches)) -> BatchProgressResponse:
    return BatchProgressResponse(**await batches.get_batch_progress(batch_id))


@router.get("/batches", response_model=BatchListResponse)
async def list_batches(limit: int = Query(20, ge=1, le=200), batches=Depends(get_batches)) -> BatchListResponse:
    return BatchListResponse(batches=await batches.list_batches(limit))
