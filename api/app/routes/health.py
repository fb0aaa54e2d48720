from fastapi import APIRouter, Depends, Request

from ..deps import get_worker, require_admin
from ..rate_limit import limiter, RATE_LIMIT_ADMIN

router = APIRouter()


@router.get("/health")
async def health(worker=Depends(get_worker)) -> dict:
    return {"status": "ok", "worker": worker.state.snapshot()}


@router.get("/auth/check", dependencies=[Depends(require_admin)])
@limiter.limit(RATE_LIMIT_ADMIN)
async def auth_check(request: Request) -> dict:
    return {"ok": True}
