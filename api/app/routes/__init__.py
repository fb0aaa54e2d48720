from fastapi import APIRouter

from .health import router as health_router
from .tasks import router as tasks_router
from .classify import router as classify_router
from .batches import router as batches_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(tasks_router)
api_router.include_router(classify_router)
api_router.include_router(batches_router)
