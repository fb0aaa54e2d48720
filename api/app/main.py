import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .ai_client import AIClient
from .batches import BatchOrchestrator
from .classification import ClassificationEngine
from .config import get_settings
from .db import close_db_pool, init_db, init_db_pool
from .errors import (
    InvalidStateError,
    MediaSortError,
    NotFoundError,
    PermanentValidationError,
    TransientCollaboratorError,
)
from .learning import LearningService
from .library_router import LibraryRouter
from .metadata_client import MetadataClient
from .rate_limit import limiter
from .reclassification import ReclassificationService
from .routes import api_router
from .task_queue import TaskQueue
from .worker import QueueWorker

API_SEMAPHORE_LIMIT = int(os.getenv("API_SEMAPHORE_LIMIT", "5"))

_init_settings = get_settings()
logging.basicConfig(
    level=_init_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("mediasort.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await init_db_pool()
    await init_db()
    queue = TaskQueue()
    stale = await queue.reset_stale_processing_tasks()
    if stale:
        logger.warning("Reset %s stale processing tasks at startup", stale)

    ai_http = httpx.AsyncClient()
    tmdb_http = httpx.AsyncClient()
    arr_http = httpx.AsyncClient()
    ai_client = AIClient(ai_http, asyncio.Semaphore(API_SEMAPHORE_LIMIT))
    metadata_client = MetadataClient(tmdb_http, asyncio.Semaphore(API_SEMAPHORE_LIMIT))
    router = LibraryRouter(arr_http, asyncio.Semaphore(API_SEMAPHORE_LIMIT))
    engine = ClassificationEngine(
        ai_client,
        metadata_client,
        router,
        route_min_confidence=settings.route_min_confidence,
    )
    reclassifier = ReclassificationService(router)
    worker = QueueWorker(
        queue,
        {"classification": engine.handle_task},
        ai_client.health_check,
        poll_interval=settings.queue_poll_interval,
        max_concurrent=settings.queue_max_concurrent,
    )

    app.state.queue = queue
    app.state.worker = worker
    app.state.engine = engine
    app.state.reclassifier = reclassifier
    app.state.batches = BatchOrchestrator(reclassifier)
    app.state.learning = LearningService()
    if settings.queue_autostart:
        worker.start()
    try:
        yield
    finally:
        await worker.shutdown()
        await ai_http.aclose()
        await tmdb_http.aclose()
        await arr_http.aclose()
        await close_db_pool()


app = FastAPI(title="MediaSort API", version="0.1.0", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

origins: List[str] = [origin.strip() for origin in _init_settings.cors_origins.split(",") if origin.strip()]
allow_credentials = True
if not origins or "*" in origins:
    allow_credentials = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"]
)

_ERROR_STATUS = (
    (NotFoundError, 404),
    (PermanentValidationError, 400),
    (InvalidStateError, 409),
    (TransientCollaboratorError, 503),
)


@app.exception_handler(MediaSortError)
async def mediasort_error_handler(request: Request, exc: MediaSortError) -> JSONResponse:
    status_code = 500
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


app.include_router(api_router)
