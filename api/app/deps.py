import asyncio
import logging
import os
import secrets

from fastapi import Header, HTTPException, Request

logger = logging.getLogger("mediasort.api")

_admin_token_warned = False


def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    global _admin_token_warned
    admin_token = os.getenv("ADMIN_TOKEN", "").strip()
    if not admin_token:
        if not _admin_token_warned:
            logger.warning(
                "ADMIN_TOKEN is not set. Admin endpoints are unprotected. "
                "Set ADMIN_TOKEN environment variable for production use."
            )
            _admin_token_warned = True
        return
    if not secrets.compare_digest(x_admin_token or "", admin_token):
        raise HTTPException(status_code=401, detail="Admin token required")


def _handle_task_exception(task: asyncio.Task) -> None:
    try:
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)
    except asyncio.CancelledError:
        pass


def get_queue(request: Request):
    return request.app.state.queue


def get_worker(request: Request):
    return request.app.state.worker


def get_engine(request: Request):
    return request.app.state.engine


def get_reclassifier(request: Request):
    return request.app.state.reclassifier


def get_batches(request: Request):
    return request.app.state.batches


def get_learning(request: Request):
    return request.app.state.learning
