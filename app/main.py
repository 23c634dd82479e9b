"""
FastAPI app wiring for Echo.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import core.config as config
from core.db import DB, init_db
from core.errors import (
    AgentError,
    BadRequest,
    ConfigurationError,
    ExtractionFailed,
    NotFound,
    ServiceError,
    Unauthorized,
    UnsupportedType,
    ValidationIssue,
)
from core.services import knowledge_store, llm, tasks
from app.middleware import configure_middleware
from app.routes.blobs import router as blobs_router
from app.routes.dashboard import router as dashboard_router
from app.routes.health import router as health_router
from app.routes.root import router as root_router
from app.routes.webhooks import router as webhooks_router
from app.routes.widget import router as widget_router


ERROR_STATUS_CODES = {
    Unauthorized: 401,
    NotFound: 404,
    BadRequest: 400,
    UnsupportedType: 415,
    ExtractionFailed: 502,
    AgentError: 502,
    ConfigurationError: 500,
}

task_worker_task = None
embedding_backfill_task = None


async def _cancel(task) -> None:
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global task_worker_task, embedding_backfill_task
    init_db()
    llm.init_http_client()
    if config.TASK_WORKER_ENABLED:
        task_worker_task = asyncio.create_task(tasks.task_worker_loop())
    if config.EMBEDDING_BACKFILL_ENABLED:
        await asyncio.to_thread(knowledge_store.run_embedding_backfill)
        if config.EMBEDDING_BACKFILL_INTERVAL_SECONDS > 0:
            embedding_backfill_task = asyncio.create_task(knowledge_store.embedding_backfill_loop())
    try:
        yield
    finally:
        await _cancel(task_worker_task)
        await _cancel(embedding_backfill_task)
        llm.cleanup_http_client()
        if DB.engine:
            DB.engine.dispose()


def _status_for(exc: ServiceError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        config.logger.warning(
            "service_error",
            extra={"code": exc.code, "path": request.url.path, "detail": exc.message},
        )
    return JSONResponse(status_code=status_code, content={"code": exc.code, "message": exc.message})


async def validation_issue_handler(request: Request, exc: ValidationIssue) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "code": "VALIDATION_ERROR",
            "message": str(exc),
            "field": exc.field,
            "error_type": exc.error_type,
        },
    )


def create_app() -> FastAPI:
    application = FastAPI(title="Echo", redirect_slashes=False, lifespan=lifespan)
    configure_middleware(application)
    application.add_exception_handler(ServiceError, service_error_handler)
    application.add_exception_handler(ValidationIssue, validation_issue_handler)

    application.include_router(health_router)
    application.include_router(root_router)
    application.include_router(widget_router)
    application.include_router(dashboard_router)
    application.include_router(webhooks_router)
    application.include_router(blobs_router)
    return application


app = create_app()
