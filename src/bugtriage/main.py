"""FastAPI application for occurrence ingestion and deploy notifications.

Routes:
- POST /api/1.0/notify: ingest an error report
- POST /api/1.0/deploy: record a deploy and mark the fixes it ships
- GET /health: liveness plus database connectivity

Ingestion collaborators are built lazily by `ingestor_factory` and
`deploy_recorder_factory`, so tests can inject fakes for git.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Callable, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from .blame_cache import BlameCache
from .config import settings
from .database import SessionLocal, init_db
from .exceptions import TriageError
from .lifecycle import BugLifecycle
from .logging_config import correlation_id_var, setup_structured_logging
from .messages import MessageTemplateMatcher
from .pipeline import DeployRecorder, OccurrenceIngestor
from .schemas import DeployRequest, DeployResponse, ErrorResponse, NotifyRequest, NotifyResponse
from .vcs import LocalGitRepository

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (403, 422, 500, 503)}


def default_ingestor_factory() -> OccurrenceIngestor:
    """Build an ingestor from settings, backed by local git mirrors."""
    repository = LocalGitRepository(settings.repositories_dir, timeout=settings.git_timeout_seconds)
    return OccurrenceIngestor(
        SessionLocal,
        repository,
        BlameCache(repository, max_entries=settings.blame_cache_max_entries),
        lifecycle=_lifecycle(),
        message_matcher=MessageTemplateMatcher.from_yaml(settings.message_templates_path),
        max_attempts=settings.ingest_max_attempts,
        message_max_length=settings.message_max_length,
    )


def default_deploy_recorder_factory() -> DeployRecorder:
    repository = LocalGitRepository(settings.repositories_dir, timeout=settings.git_timeout_seconds)
    return DeployRecorder(
        SessionLocal,
        repository,
        lifecycle=_lifecycle(),
        page_size=settings.commit_page_size,
        max_attempts=settings.ingest_max_attempts,
    )


def _lifecycle() -> BugLifecycle:
    return BugLifecycle(stale_after=timedelta(days=settings.stale_fix_days))


async def triage_error_handler(request: Request, exc: TriageError):
    """Answer triage errors with their status code and a machine-readable body."""
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    else:
        logger.info(f"[API] {request.method} {request.url.path} rejected: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=str(exc), type=type(exc).__name__, retryable=exc.retryable).model_dump(
            exclude_none=True
        ),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Answer malformed request bodies in the same shape as other errors."""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'][1:]) or 'body'}: {error['msg']}" for error in exc.errors()
    )
    logger.info(f"[API] {request.method} {request.url.path} rejected: {problems}")
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(detail=problems, type="InvalidAttributesError").model_dump(exclude_none=True),
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Opaque 500 for anything unexpected; details stay in the server log."""
    error_id = str(uuid.uuid4())[:8]
    logger.error(f"[API] Unhandled exception (error_id={error_id}): {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(detail="Internal server error", type="InternalError", error_id=error_id).model_dump(),
    )


def create_app(
    ingestor_factory: Callable[[], OccurrenceIngestor] = default_ingestor_factory,
    deploy_recorder_factory: Callable[[], DeployRecorder] = default_deploy_recorder_factory,
    session_factory: Optional[Callable] = None,
    initialize_database: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        ingestor_factory: Builds the occurrence ingestor on first use
        deploy_recorder_factory: Builds the deploy recorder on first use
        session_factory: Sessions for the health check (defaults to SessionLocal)
        initialize_database: Create missing tables at startup

    Returns:
        Configured FastAPI application instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if initialize_database:
            init_db()
        logger.info("[API] bugtriage ingestion API started")
        yield

    app = FastAPI(title="bugtriage", description="Exception triage and bug matching", lifespan=lifespan)
    app.state.ingestor = None
    app.state.deploy_recorder = None
    sessions = session_factory or SessionLocal

    def ingestor() -> OccurrenceIngestor:
        if app.state.ingestor is None:
            app.state.ingestor = ingestor_factory()
        return app.state.ingestor

    def deploy_recorder() -> DeployRecorder:
        if app.state.deploy_recorder is None:
            app.state.deploy_recorder = deploy_recorder_factory()
        return app.state.deploy_recorder

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    app.add_exception_handler(TriageError, triage_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.post(
        "/api/1.0/notify",
        status_code=status.HTTP_201_CREATED,
        response_model=NotifyResponse,
        responses=ERROR_RESPONSES,
    )
    async def notify(report: NotifyRequest):
        # Ingestion blocks on the database and git; keep it off the event loop
        occurrence = await run_in_threadpool(ingestor().ingest, report.to_report())
        return NotifyResponse(occurrence_id=occurrence.id, bug_id=occurrence.bug_id)

    @app.post(
        "/api/1.0/deploy",
        status_code=status.HTTP_201_CREATED,
        response_model=DeployResponse,
        responses=ERROR_RESPONSES,
    )
    async def deploy(request: DeployRequest):
        deploy_id, marked = await run_in_threadpool(deploy_recorder().record, request.model_dump())
        return DeployResponse(deploy_id=deploy_id, fixes_deployed=marked)

    @app.get("/health")
    def health():
        db = sessions()
        try:
            db.execute(text("SELECT 1"))
            database = "connected"
        except Exception as e:
            logger.warning(f"[API] Health check database probe failed: {e}")
            database = "unavailable"
        finally:
            db.close()
        code = status.HTTP_200_OK if database == "connected" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content={"status": "ok" if code == 200 else "degraded", "database": database})

    @app.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def main():
    import uvicorn

    setup_structured_logging(settings.log_level)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
