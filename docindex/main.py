"""
docindex HTTP application

Document indexing service API.

  - Document routes live under /api/v1/documents
  - Authentication is enforced upstream (gateway); this service trusts the
    project / uploader identifiers it receives
  - Pipeline errors map to structured ErrorResponse bodies:
        DocumentNotFound                    → 404
        InvalidState                        → 409
        ValidationFailed                    → 400  (FileTooLarge → 413)
        StorageUnavailable / IndexUnavailable → 503
        anything else                       → 500, no internals exposed
  - The worker pool runs in a separate process (docindex-worker) or under
    Celery; this process only submits and reads.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from docindex.api.v1.documents import router as documents_router
from docindex.core.config import Settings, get_settings
from docindex.core.errors import (
    DocumentNotFound,
    FileTooLarge,
    IndexUnavailable,
    InvalidState,
    StorageUnavailable,
    ValidationFailed,
)
from docindex.core.logging import configure_logging
from docindex.db.session import check_db_health, get_engine, init_db
from docindex.schemas.documents import ErrorDetail, ErrorResponse, PipelineErrors
from docindex.services.container import Components, build_components

logger = logging.getLogger(__name__)


def _error(status_code: int, body: ErrorResponse, request: Request) -> JSONResponse:
    body.request_id = body.request_id or request.headers.get("X-Request-ID")
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings | None = None,
    components: Components | None = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "components", None) is None:
            engine = get_engine()
            if not settings.is_production:
                init_db(engine)
            db_health = check_db_health(engine)
            if db_health["status"] != "ok":
                logger.critical("Database health check failed at startup: %s", db_health)
                raise RuntimeError(f"DB unavailable: {db_health}")
            app.state.components = build_components(settings)
        logger.info(
            "Starting docindex API | env=%s blob_backend=%s dispatch=%s",
            settings.app_env, settings.blob_backend, settings.dispatch_backend,
        )
        yield
        logger.info("Shutting down docindex API")

    app = FastAPI(
        title="Document Indexing Pipeline",
        description="Document intake, indexing status and query API.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.components = components

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: pipeline errors to ErrorResponse bodies
    # ----------------------------------------------------------------

    @app.exception_handler(DocumentNotFound)
    async def not_found_handler(request: Request, exc: DocumentNotFound):
        return _error(status.HTTP_404_NOT_FOUND, PipelineErrors.document_not_found(exc.document_id), request)

    @app.exception_handler(InvalidState)
    async def invalid_state_handler(request: Request, exc: InvalidState):
        return _error(
            status.HTTP_409_CONFLICT,
            PipelineErrors.invalid_state(exc.public_message, exc.current_status),
            request,
        )

    @app.exception_handler(ValidationFailed)
    async def validation_failed_handler(request: Request, exc: ValidationFailed):
        if isinstance(exc, FileTooLarge):
            return _error(
                status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                PipelineErrors.file_too_large(exc.size_bytes, exc.limit_bytes),
                request,
            )
        return _error(
            status.HTTP_400_BAD_REQUEST,
            PipelineErrors.validation_failed(exc.field, exc.public_message),
            request,
        )

    @app.exception_handler(StorageUnavailable)
    @app.exception_handler(IndexUnavailable)
    async def unavailable_handler(request: Request, exc: Exception):
        logger.error("Dependency unavailable | path=%s error=%s", request.url.path, exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, PipelineErrors.storage_error(), request)

    @app.exception_handler(ValidationError)
    async def model_validation_handler(request: Request, exc: ValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in err["loc"]) or None,
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Invalid filter parameters.",
            details=details,
        )
        return _error(status.HTTP_400_BAD_REQUEST, body, request)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
        )
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, body, request)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Last resort: log with traceback, answer with a generic body."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=PipelineErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    def health() -> dict:
        return {"status": "ok", "service": "docindex-api"}

    @app.get("/health/ready", tags=["Operations"], summary="Readiness probe")
    def readiness(request: Request) -> JSONResponse:
        components: Components = request.app.state.components
        db_status = check_db_health(components.session_factory.kw["bind"])
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        queue = components.queue.stats()
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status":   "ready",
                "database": db_status,
                "queue": {
                    "queued":  queue.queued,
                    "delayed": queue.delayed,
                    "leased":  queue.leased,
                    "expired": queue.expired,
                },
            },
        )

    return app


def build_app() -> FastAPI:
    """uvicorn factory: `uvicorn docindex.main:build_app --factory`"""
    settings = get_settings()
    configure_logging(settings.debug)
    return create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docindex.main:build_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level="debug" if get_settings().debug else "info",
    )
