"""
FastAPI Application — Entry Point

Thin HTTP adapter over the ingestion, file and search services.

Architecture:
  - All routes are versioned under /api/v1/
  - Caller identity (X-User-ID / X-Tenant-ID) is set by the upstream auth layer
  - Domain errors (RagCoreError subclasses) become structured ErrorResponse bodies
  - Processing runs in Celery; the API only accepts uploads and answers queries

Middleware stack (innermost → outermost):
  1. Request ID injection + request logging with latency
  2. CORS
  3. Gzip — compress responses > 1 KB
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from ragcore.api.v1.documents import router as documents_router
from ragcore.api.v1.query import router as query_router
from ragcore.core.config import settings
from ragcore.core.exceptions import (
    DuplicateContentError,
    EmbeddingGatewayError,
    InvalidStatusTransitionError,
    PersistenceError,
    RagCoreError,
    ScopeNotFoundError,
    SourceFileNotFoundError,
    UploadValidationError,
)
from ragcore.db.session import check_db_health
from ragcore.schemas.documents import ApiErrors, ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def _uses_postgres() -> bool:
    return settings.vector_store_backend.lower() == "pgvector"


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: make sure the schema exists, log config summary.
    Run on shutdown: clean up connection pools.
    """
    logger.info(
        "Starting ragcore | env=%s vector_store=%s embedding_model=%s",
        settings.app_env, settings.vector_store_backend, settings.embedding_model,
    )

    if _uses_postgres():
        from ragcore.db.session import init_models
        await init_models()
        logger.info("Database: connected")

    logger.info("S3 bucket: %s", settings.s3_bucket)

    yield

    logger.info("Shutting down ragcore")
    if _uses_postgres():
        from ragcore.db.session import engine
        await engine.dispose()


# ---------------------------------------------------------------------------
# Domain error → HTTP mapping
# ---------------------------------------------------------------------------

def _error_response(request: Request, exc: RagCoreError) -> tuple[int, ErrorResponse]:
    request_id = request.headers.get("X-Request-ID")

    if isinstance(exc, UploadValidationError):
        return exc.status_code, ApiErrors.invalid_upload(exc.message)
    if isinstance(exc, DuplicateContentError):
        return status.HTTP_409_CONFLICT, ApiErrors.duplicate_content(exc.content_hash, exc.existing_file_id)
    if isinstance(exc, SourceFileNotFoundError):
        return status.HTTP_404_NOT_FOUND, ApiErrors.file_not_found(exc.file_id)
    if isinstance(exc, ScopeNotFoundError):
        return status.HTTP_404_NOT_FOUND, ApiErrors.scope_not_found(exc.scope_name)
    if isinstance(exc, InvalidStatusTransitionError):
        return status.HTTP_409_CONFLICT, ErrorResponse(error_code="INVALID_STATUS_TRANSITION", message=exc.message)
    if isinstance(exc, (EmbeddingGatewayError, PersistenceError)):
        return status.HTTP_503_SERVICE_UNAVAILABLE, ApiErrors.upstream_unavailable(exc.code, request_id)
    return status.HTTP_500_INTERNAL_SERVER_ERROR, ApiErrors.internal_error(request_id)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="ragcore",
        description=(
            "Document ingestion and semantic search API: semantic chunking, "
            "pgvector storage and cosine-similarity retrieval."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PATCH"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-ID", "X-Tenant-ID"],
        expose_headers=["X-Request-ID", "X-File-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | scope=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-Tenant-ID", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RagCoreError)
    async def domain_exception_handler(request: Request, exc: RagCoreError):
        status_code, body = _error_response(request, exc)
        if status_code >= 500:
            logger.error("Request failed | path=%s code=%s error=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
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
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(query_router,     prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "ragcore-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        if not _uses_postgres():
            return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "database": "n/a"})
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ragcore.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
