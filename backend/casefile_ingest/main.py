"""
FastAPI Application — Entry Point

Case File Ingestion Service

Architecture:
  - All routes are versioned under /api/v1/
  - POST /api/v1/files/process runs the ingestion pipeline synchronously
    for one uploaded file; POST /api/v1/files/search queries its chunks
  - The service runs with its own database / storage credentials; callers
    are trusted upstream (edge function, backend job)
  - Every 4xx/5xx body is {"error": "<message>"}

Middleware stack (innermost → outermost):
  1. Request ID + logging: X-Request-ID on every response, one log per request
  2. Gzip: compress responses > 1 KB
  3. CORS: answers OPTIONS preflight before any route runs
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

from casefile_ingest.api.v1.files import router as files_router
from casefile_ingest.core.config import settings
from casefile_ingest.core.errors import (
    AIServiceError,
    ConfigurationError,
    FatalInputError,
    PipelineError,
)
from casefile_ingest.db.session import check_db_health, dispose_engine
from casefile_ingest.schemas.files import ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

CORS_ALLOW_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]
CORS_MAX_AGE = 86400


def _error(status_code: int, message: str, request: Request | None = None) -> JSONResponse:
    headers = {}
    if request is not None and request.headers.get("X-Request-ID"):
        headers["X-Request-ID"] = request.headers["X-Request-ID"]
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
        headers=headers,
    )


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        parts.append(f"{'.'.join(loc) or 'body'}: {err.get('msg', 'invalid')}")
    return "Invalid request: " + "; ".join(parts)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: validate DB connectivity, log config summary.
    Run on shutdown: clean up connection pools.
    """
    logger.info(
        "Starting Case File Ingestion | env=%s ai_provider=%s embedding_dimensions=%d",
        settings.app_env, settings.ai_provider, settings.embedding_dimensions,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    logger.info("Database: connected")
    logger.info("Storage bucket: %s", settings.storage_bucket)

    yield

    logger.info("Shutting down Case File Ingestion")
    await dispose_engine()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Case File Ingestion Service",
        description=(
            "Text extraction, thumbnails, chunk embeddings and named entities "
            "for uploaded legal case files."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order; last added is outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
        expose_headers=["X-Request-ID"],
        max_age=CORS_MAX_AGE,
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
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform {"error": ...} bodies
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, _validation_message(exc), request)

    @app.exception_handler(FatalInputError)
    async def fatal_input_handler(request: Request, exc: FatalInputError):
        if exc.not_found:
            return _error(status.HTTP_404_NOT_FOUND, exc.message, request)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, f"Processing failed: {exc.message}", request)

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        logger.error("Pipeline error | path=%s kind=%s error=%s", request.url.path, exc.kind.value, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message, request)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error("Configuration error | path=%s error=%s", request.url.path, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, f"Service misconfigured: {exc}", request)

    @app.exception_handler(AIServiceError)
    async def ai_service_error_handler(request: Request, exc: AIServiceError):
        logger.error("AI service error | path=%s status=%s error=%s", request.url.path, exc.status_code, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, f"AI service unavailable: {exc}", request)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions. Stack traces stay in the log."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error="An unexpected error occurred.").model_dump(),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(files_router, prefix="/api/v1")

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
        return {"status": "ok", "service": "casefile-ingest"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
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
        "casefile_ingest.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
