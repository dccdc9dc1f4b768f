"""
FastAPI Application — Entry Point

PDF Content Search API

Architecture:
  - All routes are versioned under /api/v1/
  - Uploads return 202; processing runs in the Celery worker
  - Search is scoped to one document's index, with a Redis cache in front
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB
  4. Request logging — structured log per request with latency
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from pdfsearch.api.v1.documents import router as documents_router
from pdfsearch.api.v1.search import router as search_router
from pdfsearch.context import AppContext, open_context
from pdfsearch.core.config import settings
from pdfsearch.core.errors import PdfSearchError
from pdfsearch.db.session import check_db_health, create_tables
from pdfsearch.schemas.documents import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: build the service context (unless one was injected), ensure the
    schema exists, validate DB connectivity.
    Shutdown: close the Redis client and the connection pool.
    """
    async with AsyncExitStack() as stack:
        context: AppContext | None = getattr(app.state, "context", None)
        if context is None:
            context = await stack.enter_async_context(open_context(settings))
            app.state.context = context

        logger.info(
            "Starting PDF Search API | env=%s index=%s",
            context.settings.app_env, context.settings.meilisearch_url,
        )

        await create_tables(context.engine)
        db_health = await check_db_health(context.engine)
        if db_health["status"] != "ok":
            logger.critical("Database health check failed at startup: %s", db_health)
            raise RuntimeError(f"DB unavailable: {db_health}")
        logger.info("Database: connected")

        yield

        logger.info("Shutting down PDF Search API")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(context: AppContext | None = None) -> FastAPI:
    app = FastAPI(
        title="PDF Content Search Platform",
        description=(
            "Asynchronous PDF content extraction (paragraphs, OCR'd images, tables) "
            "with per-document full-text search."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order — last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
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
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(PdfSearchError)
    async def pdfsearch_exception_handler(request: Request, exc: PdfSearchError):
        if exc.status_code >= 500:
            logger.error("Request failed | path=%s code=%s error=%s", request.url.path, exc.error_code, exc)
        body = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=[
                ErrorDetail(field=key, message=str(value), code=exc.error_code)
                for key, value in exc.details.items()
            ],
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Route handlers raise HTTPException with a prebuilt ErrorResponse as detail."""
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            body = ErrorResponse.model_validate(exc.detail)
        else:
            body = ErrorResponse(error_code="HTTP_ERROR", message=str(exc.detail))
        body.request_id = _request_id(request)
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

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
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = _request_id(request)
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(search_router,    prefix="/api/v1")

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
        return {"status": "ok", "service": "pdf-search-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database and the search index are reachable.",
    )
    async def readiness(request: Request) -> JSONResponse:
        context: AppContext = request.app.state.context
        db_status = await check_db_health(context.engine)
        search_status = await context.search.health()

        ready = db_status["status"] == "ok" and search_status["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status":   "ready" if ready else "not_ready",
                "database": db_status,
                "index":    search_status["index"],
                "cache":    search_status["cache"],
            },
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
        "pdfsearch.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
