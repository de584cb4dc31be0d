"""
Main FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from mediaflow.core.config import settings
from mediaflow.core.logging import get_logger, setup_logging
from mediaflow.db.session import check_db_health, close_db, init_db
from mediaflow.services.ingestion import DuplicateMediaError, IngestionValidationError
from mediaflow.services.pipeline.state_machine import StateTransitionError
from mediaflow.services.pipeline.status import MediaNotFoundError
from mediaflow.services.processors.embedder import shutdown_embedding_service
from mediaflow.services.quota_ledger import QuotaExceededError, TenantNotFoundError

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan events.
    Handles startup and shutdown tasks.
    """
    logger.info(
        "starting_application",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        version=settings.APP_VERSION,
    )

    await init_db()

    yield

    logger.info("shutting_down_application")

    # The query embedder is loaded lazily by the first search
    await shutdown_embedding_service()
    await close_db()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Media processing pipeline - ingestion, transcription, chunking, embeddings and recovery",
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


# Health check endpoints
@app.get("/health", tags=["health"])
async def health_check() -> JSONResponse:
    """Liveness: the process is up and serving."""
    return JSONResponse(
        content={
            "status": "healthy",
            "app_name": settings.APP_NAME,
            "environment": settings.APP_ENV,
            "version": settings.APP_VERSION,
        }
    )


@app.get("/health/detailed", tags=["health"])
async def detailed_health_check() -> JSONResponse:
    """
    Readiness: includes database connectivity check.
    """
    db_healthy = await check_db_health()

    return JSONResponse(
        status_code=200 if db_healthy else 503,
        content={
            "status": "healthy" if db_healthy else "unhealthy",
            "app_name": settings.APP_NAME,
            "environment": settings.APP_ENV,
            "version": settings.APP_VERSION,
            "database": "connected" if db_healthy else "disconnected",
        }
    )


@app.get("/", tags=["root"])
async def root() -> JSONResponse:
    return JSONResponse(
        content={
            "message": f"Welcome to {settings.APP_NAME} API",
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.DEBUG else "Documentation disabled in production",
        }
    )


# Include API routers
from mediaflow.api import api_router  # noqa: E402
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


# ========================================
# Domain Exception Handlers
# ========================================

@app.exception_handler(IngestionValidationError)
async def ingestion_validation_handler(request: Request, exc: IngestionValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
    logger.info("quota_exceeded", path=request.url.path, reasons=exc.reasons)
    return JSONResponse(
        status_code=403,
        content={"detail": "Quota exceeded", "reasons": exc.reasons},
    )


@app.exception_handler(TenantNotFoundError)
async def tenant_not_found_handler(request: Request, exc: TenantNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(MediaNotFoundError)
async def media_not_found_handler(request: Request, exc: MediaNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DuplicateMediaError)
async def duplicate_media_handler(request: Request, exc: DuplicateMediaError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "existing_item_id": exc.existing_item_id},
    )


@app.exception_handler(StateTransitionError)
async def state_transition_handler(request: Request, exc: StateTransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "from_status": str(exc.from_status),
            "to_status": str(exc.to_status),
        },
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled errors.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc) if settings.DEBUG else None,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mediaflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
