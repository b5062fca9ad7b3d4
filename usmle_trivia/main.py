"""
FastAPI Application Entry Point

This module initializes the FastAPI application with:
- CORS configuration
- Middleware setup
- Route registration
- Health check endpoints
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from usmle_trivia.core.config import settings
from usmle_trivia.core.retry import RetryPolicy
from usmle_trivia.backend import get_backend, close_backend
from usmle_trivia.db.redis import (
    check_redis_connection,
    get_redis_pool,
    close_redis_pool,
    close_arq_pool,
)
from usmle_trivia.services.draft_store import get_draft_store
from usmle_trivia.services.session_registry import SessionRegistry
from usmle_trivia.tasks.session_tasks import recover_pending_completions
from usmle_trivia.middleware.logging import LoggingMiddleware
from usmle_trivia.api.v1.router import api_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# ============================================================
# Application Lifespan Events
# ============================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.

    Startup:
    - Create the backend handle and check it
    - Initialize Redis (when drafts live there)
    - Build the session registry
    - Replay completions a previous process could not save

    Shutdown:
    - Wait for background answer / stats writes
    - Close backend and Redis connections
    """
    # ========== STARTUP ==========
    logger.info(f"Starting {settings.PROJECT_NAME}...")
    logger.info(f"Debug mode: {settings.DEBUG}, backend: {settings.BACKEND}")

    backend = get_backend()
    if await backend.ping():
        logger.info("Backend connection established successfully")
    else:
        logger.warning("Backend connection check failed")

    redis_ok = False
    if settings.DRAFT_STORE == "redis":
        get_redis_pool()  # Creates the pool (singleton)
        redis_ok = await check_redis_connection()
        if redis_ok:
            logger.info("Redis connection established successfully")
        else:
            logger.warning("Redis connection check failed - quiz drafts will not be kept")

    draft_store = await get_draft_store()
    retry_policy = RetryPolicy()
    app.state.retry_policy = retry_policy
    app.state.registry = SessionRegistry(backend, draft_store, retry_policy)

    if redis_ok:
        # Other processes' drafts are the worker's job; this only shortens the wait
        result = await recover_pending_completions(backend, draft_store, retry_policy)
        if result["checked"]:
            logger.info(f"Startup completion recovery: {result}")

    yield  # Application runs here

    # ========== SHUTDOWN ==========
    logger.info(f"Shutting down {settings.PROJECT_NAME}...")

    await app.state.registry.shutdown()
    await close_backend()
    if settings.DRAFT_STORE == "redis":
        await close_redis_pool()
        await close_arq_pool()

    logger.info("Shutdown complete")


# ============================================================
# Create FastAPI Application
# ============================================================
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="""
    USMLE Trivia quiz API

    Features:
    - Quick, timed, custom and self-paced quizzes
    - Unseen-first question selection
    - Retry with backoff on backend failures
    - User stats and streaks
    """,
    version="1.0.0",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# ----------------------------------------------------
# Middleware Configuration
# ----------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

if settings.DEBUG:
    app.add_middleware(LoggingMiddleware)


# ----------------------------------------------------
# Health Check Endpoints
# ----------------------------------------------------
@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.PROJECT_NAME,
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs" if settings.DEBUG else "disabled"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint for monitoring.

    Checks:
    - Backend (Supabase REST) reachability
    - Redis connectivity, when drafts are stored there
    """
    backend_healthy = await get_backend().ping()
    redis_healthy = True
    if settings.DRAFT_STORE == "redis":
        redis_healthy = await check_redis_connection()

    content = {
        "status": "healthy" if backend_healthy and redis_healthy else "degraded",
        "backend": "connected" if backend_healthy else "disconnected",
        "redis": ("connected" if redis_healthy else "disconnected")
        if settings.DRAFT_STORE == "redis" else "disabled",
    }
    if not backend_healthy:
        return JSONResponse(status_code=503, content=content)
    return content

# ============================================================
# Include API Router
# ============================================================
app.include_router(
    api_router,
    prefix=settings.API_V1_PREFIX
)


# ----------------------------------------------------
# Exception Handlers
# ----------------------------------------------------
@app.exception_handler(404)
async def not_found_handler(request, exc):
    """Handle 404 errors, keeping an endpoint's own detail."""
    detail = getattr(exc, "detail", None)
    return JSONResponse(
        status_code=404,
        content={"detail": detail if isinstance(detail, str) and detail != "Not Found" else "Not found"}
    )


@app.exception_handler(500)
async def internal_error_handler(request, exc):
    """Handle 500 errors."""
    logger.error(f"Internal server error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )
