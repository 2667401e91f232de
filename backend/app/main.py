from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
import psutil
import logging
import time

from app.core.config import settings
from app.core.database import AsyncSessionLocal, async_engine, create_db_and_tables
from app.core.cache import cache
from app.core.exceptions import SessionError
from app.api.v1.api import api_router
from app.services.exam_repository import ExamRepository
from app.services.session_coordinator import SessionCoordinator

logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Exam Session Coordinator",
    description="Live proctoring sessions: presence, video monitoring, warnings and reconnection",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info("Starting Exam Session Coordinator...")

    await create_db_and_tables()
    logger.info("Database initialized")

    try:
        cache_health = await cache.ahealth_check()
        if cache_health:
            logger.info("Cache connection established")
        else:
            logger.warning("Cache connection failed - running without cache")
    except Exception as e:
        logger.error(f"Cache initialization error: {e}")

    app.state.coordinator = SessionCoordinator.create(
        ExamRepository(AsyncSessionLocal),
        settings,
        cache_manager=cache,
    )
    logger.info("Exam Session Coordinator startup completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info("Shutting down Exam Session Coordinator...")

    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        await coordinator.shutdown()
        logger.info("Session timers cancelled and sockets closed")

    await cache.aclose()
    await async_engine.dispose()
    logger.info("Exam Session Coordinator shutdown completed")


app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Database, cache and host health"""
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {}
    }

    try:
        cache_health = await cache.ahealth_check()
        health_status["services"]["cache"] = "healthy" if cache_health else "unhealthy"
    except Exception as e:
        health_status["services"]["cache"] = f"error: {str(e)}"

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["services"]["database"] = "healthy"
    except Exception as e:
        health_status["services"]["database"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    try:
        health_status["system"] = {
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage('/').percent
        }
    except Exception as e:
        health_status["system"] = f"error: {str(e)}"

    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        health_status["sessions"] = {
            "connections": len(coordinator.connections.active_connections),
        }

    return health_status
