"""FastAPI application for the CRM contact sync service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from crmsync.config import get_settings
from crmsync.database import check_db_ready
from crmsync.routers import health_router, sync_router
from crmsync.services.errors import AlreadyRunningError
from crmsync.services.sync_service import get_sync_service
from crmsync.tasks.scheduler import setup_scheduler, shutdown_scheduler
from crmsync.websocket import websocket_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

# Rate limiter
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting CRM sync backend...")

    # Verify database is ready
    try:
        await check_db_ready()
        logger.info("Database ready")
    except Exception as e:
        logger.error(f"Database not ready: {e}")
        raise

    setup_scheduler()

    yield

    # Shutdown: a sync still running in this process is marked failed
    shutdown_scheduler()
    await get_sync_service().shutdown()
    logger.info("CRM sync backend shut down")


# Create FastAPI app
app = FastAPI(
    title="CRM Sync API",
    description="Resumable bulk sync of Vtiger CRM contacts into the candidates store",
    version="0.1.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AlreadyRunningError)
async def already_running_handler(request: Request, exc: AlreadyRunningError):
    """A sync of the same type is already in progress."""
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include routers
app.include_router(health_router)
app.include_router(sync_router, prefix=settings.api_v1_prefix)
app.include_router(websocket_router)  # WebSocket at /ws/sync


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "CRM Sync API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crmsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
