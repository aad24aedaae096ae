"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from viralshort import __version__
from viralshort.config import settings
from viralshort.db.database import init_db, close_db
from viralshort.api.routes import router
from viralshort.workers.pipeline_runner import pipeline_runner
from viralshort.workers.progress_tracker import progress_tracker

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting ViralShort...")

    await init_db()
    logger.info("Database initialized")

    progress_tracker.start()
    logger.info("Progress tracker started")

    yield

    # Shutdown
    logger.info("Shutting down ViralShort...")
    await pipeline_runner.shutdown()
    await progress_tracker.stop()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Narrated, subtitled vertical shorts from long-form videos",
    version=__version__,
    lifespan=lifespan
)

# Include API routes
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": __version__,
        "api": "/api",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "viralshort.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
