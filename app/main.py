from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging
from typing import AsyncIterator

from app.config import settings
from app.api import api_router
from models.database import init_db, close_db
from scripts.file_logger import configure_logging

configure_logging("api", settings.log_dir)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Handle application startup and shutdown events"""
    logger.info("🚀 Starting TrainKeeper API server")
    logger.info("📊 Initializing database connection...")
    await init_db()
    logger.info("✅ Database connected successfully")
    yield
    logger.info("🛑 Shutting down TrainKeeper API server")
    await close_db()
    logger.info("✅ Database connections closed")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title=settings.app_name,
        description=settings.app_description,
        version=settings.app_version,
        debug=settings.debug,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint with API information"""
        return {
            "message": "Welcome to TrainKeeper - prepaid GPU training jobs",
            "version": settings.app_version,
            "documentation": "/docs",
            "endpoints": {
                "submit_job": "POST /api/v1/jobs - Queue a new training job",
                "job_status": "GET /api/v1/jobs/{job_id} - Get job status",
                "list_jobs": "GET /api/v1/jobs - List training jobs",
                "estimate": "POST /api/v1/estimate - Estimate cost in points",
                "orphans": "GET /api/v1/audit/orphans - Terminal jobs with live instances",
                "stuck": "GET /api/v1/audit/stuck - Active jobs without heartbeat",
            },
        }

    app.include_router(api_router)

    return app


app = create_application()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.host, port=settings.port, reload=settings.debug)
