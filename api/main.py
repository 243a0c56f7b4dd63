"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, transfer, charts
from core.config import settings
from core.database import dispose_engine
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import SyncScheduler

# Configure logging
setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Dashboard Data Sync API",
    description="Data sync engine and storage-location query router for BI dashboards",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Initialize Scheduler
scheduler = SyncScheduler()
app.state.scheduler = scheduler


# Include routers
app.include_router(health.router)
app.include_router(transfer.router)
app.include_router(charts.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Dashboard Data Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("Sync scheduler disabled")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Dashboard Data Sync API")
    scheduler.stop()
    await dispose_engine()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Dashboard Data Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "data_transfer": "/data-transfer",
            "charts": "/charts"
        }
    }
