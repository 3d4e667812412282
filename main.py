"""Main FastAPI application for the Building Sensor Analytics API."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from database import engine, Base
from error_handler import register_exception_handlers
from metrics import metrics
from routers import analytics as analytics_router
from routers import audit as audit_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info("Starting Building Sensor Analytics API...")

    # Create database tables
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created/verified")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")

    yield

    # Shutdown
    logger.info("Shutting down Building Sensor Analytics API...")


# Create FastAPI application
app = FastAPI(
    title="Building Sensor Analytics API",
    description="""
    Telemetry analytics and audit engine for building sensors:
    - Fleet health score, alert categories and predictive maintenance
    - Maintenance forecast (critical / warning / watch)
    - Anomaly breakdowns and time-bucketed trends
    - Device vs. ambient temperature correlation diagnosis
    - Reconstructed device audit history

    ## Documentation
    - OpenAPI/Swagger: `/docs`
    - ReDoc: `/redoc`
    """,
    version="2.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(
    analytics_router.router,
    prefix=f"{settings.api_prefix}",
)
app.include_router(
    audit_router.router,
    prefix=f"{settings.api_prefix}",
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Building Sensor Analytics API",
        "status": "running",
        "version": "2.0.0",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics")
async def get_metrics():
    """Get request metrics for the analytics endpoints."""
    return metrics.get_stats()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
