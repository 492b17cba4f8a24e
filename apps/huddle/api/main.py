"""
Huddle API Server

FastAPI server for coach/player messaging, read receipts and performance alerts.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from huddle.api.routes import router, limiter as routes_limiter
from huddle.database import db
from huddle.models.schemas import HealthResponse

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    logger.info("Starting up Huddle API...")

    # Create any tables missing from the migrations
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        # Don't raise - allow app to start; /api/health reports the database as down

    yield  # App is running

    logger.info("Shutting down Huddle API...")

    await db.engine.dispose()


app = FastAPI(
    title="Huddle API",
    description="Coach/player messaging with read receipts and rule-based performance alerts",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware - origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/api/health", response_model=HealthResponse)
async def health():
    """Liveness check; also reports whether the database answers."""
    try:
        async with db.AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "healthy", "database": True, "message": "API is running"}
    except Exception as e:
        logger.warning(f"Health check database query failed: {e}")
        return {"status": "degraded", "database": False, "message": f"Database unavailable: {e}"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
