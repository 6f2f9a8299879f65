"""
Royalty Calculation Engine - FastAPI Backend

This is the main entry point for the Python backend that handles:
- Royalty / license-fee calculation runs over imported sales data
- Calculation blueprints binding contract rules to ERP fields
- Line item and aggregation reporting
- Approval workflow for calculation runs
"""

from dotenv import load_dotenv

# Load environment variables FIRST - before importing modules that need them
load_dotenv()

# Now import modules that depend on environment variables
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from typing import Dict
import os
import logging

from api.calculations import router as calculations_router
from api.blueprints import router as blueprints_router
from db.database import close_connection_pool, init_connection_pool

# Import rate limiting middleware
from middleware.rate_limiter import setup_rate_limiting, limiter, limit_health

# Configure logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


# Lifespan handler for startup/shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: open the database pool
    if os.getenv("DATABASE_URL"):
        try:
            init_connection_pool(
                min_connections=int(os.getenv("DB_POOL_MIN", "1")),
                max_connections=int(os.getenv("DB_POOL_MAX", "5")),
            )
        except Exception as e:
            logger.error(f"Database not available - {e}")
    else:
        logger.warning("DATABASE_URL not set; calculation endpoints will fail until it is configured")
    yield
    # Shutdown: close the pool
    close_connection_pool()


# Initialize FastAPI application
app = FastAPI(
    title="Royalty Calculation API",
    description="Backend API for royalty and license-fee calculation, reporting and approval",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Setup rate limiting (before other middleware)
setup_rate_limiting(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Register API routers
app.include_router(calculations_router)
app.include_router(blueprints_router)


@app.get("/", response_model=Dict[str, str])
@limiter.limit("100/minute")
async def root(request: Request) -> Dict[str, str]:
    """
    Root endpoint with API information.

    Returns:
        Dict containing API name, version, and documentation links
    """
    return {
        "service": "Royalty Calculation API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "status": "running",
    }


@app.get("/health", response_model=Dict[str, str])
@limit_health
async def health_check(request: Request) -> Dict[str, str]:
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Dict with health status and service information
    """
    return {
        "status": "healthy",
        "service": "royalty-calculation-backend",
        "version": "1.0.0",
    }


if __name__ == "__main__":
    import uvicorn

    # Run with: python main.py
    # Or use: uvicorn main:app --reload --port 8000
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
