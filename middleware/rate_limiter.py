"""
Rate Limiting Middleware for FastAPI.

Per-endpoint rate limits:
- Default: 100 requests/minute for read endpoints
- Calculation runs: 10 requests/minute (each run scans a full period of sales)
- Approval transitions: 30 requests/minute
- Exports: 20 requests/minute
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from fastapi import Request, FastAPI
from fastapi.responses import JSONResponse
import os
import logging

logger = logging.getLogger(__name__)

RATE_LIMITS = {
    # Default rate limit for most endpoints
    "default": os.getenv("RATE_LIMIT_DEFAULT", "100/minute"),

    # Calculation runs and blueprint materialization
    "calculation": os.getenv("RATE_LIMIT_CALCULATION", "10/minute"),

    # Approve / reject / paid
    "approval": os.getenv("RATE_LIMIT_APPROVAL", "30/minute"),

    # API discovery/health endpoints (more lenient)
    "health": os.getenv("RATE_LIMIT_HEALTH", "300/minute"),

    # CSV exports of aggregation reports
    "export": os.getenv("RATE_LIMIT_EXPORT", "20/minute"),
}


def get_client_identifier(request: Request) -> str:
    """
    Get a unique identifier for the client.

    Priority:
    1. X-Real-IP header (from reverse proxy)
    2. X-Forwarded-For header (from load balancer)
    3. Client IP address
    """
    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First IP in the chain is the original client
        return forwarded_for.split(",")[0].strip()

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_identifier,
    default_limits=[RATE_LIMITS["default"]],
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Use Redis in production
    strategy="fixed-window",
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Custom handler for rate limit exceeded errors.

    Returns a structured JSON response with retry information.
    """
    logger.warning(
        f"Rate limit exceeded for {get_client_identifier(request)} "
        f"on {request.url.path}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please slow down and try again later.",
            "detail": str(exc.detail) if hasattr(exc, 'detail') else "Rate limit exceeded",
            "retry_after": getattr(exc, 'retry_after', 60),
        },
        headers={
            "Retry-After": str(getattr(exc, 'retry_after', 60)),
            "X-RateLimit-Limit": str(exc.detail) if hasattr(exc, 'detail') else "unknown",
        }
    )


def setup_rate_limiting(app: FastAPI) -> None:
    """
    Configure rate limiting for the FastAPI application.

    Args:
        app: FastAPI application instance
    """
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    logger.info(
        f"Rate limiting configured: "
        f"default={RATE_LIMITS['default']}, "
        f"calculation={RATE_LIMITS['calculation']}, "
        f"approval={RATE_LIMITS['approval']}"
    )


# Decorator shortcuts for common rate limits
def limit_default(func):
    """Apply default rate limit (100/minute)."""
    return limiter.limit(RATE_LIMITS["default"])(func)


def limit_calculation(func):
    """Apply calculation rate limit (10/minute) for calculation runs."""
    return limiter.limit(RATE_LIMITS["calculation"])(func)


def limit_approval(func):
    """Apply approval rate limit (30/minute)."""
    return limiter.limit(RATE_LIMITS["approval"])(func)


def limit_health(func):
    """Apply health check rate limit (300/minute)."""
    return limiter.limit(RATE_LIMITS["health"])(func)


def limit_export(func):
    """Apply export rate limit (20/minute)."""
    return limiter.limit(RATE_LIMITS["export"])(func)
