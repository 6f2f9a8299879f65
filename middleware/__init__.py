"""Middleware package for FastAPI backend."""

from .rate_limiter import (
    limiter,
    setup_rate_limiting,
    limit_default,
    limit_calculation,
    limit_approval,
    limit_health,
    limit_export,
    RATE_LIMITS,
)

__all__ = [
    "limiter",
    "setup_rate_limiting",
    "limit_default",
    "limit_calculation",
    "limit_approval",
    "limit_health",
    "limit_export",
    "RATE_LIMITS",
]
