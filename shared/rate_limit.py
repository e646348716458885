"""Request rate limiting.

Throttling state lives in the slowapi limiter attached to the application,
configured from settings, never in module-level counters.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import Settings

logger = logging.getLogger(__name__)


def build_limiter(settings: Settings) -> Limiter:
    """Create a limiter keyed by client address with the configured default limit."""
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit],
        strategy="moving-window",
        enabled=settings.rate_limit_enabled,
    )


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "code": "rate_limit_exceeded",
            "detail": f"Rate limit exceeded: {exc.detail}",
        },
    )


def setup_rate_limiter(app: FastAPI, settings: Settings) -> Limiter:
    """
    Install the limiter on an application.

    Args:
        app: Application to protect
        settings: Supplies ``rate_limit`` (e.g. "100/minute") and ``rate_limit_enabled``

    Returns:
        The limiter, for per-route ``@limiter.limit`` / ``@limiter.exempt`` use
    """
    limiter = build_limiter(settings)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    if settings.rate_limit_enabled:
        logger.info(f"Rate limiter configured: {settings.rate_limit} per client")
    else:
        logger.info("Rate limiter disabled")

    return limiter
