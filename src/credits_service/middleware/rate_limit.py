"""Rate limiting using slowapi with an optional Redis backend."""

import structlog
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from credits_service.config import settings

logger = structlog.get_logger()


def get_client_identifier(request: Request) -> str:
    """Get unique client identifier for rate limiting.

    Priority:
    1. Authenticated account ID
    2. Internal service caller
    3. Direct client IP
    """
    if getattr(request.state, "user_id", None):
        return f"user:{request.state.user_id}"
    if getattr(request.state, "internal_service", False):
        return "service:internal"
    return f"ip:{get_remote_address(request)}"


def _create_limiter() -> Limiter:
    """Create rate limiter with Redis or in-memory storage."""
    if not settings.REDIS_URL:
        logger.info("REDIS_URL not configured, using in-memory rate limiting (not distributed)")
        return Limiter(
            key_func=get_client_identifier,
            strategy="fixed-window",
            headers_enabled=True,
        )

    logger.info("Rate limiter initialized with Redis storage")
    return Limiter(
        key_func=get_client_identifier,
        storage_uri=settings.REDIS_URL,
        storage_options={"socket_connect_timeout": 5},
        strategy="fixed-window",
        headers_enabled=True,
        # Keep serving when Redis is unreachable
        in_memory_fallback_enabled=True,
    )


limiter = _create_limiter()


# Rate limit categories
RATE_LIMIT_STANDARD = "100/minute"  # Balance, history, catalog
RATE_LIMIT_PURCHASE = "10/minute"  # Payment intent creation
RATE_LIMIT_USAGE = "600/minute"  # Usage reports from signed-in users
RATE_LIMIT_WEBHOOK = "300/minute"  # Stripe deliveries
RATE_LIMIT_ADMIN = "200/minute"
