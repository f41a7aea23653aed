"""Credits service FastAPI application."""

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import APIRouter, FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from credits_service.config import settings
from credits_service.database import close_database, init_database
from credits_service.error_handlers import register_exception_handlers
from credits_service.middleware.auth import AuthMiddleware
from credits_service.middleware.rate_limit import limiter
from credits_service.observability.logging import configure_logging
from credits_service.observability.sentry import init_sentry
from credits_service.routes import admin, credits, webhooks

init_sentry()
configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("Starting credits service", version=settings.VERSION)
    await init_database()

    yield

    logger.info("Shutting down credits service")
    await close_database()


app = FastAPI(
    title="Credits Service",
    description="Per-account credit ledger: balances, purchases, metered usage and Stripe webhooks.",
    version=settings.VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url=None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-Request-ID",
    ],
    max_age=600,
)
# Order matters: added last runs first
app.add_middleware(AuthMiddleware)

api_v1 = APIRouter()
api_v1.include_router(credits.router)
api_v1.include_router(admin.router)
api_v1.include_router(webhooks.router)
app.include_router(api_v1, prefix="/api")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.VERSION}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "127.0.0.1")
    uvicorn.run(
        "credits_service.main:app",
        host=host,
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
        log_level="info",
    )
