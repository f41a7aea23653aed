"""Translate credits exceptions into HTTP responses."""

import uuid
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from credits_service.exceptions import (
    InsufficientBalanceError,
    LedgerDomainError,
    LedgerInfrastructureError,
    PaymentProviderError,
    PaymentProviderNotConfiguredError,
    PaymentRequiredError,
    WebhookVerificationError,
)

logger = structlog.get_logger()

# Seconds clients should wait before retrying a 503
RETRY_AFTER_SECONDS = 1


class CreditErrorCode:
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_REQUEST = "INVALID_REQUEST"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    PAYMENT_PROVIDER_ERROR = "PAYMENT_PROVIDER_ERROR"
    PAYMENT_PROVIDER_NOT_CONFIGURED = "PAYMENT_PROVIDER_NOT_CONFIGURED"
    WEBHOOK_VERIFICATION_FAILED = "WEBHOOK_VERIFICATION_FAILED"


def create_billing_error_detail(
    exc: InsufficientBalanceError | PaymentRequiredError,
) -> dict[str, Any]:
    """Create a standardized error body for 402 responses."""
    detail: dict[str, Any] = {
        "detail": str(exc),
        "error_code": CreditErrorCode.INSUFFICIENT_CREDITS,
        "credits_needed": str(exc.required),
        "credits_available": str(exc.available),
        "shortfall": str(exc.shortfall),
        "add_credits_url": "/settings/billing",
    }
    if isinstance(exc, PaymentRequiredError):
        detail["resource_type"] = exc.resource_type
    return detail


async def _payment_required_handler(
    request: Request, exc: InsufficientBalanceError | PaymentRequiredError
) -> JSONResponse:
    return JSONResponse(status_code=402, content=create_billing_error_detail(exc))


async def _domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "error_code": CreditErrorCode.INVALID_REQUEST},
    )


async def _infrastructure_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning(
        "Ledger unavailable",
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=503,
        content={
            "detail": "Credits ledger temporarily unavailable. Please retry.",
            "error_code": CreditErrorCode.LEDGER_UNAVAILABLE,
        },
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


async def _payment_provider_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, WebhookVerificationError):
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc), "error_code": CreditErrorCode.WEBHOOK_VERIFICATION_FAILED},
        )
    if isinstance(exc, PaymentProviderNotConfiguredError):
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Payments are not configured",
                "error_code": CreditErrorCode.PAYMENT_PROVIDER_NOT_CONFIGURED,
            },
        )
    return JSONResponse(
        status_code=502,
        content={
            "detail": "Payment provider error. Please try again.",
            "error_code": CreditErrorCode.PAYMENT_PROVIDER_ERROR,
        },
    )


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler to prevent leaking internal details.

    SECURITY: Returns a generic message with an error id; the details are
    only logged.
    """
    error_id = str(uuid.uuid4())[:8]
    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers, most specific first."""
    app.add_exception_handler(InsufficientBalanceError, _payment_required_handler)  # type: ignore[arg-type]
    app.add_exception_handler(PaymentRequiredError, _payment_required_handler)  # type: ignore[arg-type]
    app.add_exception_handler(LedgerDomainError, _domain_error_handler)
    app.add_exception_handler(LedgerInfrastructureError, _infrastructure_error_handler)
    app.add_exception_handler(PaymentProviderError, _payment_provider_error_handler)
    app.add_exception_handler(Exception, _global_exception_handler)
