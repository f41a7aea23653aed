"""Stripe webhook endpoint."""

import structlog
from fastapi import APIRouter, Request, Response

from credits_service.dependencies import Gateway, PaymentProcessor
from credits_service.middleware.rate_limit import RATE_LIMIT_WEBHOOK, limiter

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
@limiter.limit(RATE_LIMIT_WEBHOOK)
async def stripe_webhook(
    request: Request,
    response: Response,  # noqa: ARG001
    gateway: Gateway,
    processor: PaymentProcessor,
) -> dict[str, str]:
    """Handle Stripe webhook events.

    Verification failures answer 400. Ledger outages answer 503 so Stripe
    redelivers; redelivery is safe because credits are keyed by event id.
    """
    payload = await request.body()
    event = gateway.verify_webhook(payload, request.headers.get("stripe-signature"))

    logger.info(
        "Received Stripe webhook",
        event_type=event.event_type,
        event_id=event.event_id,
    )

    result = await processor.process(event)
    return {"status": "ok", "outcome": result.outcome.value}
