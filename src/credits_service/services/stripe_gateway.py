"""Stripe integration: webhook verification, customers and payment intents."""

import json
from dataclasses import dataclass
from typing import Any

import stripe
import structlog

from credits_service.config import settings
from credits_service.exceptions import (
    PaymentProviderError,
    PaymentProviderNotConfiguredError,
    WebhookVerificationError,
)
from credits_service.services.packages import CreditPackage
from credits_service.services.payment_events import VerifiedPaymentEvent

logger = structlog.get_logger()


@dataclass(frozen=True)
class PaymentIntentResult:
    """The parts of a Stripe PaymentIntent the API returns to clients."""

    payment_intent_id: str
    status: str
    client_secret: str | None
    amount: int
    currency: str


def extract_account_id(data_object: dict[str, Any]) -> str | None:
    """Read the account id a checkout stamped into Stripe metadata."""
    metadata = data_object.get("metadata") or {}
    account_id = metadata.get("account_id") or metadata.get("user_id")
    return str(account_id) if account_id else None


def purchase_idempotency_key(account_id: str, package_id: str, request_key: str) -> str:
    """Stripe idempotency key for one client purchase attempt."""
    return f"purchase:{account_id}:{package_id}:{request_key}"


def normalize_event(raw_event: dict[str, Any]) -> VerifiedPaymentEvent:
    """Turn a verified Stripe event body into a VerifiedPaymentEvent."""
    try:
        event_id = str(raw_event["id"])
        event_type = str(raw_event["type"])
        data_object = raw_event["data"]["object"]
    except (KeyError, TypeError) as e:
        raise WebhookVerificationError("malformed event body") from e
    if not isinstance(data_object, dict):
        raise WebhookVerificationError("malformed event body")

    return VerifiedPaymentEvent(
        event_id=event_id,
        event_type=event_type,
        account_id=extract_account_id(data_object),
        payload=data_object,
    )


class StripeGateway:
    """Thin wrapper over the Stripe client."""

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        currency: str | None = None,
    ) -> None:
        self._secret_key = secret_key if secret_key is not None else settings.STRIPE_SECRET_KEY
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        )
        self._currency = currency or settings.STRIPE_CURRENCY

    def _require_secret_key(self) -> str:
        if not self._secret_key:
            raise PaymentProviderNotConfiguredError("STRIPE_SECRET_KEY")
        return self._secret_key

    def verify_webhook(self, payload: bytes, sig_header: str | None) -> VerifiedPaymentEvent:
        """Check the Stripe signature and return the normalized event.

        Raises:
            PaymentProviderNotConfiguredError: no webhook secret is configured.
            WebhookVerificationError: the signature or payload is invalid.
        """
        # Signature verification is required in all environments
        if not self._webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured - refusing webhook")
            raise PaymentProviderNotConfiguredError("STRIPE_WEBHOOK_SECRET")
        if not sig_header:
            raise WebhookVerificationError("missing Stripe signature")

        try:
            stripe.Webhook.construct_event(payload, sig_header, self._webhook_secret)
        except ValueError as e:
            logger.warning("Invalid webhook payload", error=str(e))
            raise WebhookVerificationError("invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature", error=str(e))
            raise WebhookVerificationError("invalid signature") from e

        try:
            raw_event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise WebhookVerificationError("invalid payload") from e
        return normalize_event(raw_event)

    def create_customer(self, account_id: str, email: str | None = None) -> str:
        """Create a Stripe customer tagged with the account id."""
        api_key = self._require_secret_key()
        try:
            customer = stripe.Customer.create(
                api_key=api_key,
                email=email,
                metadata={"account_id": account_id},
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create Stripe customer", account_id=account_id)
            raise PaymentProviderError(str(e)) from e
        return str(customer.id)

    def create_payment_intent(
        self,
        account_id: str,
        package: CreditPackage,
        payment_method_id: str,
        customer_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentIntentResult:
        """Create and confirm a PaymentIntent for a credit package.

        Credits are granted later by the ``payment_intent.succeeded`` webhook,
        which reads the metadata set here. A retried call with the same
        idempotency_key returns the original intent instead of charging again.
        """
        api_key = self._require_secret_key()
        currency = package.currency or self._currency
        params: dict[str, Any] = {
            "api_key": api_key,
            "amount": package.price_amount,
            "currency": currency,
            "payment_method": payment_method_id,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {
                "account_id": account_id,
                "package_id": package.package_id,
                "credits": str(package.total_credits),
            },
        }
        if customer_id:
            params["customer"] = customer_id
        if idempotency_key:
            params["idempotency_key"] = purchase_idempotency_key(
                account_id, package.package_id, idempotency_key
            )

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.warning(
                "Stripe payment intent failed",
                account_id=account_id,
                package_id=package.package_id,
                error=str(e),
            )
            raise PaymentProviderError(str(e)) from e

        logger.info(
            "Payment intent created",
            account_id=account_id,
            package_id=package.package_id,
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return PaymentIntentResult(
            payment_intent_id=str(intent.id),
            status=str(intent.status),
            client_secret=getattr(intent, "client_secret", None),
            amount=package.price_amount,
            currency=currency,
        )
