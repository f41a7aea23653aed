"""Payment event intake.

Maps verified Stripe events onto idempotent ledger operations and the
billing profile's subscription state. Signature verification happens
before events reach this module (see ``stripe_gateway``).
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credits_service.config import settings
from credits_service.database.connection import session_scope
from credits_service.database.models import BillingEvent, BillingProfile
from credits_service.exceptions import UnknownPackageError
from credits_service.ledger.engine import ReasonCode, TransactionEngine
from credits_service.observability.metrics import PAYMENT_FAILURES, WEBHOOK_EVENTS
from credits_service.services.packages import get_package

logger = structlog.get_logger()

PAID_TIERS = ("premium", "enterprise")
ACTIVE_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class VerifiedPaymentEvent:
    """A payment provider event whose signature has been checked."""

    event_id: str
    event_type: str
    account_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ACKNOWLEDGED = "acknowledged"  # Known event, nothing to change
    IGNORED = "ignored"
    REJECTED = "rejected"


@dataclass(frozen=True)
class EventResult:
    event_id: str
    event_type: str
    outcome: EventOutcome
    account_id: str | None = None
    transaction_id: str | None = None
    detail: str | None = None


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _subscription_price_id(subscription: dict[str, Any]) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _subscription_period(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    # Newer API versions report the period per subscription item
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    items = (subscription.get("items") or {}).get("data") or []
    if start is None and items:
        start = items[0].get("current_period_start")
        end = items[0].get("current_period_end")
    return _timestamp(start), _timestamp(end)


def stipend_reference(subscription_id: str | None, period_start: datetime | None) -> str:
    """Ledger reference for the stipend of one subscription period."""
    period = int(period_start.timestamp()) if period_start else "none"
    return f"stipend:{subscription_id}:{period}"


def default_price_tiers() -> dict[str, str]:
    """Map configured Stripe price ids to subscription tiers."""
    tiers: dict[str, str] = {}
    if settings.STRIPE_PRICE_PREMIUM:
        tiers[settings.STRIPE_PRICE_PREMIUM] = "premium"
    if settings.STRIPE_PRICE_ENTERPRISE:
        tiers[settings.STRIPE_PRICE_ENTERPRISE] = "enterprise"
    return tiers


EventHandler = Callable[[VerifiedPaymentEvent], Awaitable[EventResult]]


class PaymentEventProcessor:
    """Applies verified payment events exactly once."""

    def __init__(
        self,
        engine: TransactionEngine,
        session_factory: async_sessionmaker[AsyncSession],
        price_tiers: dict[str, str] | None = None,
        stipends: dict[str, Decimal] | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._price_tiers = price_tiers if price_tiers is not None else default_price_tiers()
        self._stipends = stipends if stipends is not None else dict(settings.TIER_CREDIT_STIPENDS)
        self._handlers: dict[str, EventHandler] = {
            "payment_intent.succeeded": self._handle_payment_intent_succeeded,
            "payment_intent.payment_failed": self._handle_payment_intent_failed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

    @property
    def handled_event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def process(self, event: VerifiedPaymentEvent) -> EventResult:
        """Apply an event. Redelivered events short-circuit as duplicates.

        Ledger and store errors propagate so the provider retries delivery;
        the ledger's external reference keeps the retry from double-crediting.
        """
        logger.info("Processing payment event", event_type=event.event_type, event_id=event.event_id)

        async with self._session_factory() as db:
            existing = await db.execute(
                select(BillingEvent.outcome).where(BillingEvent.event_id == event.event_id)
            )
            if existing.scalar_one_or_none() is not None:
                return self._finish(
                    EventResult(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        outcome=EventOutcome.DUPLICATE,
                        account_id=event.account_id,
                        detail="event already processed",
                    )
                )

        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.debug("Unhandled payment event", event_type=event.event_type)
            result = EventResult(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=EventOutcome.IGNORED,
                account_id=event.account_id,
                detail="unhandled event type",
            )
        else:
            result = await handler(event)

        recorded = await self._record(event, result)
        return self._finish(recorded)

    def _finish(self, result: EventResult) -> EventResult:
        WEBHOOK_EVENTS.labels(event_type=result.event_type, outcome=result.outcome.value).inc()
        log = logger.error if result.outcome is EventOutcome.REJECTED else logger.info
        log(
            "Payment event processed",
            event_type=result.event_type,
            event_id=result.event_id,
            account_id=result.account_id,
            outcome=result.outcome.value,
            transaction_id=result.transaction_id,
            detail=result.detail,
        )
        return result

    async def _record(self, event: VerifiedPaymentEvent, result: EventResult) -> EventResult:
        try:
            async with session_scope(self._session_factory) as db:
                db.add(
                    BillingEvent(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        account_id=result.account_id,
                        outcome=result.outcome.value,
                        detail=result.detail,
                        event_data={"object_id": event.payload.get("id")},
                        transaction_id=result.transaction_id,
                        created_at=datetime.now(UTC),
                    )
                )
        except IntegrityError:
            # A concurrent delivery recorded the event first
            return EventResult(
                event_id=result.event_id,
                event_type=result.event_type,
                outcome=EventOutcome.DUPLICATE,
                account_id=result.account_id,
                transaction_id=result.transaction_id,
                detail="event recorded concurrently",
            )
        return result

    async def _resolve_account(self, event: VerifiedPaymentEvent) -> str | None:
        if event.account_id:
            return event.account_id
        customer_id = event.payload.get("customer")
        if not customer_id:
            return None
        async with self._session_factory() as db:
            result = await db.execute(
                select(BillingProfile.account_id).where(
                    BillingProfile.stripe_customer_id == customer_id
                )
            )
            return result.scalar_one_or_none()

    async def _stipend_reason(
        self, account_id: str, subscription_id: str | None, period_start: datetime | None
    ) -> ReasonCode:
        """A later period of the stored subscription is a renewal."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(BillingProfile).where(BillingProfile.account_id == account_id)
            )
            profile = result.scalar_one_or_none()
        if profile is None or profile.stripe_subscription_id != subscription_id:
            return ReasonCode.SUBSCRIPTION_STARTED
        previous_start = _as_utc(profile.current_period_start)
        if period_start and previous_start and period_start > previous_start:
            return ReasonCode.SUBSCRIPTION_RENEWAL
        return ReasonCode.SUBSCRIPTION_STARTED

    def _unresolved(self, event: VerifiedPaymentEvent) -> EventResult:
        logger.warning(
            "Payment event has no resolvable account",
            event_type=event.event_type,
            event_id=event.event_id,
            customer_id=event.payload.get("customer"),
        )
        return EventResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=EventOutcome.IGNORED,
            detail="account not found",
        )

    # -------------------------------------------------------------------------
    # Payment intents
    # -------------------------------------------------------------------------

    async def _handle_payment_intent_succeeded(self, event: VerifiedPaymentEvent) -> EventResult:
        """Credit a purchased package, keyed by the event id."""
        metadata = event.payload.get("metadata") or {}
        package_id = metadata.get("package_id")
        if not package_id:
            return EventResult(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=EventOutcome.IGNORED,
                account_id=event.account_id,
                detail="no credit package in metadata",
            )

        account_id = await self._resolve_account(event)
        if account_id is None:
            return self._unresolved(event)

        try:
            package = get_package(package_id)
        except UnknownPackageError as e:
            return EventResult(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=EventOutcome.REJECTED,
                account_id=account_id,
                detail=str(e),
            )

        amount_received = event.payload.get("amount_received")
        if amount_received is not None and int(amount_received) < package.price_amount:
            return EventResult(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=EventOutcome.REJECTED,
                account_id=account_id,
                detail=(
                    f"amount received {amount_received} is below the price "
                    f"{package.price_amount} of {package.package_id}"
                ),
            )

        result = await self._engine.credit(
            account_id,
            package.total_credits,
            ReasonCode.purchase(package.package_id),
            external_reference=event.event_id,
        )
        return EventResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=EventOutcome.DUPLICATE if result.duplicate else EventOutcome.APPLIED,
            account_id=account_id,
            transaction_id=result.transaction_id,
            detail=f"credited {result.amount} for {package.package_id}",
        )

    async def _handle_payment_intent_failed(self, event: VerifiedPaymentEvent) -> EventResult:
        error = event.payload.get("last_payment_error") or {}
        PAYMENT_FAILURES.labels(event_type=event.event_type).inc()
        logger.warning(
            "Payment failed",
            event_id=event.event_id,
            account_id=event.account_id,
            payment_intent_id=event.payload.get("id"),
            error_code=error.get("code"),
        )
        return EventResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=EventOutcome.ACKNOWLEDGED,
            account_id=event.account_id,
            detail=error.get("message"),
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def _handle_subscription_changed(self, event: VerifiedPaymentEvent) -> EventResult:
        """Sync tier and period, granting the tier stipend on start or renewal."""
        subscription = event.payload
        account_id = await self._resolve_account(event)
        if account_id is None:
            return self._unresolved(event)

        price_id = _subscription_price_id(subscription)
        tier = self._price_tiers.get(price_id or "", "free")
        if price_id and tier == "free":
            logger.warning("Unknown Stripe price on subscription", price_id=price_id)
        status = str(subscription.get("status") or "active")
        period_start, period_end = _subscription_period(subscription)

        # One stipend per subscription period, whichever event reports it first
        reason: ReasonCode | None = None
        transaction_id = None
        stipend = self._stipends.get(tier, Decimal(0))
        if tier in PAID_TIERS and status in ACTIVE_STATUSES and stipend > 0:
            reason = await self._stipend_reason(account_id, subscription.get("id"), period_start)
            credit = await self._engine.credit(
                account_id,
                stipend,
                reason,
                external_reference=stipend_reference(subscription.get("id"), period_start),
            )
            if not credit.duplicate:
                transaction_id = credit.transaction_id

        await self._upsert_profile(
            account_id,
            customer_id=subscription.get("customer"),
            subscription_id=subscription.get("id"),
            tier=tier,
            status=status,
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        )

        detail = f"tier={tier} status={status}"
        if transaction_id:
            detail += f" stipend={stipend} reason={reason.value if reason else ''}"
        return EventResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=EventOutcome.APPLIED,
            account_id=account_id,
            transaction_id=transaction_id,
            detail=detail,
        )

    async def _handle_subscription_deleted(self, event: VerifiedPaymentEvent) -> EventResult:
        account_id = await self._resolve_account(event)
        if account_id is None:
            return self._unresolved(event)

        await self._upsert_profile(
            account_id,
            customer_id=event.payload.get("customer"),
            subscription_id=None,
            tier="free",
            status="canceled",
            cancel_at_period_end=False,
        )
        logger.info("Subscription canceled", account_id=account_id)
        return EventResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=EventOutcome.APPLIED,
            account_id=account_id,
            detail="tier=free status=canceled",
        )

    async def _upsert_profile(
        self,
        account_id: str,
        *,
        customer_id: str | None,
        subscription_id: str | None,
        tier: str,
        status: str,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
    ) -> None:
        async with session_scope(self._session_factory) as db:
            result = await db.execute(
                select(BillingProfile).where(BillingProfile.account_id == account_id)
            )
            profile = result.scalar_one_or_none()
            if profile is None:
                profile = BillingProfile(account_id=account_id)
                db.add(profile)
            if customer_id:
                profile.stripe_customer_id = customer_id
            profile.stripe_subscription_id = subscription_id
            profile.tier = tier
            profile.status = status
            if period_start is not None:
                profile.current_period_start = period_start
            if period_end is not None:
                profile.current_period_end = period_end
            profile.cancel_at_period_end = cancel_at_period_end
            profile.updated_at = datetime.now(UTC)

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    async def _handle_invoice_paid(self, event: VerifiedPaymentEvent) -> EventResult:
        logger.info(
            "Invoice paid",
            event_id=event.event_id,
            invoice_id=event.payload.get("id"),
            customer_id=event.payload.get("customer"),
            amount_paid=event.payload.get("amount_paid"),
        )
        return EventResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=EventOutcome.ACKNOWLEDGED,
            account_id=event.account_id,
        )

    async def _handle_invoice_payment_failed(self, event: VerifiedPaymentEvent) -> EventResult:
        PAYMENT_FAILURES.labels(event_type=event.event_type).inc()
        account_id = await self._resolve_account(event)
        if account_id is None:
            return self._unresolved(event)

        async with session_scope(self._session_factory) as db:
            result = await db.execute(
                select(BillingProfile).where(BillingProfile.account_id == account_id)
            )
            profile = result.scalar_one_or_none()
            if profile is not None:
                profile.status = "past_due"
                profile.updated_at = datetime.now(UTC)

        logger.warning(
            "Invoice payment failed",
            account_id=account_id,
            invoice_id=event.payload.get("id"),
            attempt_count=event.payload.get("attempt_count"),
        )
        return EventResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=EventOutcome.ACKNOWLEDGED,
            account_id=account_id,
            detail="profile marked past_due" if profile is not None else None,
        )
