"""Integration tests for payment event intake.

Tests cover:
- Package purchases credited once per event id
- Rejected and ignored purchase events
- Subscription stipends on start and renewal
- Billing profile state for cancellations and failed invoices
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credits_service.database.models import BillingEvent, BillingProfile
from credits_service.ledger import ReasonCode, TransactionEngine
from credits_service.services.payment_events import (
    EventOutcome,
    PaymentEventProcessor,
    stipend_reference,
)
from credits_service.services.stripe_gateway import normalize_event
from tests.conftest import stripe_event

ACCOUNT = "acct-payments"
PERIOD_START = datetime(2026, 9, 1, tzinfo=UTC)


def _payment_intent(
    package_id: str | None = "pack_100",
    amount_received: int = 999,
    account_id: str | None = ACCOUNT,
    customer: str | None = None,
) -> dict[str, Any]:
    metadata: dict[str, str] = {}
    if account_id:
        metadata["account_id"] = account_id
    if package_id:
        metadata["package_id"] = package_id
    return {
        "id": "pi_test",
        "object": "payment_intent",
        "amount_received": amount_received,
        "currency": "usd",
        "customer": customer,
        "metadata": metadata,
    }


def _subscription(
    price_id: str = "price_premium_monthly",
    period_start: datetime = PERIOD_START,
    status: str = "active",
    subscription_id: str = "sub_1",
) -> dict[str, Any]:
    period_end = period_start + timedelta(days=30)
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_payments",
        "status": status,
        "cancel_at_period_end": False,
        "metadata": {"account_id": ACCOUNT},
        "items": {
            "data": [
                {
                    "price": {"id": price_id},
                    "current_period_start": int(period_start.timestamp()),
                    "current_period_end": int(period_end.timestamp()),
                }
            ]
        },
    }


async def _profile(session_factory: async_sessionmaker[AsyncSession]) -> BillingProfile | None:
    async with session_factory() as db:
        result = await db.execute(select(BillingProfile).where(BillingProfile.account_id == ACCOUNT))
        return result.scalar_one_or_none()


@pytest.mark.integration
class TestPurchases:
    @pytest.mark.asyncio
    async def test_payment_intent_credits_package(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        event = normalize_event(stripe_event("payment_intent.succeeded", _payment_intent(), "evt_buy_1"))

        result = await processor.process(event)

        assert result.outcome is EventOutcome.APPLIED
        assert result.account_id == ACCOUNT
        assert result.transaction_id is not None
        history = await ledger.get_history(ACCOUNT)
        assert len(history) == 1
        assert history[0].reason_code == "purchase_pack_100"
        assert history[0].external_reference == "evt_buy_1"
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(100)

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(
        self,
        processor: PaymentEventProcessor,
        ledger: TransactionEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        payload = stripe_event("payment_intent.succeeded", _payment_intent("pack_500", 3999), "evt_buy_2")

        first = await processor.process(normalize_event(payload))
        second = await processor.process(normalize_event(payload))

        assert first.outcome is EventOutcome.APPLIED
        assert second.outcome is EventOutcome.DUPLICATE
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(550)
        async with session_factory() as db:
            events = (await db.execute(select(BillingEvent))).scalars().all()
        assert [e.event_id for e in events] == ["evt_buy_2"]

    @pytest.mark.asyncio
    async def test_credit_survives_lost_event_record(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        # Credit applied but the process died before recording the event
        await ledger.credit(ACCOUNT, 100, ReasonCode.purchase("pack_100"), "evt_buy_3")

        event = normalize_event(stripe_event("payment_intent.succeeded", _payment_intent(), "evt_buy_3"))
        result = await processor.process(event)

        assert result.outcome is EventOutcome.DUPLICATE
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(100)

    @pytest.mark.asyncio
    async def test_unknown_package_rejected(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        event = normalize_event(
            stripe_event("payment_intent.succeeded", _payment_intent("pack_bogus"), "evt_buy_4")
        )

        result = await processor.process(event)

        assert result.outcome is EventOutcome.REJECTED
        assert "pack_bogus" in (result.detail or "")
        assert await ledger.get_history(ACCOUNT) == []

    @pytest.mark.asyncio
    async def test_underpayment_rejected(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        event = normalize_event(
            stripe_event("payment_intent.succeeded", _payment_intent("pack_1000", 100), "evt_buy_5")
        )

        result = await processor.process(event)

        assert result.outcome is EventOutcome.REJECTED
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(0)

    @pytest.mark.asyncio
    async def test_intent_without_package_ignored(self, processor: PaymentEventProcessor) -> None:
        event = normalize_event(
            stripe_event("payment_intent.succeeded", _payment_intent(package_id=None), "evt_buy_6")
        )
        assert (await processor.process(event)).outcome is EventOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_account_resolved_from_customer(
        self,
        processor: PaymentEventProcessor,
        ledger: TransactionEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        async with session_factory() as db:
            db.add(BillingProfile(account_id=ACCOUNT, stripe_customer_id="cus_known"))
            await db.commit()

        event = normalize_event(
            stripe_event(
                "payment_intent.succeeded",
                _payment_intent(account_id=None, customer="cus_known"),
                "evt_buy_7",
            )
        )
        result = await processor.process(event)

        assert result.outcome is EventOutcome.APPLIED
        assert result.account_id == ACCOUNT
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(100)

    @pytest.mark.asyncio
    async def test_unresolvable_account_ignored(self, processor: PaymentEventProcessor) -> None:
        event = normalize_event(
            stripe_event(
                "payment_intent.succeeded",
                _payment_intent(account_id=None, customer="cus_unknown"),
                "evt_buy_8",
            )
        )
        result = await processor.process(event)
        assert result.outcome is EventOutcome.IGNORED
        assert result.detail == "account not found"

    @pytest.mark.asyncio
    async def test_payment_failed_acknowledged(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        data = _payment_intent()
        data["last_payment_error"] = {"code": "card_declined", "message": "Your card was declined."}

        result = await processor.process(
            normalize_event(stripe_event("payment_intent.payment_failed", data, "evt_fail_1"))
        )

        assert result.outcome is EventOutcome.ACKNOWLEDGED
        assert result.detail == "Your card was declined."
        assert await ledger.get_history(ACCOUNT) == []


@pytest.mark.integration
class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_new_subscription_grants_stipend(
        self,
        processor: PaymentEventProcessor,
        ledger: TransactionEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        event = normalize_event(
            stripe_event("customer.subscription.created", _subscription(), "evt_sub_1")
        )

        result = await processor.process(event)

        assert result.outcome is EventOutcome.APPLIED
        history = await ledger.get_history(ACCOUNT)
        assert len(history) == 1
        assert history[0].reason_code == "subscription_started"
        assert history[0].amount == Decimal(500)

        profile = await _profile(session_factory)
        assert profile is not None
        assert profile.tier == "premium"
        assert profile.status == "active"
        assert profile.stripe_subscription_id == "sub_1"
        assert profile.stripe_customer_id == "cus_payments"

    @pytest.mark.asyncio
    async def test_update_in_same_period_grants_nothing(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        await processor.process(
            normalize_event(stripe_event("customer.subscription.created", _subscription(), "evt_sub_2"))
        )
        result = await processor.process(
            normalize_event(stripe_event("customer.subscription.updated", _subscription(), "evt_sub_3"))
        )

        assert result.outcome is EventOutcome.APPLIED
        assert result.transaction_id is None
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(500)

    @pytest.mark.asyncio
    async def test_renewal_grants_stipend(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        await processor.process(
            normalize_event(stripe_event("customer.subscription.created", _subscription(), "evt_sub_4"))
        )
        renewed = _subscription(period_start=PERIOD_START + timedelta(days=30))
        await processor.process(
            normalize_event(stripe_event("customer.subscription.updated", renewed, "evt_sub_5"))
        )

        history = await ledger.get_history(ACCOUNT)
        assert [tx.reason_code for tx in history] == ["subscription_renewal", "subscription_started"]
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(1000)

    @pytest.mark.asyncio
    async def test_enterprise_stipend(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        await processor.process(
            normalize_event(
                stripe_event(
                    "customer.subscription.created",
                    _subscription(price_id="price_enterprise_monthly"),
                    "evt_sub_6",
                )
            )
        )
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(2500)

    @pytest.mark.asyncio
    async def test_unknown_price_is_free_tier(
        self,
        processor: PaymentEventProcessor,
        ledger: TransactionEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await processor.process(
            normalize_event(
                stripe_event(
                    "customer.subscription.created", _subscription(price_id="price_other"), "evt_sub_7"
                )
            )
        )
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(0)
        profile = await _profile(session_factory)
        assert profile is not None
        assert profile.tier == "free"

    @pytest.mark.asyncio
    async def test_incomplete_subscription_grants_nothing(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        await processor.process(
            normalize_event(
                stripe_event(
                    "customer.subscription.created", _subscription(status="incomplete"), "evt_sub_8"
                )
            )
        )
        assert await ledger.get_history(ACCOUNT) == []

    @pytest.mark.asyncio
    async def test_incomplete_then_active_grants_stipend(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        await processor.process(
            normalize_event(
                stripe_event(
                    "customer.subscription.created", _subscription(status="incomplete"), "evt_sub_11"
                )
            )
        )
        result = await processor.process(
            normalize_event(stripe_event("customer.subscription.updated", _subscription(), "evt_sub_12"))
        )

        assert result.transaction_id is not None
        history = await ledger.get_history(ACCOUNT)
        assert [tx.reason_code for tx in history] == ["subscription_started"]
        assert history[0].external_reference == stipend_reference("sub_1", PERIOD_START)
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(500)

    @pytest.mark.asyncio
    async def test_one_stipend_per_period_across_events(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        events = [
            ("customer.subscription.created", "evt_sub_13"),
            ("customer.subscription.updated", "evt_sub_14"),
            ("customer.subscription.updated", "evt_sub_15"),
        ]
        for event_type, event_id in events:
            await processor.process(normalize_event(stripe_event(event_type, _subscription(), event_id)))

        assert await ledger.count_history(ACCOUNT) == 1
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(500)

    @pytest.mark.asyncio
    async def test_concurrent_created_and_updated_grant_once(
        self, processor: PaymentEventProcessor, ledger: TransactionEngine
    ) -> None:
        await asyncio.gather(
            processor.process(
                normalize_event(
                    stripe_event("customer.subscription.created", _subscription(), "evt_sub_16")
                )
            ),
            processor.process(
                normalize_event(
                    stripe_event("customer.subscription.updated", _subscription(), "evt_sub_17")
                )
            ),
        )

        assert await ledger.count_history(ACCOUNT) == 1
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(500)

    @pytest.mark.asyncio
    async def test_deleted_downgrades_without_touching_balance(
        self,
        processor: PaymentEventProcessor,
        ledger: TransactionEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await processor.process(
            normalize_event(stripe_event("customer.subscription.created", _subscription(), "evt_sub_9"))
        )
        result = await processor.process(
            normalize_event(
                stripe_event("customer.subscription.deleted", _subscription(status="canceled"), "evt_sub_10")
            )
        )

        assert result.outcome is EventOutcome.APPLIED
        profile = await _profile(session_factory)
        assert profile is not None
        assert profile.tier == "free"
        assert profile.status == "canceled"
        assert profile.stripe_subscription_id is None
        assert (await ledger.get_balance(ACCOUNT)).balance == Decimal(500)


@pytest.mark.integration
class TestInvoicesAndOtherEvents:
    @pytest.mark.asyncio
    async def test_invoice_failure_marks_past_due(
        self, processor: PaymentEventProcessor, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await processor.process(
            normalize_event(stripe_event("customer.subscription.created", _subscription(), "evt_inv_1"))
        )
        invoice = {"id": "in_1", "customer": "cus_payments", "attempt_count": 2, "metadata": {}}

        result = await processor.process(
            normalize_event(stripe_event("invoice.payment_failed", invoice, "evt_inv_2"))
        )

        assert result.outcome is EventOutcome.ACKNOWLEDGED
        assert result.account_id == ACCOUNT
        profile = await _profile(session_factory)
        assert profile is not None
        assert profile.status == "past_due"

    @pytest.mark.asyncio
    async def test_invoice_paid_acknowledged(self, processor: PaymentEventProcessor) -> None:
        invoice = {"id": "in_2", "customer": "cus_payments", "amount_paid": 2900}
        result = await processor.process(
            normalize_event(stripe_event("invoice.paid", invoice, "evt_inv_3"))
        )
        assert result.outcome is EventOutcome.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_unhandled_type_ignored_then_duplicate(
        self, processor: PaymentEventProcessor
    ) -> None:
        event = normalize_event(stripe_event("charge.refund.updated", {"id": "re_1"}, "evt_misc_1"))

        assert (await processor.process(event)).outcome is EventOutcome.IGNORED
        assert (await processor.process(event)).outcome is EventOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_handled_event_types(self, processor: PaymentEventProcessor) -> None:
        assert "payment_intent.succeeded" in processor.handled_event_types
        assert "customer.subscription.deleted" in processor.handled_event_types
        assert "invoice.payment_failed" in processor.handled_event_types
