"""Usage metering.

Converts consumption (executions, provider API calls, storage) into credit
debits and keeps a usage log for analytics.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credits_service.config import settings
from credits_service.database.connection import session_scope
from credits_service.database.models import UsageRecord
from credits_service.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    PaymentRequiredError,
    UnknownResourceTypeError,
)
from credits_service.ledger.amounts import (
    MILLICREDITS_PER_CREDIT,
    AmountLike,
    from_millicredits,
    quantize_credits,
    require_positive,
    to_millicredits,
)
from credits_service.ledger.engine import TransactionEngine
from credits_service.observability.metrics import USAGE_CHARGES

logger = structlog.get_logger()

# Credits per unit of each metered resource
DEFAULT_CREDIT_COSTS: dict[str, Decimal] = {
    "workflow_execution": Decimal(1),
    "node_execution": Decimal("0.1"),
    "api_call_openai": Decimal(2),
    "api_call_anthropic": Decimal(3),
    "api_call_google": Decimal(2),
    "storage_mb": Decimal("0.01"),
}

USAGE_PERIODS: dict[str, timedelta] = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}

# Keeps usage keys apart from payment event ids on the same account
USAGE_REFERENCE_PREFIX = "usage:"


def get_cost_table() -> dict[str, Decimal]:
    """Default costs merged with CREDIT_COST_OVERRIDES."""
    return {**DEFAULT_CREDIT_COSTS, **settings.CREDIT_COST_OVERRIDES}


@dataclass(frozen=True)
class UsageCharge:
    """Result of recording usage."""

    resource_type: str
    quantity: Decimal
    credits_charged: Decimal
    remaining_balance: Decimal
    transaction_id: str
    duplicate: bool = False


@dataclass(frozen=True)
class UsageStat:
    """Aggregated usage of one resource type over a period."""

    resource_type: str
    count: int
    quantity: Decimal
    credits: Decimal


class UsageMeter:
    """Charges metered usage against an account's credits."""

    def __init__(
        self,
        engine: TransactionEngine,
        session_factory: async_sessionmaker[AsyncSession],
        cost_table: dict[str, Decimal] | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._costs = cost_table if cost_table is not None else get_cost_table()

    @property
    def resource_types(self) -> list[str]:
        return sorted(self._costs)

    def quote(self, resource_type: str, quantity: AmountLike = 1) -> Decimal:
        """Price usage without charging it.

        Raises:
            UnknownResourceTypeError: no price exists for resource_type.
            InvalidAmountError: quantity is not positive, or the cost rounds to zero.
        """
        rate = self._costs.get(resource_type)
        if rate is None:
            raise UnknownResourceTypeError(resource_type, self.resource_types)
        require_positive(quantity)
        cost = quantize_credits(rate * quantize_credits(quantity))
        try:
            require_positive(cost)
        except InvalidAmountError as e:
            raise InvalidAmountError(quantity) from e
        return cost

    async def record_usage(
        self,
        account_id: str,
        resource_type: str,
        quantity: AmountLike = 1,
        context: str | None = None,
        idempotency_key: str | None = None,
    ) -> UsageCharge:
        """Debit the cost of usage and log it.

        Raises:
            PaymentRequiredError: the balance does not cover the cost.
            UnknownResourceTypeError: no price exists for resource_type.
        """
        cost = self.quote(resource_type, quantity)
        units = quantize_credits(quantity)
        reason_code = f"{resource_type}:{context}" if context else resource_type
        reference = f"{USAGE_REFERENCE_PREFIX}{idempotency_key}" if idempotency_key else None

        try:
            result = await self._engine.debit(
                account_id, cost, reason_code, external_reference=reference
            )
        except InsufficientBalanceError as e:
            USAGE_CHARGES.labels(resource_type=resource_type, outcome="payment_required").inc()
            logger.warning(
                "Usage blocked by insufficient credits",
                account_id=account_id,
                resource_type=resource_type,
                required=str(e.required),
                available=str(e.available),
            )
            raise PaymentRequiredError(account_id, resource_type, e.required, e.available) from e

        if result.duplicate:
            USAGE_CHARGES.labels(resource_type=resource_type, outcome="duplicate").inc()
        else:
            USAGE_CHARGES.labels(resource_type=resource_type, outcome="charged").inc()
            await self._log_usage(account_id, resource_type, units, cost, context, result.transaction_id)

        return UsageCharge(
            resource_type=resource_type,
            quantity=units,
            credits_charged=result.amount,
            remaining_balance=result.balance,
            transaction_id=result.transaction_id,
            duplicate=result.duplicate,
        )

    async def _log_usage(
        self,
        account_id: str,
        resource_type: str,
        units: Decimal,
        cost: Decimal,
        context: str | None,
        transaction_id: str,
    ) -> None:
        # The debit is already committed; the usage log is analytics only
        try:
            async with session_scope(self._session_factory) as db:
                db.add(
                    UsageRecord(
                        account_id=account_id,
                        resource_type=resource_type,
                        quantity_milliunits=int(units * MILLICREDITS_PER_CREDIT),
                        credits_charged_millicredits=to_millicredits(cost),
                        context=context,
                        transaction_id=transaction_id,
                        created_at=datetime.now(UTC),
                    )
                )
        except SQLAlchemyError:
            logger.exception(
                "Failed to write usage record",
                account_id=account_id,
                resource_type=resource_type,
                transaction_id=transaction_id,
            )

    async def get_usage_stats(
        self, account_id: str, period: str = "month", now: datetime | None = None
    ) -> list[UsageStat]:
        """Per resource type count, quantity and credits over a trailing period."""
        if period not in USAGE_PERIODS:
            raise ValueError(f"period must be one of {sorted(USAGE_PERIODS)}")  # noqa: TRY003
        since = (now or datetime.now(UTC)) - USAGE_PERIODS[period]

        async with self._session_factory() as db:
            result = await db.execute(
                select(
                    UsageRecord.resource_type,
                    func.count(UsageRecord.id),
                    func.coalesce(func.sum(UsageRecord.quantity_milliunits), 0),
                    func.coalesce(func.sum(UsageRecord.credits_charged_millicredits), 0),
                )
                .where(UsageRecord.account_id == account_id, UsageRecord.created_at >= since)
                .group_by(UsageRecord.resource_type)
                .order_by(UsageRecord.resource_type)
            )
            rows = result.all()

        return [
            UsageStat(
                resource_type=resource_type,
                count=int(count),
                quantity=from_millicredits(int(quantity)),
                credits=from_millicredits(int(credits)),
            )
            for resource_type, count, quantity, credits in rows
        ]
