"""Credit balance, history, purchase and usage routes."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credits_service.database import BillingProfile, get_db
from credits_service.dependencies import Engine, Gateway, Meter
from credits_service.ledger import LedgerTransaction
from credits_service.middleware.auth import get_current_user_id, is_internal_service
from credits_service.middleware.rate_limit import (
    RATE_LIMIT_PURCHASE,
    RATE_LIMIT_STANDARD,
    RATE_LIMIT_USAGE,
    limiter,
)
from credits_service.services.packages import get_package, list_packages

logger = structlog.get_logger()

router = APIRouter(prefix="/credits", tags=["credits"])

DbSession = Annotated[AsyncSession, Depends(get_db)]


# =============================================================================
# PYDANTIC MODELS
# =============================================================================


class BalanceResponse(BaseModel):
    account_id: str
    balance: Decimal
    total_credited: Decimal
    total_debited: Decimal
    updated_at: datetime | None


class TransactionResponse(BaseModel):
    transaction_id: str
    kind: str
    amount: Decimal
    balance_after: Decimal
    reason_code: str
    external_reference: str | None
    created_at: datetime

    @classmethod
    def from_transaction(cls, tx: LedgerTransaction) -> "TransactionResponse":
        return cls(
            transaction_id=tx.transaction_id,
            kind=tx.kind.value,
            amount=tx.amount,
            balance_after=tx.balance_after,
            reason_code=tx.reason_code,
            external_reference=tx.external_reference,
            created_at=tx.created_at,
        )


class HistoryResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class PackageResponse(BaseModel):
    package_id: str
    credits: Decimal
    bonus: Decimal
    total_credits: Decimal
    price: int  # Minor currency units
    price_display: str
    currency: str


class PurchaseRequest(BaseModel):
    package_id: str = Field(..., min_length=1, max_length=50)
    payment_method_id: str = Field(..., min_length=1, max_length=255)
    # Reuse on retries so Stripe returns the original intent
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=100)


class PurchaseResponse(BaseModel):
    payment_intent_id: str
    status: str
    client_secret: str | None
    package_id: str
    credits: Decimal
    amount: int
    currency: str


class UsageTrackRequest(BaseModel):
    resource_type: str = Field(..., min_length=1, max_length=50)
    quantity: Decimal = Field(default=Decimal(1), gt=0)
    context: str | None = Field(default=None, max_length=150)
    idempotency_key: str | None = Field(default=None, max_length=200)
    # Required when called with the internal service token
    account_id: str | None = Field(default=None, max_length=64)


class UsageTrackResponse(BaseModel):
    resource_type: str
    quantity: Decimal
    credits_charged: Decimal
    remaining_balance: Decimal
    transaction_id: str
    duplicate: bool


class UsageStatResponse(BaseModel):
    resource_type: str
    count: int
    quantity: Decimal
    credits: Decimal


class UsageStatsResponse(BaseModel):
    period: str
    usage: list[UsageStatResponse]
    total_credits: Decimal


class QuoteResponse(BaseModel):
    resource_type: str
    quantity: Decimal
    credits: Decimal


# =============================================================================
# BALANCE AND HISTORY
# =============================================================================


@router.get("/balance", response_model=BalanceResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_balance(
    request: Request,
    response: Response,  # noqa: ARG001
    engine: Engine,
) -> BalanceResponse:
    """Get the current account's credit balance."""
    account_id = get_current_user_id(request)
    snapshot = await engine.get_balance(account_id)
    return BalanceResponse(
        account_id=account_id,
        balance=snapshot.balance,
        total_credited=snapshot.total_credited,
        total_debited=snapshot.total_debited,
        updated_at=snapshot.updated_at,
    )


@router.get("/history", response_model=HistoryResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_history(
    request: Request,
    response: Response,  # noqa: ARG001
    engine: Engine,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> HistoryResponse:
    """List the account's transactions, newest first."""
    account_id = get_current_user_id(request)
    transactions = await engine.get_history(account_id, limit=limit, offset=offset)
    total = await engine.count_history(account_id)
    return HistoryResponse(
        transactions=[TransactionResponse.from_transaction(tx) for tx in transactions],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(transactions) < total,
    )


# =============================================================================
# PACKAGES AND PURCHASES
# =============================================================================


@router.get("/packages", response_model=list[PackageResponse])
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_packages(
    request: Request,  # noqa: ARG001
    response: Response,  # noqa: ARG001
) -> list[PackageResponse]:
    """List purchasable credit packages."""
    return [
        PackageResponse(
            package_id=package.package_id,
            credits=package.credit_amount,
            bonus=package.bonus_amount,
            total_credits=package.total_credits,
            price=package.price_amount,
            price_display=package.price_display,
            currency=package.currency,
        )
        for package in list_packages()
    ]


async def _get_or_create_stripe_customer(
    db: AsyncSession, gateway: Gateway, account_id: str
) -> str:
    """Get or create the Stripe customer linked to an account."""
    result = await db.execute(select(BillingProfile).where(BillingProfile.account_id == account_id))
    profile = result.scalar_one_or_none()
    if profile is not None and profile.stripe_customer_id:
        return profile.stripe_customer_id

    customer_id = gateway.create_customer(account_id)
    if profile is None:
        profile = BillingProfile(account_id=account_id)
        db.add(profile)
    profile.stripe_customer_id = customer_id
    await db.commit()
    return customer_id


@router.post("/purchase", response_model=PurchaseResponse)
@limiter.limit(RATE_LIMIT_PURCHASE)
async def purchase_credits(
    request: Request,
    response: Response,  # noqa: ARG001
    data: PurchaseRequest,
    db: DbSession,
    gateway: Gateway,
) -> PurchaseResponse:
    """Start a credit package purchase.

    Creates a confirmed PaymentIntent. The balance changes only when the
    ``payment_intent.succeeded`` webhook arrives, so a retried request can
    never credit twice.
    """
    account_id = get_current_user_id(request)
    package = get_package(data.package_id)
    customer_id = await _get_or_create_stripe_customer(db, gateway, account_id)

    intent = gateway.create_payment_intent(
        account_id,
        package,
        data.payment_method_id,
        customer_id=customer_id,
        idempotency_key=data.idempotency_key,
    )
    return PurchaseResponse(
        payment_intent_id=intent.payment_intent_id,
        status=intent.status,
        client_secret=intent.client_secret,
        package_id=package.package_id,
        credits=package.total_credits,
        amount=intent.amount,
        currency=intent.currency,
    )


# =============================================================================
# USAGE
# =============================================================================


def _resolve_usage_account(request: Request, data: UsageTrackRequest) -> str:
    if is_internal_service(request):
        if not data.account_id:
            raise HTTPException(status_code=400, detail="account_id is required for service calls")
        return data.account_id
    account_id = get_current_user_id(request)
    if data.account_id and data.account_id != account_id:
        raise HTTPException(status_code=403, detail="Cannot report usage for another account")
    return account_id


@router.post("/usage/track", response_model=UsageTrackResponse)
# The workflow engine reports usage for every account under one service token
@limiter.limit(RATE_LIMIT_USAGE, exempt_when=is_internal_service)
async def track_usage(
    request: Request,
    response: Response,  # noqa: ARG001
    data: UsageTrackRequest,
    meter: Meter,
) -> UsageTrackResponse:
    """Charge metered usage. Responds 402 when the balance does not cover it."""
    account_id = _resolve_usage_account(request, data)
    charge = await meter.record_usage(
        account_id,
        data.resource_type,
        data.quantity,
        context=data.context,
        idempotency_key=data.idempotency_key,
    )
    return UsageTrackResponse(
        resource_type=charge.resource_type,
        quantity=charge.quantity,
        credits_charged=charge.credits_charged,
        remaining_balance=charge.remaining_balance,
        transaction_id=charge.transaction_id,
        duplicate=charge.duplicate,
    )


@router.get("/usage/quote", response_model=QuoteResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def quote_usage(
    request: Request,  # noqa: ARG001
    response: Response,  # noqa: ARG001
    meter: Meter,
    resource_type: Annotated[str, Query(min_length=1, max_length=50)],
    quantity: Annotated[Decimal, Query(gt=0)] = Decimal(1),
) -> QuoteResponse:
    """Price usage without charging it."""
    credits = meter.quote(resource_type, quantity)
    return QuoteResponse(resource_type=resource_type, quantity=quantity, credits=credits)


@router.get("/usage/stats", response_model=UsageStatsResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_usage_stats(
    request: Request,
    response: Response,  # noqa: ARG001
    meter: Meter,
    period: Annotated[str, Query(pattern="^(day|week|month)$")] = "month",
) -> UsageStatsResponse:
    """Usage per resource type over the last day, week or month."""
    account_id = get_current_user_id(request)
    stats = await meter.get_usage_stats(account_id, period)
    return UsageStatsResponse(
        period=period,
        usage=[
            UsageStatResponse(
                resource_type=stat.resource_type,
                count=stat.count,
                quantity=stat.quantity,
                credits=stat.credits,
            )
            for stat in stats
        ],
        total_credits=sum((stat.credits for stat in stats), Decimal("0.000")),
    )
