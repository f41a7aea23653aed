"""Internal admin routes (service token only)."""

from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Path, Request, Response
from pydantic import BaseModel

from credits_service.dependencies import Engine
from credits_service.ledger import PURCHASE_REASON_PREFIX
from credits_service.middleware.rate_limit import RATE_LIMIT_ADMIN, limiter

router = APIRouter(prefix="/admin/credits", tags=["admin"])


class CreditsSummaryResponse(BaseModel):
    credits_sold: Decimal
    credits_granted: Decimal


class ReconciliationResponse(BaseModel):
    account_id: str
    balance: Decimal
    log_total: Decimal
    difference: Decimal
    transaction_count: int
    consistent: bool


@router.get("/summary", response_model=CreditsSummaryResponse)
@limiter.limit(RATE_LIMIT_ADMIN)
async def get_credits_summary(
    request: Request,  # noqa: ARG001
    response: Response,  # noqa: ARG001
    engine: Engine,
) -> CreditsSummaryResponse:
    """Credits sold through package purchases, and all credits ever granted."""
    return CreditsSummaryResponse(
        credits_sold=await engine.total_credited(PURCHASE_REASON_PREFIX),
        credits_granted=await engine.total_credited(),
    )


@router.get("/accounts/{account_id}/reconcile", response_model=ReconciliationResponse)
@limiter.limit(RATE_LIMIT_ADMIN)
async def reconcile_account(
    request: Request,  # noqa: ARG001
    response: Response,  # noqa: ARG001
    engine: Engine,
    account_id: Annotated[str, Path(min_length=1, max_length=64)],
) -> ReconciliationResponse:
    """Compare an account's balance with the sum of its transaction log."""
    report = await engine.reconcile(account_id)
    return ReconciliationResponse(
        account_id=report.account_id,
        balance=report.balance,
        log_total=report.log_total,
        difference=report.difference,
        transaction_count=report.transaction_count,
        consistent=report.consistent,
    )
