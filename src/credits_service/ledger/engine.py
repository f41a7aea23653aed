"""Transaction engine: the public credit/debit API over the ledger store.

Validates amounts, bounds every store call with a timeout, maps store
failures onto ledger infrastructure errors, and logs plus counts every
mutation.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from credits_service.config import settings
from credits_service.exceptions import (
    InsufficientBalanceError,
    LedgerTimeoutError,
    LedgerUnavailableError,
)
from credits_service.ledger.amounts import AmountLike, from_millicredits, require_positive
from credits_service.ledger.store import (
    AppliedTransaction,
    BalanceSnapshot,
    LedgerStore,
    LedgerTransaction,
    TransactionKind,
)
from credits_service.observability.metrics import (
    INSUFFICIENT_BALANCE_REJECTIONS,
    LEDGER_MUTATIONS,
    LEDGER_OPERATION_LATENCY,
)

logger = structlog.get_logger()

T = TypeVar("T")


class ReasonCode(str, Enum):
    """Fixed reason codes. Stored as plain strings on the transaction."""

    SUBSCRIPTION_STARTED = "subscription_started"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    WORKFLOW_EXECUTION = "workflow_execution"
    NODE_EXECUTION = "node_execution"
    STORAGE_MB = "storage_mb"
    REFUND = "refund"
    MANUAL_ADJUSTMENT = "manual_adjustment"

    @staticmethod
    def purchase(package_id: str) -> str:
        return f"purchase_{package_id}"

    @staticmethod
    def api_call(provider: str) -> str:
        return f"api_call_{provider}"


PURCHASE_REASON_PREFIX = "purchase_"


@dataclass(frozen=True)
class LedgerResult:
    """Result of a credit or debit.

    ``duplicate`` is True when the external reference had already been
    applied; ``transaction`` is then the original transaction and nothing
    new was written.
    """

    transaction: LedgerTransaction
    balance: Decimal
    duplicate: bool = False

    @property
    def transaction_id(self) -> str:
        return self.transaction.transaction_id

    @property
    def amount(self) -> Decimal:
        return self.transaction.amount


@dataclass(frozen=True)
class ReconciliationReport:
    """Stored balance versus the sum of the transaction log."""

    account_id: str
    balance: Decimal
    log_total: Decimal
    transaction_count: int

    @property
    def difference(self) -> Decimal:
        return self.balance - self.log_total

    @property
    def consistent(self) -> bool:
        return self.balance == self.log_total


def _reason_value(reason_code: ReasonCode | str) -> str:
    value = reason_code.value if isinstance(reason_code, ReasonCode) else str(reason_code)
    if not value.strip():
        raise ValueError("reason_code must not be empty")  # noqa: TRY003
    return value


class TransactionEngine:
    """Credit and debit accounts through a LedgerStore."""

    def __init__(self, store: LedgerStore, timeout: float | None = None) -> None:
        self._store = store
        self._timeout = timeout if timeout is not None else settings.LEDGER_OPERATION_TIMEOUT_SECONDS

    @property
    def store(self) -> LedgerStore:
        return self._store

    async def credit(
        self,
        account_id: str,
        amount: AmountLike,
        reason_code: ReasonCode | str,
        external_reference: str | None = None,
    ) -> LedgerResult:
        """Add credits to an account, creating its balance on first use.

        Raises:
            InvalidAmountError: amount is not greater than zero.
            LedgerTimeoutError: the store did not answer in time.
            LedgerUnavailableError: the store failed.
        """
        millicredits = require_positive(amount)
        return await self._mutate(
            account_id,
            TransactionKind.CREDIT,
            millicredits,
            _reason_value(reason_code),
            external_reference,
        )

    async def debit(
        self,
        account_id: str,
        amount: AmountLike,
        reason_code: ReasonCode | str,
        external_reference: str | None = None,
    ) -> LedgerResult:
        """Remove credits from an account.

        Raises:
            InvalidAmountError: amount is not greater than zero.
            InsufficientBalanceError: the balance is lower than amount.
                The account is left unchanged.
            LedgerTimeoutError: the store did not answer in time.
            LedgerUnavailableError: the store failed.
        """
        millicredits = require_positive(amount)
        return await self._mutate(
            account_id,
            TransactionKind.DEBIT,
            millicredits,
            _reason_value(reason_code),
            external_reference,
        )

    async def get_balance(self, account_id: str) -> BalanceSnapshot:
        return await self._run("get_balance", lambda: self._store.get_balance(account_id))

    async def get_history(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[LedgerTransaction]:
        """Return transactions newest first. An unknown account has no history."""
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must not be negative")  # noqa: TRY003
        limit = min(limit, settings.LEDGER_HISTORY_MAX_LIMIT)
        if limit == 0:
            return []
        return await self._run(
            "get_history", lambda: self._store.list_transactions(account_id, limit, offset)
        )

    async def count_history(self, account_id: str) -> int:
        return await self._run(
            "count_history", lambda: self._store.count_transactions(account_id)
        )

    async def reconcile(self, account_id: str) -> ReconciliationReport:
        """Compare the stored balance with the sum of the account's log."""
        snapshot = await self.get_balance(account_id)
        log_total = await self._run(
            "sum_signed_amounts", lambda: self._store.sum_signed_amounts(account_id)
        )
        count = await self.count_history(account_id)
        report = ReconciliationReport(
            account_id=account_id,
            balance=snapshot.balance,
            log_total=from_millicredits(log_total),
            transaction_count=count,
        )
        if not report.consistent:
            logger.error(
                "Ledger balance does not match transaction log",
                account_id=account_id,
                balance=str(report.balance),
                log_total=str(report.log_total),
            )
        return report

    async def total_credited(self, reason_prefix: str | None = None) -> Decimal:
        total = await self._run(
            "total_credited", lambda: self._store.total_credited(reason_prefix)
        )
        return from_millicredits(total)

    async def _mutate(
        self,
        account_id: str,
        kind: TransactionKind,
        millicredits: int,
        reason_code: str,
        external_reference: str | None,
    ) -> LedgerResult:
        amount = from_millicredits(millicredits)
        try:
            applied: AppliedTransaction = await self._run(
                kind.value.lower(),
                lambda: self._store.append_transaction_and_update_balance(
                    account_id, kind, millicredits, reason_code, external_reference
                ),
            )
        except InsufficientBalanceError as e:
            LEDGER_MUTATIONS.labels(kind=kind.value, outcome="insufficient_balance").inc()
            INSUFFICIENT_BALANCE_REJECTIONS.labels(reason_code=reason_code).inc()
            logger.info(
                "Debit rejected",
                account_id=account_id,
                kind=kind.value,
                amount=str(amount),
                reason_code=reason_code,
                outcome="insufficient_balance",
                available=str(e.available),
            )
            raise
        except LedgerTimeoutError:
            LEDGER_MUTATIONS.labels(kind=kind.value, outcome="timeout").inc()
            raise
        except LedgerUnavailableError:
            LEDGER_MUTATIONS.labels(kind=kind.value, outcome="error").inc()
            raise

        outcome = "applied" if applied.created else "duplicate"
        LEDGER_MUTATIONS.labels(kind=kind.value, outcome=outcome).inc()
        logger.info(
            "Ledger mutation",
            account_id=account_id,
            kind=kind.value,
            amount=str(amount),
            reason_code=reason_code,
            outcome=outcome,
            external_reference=external_reference,
            transaction_id=applied.transaction.transaction_id,
            balance=str(from_millicredits(applied.new_balance_millicredits)),
        )
        return LedgerResult(
            transaction=applied.transaction,
            balance=from_millicredits(applied.new_balance_millicredits),
            duplicate=not applied.created,
        )

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        start = time.perf_counter()
        try:
            async with asyncio.timeout(self._timeout):
                return await call()
        except TimeoutError as e:
            # The unit of work may have committed before the deadline hit
            logger.error("Ledger operation timed out", operation=operation, timeout=self._timeout)
            raise LedgerTimeoutError(operation, self._timeout) from e
        except (SQLAlchemyError, OSError) as e:
            logger.exception("Ledger store failure", operation=operation, error=str(e))
            raise LedgerUnavailableError(operation, type(e).__name__) from e
        finally:
            LEDGER_OPERATION_LATENCY.labels(operation=operation).observe(time.perf_counter() - start)
