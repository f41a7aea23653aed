"""Durable storage for balances and the append-only transaction log.

``append_transaction_and_update_balance`` is the only code path that
mutates a balance. Each call is one database transaction: the balance
change and its log row commit together or not at all.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.dml import Insert

from credits_service.database.models import CreditBalance, CreditTransaction, _generate_uuid
from credits_service.exceptions import InsufficientBalanceError, InvalidAmountError
from credits_service.ledger.amounts import MAX_MILLICREDITS, from_millicredits

logger = structlog.get_logger()


class TransactionKind(str, Enum):
    """Direction of a ledger transaction."""

    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is written in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance of one account at read time."""

    account_id: str
    balance_millicredits: int
    total_credited_millicredits: int = 0
    total_debited_millicredits: int = 0
    updated_at: datetime | None = None  # None when the account has no row yet

    @property
    def balance(self) -> Decimal:
        return from_millicredits(self.balance_millicredits)

    @property
    def total_credited(self) -> Decimal:
        return from_millicredits(self.total_credited_millicredits)

    @property
    def total_debited(self) -> Decimal:
        return from_millicredits(self.total_debited_millicredits)


@dataclass(frozen=True)
class LedgerTransaction:
    """Immutable view of a committed ledger row."""

    transaction_id: str
    account_id: str
    kind: TransactionKind
    amount_millicredits: int
    balance_after_millicredits: int
    reason_code: str
    external_reference: str | None
    created_at: datetime

    @classmethod
    def from_model(cls, row: CreditTransaction) -> "LedgerTransaction":
        return cls(
            transaction_id=row.transaction_id,
            account_id=row.account_id,
            kind=TransactionKind(row.kind),
            amount_millicredits=row.amount_millicredits,
            balance_after_millicredits=row.balance_after_millicredits,
            reason_code=row.reason_code,
            external_reference=row.external_reference,
            created_at=_as_utc(row.created_at) or datetime.now(UTC),
        )

    @property
    def amount(self) -> Decimal:
        return from_millicredits(self.amount_millicredits)

    @property
    def balance_after(self) -> Decimal:
        return from_millicredits(self.balance_after_millicredits)

    @property
    def signed_amount_millicredits(self) -> int:
        if self.kind is TransactionKind.DEBIT:
            return -self.amount_millicredits
        return self.amount_millicredits


@dataclass(frozen=True)
class AppliedTransaction:
    """Outcome of a mutation.

    ``created`` is False when the external reference was already recorded
    and the existing transaction was returned instead.
    """

    new_balance_millicredits: int
    transaction: LedgerTransaction
    created: bool


class LedgerStore:
    """Ledger persistence over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_balance(self, account_id: str) -> BalanceSnapshot:
        """Return the stored balance, or an implicit zero for unknown accounts."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CreditBalance).where(CreditBalance.account_id == account_id)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return BalanceSnapshot(account_id=account_id, balance_millicredits=0)
        return BalanceSnapshot(
            account_id=account_id,
            balance_millicredits=row.balance_millicredits,
            total_credited_millicredits=row.total_credited_millicredits,
            total_debited_millicredits=row.total_debited_millicredits,
            updated_at=_as_utc(row.updated_at),
        )

    async def append_transaction_and_update_balance(
        self,
        account_id: str,
        kind: TransactionKind,
        amount_millicredits: int,
        reason_code: str,
        external_reference: str | None = None,
    ) -> AppliedTransaction:
        """Apply one credit or debit atomically.

        Raises:
            InsufficientBalanceError: A debit exceeds the current balance.
                Nothing is written.
        """
        async with self._session_factory() as session:
            try:
                applied = await self._apply(
                    session,
                    account_id,
                    kind,
                    amount_millicredits,
                    reason_code,
                    external_reference,
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if external_reference is None:
                    raise
                # Lost a race on (account_id, external_reference)
                existing = await self.find_by_external_reference(account_id, external_reference)
                if existing is None:
                    raise
                logger.info(
                    "Concurrent duplicate external reference resolved",
                    account_id=account_id,
                    external_reference=external_reference,
                )
                snapshot = await self.get_balance(account_id)
                return AppliedTransaction(
                    new_balance_millicredits=snapshot.balance_millicredits,
                    transaction=existing,
                    created=False,
                )
            except BaseException:
                await session.rollback()
                raise
        return applied

    async def _apply(
        self,
        session: AsyncSession,
        account_id: str,
        kind: TransactionKind,
        amount_millicredits: int,
        reason_code: str,
        external_reference: str | None,
    ) -> AppliedTransaction:
        now = datetime.now(UTC)

        if kind is TransactionKind.CREDIT:
            await session.execute(self._upsert_balance_row(session, account_id, now))

        # Row lock serializes writers per account (SQLite holds the db lock already)
        locked = await session.execute(
            select(CreditBalance.balance_millicredits)
            .where(CreditBalance.account_id == account_id)
            .with_for_update()
        )
        current = locked.scalar_one_or_none()

        if external_reference is not None:
            existing = await self._find_by_reference(session, account_id, external_reference)
            if existing is not None:
                return AppliedTransaction(
                    new_balance_millicredits=current or 0,
                    transaction=LedgerTransaction.from_model(existing),
                    created=False,
                )

        if current is None:
            raise InsufficientBalanceError(
                account_id, from_millicredits(amount_millicredits), Decimal("0.000")
            )
        if kind is TransactionKind.CREDIT and current > MAX_MILLICREDITS - amount_millicredits:
            raise InvalidAmountError(from_millicredits(amount_millicredits))

        stmt = update(CreditBalance).where(CreditBalance.account_id == account_id)
        if kind is TransactionKind.DEBIT:
            stmt = stmt.where(CreditBalance.balance_millicredits >= amount_millicredits).values(
                balance_millicredits=CreditBalance.balance_millicredits - amount_millicredits,
                total_debited_millicredits=(
                    CreditBalance.total_debited_millicredits + amount_millicredits
                ),
                updated_at=now,
            )
        else:
            stmt = stmt.values(
                balance_millicredits=CreditBalance.balance_millicredits + amount_millicredits,
                total_credited_millicredits=(
                    CreditBalance.total_credited_millicredits + amount_millicredits
                ),
                updated_at=now,
            )
        stmt = stmt.returning(CreditBalance.balance_millicredits).execution_options(
            synchronize_session=False
        )
        new_balance = (await session.execute(stmt)).scalar_one_or_none()

        if new_balance is None:
            raise InsufficientBalanceError(
                account_id,
                from_millicredits(amount_millicredits),
                from_millicredits(current),
            )

        row = CreditTransaction(
            transaction_id=_generate_uuid(),
            account_id=account_id,
            kind=kind.value,
            amount_millicredits=amount_millicredits,
            balance_after_millicredits=new_balance,
            reason_code=reason_code,
            external_reference=external_reference,
            created_at=now,
        )
        session.add(row)
        await session.flush()

        return AppliedTransaction(
            new_balance_millicredits=new_balance,
            transaction=LedgerTransaction.from_model(row),
            created=True,
        )

    @staticmethod
    def _upsert_balance_row(session: AsyncSession, account_id: str, now: datetime) -> Insert:
        """Build an INSERT that creates the zero balance row if missing."""
        dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
        insert = sqlite_insert if dialect == "sqlite" else pg_insert
        return (
            insert(CreditBalance)
            .values(
                account_id=account_id,
                balance_millicredits=0,
                total_credited_millicredits=0,
                total_debited_millicredits=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["account_id"])
        )

    @staticmethod
    async def _find_by_reference(
        session: AsyncSession, account_id: str, external_reference: str
    ) -> CreditTransaction | None:
        result = await session.execute(
            select(CreditTransaction).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.external_reference == external_reference,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_external_reference(
        self, account_id: str, external_reference: str
    ) -> LedgerTransaction | None:
        async with self._session_factory() as session:
            row = await self._find_by_reference(session, account_id, external_reference)
            return LedgerTransaction.from_model(row) if row else None

    async def list_transactions(
        self, account_id: str, limit: int, offset: int = 0
    ) -> list[LedgerTransaction]:
        """Return an account's transactions, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.account_id == account_id)
                .order_by(CreditTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [LedgerTransaction.from_model(row) for row in result.scalars().all()]

    async def count_transactions(self, account_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(CreditTransaction)
                .where(CreditTransaction.account_id == account_id)
            )
            return result.scalar_one()

    async def sum_signed_amounts(self, account_id: str) -> int:
        """Sum of credits minus debits over the account's whole log."""
        signed = case(
            (
                CreditTransaction.kind == TransactionKind.DEBIT.value,
                -CreditTransaction.amount_millicredits,
            ),
            else_=CreditTransaction.amount_millicredits,
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(signed), 0)).where(
                    CreditTransaction.account_id == account_id
                )
            )
            return int(result.scalar_one())

    async def total_credited(self, reason_prefix: str | None = None) -> int:
        """Total credited across all accounts, optionally by reason code prefix."""
        query = select(func.coalesce(func.sum(CreditTransaction.amount_millicredits), 0)).where(
            CreditTransaction.kind == TransactionKind.CREDIT.value
        )
        if reason_prefix:
            query = query.where(CreditTransaction.reason_code.startswith(reason_prefix, autoescape=True))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return int(result.scalar_one())
