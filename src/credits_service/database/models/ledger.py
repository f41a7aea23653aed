"""Ledger models: CreditBalance and CreditTransaction.

Amounts are stored as integer millicredits (1 credit = 1000 millicredits)
to keep the balance-equals-sum invariant exact.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntegerPK, _generate_uuid


class CreditBalance(Base):
    """Materialized balance per account, kept in step with the transaction log."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("balance_millicredits >= 0", name="ck_credit_balances_non_negative"),
    )

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    balance_millicredits: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Lifetime stats
    total_credited_millicredits: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_debited_millicredits: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class CreditTransaction(Base):
    """Append-only ledger entry. Never updated or deleted once written."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        # Idempotency: one transaction per external reference per account
        UniqueConstraint(
            "account_id",
            "external_reference",
            name="uq_credit_transactions_account_external_reference",
        ),
        CheckConstraint("amount_millicredits > 0", name="ck_credit_transactions_positive_amount"),
        CheckConstraint("kind IN ('CREDIT', 'DEBIT')", name="ck_credit_transactions_kind"),
        Index("ix_credit_transactions_account_id_id", "account_id", "id"),
    )

    # Monotonic per insert; orders history within an account
    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(
        String(36),
        unique=True,
        nullable=False,
        default=_generate_uuid,
    )
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    kind: Mapped[str] = mapped_column(String(10), nullable=False)  # CREDIT, DEBIT
    # Positive magnitude; the sign is implied by kind
    amount_millicredits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_millicredits: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # purchase_<package>, subscription_renewal, workflow_execution, node_execution, ...
    reason_code: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    # Payment provider event id or client idempotency key
    external_reference: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
