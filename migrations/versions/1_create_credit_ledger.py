"""Create credit ledger and billing tables.

Revision ID: 1
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "1"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, *, index: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
        index=index,
    )


def upgrade() -> None:
    op.create_table(
        "credit_balances",
        sa.Column("account_id", sa.String(64), primary_key=True),
        sa.Column("balance_millicredits", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("total_credited_millicredits", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("total_debited_millicredits", sa.BigInteger, nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("balance_millicredits >= 0", name="ck_credit_balances_non_negative"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("transaction_id", sa.String(36), nullable=False, unique=True),
        sa.Column("account_id", sa.String(64), nullable=False, index=True),
        sa.Column("kind", sa.String(10), nullable=False),
        sa.Column("amount_millicredits", sa.BigInteger, nullable=False),
        sa.Column("balance_after_millicredits", sa.BigInteger, nullable=False),
        sa.Column("reason_code", sa.String(200), nullable=False, index=True),
        sa.Column("external_reference", sa.String(255), nullable=True),
        _timestamp("created_at", index=True),
        sa.UniqueConstraint(
            "account_id",
            "external_reference",
            name="uq_credit_transactions_account_external_reference",
        ),
        sa.CheckConstraint("amount_millicredits > 0", name="ck_credit_transactions_positive_amount"),
        sa.CheckConstraint("kind IN ('CREDIT', 'DEBIT')", name="ck_credit_transactions_kind"),
    )
    op.create_index(
        "ix_credit_transactions_account_id_id", "credit_transactions", ["account_id", "id"]
    )

    op.create_table(
        "billing_profiles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(64), nullable=False, unique=True, index=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True, unique=True, index=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True, unique=True, index=True),
        sa.Column("tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "billing_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True, index=True),
        sa.Column("event_type", sa.String(100), nullable=False, index=True),
        sa.Column("account_id", sa.String(64), nullable=True, index=True),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("detail", sa.Text, nullable=True),
        sa.Column(
            "event_data",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("transaction_id", sa.String(36), nullable=True),
        _timestamp("created_at", index=True),
    )

    op.create_table(
        "usage_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(64), nullable=False, index=True),
        sa.Column("resource_type", sa.String(50), nullable=False, index=True),
        sa.Column("quantity_milliunits", sa.BigInteger, nullable=False),
        sa.Column("credits_charged_millicredits", sa.BigInteger, nullable=False),
        sa.Column("context", sa.String(200), nullable=True),
        sa.Column("transaction_id", sa.String(36), nullable=False, unique=True),
        _timestamp("created_at", index=True),
    )


def downgrade() -> None:
    op.drop_table("usage_records")
    op.drop_table("billing_events")
    op.drop_table("billing_profiles")
    op.drop_index("ix_credit_transactions_account_id_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_balances")
