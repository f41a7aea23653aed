"""Billing models: BillingProfile, BillingEvent, UsageRecord."""

from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, _generate_uuid


class BillingProfile(Base):
    """Stripe customer link and subscription tier for an account."""

    __tablename__ = "billing_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    account_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)

    tier: Mapped[str] = mapped_column(String(20), default="free", nullable=False)  # free, premium, enterprise
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)

    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class BillingEvent(Base):
    """Audit record of a processed payment webhook event."""

    __tablename__ = "billing_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)

    # Stripe event ID for idempotency (indexed for fast lookups)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    account_id: Mapped[str | None] = mapped_column(String(64), index=True)

    outcome: Mapped[str] = mapped_column(String(20), nullable=False)  # applied, duplicate, ignored, rejected
    detail: Mapped[str | None] = mapped_column(Text)
    event_data: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)

    # Ledger transaction created by this event, if any
    transaction_id: Mapped[str | None] = mapped_column(String(36))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )


class UsageRecord(Base):
    """Metered consumption that was charged to an account."""

    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # workflow_execution, node_execution, api_call_openai, storage_mb, ...
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # Stored in thousandths of a unit so fractional megabytes survive
    quantity_milliunits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    credits_charged_millicredits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    context: Mapped[str | None] = mapped_column(String(200))

    # Debit that paid for this usage
    transaction_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
