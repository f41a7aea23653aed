"""SQLAlchemy models for the credits database.

 - base.py: Base class and utilities
 - ledger.py: CreditBalance, CreditTransaction
 - billing.py: BillingProfile, BillingEvent, UsageRecord
"""

# ruff: noqa: I001

from .base import Base, _generate_uuid

from .ledger import CreditBalance, CreditTransaction

from .billing import BillingEvent, BillingProfile, UsageRecord

__all__ = [
    "Base",
    "BillingEvent",
    "BillingProfile",
    "CreditBalance",
    "CreditTransaction",
    "UsageRecord",
    "_generate_uuid",
]
