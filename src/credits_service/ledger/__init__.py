"""Credit ledger: fixed-point amounts, durable store and transaction engine."""

from credits_service.ledger.amounts import from_millicredits, quantize_credits, to_millicredits
from credits_service.ledger.engine import (
    PURCHASE_REASON_PREFIX,
    LedgerResult,
    ReasonCode,
    ReconciliationReport,
    TransactionEngine,
)
from credits_service.ledger.store import (
    AppliedTransaction,
    BalanceSnapshot,
    LedgerStore,
    LedgerTransaction,
    TransactionKind,
)

__all__ = [
    "PURCHASE_REASON_PREFIX",
    "AppliedTransaction",
    "BalanceSnapshot",
    "LedgerResult",
    "LedgerStore",
    "LedgerTransaction",
    "ReasonCode",
    "ReconciliationReport",
    "TransactionEngine",
    "TransactionKind",
    "from_millicredits",
    "quantize_credits",
    "to_millicredits",
]
