"""Database module for the credits service."""

from credits_service.database.connection import (
    async_session_factory,
    close_database,
    create_engine_for_url,
    create_session_factory,
    create_tables,
    engine,
    get_db,
    get_session_factory,
    init_database,
    session_scope,
)
from credits_service.database.models import (
    Base,
    BillingEvent,
    BillingProfile,
    CreditBalance,
    CreditTransaction,
    UsageRecord,
)

__all__ = [
    "Base",
    "BillingEvent",
    "BillingProfile",
    "CreditBalance",
    "CreditTransaction",
    "UsageRecord",
    "async_session_factory",
    "close_database",
    "create_engine_for_url",
    "create_session_factory",
    "create_tables",
    "engine",
    "get_db",
    "get_session_factory",
    "init_database",
    "session_scope",
]
