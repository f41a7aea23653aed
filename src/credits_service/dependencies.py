"""FastAPI dependency providers for ledger services."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credits_service.database.connection import get_session_factory
from credits_service.ledger import LedgerStore, TransactionEngine
from credits_service.services.metering import UsageMeter
from credits_service.services.payment_events import PaymentEventProcessor
from credits_service.services.stripe_gateway import StripeGateway

SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


def get_transaction_engine(session_factory: SessionFactory) -> TransactionEngine:
    return TransactionEngine(LedgerStore(session_factory))


Engine = Annotated[TransactionEngine, Depends(get_transaction_engine)]


def get_usage_meter(engine: Engine, session_factory: SessionFactory) -> UsageMeter:
    return UsageMeter(engine, session_factory)


def get_payment_processor(engine: Engine, session_factory: SessionFactory) -> PaymentEventProcessor:
    return PaymentEventProcessor(engine, session_factory)


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()


Meter = Annotated[UsageMeter, Depends(get_usage_meter)]
PaymentProcessor = Annotated[PaymentEventProcessor, Depends(get_payment_processor)]
Gateway = Annotated[StripeGateway, Depends(get_stripe_gateway)]
