"""
Shared test fixtures for the escrow service

- in-memory SQLite session factory with the full schema
- factories for trades, obligations and ledger entries
- an isolated primary session tier per test
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import logging
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base
from services.address_ledger import AddressLedger
from services.escrow_status_notifier import EscrowStatusNotifier
from services.obligation_service import ObligationService
from services.payment_reconciler import PaymentReconciler
from services.session_store import EphemeralSessionTier
from services.trade_status_service import TradeStatusService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

BTC_ADDRESS = "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh"
BTC_ADDRESS_2 = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"
ETH_ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"
NOW = datetime(2026, 3, 10, 12, 0, 0)


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: tests that exercise several components against the database")


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def ledger(session_factory):
    return AddressLedger(session_factory)


@pytest.fixture
def notifier(session_factory):
    return EscrowStatusNotifier(session_factory)


@pytest.fixture
def trade_status(session_factory):
    return TradeStatusService(session_factory)


@pytest.fixture
def obligations(session_factory):
    return ObligationService(session_factory)


@pytest.fixture
def reconciler(session_factory, ledger, notifier, trade_status):
    return PaymentReconciler(
        session_factory=session_factory,
        ledger=ledger,
        notifier=notifier,
        trade_status=trade_status,
    )


@pytest.fixture
def primary_tier():
    return EphemeralSessionTier()


@pytest.fixture
def funded_trade(ledger, trade_status, obligations):
    """Trade T1 awaiting 0.01 BTC at BTC_ADDRESS"""
    trade_status.create_trade("T1", buyer_id=42, asset="BTC", crypto_amount=Decimal("0.01"))
    ledger.record("T1", "BTC", BTC_ADDRESS)
    obligation_id = obligations.open_trade_escrow("T1", 42, "BTC", Decimal("0.01"), BTC_ADDRESS)
    return {"trade_id": "T1", "obligation_id": obligation_id, "address": BTC_ADDRESS}
