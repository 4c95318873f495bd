"""
Escrow Platform Database Schema
===============================

Tables backing the custodial escrow flow:
- Per-trade deposit addresses and their lifecycle
- Pending obligations (credit purchases and trade escrows) awaiting on-chain funds
- Idempotency ledger for custody provider transfer notifications
- Trades with their trade and escrow status axes
- Persisted multi-step flow sessions and recovery prompt markers
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Date, Boolean, Text,
    UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class EscrowAddressStatus(Enum):
    """Deposit address lifecycle"""
    PENDING = "pending"
    FUNDED = "funded"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"


class ObligationKind(Enum):
    """What a pending obligation pays for"""
    CREDIT_PURCHASE = "credit_purchase"
    TRADE_ESCROW = "trade_escrow"


class ObligationStatus(Enum):
    """Pending obligation lifecycle; everything but PENDING is terminal"""
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    MISMATCHED = "mismatched"


class TransferOutcome(Enum):
    """Recorded outcome of a processed transfer notification"""
    COMPLETED = "completed"
    MISMATCHED = "mismatched"
    UNMATCHED = "unmatched"


class TradeStatus(Enum):
    """Trade lifecycle between customer and merchant"""
    PENDING_ACCEPTANCE = "pending_acceptance"
    ACCEPTED = "accepted"
    PAYMENT_SENT = "payment_sent"
    CASH_DELIVERED = "cash_delivered"
    CRYPTO_RELEASED = "crypto_released"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class EscrowStatus(Enum):
    """Escrow funding axis of a trade"""
    PENDING = "pending"
    CRYPTO_RECEIVED = "crypto_received"
    CASH_RECEIVED = "cash_received"
    COMPLETED = "completed"
    DISPUTED = "disputed"


class SessionType(Enum):
    """Multi-step flows whose progress is persisted"""
    CREDIT_PURCHASE = "credit_purchase"
    CRYPTO_BUY = "crypto_buy"
    CRYPTO_SELL = "crypto_sell"
    ESCROW = "escrow"


# ============================================================================
# ESCROW FUNDING
# ============================================================================

class EscrowAddress(Base):
    """Deposit address allocated by the custody provider for one trade and asset"""
    __tablename__ = 'escrow_addresses'

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(String(64), nullable=False, index=True)
    asset = Column(String(16), nullable=False)
    address = Column(String(128), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=EscrowAddressStatus.PENDING.value)
    owner_id = Column(BigInteger, nullable=True)
    expected_amount = Column(Numeric(38, 18), nullable=True)
    received_amount = Column(Numeric(38, 18), nullable=True)
    tx_hash = Column(String(128), nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)
    release_txid = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('trade_id', 'asset', name='uq_escrow_address_trade_asset'),
        Index('ix_escrow_addresses_status_expires', 'status', 'expires_at'),
    )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.expires_at > now and self.status not in (
            EscrowAddressStatus.EXPIRED.value,
            EscrowAddressStatus.RELEASED.value,
        )

    def __repr__(self):
        return f"<EscrowAddress(trade_id='{self.trade_id}', asset='{self.asset}', status='{self.status}')>"


class PendingObligation(Base):
    """Amount a user must deposit to a payment address"""
    __tablename__ = 'pending_obligations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(BigInteger, nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    trade_id = Column(String(64), nullable=True, index=True)
    asset = Column(String(16), nullable=False)
    expected_amount = Column(Numeric(38, 18), nullable=False)
    credits_amount = Column(Integer, nullable=True)
    payment_address = Column(String(128), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=ObligationStatus.PENDING.value)
    received_amount = Column(Numeric(38, 18), nullable=True)
    tx_hash = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint('expected_amount > 0', name='ck_obligation_positive_amount'),
        Index('ix_pending_obligations_address_status', 'payment_address', 'status'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != ObligationStatus.PENDING.value


class ProcessedTransferEvent(Base):
    """Idempotency ledger: one row per (tx_hash, address) ever reconciled"""
    __tablename__ = 'processed_transfer_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_hash = Column(String(128), nullable=False)
    address = Column(String(128), nullable=False)
    asset = Column(String(16), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    outcome = Column(String(20), nullable=False)
    obligation_id = Column(Integer, nullable=True)
    processed_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('tx_hash', 'address', name='uq_processed_transfer_tx_address'),
    )


class ReconciliationDiscrepancy(Base):
    """Out-of-tolerance deposit kept for manual review"""
    __tablename__ = 'reconciliation_discrepancies'

    id = Column(Integer, primary_key=True, autoincrement=True)
    obligation_id = Column(Integer, nullable=False, index=True)
    tx_hash = Column(String(128), nullable=False)
    address = Column(String(128), nullable=False)
    expected_amount = Column(Numeric(38, 18), nullable=False)
    received_amount = Column(Numeric(38, 18), nullable=False)
    delta = Column(Numeric(38, 18), nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CreditAccount(Base):
    """Per-user credit balance"""
    __tablename__ = 'credit_accounts'

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_credit_balance_non_negative'),
    )


class CreditTransaction(Base):
    """Credit ledger entry"""
    __tablename__ = 'credit_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False, default="purchase")
    obligation_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, unique=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


# ============================================================================
# TRADES
# ============================================================================

class Trade(Base):
    """Crypto-for-cash trade between a customer and a merchant"""
    __tablename__ = 'trades'

    id = Column(String(64), primary_key=True)
    buyer_id = Column(BigInteger, nullable=False, index=True)
    merchant_id = Column(BigInteger, nullable=True, index=True)
    asset = Column(String(16), nullable=False)
    crypto_amount = Column(Numeric(38, 18), nullable=False)
    fiat_amount = Column(Numeric(20, 2), nullable=True)
    status = Column(String(32), nullable=False, default=TradeStatus.PENDING_ACCEPTANCE.value)
    escrow_status = Column(String(32), nullable=False, default=EscrowStatus.PENDING.value)
    disputed_from = Column(String(32), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Trade(id='{self.id}', status='{self.status}', escrow_status='{self.escrow_status}')>"


# ============================================================================
# SESSION PERSISTENCE
# ============================================================================

class StoredFlowSession(Base):
    """Durable copy of an in-progress multi-step flow"""
    __tablename__ = 'flow_sessions'

    session_id = Column(String(128), primary_key=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    session_type = Column(String(32), nullable=False, index=True)
    step = Column(Integer, nullable=False, default=1)
    data = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint('step >= 1', name='ck_flow_session_step_positive'),
    )


class RecoveryPromptMarker(Base):
    """Calendar date a user was last offered session recovery"""
    __tablename__ = 'recovery_prompt_markers'

    user_id = Column(BigInteger, primary_key=True)
    last_shown_on = Column(Date, nullable=False)
