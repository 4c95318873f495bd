"""Pending obligation creation and expiry"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import PendingObligation, ObligationKind, ObligationStatus, utcnow
from utils.atomic_transactions import run_atomic

logger = logging.getLogger(__name__)


class InvalidCreditAmountError(ValueError):
    """Requested credit purchase outside the allowed range"""
    pass


def credits_to_usd(credits: int) -> Decimal:
    return (Decimal(credits) * Config.CREDIT_USD_VALUE).quantize(Decimal("0.01"))


class ObligationService:
    """Opens obligations when a flow requests funding and expires the ones never paid"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, ttl: Optional[timedelta] = None):
        self.session_factory = session_factory
        self.ttl = ttl or timedelta(hours=Config.OBLIGATION_TTL_HOURS)

    def open_credit_purchase(
        self,
        user_id: int,
        asset: str,
        credits: int,
        crypto_amount: Decimal,
        payment_address: str,
        now: Optional[datetime] = None,
    ) -> int:
        if credits < Config.MIN_CREDIT_PURCHASE or credits > Config.MAX_CREDIT_PURCHASE:
            raise InvalidCreditAmountError(
                f"Credit purchases must be between {Config.MIN_CREDIT_PURCHASE} and "
                f"{Config.MAX_CREDIT_PURCHASE} credits, got {credits}"
            )
        obligation_id = self._open(
            owner_id=user_id,
            kind=ObligationKind.CREDIT_PURCHASE,
            asset=asset,
            expected_amount=crypto_amount,
            payment_address=payment_address,
            credits_amount=credits,
            now=now,
        )
        logger.info(
            f"🧾 OBLIGATION_OPENED: credit purchase #{obligation_id} user {user_id} "
            f"{credits} credits (${credits_to_usd(credits)}) = {crypto_amount} {asset}"
        )
        return obligation_id

    def open_trade_escrow(
        self,
        trade_id: str,
        owner_id: int,
        asset: str,
        expected_amount: Decimal,
        payment_address: str,
        now: Optional[datetime] = None,
    ) -> int:
        """Open (or return the already pending) escrow funding obligation for a trade"""

        def _existing(session: Session) -> Optional[int]:
            return session.execute(
                select(PendingObligation.id).where(
                    PendingObligation.trade_id == trade_id,
                    PendingObligation.payment_address == payment_address,
                    PendingObligation.status == ObligationStatus.PENDING.value,
                )
            ).scalar_one_or_none()

        existing_id = run_atomic(_existing, self.session_factory)
        if existing_id is not None:
            return existing_id

        obligation_id = self._open(
            owner_id=owner_id,
            kind=ObligationKind.TRADE_ESCROW,
            asset=asset,
            expected_amount=expected_amount,
            payment_address=payment_address,
            trade_id=trade_id,
            now=now,
        )
        logger.info(f"🧾 OBLIGATION_OPENED: trade escrow #{obligation_id} trade {trade_id} {expected_amount} {asset}")
        return obligation_id

    def _open(
        self,
        owner_id: int,
        kind: ObligationKind,
        asset: str,
        expected_amount: Decimal,
        payment_address: str,
        trade_id: Optional[str] = None,
        credits_amount: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        expected_amount = Decimal(str(expected_amount))
        if expected_amount <= 0:
            raise ValueError("Expected amount must be positive")
        now = now or utcnow()

        def _insert(session: Session) -> int:
            obligation = PendingObligation(
                owner_id=owner_id,
                kind=kind.value,
                trade_id=trade_id,
                asset=asset.upper(),
                expected_amount=expected_amount,
                credits_amount=credits_amount,
                payment_address=payment_address,
                status=ObligationStatus.PENDING.value,
                created_at=now,
                expires_at=now + self.ttl,
            )
            session.add(obligation)
            session.flush()
            return obligation.id

        return run_atomic(_insert, self.session_factory)

    def get_obligation(self, obligation_id: int) -> Optional[Dict[str, Any]]:
        def _read(session: Session) -> Optional[Dict[str, Any]]:
            row = session.get(PendingObligation, obligation_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "owner_id": row.owner_id,
                "kind": row.kind,
                "trade_id": row.trade_id,
                "asset": row.asset,
                "expected_amount": row.expected_amount,
                "received_amount": row.received_amount,
                "payment_address": row.payment_address,
                "status": row.status,
                "tx_hash": row.tx_hash,
                "confirmed_at": row.confirmed_at,
            }

        return run_atomic(_read, self.session_factory)

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Move unpaid obligations past their deadline to EXPIRED"""
        now = now or utcnow()

        def _expire(session: Session) -> int:
            result = session.execute(
                update(PendingObligation)
                .where(
                    PendingObligation.status == ObligationStatus.PENDING.value,
                    PendingObligation.expires_at <= now,
                )
                .values(status=ObligationStatus.EXPIRED.value)
            )
            return result.rowcount or 0

        expired = run_atomic(_expire, self.session_factory)
        if expired:
            logger.info(f"⌛ OBLIGATION_EXPIRY: {expired} unpaid obligations expired")
        return expired
