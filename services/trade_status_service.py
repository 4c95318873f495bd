"""Persisted trade and escrow status changes, validated by the trade state machine"""

import logging
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from models import Trade, TradeStatus, EscrowStatus, utcnow
from utils.atomic_transactions import run_atomic
from utils.trade_state_machine import InvalidTransitionError, TradeStateMachine

logger = logging.getLogger(__name__)


class TradeNotFoundError(LookupError):
    pass


class TradeStatusService:
    """All status writes for trades go through here"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def create_trade(
        self,
        trade_id: str,
        buyer_id: int,
        asset: str,
        crypto_amount: Decimal,
        merchant_id: Optional[int] = None,
        fiat_amount: Optional[Decimal] = None,
    ) -> Dict[str, str]:
        status = TradeStateMachine.transition_trade(None, TradeStatus.PENDING_ACCEPTANCE.value)
        escrow_status = TradeStateMachine.transition_escrow(None, EscrowStatus.PENDING.value)

        def _insert(session: Session) -> Dict[str, str]:
            session.add(
                Trade(
                    id=trade_id,
                    buyer_id=buyer_id,
                    merchant_id=merchant_id,
                    asset=asset.upper(),
                    crypto_amount=Decimal(str(crypto_amount)),
                    fiat_amount=fiat_amount,
                    status=status,
                    escrow_status=escrow_status,
                )
            )
            session.flush()
            return {"status": status, "escrow_status": escrow_status}

        result = run_atomic(_insert, self.session_factory)
        logger.info(f"🆕 TRADE_CREATED: {trade_id} {crypto_amount} {asset}")
        return result

    @staticmethod
    def _load(session: Session, trade_id: str) -> Trade:
        trade = session.execute(
            select(Trade).where(Trade.id == trade_id).with_for_update()
        ).scalar_one_or_none()
        if trade is None:
            raise TradeNotFoundError(f"Trade {trade_id} not found")
        return trade

    def get_trade(self, trade_id: str) -> Dict[str, Optional[str]]:
        def _read(session: Session) -> Dict[str, Optional[str]]:
            trade = session.get(Trade, trade_id)
            if trade is None:
                raise TradeNotFoundError(f"Trade {trade_id} not found")
            return {
                "status": trade.status,
                "escrow_status": trade.escrow_status,
                "disputed_from": trade.disputed_from,
            }

        return run_atomic(_read, self.session_factory)

    def advance_trade(self, trade_id: str, new_status: str, session: Optional[Session] = None) -> str:
        def _advance(s: Session) -> str:
            trade = self._load(s, trade_id)
            previous = trade.status
            trade.status = TradeStateMachine.transition_trade(previous, new_status)
            if new_status == TradeStatus.DISPUTED.value:
                trade.disputed_from = previous
            trade.updated_at = utcnow()
            return trade.status

        result = _advance(session) if session is not None else run_atomic(_advance, self.session_factory)
        logger.info(f"➡️ TRADE_STATUS: {trade_id} -> {result}")
        return result

    def advance_escrow(self, trade_id: str, new_status: str, session: Optional[Session] = None) -> str:
        """
        Move the escrow axis. When ``session`` is given the change joins the
        caller's transaction instead of committing on its own.
        """

        def _advance(s: Session) -> str:
            trade = self._load(s, trade_id)
            trade.escrow_status = TradeStateMachine.transition_escrow(trade.escrow_status, new_status)
            trade.updated_at = utcnow()
            return trade.escrow_status

        result = _advance(session) if session is not None else run_atomic(_advance, self.session_factory)
        logger.info(f"➡️ ESCROW_STATUS: {trade_id} -> {result}")
        return result

    def raise_dispute(self, trade_id: str) -> str:
        return self.advance_trade(trade_id, TradeStatus.DISPUTED.value)

    def resolve_dispute(self, trade_id: str, resume_status: str) -> str:
        """Leave DISPUTED for the state the resolver names"""

        def _resolve(s: Session) -> str:
            trade = self._load(s, trade_id)
            if trade.status != TradeStatus.DISPUTED.value:
                raise InvalidTransitionError("trade", trade.status, resume_status)
            trade.status = TradeStateMachine.resolve_dispute(trade.disputed_from, resume_status)
            trade.disputed_from = None
            trade.updated_at = utcnow()
            return trade.status

        result = run_atomic(_resolve, self.session_factory)
        logger.info(f"⚖️ DISPUTE_RESOLVED: {trade_id} resumes as {result}")
        return result
