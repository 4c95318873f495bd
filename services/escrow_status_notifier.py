"""
Escrow Status Notifier
Read-side view of escrow funding status with push updates to subscribers
"""

import logging
import threading
import uuid
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from models import EscrowAddress, EscrowAddressStatus, Trade
from utils.atomic_transactions import run_atomic

logger = logging.getLogger(__name__)

StatusCallback = Callable[[Dict[str, Any]], None]

_CONFIRMED_STATES = (EscrowAddressStatus.CONFIRMED.value, EscrowAddressStatus.RELEASED.value)


class EscrowStatusNotifier:
    """Answers status queries and pushes changes to per-trade subscribers"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Dict[str, StatusCallback]] = {}
        self._last_published: Dict[str, Dict[str, Any]] = {}

    def _load_address(self, session: Session, trade_id: str) -> Optional[EscrowAddress]:
        return session.execute(
            select(EscrowAddress)
            .where(EscrowAddress.trade_id == trade_id)
            .order_by(EscrowAddress.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def get_status(self, trade_id: str) -> Dict[str, Any]:
        """Confirmation view: ``{confirmed, tx_hash, confirmations}``"""

        def _read(session: Session) -> Dict[str, Any]:
            row = self._load_address(session, trade_id)
            if row is None:
                return {"confirmed": False, "tx_hash": None, "confirmations": 0}
            return {
                "confirmed": row.status in _CONFIRMED_STATES,
                "tx_hash": row.tx_hash,
                "confirmations": row.confirmations or 0,
            }

        return run_atomic(_read, self.session_factory)

    def get_escrow_status(self, trade_id: str) -> Dict[str, Any]:
        """Full status for the external status query"""

        def _read(session: Session) -> Dict[str, Any]:
            row = self._load_address(session, trade_id)
            trade = session.get(Trade, trade_id)
            if row is None and trade is None:
                return {"trade_id": trade_id, "status": "not_found"}
            return {
                "trade_id": trade_id,
                "status": row.status if row else EscrowAddressStatus.PENDING.value,
                "address": row.address if row else None,
                "asset": row.asset if row else trade.asset,
                "tx_hash": row.tx_hash if row else None,
                "received_amount": str(row.received_amount) if row and row.received_amount is not None else None,
                "confirmations": (row.confirmations or 0) if row else 0,
                "trade_status": trade.status if trade else None,
                "escrow_status": trade.escrow_status if trade else None,
            }

        return run_atomic(_read, self.session_factory)

    def subscribe(self, trade_id: str, callback: StatusCallback) -> Callable[[], None]:
        """
        Register ``callback`` for status changes of ``trade_id``.

        The current snapshot is delivered immediately. The returned function
        unsubscribes and is safe to call more than once.
        """
        token = uuid.uuid4().hex
        with self._lock:
            self._subscribers.setdefault(trade_id, {})[token] = callback

        snapshot = self.get_status(trade_id)
        with self._lock:
            self._last_published.setdefault(trade_id, snapshot)
        self._deliver(trade_id, callback, snapshot)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(trade_id)
                if not callbacks or token not in callbacks:
                    return
                del callbacks[token]
                if not callbacks:
                    self._subscribers.pop(trade_id, None)
                    self._last_published.pop(trade_id, None)

        return unsubscribe

    def publish(self, trade_id: str) -> int:
        """Push the current status to subscribers if it changed. Returns deliveries made."""
        with self._lock:
            callbacks = list(self._subscribers.get(trade_id, {}).values())
        if not callbacks:
            return 0

        status = self.get_status(trade_id)
        with self._lock:
            if self._last_published.get(trade_id) == status:
                return 0
            self._last_published[trade_id] = status

        for callback in callbacks:
            self._deliver(trade_id, callback, status)
        logger.info(f"📣 ESCROW_STATUS_PUBLISHED: trade {trade_id} -> {status} ({len(callbacks)} subscribers)")
        return len(callbacks)

    def subscriber_count(self, trade_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(trade_id, {}))

    @staticmethod
    def _deliver(trade_id: str, callback: StatusCallback, status: Dict[str, Any]) -> None:
        try:
            callback(dict(status))
        except Exception as e:
            logger.error(f"❌ ESCROW_STATUS_CALLBACK_FAILED: trade {trade_id}: {e}", exc_info=True)
