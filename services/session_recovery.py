"""Offer and resume interrupted flows when a user lands on an entry route"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import RecoveryPromptMarker, SessionType, utcnow
from services.session_store import FlowSession, SessionStore
from utils.atomic_transactions import run_atomic

logger = logging.getLogger(__name__)

UNABLE_TO_RESUME = "Unable to restore this session"


class UnsupportedSessionTypeError(Exception):
    """No resume route is defined for the session's flow type"""
    pass


@dataclass
class ResumeIntent:
    """Where to send the user and what to rehydrate there"""

    route: str
    session: FlowSession
    state: Dict[str, Any] = field(default_factory=dict)
    event: Optional[str] = None


class RestoreOutcome(Enum):
    RESUMED = "resumed"
    UNSUPPORTED = "unsupported"


@dataclass
class RestoreResult:
    outcome: RestoreOutcome
    intent: Optional[ResumeIntent] = None
    delivered: bool = False
    message: str = ""


def _resume_credit_purchase(session: FlowSession) -> ResumeIntent:
    return ResumeIntent(
        route="/credits-purchase",
        session=session,
        state={"step": session.step, "payment": session.data},
        event="restorePaymentSession",
    )


def _resume_crypto_buy(session: FlowSession) -> ResumeIntent:
    return ResumeIntent(
        route="/buy-crypto-flow",
        session=session,
        state={"selectedCoin": session.data.selected_coin, "coinData": session.data.coin_data},
    )


def _resume_crypto_sell(session: FlowSession) -> ResumeIntent:
    return ResumeIntent(
        route="/sell-crypto-flow",
        session=session,
        state={"selectedCoin": session.data.selected_coin, "amount": session.data.amount},
    )


def _resume_escrow(session: FlowSession) -> ResumeIntent:
    data = session.data
    return ResumeIntent(
        route="/escrow-flow",
        session=session,
        state={
            "tradeId": data.transaction_id,
            "amount": data.trade_amount,
            "mode": data.mode,
            "deliveryType": data.delivery_type,
            "deliveryAddress": data.delivery_address,
            "serviceFee": data.service_fee,
        },
    )


RESUME_ROUTES: Dict[SessionType, Callable[[FlowSession], ResumeIntent]] = {
    SessionType.CREDIT_PURCHASE: _resume_credit_purchase,
    SessionType.CRYPTO_BUY: _resume_crypto_buy,
    SessionType.CRYPTO_SELL: _resume_crypto_sell,
    SessionType.ESCROW: _resume_escrow,
}

# Last step of flows that warn before the user navigates away mid-payment
FINAL_STEPS: Dict[SessionType, int] = {
    SessionType.CREDIT_PURCHASE: 3,
}


def is_leave_guarded(session: FlowSession) -> bool:
    final_step = FINAL_STEPS.get(session.type)
    return final_step is not None and 1 < session.step < final_step


class LastPromptMarkerStore:
    """Calendar day each user last saw the recovery prompt"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def last_shown(self, user_id: int) -> Optional[date]:
        def _read(db: Session) -> Optional[date]:
            marker = db.get(RecoveryPromptMarker, user_id)
            return marker.last_shown_on if marker else None

        return run_atomic(_read, self.session_factory)

    def mark_shown(self, user_id: int, on: date) -> None:
        def _write(db: Session) -> None:
            marker = db.get(RecoveryPromptMarker, user_id)
            if marker is None:
                db.add(RecoveryPromptMarker(user_id=user_id, last_shown_on=on))
            else:
                marker.last_shown_on = on

        run_atomic(_write, self.session_factory)


class ResumeIntentDispatcher:
    """Routes resume intents to exactly one consumer per flow type"""

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[SessionType, Callable[[ResumeIntent], None]] = {}

    def register(self, session_type: SessionType, handler: Callable[[ResumeIntent], None]) -> Callable[[], None]:
        with self._lock:
            if session_type in self._handlers:
                raise ValueError(f"A resume handler is already registered for {session_type.value}")
            self._handlers[session_type] = handler

        def unregister() -> None:
            with self._lock:
                if self._handlers.get(session_type) is handler:
                    del self._handlers[session_type]

        return unregister

    def dispatch(self, intent: ResumeIntent) -> bool:
        with self._lock:
            handler = self._handlers.get(intent.session.type)
        if handler is None:
            logger.warning(f"⚠️ RESUME_UNHANDLED: no consumer for {intent.session.type.value}")
            return False
        handler(intent)
        return True


class SessionRecoveryCoordinator:
    """Decides when to offer recovery and turns a chosen session into a ResumeIntent"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        store_factory: Optional[Callable[[int], SessionStore]] = None,
        dispatcher: Optional[ResumeIntentDispatcher] = None,
        marker_store: Optional[LastPromptMarkerStore] = None,
        recovery_routes: Optional[List[str]] = None,
        route_map: Optional[Dict[SessionType, Callable[[FlowSession], ResumeIntent]]] = None,
    ):
        self.session_factory = session_factory
        self.store_factory = store_factory or (lambda user_id: SessionStore(user_id, session_factory=session_factory))
        self.dispatcher = dispatcher or ResumeIntentDispatcher()
        self.marker_store = marker_store or LastPromptMarkerStore(session_factory)
        self.recovery_routes = set(recovery_routes if recovery_routes is not None else Config.RECOVERY_ROUTES)
        self.route_map = route_map if route_map is not None else RESUME_ROUTES

    def maybe_present_recovery(
        self, current_route: str, user_id: int, now: Optional[datetime] = None
    ) -> Optional[List[FlowSession]]:
        """
        Live sessions to offer, or None when the prompt must not be shown.

        Only allow-listed entry routes qualify, and each user is prompted at most
        once per calendar day.
        """
        if current_route not in self.recovery_routes:
            return None

        now = now or utcnow()
        today = now.date()
        if self.marker_store.last_shown(user_id) == today:
            logger.debug(f"RECOVERY_PROMPT_SKIPPED: user {user_id} already prompted on {today}")
            return None

        store = self.store_factory(user_id)
        sessions: List[FlowSession] = []
        for session_type in SessionType:
            sessions.extend(store.get(session_type, now=now))
        if not sessions:
            return None

        sessions.sort(key=lambda s: s.timestamp, reverse=True)
        self.marker_store.mark_shown(user_id, today)
        logger.info(f"🔔 RECOVERY_PROMPT: user {user_id} offered {len(sessions)} sessions on {current_route}")
        return sessions

    def _build_intent(self, session: FlowSession) -> ResumeIntent:
        builder = self.route_map.get(session.type)
        if builder is None:
            raise UnsupportedSessionTypeError(f"No resume route for {session.type.value}")
        return builder(session)

    def restore(self, session: FlowSession) -> RestoreResult:
        try:
            intent = self._build_intent(session)
        except UnsupportedSessionTypeError as e:
            logger.warning(f"⚠️ RESTORE_UNSUPPORTED: session {session.id}: {e}")
            return RestoreResult(outcome=RestoreOutcome.UNSUPPORTED, message=UNABLE_TO_RESUME)

        delivered = self.dispatcher.dispatch(intent)
        logger.info(f"▶️ SESSION_RESTORED: {session.type.value} {session.id} -> {intent.route}")
        return RestoreResult(outcome=RestoreOutcome.RESUMED, intent=intent, delivered=delivered)

    def dismiss(self, session_id: str, user_id: int) -> None:
        """Remove only the dismissed session; other offered sessions stay restorable"""
        self.store_factory(user_id).remove(session_id)
        logger.info(f"🙈 SESSION_DISMISSED: user {user_id} session {session_id}")
