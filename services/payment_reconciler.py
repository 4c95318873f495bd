"""
Payment Reconciler
==================

Matches custody provider transfer notifications against pending obligations.

Notifications can arrive late, out of order, more than once or concurrently.
Each (tx_hash, address) pair drives at most one state change: the idempotency
row, the obligation compare-and-set and the credit/escrow side effect commit in
one transaction, and a losing concurrent attempt rolls back as a duplicate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    PendingObligation, ObligationKind, ObligationStatus, ProcessedTransferEvent,
    TransferOutcome, ReconciliationDiscrepancy, CreditAccount, CreditTransaction,
    EscrowStatus, utcnow
)
from services.address_ledger import AddressLedger
from services.escrow_status_notifier import EscrowStatusNotifier
from services.trade_status_service import TradeStatusService, TradeNotFoundError
from utils.atomic_transactions import run_atomic
from utils.trade_state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)

CONFIRMED_STATE = "confirmed"


class InvalidNotificationError(ValueError):
    """Notification payload missing fields needed for reconciliation"""
    pass


class DuplicateEventError(Exception):
    """Transfer event already drove a state change"""
    pass


class AmountMismatchError(Exception):
    """Received amount outside tolerance of the expected amount"""

    def __init__(self, expected: Decimal, received: Decimal):
        self.expected = expected
        self.received = received
        self.delta = received - expected
        super().__init__(f"Expected {expected}, received {received} (delta {self.delta})")


class ReconciliationStatus(Enum):
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    MISMATCHED = "mismatched"
    IGNORED = "ignored"


@dataclass
class TransferEvent:
    """Transfer notification for one receiving address"""

    asset: str
    address: str
    amount: Decimal
    tx_hash: str
    confirmations: int = 0
    state: str = CONFIRMED_STATE
    amount_in_base_units: bool = False

    @property
    def idempotency_key(self) -> Tuple[str, str]:
        return (self.tx_hash, self.address)

    @property
    def is_confirmed(self) -> bool:
        return (self.state or "").lower() == CONFIRMED_STATE

    def normalized_amount(self) -> Decimal:
        return normalize_amount(self.asset, self.amount, self.amount_in_base_units)


@dataclass
class ReconciliationResult:
    """Result of reconciling one transfer event"""

    status: ReconciliationStatus
    obligation_id: Optional[int] = None
    trade_id: Optional[str] = None
    received_amount: Optional[Decimal] = None
    delta: Optional[Decimal] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "obligation_id": self.obligation_id,
            "trade_id": self.trade_id,
            "received_amount": str(self.received_amount) if self.received_amount is not None else None,
            "delta": str(self.delta) if self.delta is not None else None,
            "message": self.message,
        }


def normalize_amount(asset: str, amount: Any, in_base_units: bool) -> Decimal:
    """Convert a notification amount to whole units of the asset"""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidNotificationError(f"Invalid amount: {amount!r}")
    if not in_base_units:
        return value
    decimals = Config.ASSET_DECIMALS.get(asset.upper())
    if decimals is None:
        raise InvalidNotificationError(f"No fixed-point precision configured for asset {asset}")
    return value.scaleb(-decimals)


def within_tolerance(expected: Decimal, received: Decimal, tolerance_percent: Optional[Decimal] = None) -> bool:
    """|received - expected| <= tolerance% of expected; the boundary itself is accepted"""
    tolerance_percent = Config.PAYMENT_TOLERANCE_PERCENT if tolerance_percent is None else tolerance_percent
    allowed = Decimal(str(expected)) * Decimal(str(tolerance_percent)) / Decimal("100")
    return abs(Decimal(str(received)) - Decimal(str(expected))) <= allowed


def _asset_for_coin(coin: str) -> str:
    """Map a provider coin ticker (btc, tbtc, sol ...) back to our asset code"""
    coin = (coin or "").strip().lower()
    reverse = {wallet["coin"].lower(): asset for asset, wallet in Config.CUSTODY_WALLETS.items()}
    if coin in reverse:
        return reverse[coin]
    if coin.startswith("t") and coin[1:] in reverse:
        return reverse[coin[1:]]
    return coin.upper()


def parse_transfer_notification(payload: Dict[str, Any]) -> List[TransferEvent]:
    """
    Normalise a provider notification into TransferEvents.

    Supported shapes::

        {"type": "transfer", "data": {"address", "value", "coin", "state", "confirmations", "txHash"}}
        {"type": "transfer", "coin": "btc", "transfer": {"txid", "state", "outputs": [{"address", "value"}]}}

    ``value`` is in base units of the asset. Non-transfer notifications yield no events.
    """
    if not isinstance(payload, dict):
        raise InvalidNotificationError("Notification payload must be an object")
    if payload.get("type") != "transfer":
        logger.info(f"ℹ️ NOTIFICATION_SKIPPED: type={payload.get('type')!r}")
        return []

    data = payload.get("data")
    if isinstance(data, dict):
        tx_hash = data.get("txHash") or data.get("txid") or data.get("hash")
        address = data.get("address")
        if not tx_hash or not address:
            raise InvalidNotificationError("Transfer notification requires txHash and address")
        in_base_units = "amount" not in data
        return [
            TransferEvent(
                asset=_asset_for_coin(data.get("coin", "")),
                address=address,
                amount=data["amount"] if not in_base_units else data.get("value", 0),
                tx_hash=tx_hash,
                confirmations=int(data.get("confirmations") or 0),
                state=data.get("state", ""),
                amount_in_base_units=in_base_units,
            )
        ]

    transfer = payload.get("transfer")
    if isinstance(transfer, dict):
        tx_hash = transfer.get("txid") or transfer.get("hash")
        if not tx_hash:
            raise InvalidNotificationError("Transfer notification requires txid")
        asset = _asset_for_coin(payload.get("coin") or transfer.get("coin", ""))
        events = []
        for output in transfer.get("outputs") or []:
            if not output.get("address"):
                continue
            events.append(
                TransferEvent(
                    asset=asset,
                    address=output["address"],
                    amount=output.get("value", 0),
                    tx_hash=tx_hash,
                    confirmations=int(transfer.get("confirmations") or 0),
                    state=transfer.get("state", ""),
                    amount_in_base_units=True,
                )
            )
        return events

    raise InvalidNotificationError("Transfer notification has neither data nor transfer section")


class PaymentReconciler:
    """Drives pending obligations forward from confirmed transfer events"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        ledger: Optional[AddressLedger] = None,
        notifier: Optional[EscrowStatusNotifier] = None,
        trade_status: Optional[TradeStatusService] = None,
        tolerance_percent: Optional[Decimal] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger or AddressLedger(session_factory)
        self.notifier = notifier
        self.trade_status = trade_status or TradeStatusService(session_factory)
        self.tolerance_percent = tolerance_percent

    def handle_notification(self, payload: Dict[str, Any]) -> List[ReconciliationResult]:
        return [self.handle_transfer_event(event) for event in parse_transfer_notification(payload)]

    def handle_transfer_event(self, event: TransferEvent, now: Optional[datetime] = None) -> ReconciliationResult:
        if not event.is_confirmed:
            logger.info(
                f"⏳ RECONCILE_IGNORED: {event.tx_hash} -> {event.address} state={event.state!r} not confirmed"
            )
            trade_id = self.ledger.mark_funded(event.address, event.tx_hash, event.confirmations)
            if trade_id and self.notifier:
                self.notifier.publish(trade_id)
            return ReconciliationResult(
                status=ReconciliationStatus.IGNORED, trade_id=trade_id, message=f"state {event.state}"
            )

        received = event.normalized_amount()
        now = now or utcnow()

        try:
            result = run_atomic(lambda session: self._reconcile(session, event, received, now), self.session_factory)
        except DuplicateEventError as e:
            logger.info(f"✅ ALREADY_PROCESSED: {event.tx_hash} -> {event.address}: {e}")
            return ReconciliationResult(status=ReconciliationStatus.DUPLICATE, message=str(e))
        except IntegrityError:
            # A concurrent worker recorded the same (tx_hash, address) first
            logger.info(f"✅ ALREADY_PROCESSED: {event.tx_hash} -> {event.address} recorded concurrently")
            return ReconciliationResult(status=ReconciliationStatus.DUPLICATE, message="processed concurrently")

        if result.status == ReconciliationStatus.COMPLETED and result.trade_id and self.notifier:
            self.notifier.publish(result.trade_id)
        return result

    def _reconcile(
        self, session: Session, event: TransferEvent, received: Decimal, now: datetime
    ) -> ReconciliationResult:
        already_seen = session.execute(
            select(ProcessedTransferEvent.id).where(
                ProcessedTransferEvent.tx_hash == event.tx_hash,
                ProcessedTransferEvent.address == event.address,
            )
        ).first()
        if already_seen:
            raise DuplicateEventError(f"{event.tx_hash} already reconciled for {event.address}")

        obligation = session.execute(
            select(PendingObligation)
            .where(
                PendingObligation.payment_address == event.address,
                PendingObligation.status == ObligationStatus.PENDING.value,
            )
            .order_by(PendingObligation.created_at)
            .limit(1)
            .with_for_update()
        ).scalar_one_or_none()

        if obligation is None:
            logger.warning(f"❓ RECONCILE_UNMATCHED: no pending obligation for {event.address} (tx {event.tx_hash})")
            return ReconciliationResult(
                status=ReconciliationStatus.UNMATCHED,
                received_amount=received,
                message="no pending obligation for address",
            )

        expected = Decimal(str(obligation.expected_amount))
        try:
            self._check_amount(expected, received)
        except AmountMismatchError as mismatch:
            return self._record_mismatch(session, obligation, event, mismatch, now)

        session.add(
            ProcessedTransferEvent(
                tx_hash=event.tx_hash,
                address=event.address,
                asset=event.asset,
                amount=received,
                outcome=TransferOutcome.COMPLETED.value,
                obligation_id=obligation.id,
                processed_at=now,
            )
        )
        session.flush()

        completed = session.execute(
            update(PendingObligation)
            .where(
                PendingObligation.id == obligation.id,
                PendingObligation.status == ObligationStatus.PENDING.value,
            )
            .values(
                status=ObligationStatus.COMPLETED.value,
                received_amount=received,
                tx_hash=event.tx_hash,
                confirmed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if completed.rowcount != 1:
            raise DuplicateEventError(f"obligation {obligation.id} no longer pending")

        if obligation.kind == ObligationKind.CREDIT_PURCHASE.value:
            self._credit_user(session, obligation, now)
        else:
            self._fund_escrow(session, obligation, event, received, now)

        logger.info(
            f"✅ RECONCILE_COMPLETED: obligation #{obligation.id} ({obligation.kind}) "
            f"received {received} {event.asset} (expected {expected}) tx {event.tx_hash}"
        )
        return ReconciliationResult(
            status=ReconciliationStatus.COMPLETED,
            obligation_id=obligation.id,
            trade_id=obligation.trade_id,
            received_amount=received,
            delta=received - expected,
        )

    def _check_amount(self, expected: Decimal, received: Decimal) -> None:
        if not within_tolerance(expected, received, self.tolerance_percent):
            raise AmountMismatchError(expected, received)

    def _record_mismatch(
        self,
        session: Session,
        obligation: PendingObligation,
        event: TransferEvent,
        mismatch: AmountMismatchError,
        now: datetime,
    ) -> ReconciliationResult:
        session.add(
            ReconciliationDiscrepancy(
                obligation_id=obligation.id,
                tx_hash=event.tx_hash,
                address=event.address,
                expected_amount=mismatch.expected,
                received_amount=mismatch.received,
                delta=mismatch.delta,
                created_at=now,
            )
        )
        session.add(
            ProcessedTransferEvent(
                tx_hash=event.tx_hash,
                address=event.address,
                asset=event.asset,
                amount=mismatch.received,
                outcome=TransferOutcome.MISMATCHED.value,
                obligation_id=obligation.id,
                processed_at=now,
            )
        )
        session.flush()
        logger.warning(
            f"⚠️ RECONCILE_MISMATCH: obligation #{obligation.id} {mismatch} tx {event.tx_hash}; left pending for review"
        )
        return ReconciliationResult(
            status=ReconciliationStatus.MISMATCHED,
            obligation_id=obligation.id,
            trade_id=obligation.trade_id,
            received_amount=mismatch.received,
            delta=mismatch.delta,
            message="amount outside tolerance",
        )

    @staticmethod
    def _credit_user(session: Session, obligation: PendingObligation, now: datetime) -> None:
        credits = obligation.credits_amount or 0
        account = session.get(CreditAccount, obligation.owner_id, with_for_update=True)
        if account is None:
            account = CreditAccount(user_id=obligation.owner_id, balance=0)
            session.add(account)
        account.balance = (account.balance or 0) + credits
        account.updated_at = now
        session.add(
            CreditTransaction(
                user_id=obligation.owner_id,
                amount=credits,
                transaction_type="purchase",
                obligation_id=obligation.id,
                description=f"Credit purchase paid with {obligation.asset}",
                created_at=now,
            )
        )
        session.flush()
        logger.info(f"💳 CREDITS_ADDED: user {obligation.owner_id} +{credits} (balance {account.balance})")

    def _fund_escrow(
        self,
        session: Session,
        obligation: PendingObligation,
        event: TransferEvent,
        received: Decimal,
        now: datetime,
    ) -> None:
        self.ledger.mark_confirmed(session, event.address, event.tx_hash, received, event.confirmations, now)
        if not obligation.trade_id:
            return
        try:
            self.trade_status.advance_escrow(obligation.trade_id, EscrowStatus.CRYPTO_RECEIVED.value, session=session)
        except (InvalidTransitionError, TradeNotFoundError) as e:
            # Funds are in custody either way; the trade row needs manual attention
            logger.error(f"❌ ESCROW_STATUS_NOT_ADVANCED: trade {obligation.trade_id}: {e}")
