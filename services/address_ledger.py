"""
Escrow Address Ledger
Durable map of (trade_id, asset) -> deposit address with expiry, so a user is
shown the same address for the same obligation across reloads and restarts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, delete, update, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import EscrowAddress, EscrowAddressStatus, utcnow
from utils.atomic_transactions import run_atomic

logger = logging.getLogger(__name__)

_NOT_LIVE = (EscrowAddressStatus.EXPIRED.value, EscrowAddressStatus.RELEASED.value)
# Rows that still represent funds in custody are kept past expiry until released
_RETAINED_AFTER_EXPIRY = (EscrowAddressStatus.FUNDED.value, EscrowAddressStatus.CONFIRMED.value)


class EscrowFundsHeldError(Exception):
    """The key already has a funded or confirmed address that must not be replaced"""

    def __init__(self, trade_id: str, asset: str, address: str, status: str):
        self.trade_id = trade_id
        self.asset = asset
        self.address = address
        self.status = status
        super().__init__(f"Trade {trade_id} {asset} already holds funds at {address} ({status})")


@dataclass(frozen=True)
class EscrowAddressRecord:
    """Detached snapshot of an escrow_addresses row"""

    trade_id: str
    asset: str
    address: str
    status: str
    created_at: datetime
    expires_at: datetime
    confirmations: int = 0
    tx_hash: Optional[str] = None
    received_amount: Optional[Decimal] = None

    @classmethod
    def from_row(cls, row: EscrowAddress) -> "EscrowAddressRecord":
        return cls(
            trade_id=row.trade_id,
            asset=row.asset,
            address=row.address,
            status=row.status,
            created_at=row.created_at,
            expires_at=row.expires_at,
            confirmations=row.confirmations or 0,
            tx_hash=row.tx_hash,
            received_amount=row.received_amount,
        )


class AddressLedger:
    """Stores at most one live deposit address per (trade_id, asset)"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, default_ttl: Optional[timedelta] = None):
        self.session_factory = session_factory
        self.default_ttl = default_ttl or timedelta(hours=Config.ESCROW_ADDRESS_TTL_HOURS)

    @staticmethod
    def _live_clause(now: datetime):
        return and_(EscrowAddress.expires_at > now, EscrowAddress.status.notin_(_NOT_LIVE))

    def lookup(self, trade_id: str, asset: str, now: Optional[datetime] = None) -> Optional[EscrowAddressRecord]:
        """Return the live address for the key, or None when absent, expired or released"""
        now = now or utcnow()
        asset = asset.upper()

        def _lookup(session: Session) -> Optional[EscrowAddressRecord]:
            row = session.execute(
                select(EscrowAddress).where(
                    EscrowAddress.trade_id == trade_id,
                    EscrowAddress.asset == asset,
                    self._live_clause(now),
                )
            ).scalar_one_or_none()
            return EscrowAddressRecord.from_row(row) if row else None

        return run_atomic(_lookup, self.session_factory)

    def held_funds(self, trade_id: str, asset: str) -> Optional[EscrowAddressRecord]:
        """Funded or confirmed record for the key, whether or not it has expired"""
        asset = asset.upper()

        def _lookup(session: Session) -> Optional[EscrowAddressRecord]:
            row = session.execute(
                select(EscrowAddress).where(
                    EscrowAddress.trade_id == trade_id,
                    EscrowAddress.asset == asset,
                    EscrowAddress.status.in_(_RETAINED_AFTER_EXPIRY),
                )
            ).scalar_one_or_none()
            return EscrowAddressRecord.from_row(row) if row else None

        return run_atomic(_lookup, self.session_factory)

    def record(
        self,
        trade_id: str,
        asset: str,
        address: str,
        ttl: Optional[timedelta] = None,
        owner_id: Optional[int] = None,
        expected_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
        replace_live: bool = False,
    ) -> EscrowAddressRecord:
        """
        Store ``address`` for the key with expiry ``now + ttl``, replacing any prior record.

        A live record written concurrently by another allocation is kept unless
        ``replace_live`` is set; the stored record is returned so the caller always
        surfaces the address that actually won. A funded or confirmed record is
        never replaced, expired or not; ``EscrowFundsHeldError`` is raised instead.
        """
        now = now or utcnow()
        asset = asset.upper()
        expires_at = now + (ttl or self.default_ttl)

        def _upsert(session: Session) -> EscrowAddressRecord:
            existing = session.execute(
                select(EscrowAddress)
                .where(EscrowAddress.trade_id == trade_id, EscrowAddress.asset == asset)
                .with_for_update()
            ).scalar_one_or_none()

            if existing is not None:
                if existing.status in _RETAINED_AFTER_EXPIRY:
                    logger.warning(
                        f"🔒 ADDRESS_FUNDS_HELD: trade {trade_id} {asset} is {existing.status} at "
                        f"{existing.address}; refusing to replace with {address}"
                    )
                    raise EscrowFundsHeldError(trade_id, asset, existing.address, existing.status)
                if existing.is_live(now) and not replace_live:
                    if existing.address != address:
                        logger.warning(
                            f"⚠️ ADDRESS_RACE: trade {trade_id} {asset} already has live address "
                            f"{existing.address}; discarding {address}"
                        )
                    return EscrowAddressRecord.from_row(existing)
                session.delete(existing)
                session.flush()

            row = EscrowAddress(
                trade_id=trade_id,
                asset=asset,
                address=address,
                status=EscrowAddressStatus.PENDING.value,
                owner_id=owner_id,
                expected_amount=expected_amount,
                created_at=now,
                expires_at=expires_at,
            )
            session.add(row)
            session.flush()
            return EscrowAddressRecord.from_row(row)

        try:
            stored = run_atomic(_upsert, self.session_factory)
        except IntegrityError:
            # Concurrent insert for the same key won; surface its address
            logger.info(f"🔁 ADDRESS_RACE: concurrent record for trade {trade_id} {asset}, re-reading winner")
            winner = self.lookup(trade_id, asset, now=now)
            if winner is None:
                raise
            return winner

        logger.info(f"📝 ADDRESS_RECORDED: trade {trade_id} {asset} -> {stored.address} (expires {stored.expires_at})")
        return stored

    def mark_confirmed(
        self,
        session: Session,
        address: str,
        tx_hash: str,
        received_amount: Decimal,
        confirmations: int,
        now: Optional[datetime] = None,
    ) -> Optional[EscrowAddress]:
        """Flag the address row confirmed inside the caller's transaction"""
        row = session.execute(
            select(EscrowAddress)
            .where(
                EscrowAddress.address == address,
                EscrowAddress.status.in_((EscrowAddressStatus.PENDING.value, EscrowAddressStatus.FUNDED.value)),
            )
            .with_for_update()
        ).scalar_one_or_none()
        if row is None:
            return None
        row.status = EscrowAddressStatus.CONFIRMED.value
        row.tx_hash = tx_hash
        row.received_amount = received_amount
        row.confirmations = confirmations
        row.confirmed_at = now or utcnow()
        return row

    def mark_funded(self, address: str, tx_hash: str, confirmations: int = 0) -> Optional[str]:
        """
        Record an unconfirmed deposit seen on the address.

        Pending rows move to funded; a funded row only has its confirmation count
        refreshed. Returns the trade id of the row touched, or None when nothing changed.
        """

        def _mark(session: Session) -> Optional[str]:
            row = session.execute(
                select(EscrowAddress)
                .where(
                    EscrowAddress.address == address,
                    EscrowAddress.status.in_((EscrowAddressStatus.PENDING.value, EscrowAddressStatus.FUNDED.value)),
                )
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                return None
            if row.status == EscrowAddressStatus.FUNDED.value and row.tx_hash == tx_hash and (
                row.confirmations or 0
            ) >= confirmations:
                return None
            row.status = EscrowAddressStatus.FUNDED.value
            row.tx_hash = tx_hash
            row.confirmations = confirmations
            return row.trade_id

        trade_id = run_atomic(_mark, self.session_factory)
        if trade_id:
            logger.info(f"💰 ADDRESS_FUNDED: {address} tx={tx_hash} ({confirmations} confirmations)")
        return trade_id

    def mark_released(self, trade_id: str, asset: str, release_txid: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        asset = asset.upper()

        def _mark(session: Session) -> bool:
            result = session.execute(
                update(EscrowAddress)
                .where(
                    EscrowAddress.trade_id == trade_id,
                    EscrowAddress.asset == asset,
                    EscrowAddress.status != EscrowAddressStatus.RELEASED.value,
                )
                .values(status=EscrowAddressStatus.RELEASED.value, release_txid=release_txid, released_at=now)
            )
            return result.rowcount > 0

        return run_atomic(_mark, self.session_factory)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete records that can no longer be returned by lookup. Returns the count removed."""
        now = now or utcnow()

        def _purge(session: Session) -> int:
            result = session.execute(
                delete(EscrowAddress).where(
                    or_(
                        and_(
                            EscrowAddress.expires_at <= now,
                            EscrowAddress.status.notin_(_RETAINED_AFTER_EXPIRY),
                        ),
                        EscrowAddress.status == EscrowAddressStatus.EXPIRED.value,
                    )
                )
            )
            return result.rowcount or 0

        purged = run_atomic(_purge, self.session_factory)
        if purged:
            logger.info(f"🧹 ADDRESS_PURGE: removed {purged} expired escrow addresses")
        return purged
