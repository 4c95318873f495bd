"""
Session Store
=============

Persists progress of multi-step payment and trade flows so they survive reloads,
navigation and restarts.

Two tiers:
- primary: process-local key-value scope holding serialized sessions, cleared when
  the scope ends (logout, tab close, process restart)
- durable: the ``flow_sessions`` table, read only when the primary tier holds
  nothing for the requested flow type

A session is live while ``now - timestamp < SESSION_EXPIRY_HOURS``.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Type, Union

from sqlalchemy import select, delete
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import StoredFlowSession, SessionType, utcnow
from utils.atomic_transactions import run_atomic

logger = logging.getLogger(__name__)


class SessionCorruptionError(Exception):
    """Stored session could not be decoded into a valid FlowSession"""
    pass


# ============================================================================
# Typed payloads, one per flow
# ============================================================================

@dataclass
class CreditPurchasePayload:
    credits: int
    asset: str
    crypto_amount: Optional[str] = None
    usd_amount: Optional[str] = None
    payment_address: Optional[str] = None
    obligation_id: Optional[int] = None


@dataclass
class CryptoBuyPayload:
    selected_coin: str
    coin_data: Dict[str, Any] = field(default_factory=dict)
    amount: Optional[str] = None


@dataclass
class CryptoSellPayload:
    selected_coin: str
    amount: Optional[str] = None
    merchant_id: Optional[int] = None
    payout_method: Optional[str] = None


@dataclass
class EscrowPayload:
    transaction_id: str
    trade_amount: str
    mode: str
    delivery_type: Optional[str] = None
    delivery_address: Optional[str] = None
    service_fee: Optional[str] = None


SessionPayload = Union[CreditPurchasePayload, CryptoBuyPayload, CryptoSellPayload, EscrowPayload]

PAYLOAD_TYPES: Dict[SessionType, Type] = {
    SessionType.CREDIT_PURCHASE: CreditPurchasePayload,
    SessionType.CRYPTO_BUY: CryptoBuyPayload,
    SessionType.CRYPTO_SELL: CryptoSellPayload,
    SessionType.ESCROW: EscrowPayload,
}


def _decode_payload(session_type: SessionType, data: Any) -> SessionPayload:
    payload_cls = PAYLOAD_TYPES[session_type]
    if not isinstance(data, dict):
        raise SessionCorruptionError(f"{session_type.value} payload must be an object")
    known = {f.name for f in fields(payload_cls)}
    try:
        return payload_cls(**{k: v for k, v in data.items() if k in known})
    except TypeError as e:
        raise SessionCorruptionError(f"{session_type.value} payload invalid: {e}")


@dataclass
class FlowSession:
    """Saved progress of one multi-step flow"""

    id: str
    type: SessionType
    step: int
    data: SessionPayload
    timestamp: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.type, SessionType):
            self.type = SessionType(self.type)
        if not isinstance(self.step, int) or self.step < 1:
            raise ValueError(f"Session step must be >= 1, got {self.step!r}")
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.data, expected):
            raise TypeError(f"{self.type.value} session requires {expected.__name__} data")

    def is_live(self, now: datetime, max_age: timedelta) -> bool:
        return self.timestamp is not None and now - self.timestamp < max_age

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "step": self.step,
            "data": asdict(self.data),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "FlowSession":
        if not isinstance(raw, dict):
            raise SessionCorruptionError("Session entry is not an object")
        try:
            session_type = SessionType(raw["type"])
            session = cls(
                id=str(raw["id"]),
                type=session_type,
                step=raw["step"],
                data=_decode_payload(session_type, raw.get("data")),
                timestamp=datetime.fromisoformat(raw["timestamp"]),
                expires_at=datetime.fromisoformat(raw["expires_at"]) if raw.get("expires_at") else None,
            )
        except SessionCorruptionError:
            raise
        except (KeyError, ValueError, TypeError) as e:
            raise SessionCorruptionError(f"Session entry invalid: {e}")
        return session


# ============================================================================
# Tiers
# ============================================================================

class EphemeralSessionTier:
    """Process-local key-value scope of serialized sessions"""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, str]] = {}

    @staticmethod
    def _key(owner_id: int, session_type: SessionType) -> str:
        return f"flow_sessions:{owner_id}:{session_type.value}"

    def put(self, owner_id: int, session: FlowSession) -> None:
        with self._lock:
            for key, entries in self._entries.items():
                if key.startswith(f"flow_sessions:{owner_id}:"):
                    entries.pop(session.id, None)
            self._entries.setdefault(self._key(owner_id, session.type), {})[session.id] = json.dumps(session.to_dict())

    def put_raw(self, owner_id: int, session_type: SessionType, session_id: str, raw: str) -> None:
        with self._lock:
            self._entries.setdefault(self._key(owner_id, session_type), {})[session_id] = raw

    def entries(self, owner_id: int, session_type: SessionType) -> Dict[str, str]:
        with self._lock:
            return dict(self._entries.get(self._key(owner_id, session_type), {}))

    def delete(self, owner_id: int, session_id: str) -> bool:
        removed = False
        with self._lock:
            for key, entries in self._entries.items():
                if key.startswith(f"flow_sessions:{owner_id}:") and entries.pop(session_id, None) is not None:
                    removed = True
        return removed

    def clear_scope(self, owner_id: int) -> None:
        with self._lock:
            for key in [k for k in self._entries if k.startswith(f"flow_sessions:{owner_id}:")]:
                del self._entries[key]


_default_primary_tier = EphemeralSessionTier()


class SessionStore:
    """Save, list, remove and purge flow sessions for one user"""

    def __init__(
        self,
        owner_id: int,
        session_factory: Optional[sessionmaker] = None,
        primary: Optional[EphemeralSessionTier] = None,
        max_age: Optional[timedelta] = None,
    ):
        self.owner_id = owner_id
        self.session_factory = session_factory
        self.primary = primary if primary is not None else _default_primary_tier
        self.max_age = max_age or timedelta(hours=Config.SESSION_EXPIRY_HOURS)

    def save(
        self, session: FlowSession, now: Optional[datetime] = None, preserve_timestamp: bool = False
    ) -> FlowSession:
        """
        Write both tiers; a session with the same id is overwritten (last write wins).

        The expiry window restarts at ``now`` unless ``preserve_timestamp`` is set and
        the session already carries its creation time.
        """
        now = now or utcnow()
        if not (preserve_timestamp and session.timestamp is not None):
            session.timestamp = now
            session.expires_at = now + self.max_age
        elif session.expires_at is None:
            session.expires_at = session.timestamp + self.max_age

        self.primary.put(self.owner_id, session)

        def _upsert(db: Session) -> None:
            row = db.get(StoredFlowSession, session.id)
            if row is None:
                row = StoredFlowSession(session_id=session.id, user_id=self.owner_id)
                db.add(row)
            row.user_id = self.owner_id
            row.session_type = session.type.value
            row.step = session.step
            row.data = asdict(session.data)
            row.timestamp = session.timestamp
            row.expires_at = session.expires_at

        run_atomic(_upsert, self.session_factory)
        logger.debug(f"💾 SESSION_SAVED: {session.type.value} {session.id} step {session.step}")
        return session

    def get(self, session_type: SessionType, now: Optional[datetime] = None) -> List[FlowSession]:
        """Live sessions of ``session_type``, newest first"""
        now = now or utcnow()
        session_type = SessionType(session_type)

        primary_entries = self.primary.entries(self.owner_id, session_type)
        if primary_entries:
            candidates = self._decode_primary(session_type, primary_entries)
        else:
            candidates = self._load_durable(session_type)

        live = [s for s in candidates if s.is_live(now, self.max_age)]
        live.sort(key=lambda s: s.timestamp, reverse=True)
        return live

    def get_by_id(self, session_id: str, now: Optional[datetime] = None) -> Optional[FlowSession]:
        for session_type in SessionType:
            for session in self.get(session_type, now=now):
                if session.id == session_id:
                    return session
        return None

    def update_step(
        self, session_id: str, step: int, data: Optional[SessionPayload] = None, now: Optional[datetime] = None
    ) -> Optional[FlowSession]:
        session = self.get_by_id(session_id, now=now)
        if session is None:
            return None
        updated = FlowSession(
            id=session.id,
            type=session.type,
            step=step,
            data=data if data is not None else session.data,
            timestamp=session.timestamp,
            expires_at=session.expires_at,
        )
        return self.save(updated, now=now, preserve_timestamp=True)

    def remove(self, session_id: str) -> None:
        self.primary.delete(self.owner_id, session_id)

        def _delete(db: Session) -> None:
            db.execute(
                delete(StoredFlowSession).where(
                    StoredFlowSession.session_id == session_id,
                    StoredFlowSession.user_id == self.owner_id,
                )
            )

        run_atomic(_delete, self.session_factory)
        logger.info(f"🗑️ SESSION_REMOVED: {session_id}")

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired sessions of this user from both tiers"""
        now = now or utcnow()
        purged = 0
        for session_type in SessionType:
            for session_id, raw in self.primary.entries(self.owner_id, session_type).items():
                try:
                    session = FlowSession.from_dict(json.loads(raw))
                except (SessionCorruptionError, ValueError):
                    self.primary.delete(self.owner_id, session_id)
                    purged += 1
                    continue
                if not session.is_live(now, self.max_age):
                    self.primary.delete(self.owner_id, session_id)
                    purged += 1

        purged += purge_expired_durable_sessions(now, self.max_age, self.session_factory, owner_id=self.owner_id)
        return purged

    def end_scope(self) -> None:
        """Forget the primary tier for this user (the durable copy remains)"""
        self.primary.clear_scope(self.owner_id)

    def _decode_primary(self, session_type: SessionType, entries: Dict[str, str]) -> List[FlowSession]:
        sessions = []
        for session_id, raw in entries.items():
            try:
                try:
                    decoded = json.loads(raw)
                except ValueError as e:
                    raise SessionCorruptionError(f"Unreadable JSON: {e}")
                session = FlowSession.from_dict(decoded)
                if session.type != session_type:
                    raise SessionCorruptionError(f"Stored under {session_type.value} but typed {session.type.value}")
                sessions.append(session)
            except SessionCorruptionError as e:
                logger.warning(f"⚠️ SESSION_CORRUPT: discarding {session_id}: {e}")
                self.primary.delete(self.owner_id, session_id)
        return sessions

    def _load_durable(self, session_type: SessionType) -> List[FlowSession]:
        def _load(db: Session) -> List[FlowSession]:
            rows = db.execute(
                select(StoredFlowSession).where(
                    StoredFlowSession.user_id == self.owner_id,
                    StoredFlowSession.session_type == session_type.value,
                )
            ).scalars().all()
            sessions = []
            for row in rows:
                try:
                    sessions.append(
                        FlowSession(
                            id=row.session_id,
                            type=session_type,
                            step=row.step,
                            data=_decode_payload(session_type, row.data),
                            timestamp=row.timestamp,
                            expires_at=row.expires_at,
                        )
                    )
                except (SessionCorruptionError, ValueError, TypeError) as e:
                    logger.warning(f"⚠️ SESSION_CORRUPT: discarding durable session {row.session_id}: {e}")
                    db.delete(row)
            return sessions

        return run_atomic(_load, self.session_factory)


def purge_expired_durable_sessions(
    now: Optional[datetime] = None,
    max_age: Optional[timedelta] = None,
    session_factory: Optional[sessionmaker] = None,
    owner_id: Optional[int] = None,
) -> int:
    """Delete durable sessions older than ``max_age``; all users unless ``owner_id`` is given"""
    now = now or utcnow()
    cutoff = now - (max_age or timedelta(hours=Config.SESSION_EXPIRY_HOURS))

    def _purge(db: Session) -> int:
        stmt = delete(StoredFlowSession).where(StoredFlowSession.timestamp <= cutoff)
        if owner_id is not None:
            stmt = stmt.where(StoredFlowSession.user_id == owner_id)
        return db.execute(stmt).rowcount or 0

    purged = run_atomic(_purge, session_factory)
    if purged:
        logger.info(f"🧹 SESSION_PURGE: removed {purged} expired durable sessions")
    return purged
