"""Escrow address allocation with ledger-backed reuse"""

import logging
import re
from decimal import Decimal
from typing import Optional

from services.address_ledger import AddressLedger, EscrowFundsHeldError
from services.custody_provider import CustodyProviderClient, CustodyProviderError, ProviderUnavailable

logger = logging.getLogger(__name__)


class AllocationError(Exception):
    """Deposit address could not be obtained; nothing was recorded"""

    pass


_BASE58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

ADDRESS_PATTERNS = {
    "BTC": re.compile(rf"^(?:[13][{_BASE58}]{{25,34}}|(?:bc1|tb1)[02-9ac-hj-np-z]{{11,71}})$"),
    "ETH": re.compile(r"^0x[0-9a-fA-F]{40}$"),
    "USDT": re.compile(rf"^(?:0x[0-9a-fA-F]{{40}}|[{_BASE58}]{{32,44}})$"),
    "SOL": re.compile(rf"^[{_BASE58}]{{32,44}}$"),
}


def is_well_formed_address(asset: str, address: Optional[str]) -> bool:
    """Shape check for a provider-issued address; unknown assets only need a non-blank string"""
    if not isinstance(address, str) or not address.strip():
        return False
    pattern = ADDRESS_PATTERNS.get(asset.upper())
    if pattern is None:
        return len(address.strip()) >= 16
    return bool(pattern.match(address.strip()))


class EscrowAddressManager:
    """Returns a live ledger address or allocates, validates and records a new one"""

    def __init__(self, ledger: AddressLedger, provider: Optional[CustodyProviderClient] = None):
        self.ledger = ledger
        self.provider = provider or CustodyProviderClient()

    async def get_or_allocate(
        self,
        trade_id: str,
        asset: str,
        expected_amount: Optional[Decimal] = None,
        owner_id: Optional[int] = None,
    ) -> str:
        asset = asset.upper()
        existing = self.ledger.lookup(trade_id, asset)
        if existing is not None:
            logger.info(f"♻️ ADDRESS_REUSED: trade {trade_id} {asset} -> {existing.address}")
            return existing.address

        held = self.ledger.held_funds(trade_id, asset)
        if held is not None:
            logger.error(f"🔒 ALLOCATION_REFUSED: trade {trade_id} {asset} already holds funds at {held.address} ({held.status})")
            raise AllocationError(f"Escrow for trade {trade_id} {asset} is already {held.status}")

        try:
            address = await self.provider.allocate_address(trade_id, asset, expected_amount)
        except ProviderUnavailable as e:
            logger.error(f"❌ ALLOCATION_FAILED: provider unavailable for trade {trade_id} {asset}: {e}")
            raise AllocationError(f"Custody provider unavailable: {e}") from e
        except CustodyProviderError as e:
            logger.error(f"❌ ALLOCATION_FAILED: provider error for trade {trade_id} {asset}: {e}")
            raise AllocationError(str(e)) from e

        if not is_well_formed_address(asset, address):
            logger.error(f"❌ ALLOCATION_FAILED: malformed address {address!r} for trade {trade_id} {asset}")
            raise AllocationError(f"Provider returned an invalid {asset} address")

        address = address.strip()
        try:
            stored = self.ledger.record(trade_id, asset, address, owner_id=owner_id, expected_amount=expected_amount)
        except EscrowFundsHeldError as e:
            raise AllocationError(str(e)) from e
        logger.info(f"✅ ADDRESS_ALLOCATED: trade {trade_id} {asset} -> {stored.address}")
        return stored.address

    async def release(self, trade_id: str, asset: str, to_address: str, amount: Decimal) -> str:
        """Release escrowed funds and retire the deposit address. Returns the provider txid."""
        asset = asset.upper()
        txid = await self.provider.release_funds(trade_id, asset, to_address, amount)
        self.ledger.mark_released(trade_id, asset, txid)
        logger.info(f"🔓 ESCROW_RELEASED: trade {trade_id} {amount} {asset} txid={txid}")
        return txid
