"""Custody provider API client: deposit address allocation and fund release"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Optional

import aiohttp

from config import Config

logger = logging.getLogger(__name__)


class CustodyProviderError(Exception):
    """Custom exception for custody provider API errors"""

    pass


class ProviderUnavailable(CustodyProviderError):
    """Provider timed out or could not be reached"""

    pass


def _mask_token(token: Optional[str]) -> str:
    if not token:
        return "<unset>"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


def to_base_units(asset: str, amount: Decimal) -> int:
    """Convert a decimal amount into the asset's integer base units"""
    decimals = Config.ASSET_DECIMALS.get(asset.upper())
    if decimals is None:
        raise CustodyProviderError(f"No fixed-point precision configured for asset {asset}")
    scaled = (Decimal(str(amount)) * (Decimal(10) ** decimals)).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return int(scaled)


class CustodyProviderClient:
    """HTTP client for the custody provider's wallet API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        wallets: Optional[Dict[str, Dict[str, str]]] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.base_url = (base_url or Config.CUSTODY_PROVIDER_BASE_URL).rstrip("/")
        self.access_token = access_token if access_token is not None else Config.CUSTODY_PROVIDER_TOKEN
        self.wallets = wallets if wallets is not None else Config.CUSTODY_WALLETS
        self.timeout = aiohttp.ClientTimeout(
            total=timeout_seconds or Config.CUSTODY_PROVIDER_TIMEOUT_SECONDS
        )

        if not self.access_token:
            logger.warning("CUSTODY_PROVIDER_TOKEN not configured - API will not function")
        else:
            logger.info(f"Custody provider client initialized with token: {_mask_token(self.access_token)}")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _resolve_wallet(self, asset: str) -> Dict[str, str]:
        wallet = self.wallets.get(asset.upper())
        if not wallet or not wallet.get("coin"):
            raise CustodyProviderError(f"Unsupported asset: {asset}")
        return wallet

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=payload, headers=self._get_headers()) as response:
                    if response.status == 200:
                        return await response.json()
                    error_text = await response.text()
                    logger.error(f"❌ CUSTODY_API_ERROR: {path} returned {response.status}: {error_text[:200]}")
                    if response.status >= 500:
                        raise ProviderUnavailable(f"Custody provider error {response.status}")
                    raise CustodyProviderError(f"Custody provider rejected request: {response.status}")
        except asyncio.TimeoutError:
            logger.error(f"⏱️ CUSTODY_TIMEOUT: {path} exceeded {self.timeout.total}s")
            raise ProviderUnavailable("Custody provider timed out")
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to custody provider: {e}")
            raise ProviderUnavailable(f"Network error: {e}")

    async def allocate_address(
        self, trade_id: str, asset: str, expected_amount: Optional[Decimal] = None
    ) -> str:
        """Ask the provider for a fresh deposit address. Returns the raw address string."""
        wallet = self._resolve_wallet(asset)
        label = f"escrow-{wallet['coin']}-{trade_id}-{int(datetime.now(timezone.utc).timestamp() * 1000)}"
        payload: Dict[str, Any] = {"label": label}
        if expected_amount is not None:
            payload["expectedAmount"] = str(expected_amount)

        data = await self._post(f"/{wallet['coin']}/wallet/{wallet['wallet_id']}/address", payload)
        address = data.get("address")
        logger.info(f"📬 CUSTODY_ALLOCATE: trade {trade_id} {asset} -> {address}")
        return address

    async def release_funds(
        self, trade_id: str, asset: str, to_address: str, amount: Decimal
    ) -> str:
        """Send escrowed funds to ``to_address``. Returns the provider txid."""
        wallet = self._resolve_wallet(asset)
        payload = {
            "address": to_address,
            "amount": str(to_base_units(asset, amount)),
        }
        data = await self._post(f"/{wallet['coin']}/wallet/{wallet['wallet_id']}/sendcoins", payload)
        txid = data.get("txid")
        if not txid:
            raise CustodyProviderError("No txid returned from custody provider")
        logger.info(f"💸 CUSTODY_RELEASE: trade {trade_id} released {amount} {asset} to {to_address} txid={txid}")
        return txid
