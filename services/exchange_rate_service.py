"""USD to NGN rate lookup with primary/fallback sources and a short-lived cache"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import aiohttp

from caching.cached_value import CachedValue, cache_or_fetch
from config import Config

logger = logging.getLogger(__name__)


class ExchangeRateError(Exception):
    """Custom exception for exchange rate source errors"""

    pass


class ExchangeRateService:
    """Rates come from the primary source, then the fallback, then the last cached value, then a static default"""

    def __init__(
        self,
        primary_url: Optional[str] = None,
        fallback_url: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        default_rate: Optional[Decimal] = None,
    ):
        self.primary_url = primary_url or Config.EXCHANGE_RATE_PRIMARY_URL
        self.fallback_url = fallback_url or Config.EXCHANGE_RATE_FALLBACK_URL
        self.ttl_seconds = ttl_seconds or Config.EXCHANGE_RATE_CACHE_SECONDS
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.EXCHANGE_RATE_TIMEOUT_SECONDS)
        self.default_rate = default_rate or Config.DEFAULT_USD_NGN_RATE
        self._cached: Optional[CachedValue[Decimal]] = None

    async def get_usd_to_ngn(self, now: Optional[float] = None) -> Decimal:
        try:
            self._cached = await cache_or_fetch(self._cached, self._fetch_rate, self.ttl_seconds, now)
            return self._cached.value
        except ExchangeRateError as e:
            if self._cached is not None:
                logger.warning(f"⚠️ RATE_STALE: using cached USD/NGN {self._cached.value} after error: {e}")
                return self._cached.value
            logger.warning(f"⚠️ RATE_DEFAULT: using static USD/NGN {self.default_rate} after error: {e}")
            return self.default_rate

    async def _fetch_rate(self) -> Decimal:
        try:
            data = await self._get_json(self.primary_url)
            return self._parse_rate(data, ("tether", "ngn"))
        except ExchangeRateError as e:
            logger.info(f"🔁 RATE_FALLBACK: primary source failed ({e}), trying fallback")
        data = await self._get_json(self.fallback_url)
        return self._parse_rate(data, ("rates", "NGN"))

    async def _get_json(self, url: str) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise ExchangeRateError(f"HTTP {response.status} from {url}")
                    return await response.json()
        except asyncio.TimeoutError:
            raise ExchangeRateError(f"Timed out fetching {url}")
        except aiohttp.ClientError as e:
            raise ExchangeRateError(f"Network error: {e}")

    @staticmethod
    def _parse_rate(data: Dict[str, Any], path) -> Decimal:
        node: Any = data
        for key in path:
            if not isinstance(node, dict) or key not in node:
                raise ExchangeRateError(f"Rate missing at {'.'.join(path)}")
            node = node[key]
        try:
            rate = Decimal(str(node))
        except (InvalidOperation, ValueError):
            raise ExchangeRateError(f"Invalid rate value {node!r}")
        if rate <= 0:
            raise ExchangeRateError(f"Non-positive rate {rate}")
        return rate
