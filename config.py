"""
Escrow service configuration
Settings are read from the environment; a local .env file is loaded first.
"""

import os
import logging
from decimal import Decimal
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _parse_wallet_map(raw: str) -> Dict[str, Dict[str, str]]:
    """Parse CUSTODY_WALLETS of the form ``BTC=btc:walletid,USDT=sol:walletid``"""
    wallets: Dict[str, Dict[str, str]] = {}
    for item in filter(None, (part.strip() for part in raw.split(","))):
        asset, _, target = item.partition("=")
        coin, _, wallet_id = target.partition(":")
        if not asset or not coin:
            logger.warning(f"⚠️ CONFIG: Ignoring malformed CUSTODY_WALLETS entry '{item}'")
            continue
        wallets[asset.strip().upper()] = {"coin": coin.strip(), "wallet_id": wallet_id.strip()}
    return wallets


class Config:
    """Application configuration from environment variables"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./escrow.db")

    # Custody provider (allocate / release / transfer notifications)
    CUSTODY_PROVIDER_BASE_URL = os.getenv("CUSTODY_PROVIDER_BASE_URL", "https://app.bitgo.com/api/v2")
    CUSTODY_PROVIDER_TOKEN = os.getenv("CUSTODY_PROVIDER_TOKEN", "")
    CUSTODY_PROVIDER_TIMEOUT_SECONDS = float(os.getenv("CUSTODY_PROVIDER_TIMEOUT_SECONDS", "15"))
    CUSTODY_WALLETS = _parse_wallet_map(os.getenv("CUSTODY_WALLETS", "BTC=btc:,USDT=sol:,ETH=eth:"))
    CUSTODY_WEBHOOK_SECRET = os.getenv("CUSTODY_WEBHOOK_SECRET", "")

    # Fixed-point decimals per asset, used to normalise base-unit amounts.
    # A notification "value" is read as base units for every coin, not only BTC;
    # providers that send whole units for other coins must send "amount" instead.
    ASSET_DECIMALS: Dict[str, int] = {
        "BTC": 8,
        "ETH": 18,
        "USDT": 6,
        "SOL": 9,
    }

    # Escrow address ledger
    ESCROW_ADDRESS_TTL_HOURS = int(os.getenv("ESCROW_ADDRESS_TTL_HOURS", "24"))

    # Reconciliation
    PAYMENT_TOLERANCE_PERCENT = Decimal(os.getenv("PAYMENT_TOLERANCE_PERCENT", "1"))
    OBLIGATION_TTL_HOURS = int(os.getenv("OBLIGATION_TTL_HOURS", "24"))

    # Credits: 1 credit = 0.01 USD
    CREDIT_USD_VALUE = Decimal(os.getenv("CREDIT_USD_VALUE", "0.01"))
    MIN_CREDIT_PURCHASE = int(os.getenv("MIN_CREDIT_PURCHASE", "10"))
    MAX_CREDIT_PURCHASE = int(os.getenv("MAX_CREDIT_PURCHASE", "100000"))

    # Session persistence and recovery
    SESSION_EXPIRY_HOURS = int(os.getenv("SESSION_EXPIRY_HOURS", "24"))
    RECOVERY_ROUTES: List[str] = [
        route.strip()
        for route in os.getenv("RECOVERY_ROUTES", "/home,/dashboard").split(",")
        if route.strip()
    ]

    # Background jobs
    PURGE_INTERVAL_MINUTES = int(os.getenv("PURGE_INTERVAL_MINUTES", "15"))

    # Exchange rates
    EXCHANGE_RATE_PRIMARY_URL = os.getenv(
        "EXCHANGE_RATE_PRIMARY_URL",
        "https://api.coingecko.com/api/v3/simple/price?ids=tether&vs_currencies=ngn",
    )
    EXCHANGE_RATE_FALLBACK_URL = os.getenv(
        "EXCHANGE_RATE_FALLBACK_URL",
        "https://api.exchangerate-api.com/v4/latest/USD",
    )
    EXCHANGE_RATE_CACHE_SECONDS = int(os.getenv("EXCHANGE_RATE_CACHE_SECONDS", "300"))
    EXCHANGE_RATE_TIMEOUT_SECONDS = float(os.getenv("EXCHANGE_RATE_TIMEOUT_SECONDS", "10"))
    DEFAULT_USD_NGN_RATE = Decimal(os.getenv("DEFAULT_USD_NGN_RATE", "1650"))

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENVIRONMENT.lower() in ("production", "prod")
