"""Configuration management for the multi-chain deposit and withdrawal ledger"""

import os
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}={raw!r}, using default {default}")
        return default


class Config:
    """Application configuration"""

    # Environment detection (order of precedence)
    # ENVIRONMENT takes absolute priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()

    if ENVIRONMENT:
        IS_PRODUCTION = (ENVIRONMENT == "production")
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))

    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database configuration
    # Production must point at PostgreSQL; development falls back to a local SQLite file
    DATABASE_URL = os.getenv("DATABASE_URL") or (
        None if IS_PRODUCTION else "sqlite:///./ledger.db"
    )
    DB_POOL_SIZE = _int_env("DB_POOL_SIZE", 7)
    DB_MAX_OVERFLOW = _int_env("DB_MAX_OVERFLOW", 15)
    DB_POOL_RECYCLE_SECONDS = _int_env("DB_POOL_RECYCLE_SECONDS", 3600)

    # Chains polled by the scanner workers
    ENABLED_CHAINS: List[str] = [
        c.strip().upper()
        for c in os.getenv("ENABLED_CHAINS", "ETH,BSC,BTC").split(",")
        if c.strip()
    ]

    # JSON-RPC endpoints
    RPC_URLS: Dict[str, str] = {
        "ETH": os.getenv("ETH_RPC_URL", "https://eth.llamarpc.com"),
        "BSC": os.getenv("BSC_RPC_URL", "https://bsc-dataseed.binance.org"),
        "TRX": os.getenv("TRX_RPC_URL", "https://api.trongrid.io"),
        "ARB": os.getenv("ARB_RPC_URL", "https://arb1.arbitrum.io/rpc"),
        "MATIC": os.getenv("MATIC_RPC_URL", "https://polygon-rpc.com"),
        "AVAX": os.getenv("AVAX_RPC_URL", "https://api.avax.network/ext/bc/C/rpc"),
        "OP": os.getenv("OP_RPC_URL", "https://mainnet.optimism.io"),
        "SOL": os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com"),
    }

    # Etherscan-family explorer API keys (native transfer history)
    EXPLORER_API_KEYS: Dict[str, Optional[str]] = {
        "ETH": os.getenv("ETHERSCAN_API_KEY"),
        "BSC": os.getenv("BSCSCAN_API_KEY") or os.getenv("ETHERSCAN_API_KEY"),
        "ARB": os.getenv("ARBISCAN_API_KEY") or os.getenv("ETHERSCAN_API_KEY"),
        "MATIC": os.getenv("POLYGONSCAN_API_KEY") or os.getenv("ETHERSCAN_API_KEY"),
        "AVAX": os.getenv("SNOWTRACE_API_KEY") or os.getenv("ETHERSCAN_API_KEY"),
        "OP": os.getenv("OPTIMISTIC_ETHERSCAN_API_KEY") or os.getenv("ETHERSCAN_API_KEY"),
    }

    # Bitcoin data provider
    BTC_PROVIDER = os.getenv("BTC_PROVIDER", "mempool").lower()
    BTC_API_URL = os.getenv(
        "BTC_API_URL",
        "https://api.blockcypher.com/v1/btc/main" if BTC_PROVIDER == "blockcypher"
        else "https://mempool.space/api",
    )
    BLOCKCYPHER_API_KEY = os.getenv("BLOCKCYPHER_API_KEY", "")
    BTC_CONFIRMATIONS = _int_env("BTC_CONFIRMATIONS", 3)

    # Price oracle
    COINGECKO_API_URL = os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3")
    PRICE_CACHE_TTL_SECONDS = _float_env("PRICE_CACHE_TTL_SECONDS", 60.0)
    STABLECOIN_UPDATE_INTERVAL_SECONDS = _float_env("STABLECOIN_UPDATE_INTERVAL_SECONDS", 5.0)

    # Scanner limits
    INITIAL_SCAN_LOOKBACK_BLOCKS = _int_env("INITIAL_SCAN_LOOKBACK_BLOCKS", 1000)
    MAX_BLOCKS_PER_SCAN = _int_env("MAX_BLOCKS_PER_SCAN", 10000)
    SCANNER_REQUEST_DELAY_SECONDS = _float_env("SCANNER_REQUEST_DELAY_SECONDS", 0.2)
    BTC_REQUEST_DELAY_SECONDS = _float_env("BTC_REQUEST_DELAY_SECONDS", 0.5)
    HTTP_TIMEOUT_SECONDS = _float_env("HTTP_TIMEOUT_SECONDS", 15.0)

    # Worker intervals
    CONFIRMATION_REFRESH_INTERVAL_SECONDS = _int_env("CONFIRMATION_REFRESH_INTERVAL_SECONDS", 30)
    USD_VALUE_REFRESH_INTERVAL_SECONDS = _int_env("USD_VALUE_REFRESH_INTERVAL_SECONDS", 300)
    SCHEDULER_MISFIRE_GRACE_SECONDS = _int_env("SCHEDULER_MISFIRE_GRACE_SECONDS", 30)

    # Withdrawal verification
    VERIFICATION_CODE_TTL_MINUTES = _int_env("VERIFICATION_CODE_TTL_MINUTES", 5)

    # Email (Brevo)
    BREVO_API_KEY = os.getenv("BREVO_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@example.com")
    FROM_NAME = os.getenv("FROM_NAME", "Wallet Service")
    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "Wallet")

    # Notification retention
    NOTIFICATION_RETENTION_DAYS = _int_env("NOTIFICATION_RETENTION_DAYS", 30)

    # Monetary precision for stored amounts
    AMOUNT_PRECISION = Decimal("0.000000000000000001")

    @staticmethod
    def chain_poll_interval_override(chain: str) -> Optional[int]:
        """Per-chain poll interval from <CHAIN>_POLL_INTERVAL_SECONDS, if set"""
        raw = os.getenv(f"{chain.upper()}_POLL_INTERVAL_SECONDS")
        if not raw:
            return None
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"⚠️ Ignoring invalid poll interval override for {chain}: {raw!r}")
            return None
        return value if value > 0 else None

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Ledger Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        logger.info(f"   Enabled chains: {', '.join(Config.ENABLED_CHAINS)}")
        logger.info(f"   BTC provider: {Config.BTC_PROVIDER}")
        logger.info(f"   Email configured: {bool(Config.BREVO_API_KEY)}")
        if not Config.EXPLORER_API_KEYS.get("ETH"):
            logger.warning("⚠️ ETHERSCAN_API_KEY not set - native EVM transfers will not be scanned")
