"""Configuration management for the BitCard treasury fulfillment engine"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any, List

logger = logging.getLogger(__name__)


class Config:
    """Application configuration

    Static, deploy-time configuration only. Kill switches and limits that
    admins flip at runtime live in the system_settings table and are read
    fresh by the allocator on every pass (see services/system_settings.py).
    """

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "7"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "15"))
    DB_APPLICATION_NAME = os.getenv("DB_APPLICATION_NAME", "bitcard_fulfillment_engine")

    # Custody provider (Fireblocks-style REST API)
    CUSTODY_API_URL = os.getenv("CUSTODY_API_URL", "https://api.fireblocks.io/v1")
    CUSTODY_API_KEY = os.getenv("CUSTODY_API_KEY") or os.getenv("FIREBLOCKS_API_KEY")
    CUSTODY_VAULT_ID = os.getenv("CUSTODY_VAULT_ID", "0")
    CUSTODY_TIMEOUT_SECONDS = int(os.getenv("CUSTODY_TIMEOUT_SECONDS", "20"))
    CUSTODY_ASSET_IDS: Dict[str, str] = {
        "BTC": os.getenv("CUSTODY_BTC_ASSET_ID", "BTC"),
        "USDC": os.getenv("CUSTODY_USDC_ASSET_ID", "USDC"),
        "COMPANY_USDC": os.getenv("CUSTODY_COMPANY_USDC_ASSET_ID", "USDC"),
    }
    CUSTODY_COMPANY_VAULT_ID = os.getenv("CUSTODY_COMPANY_VAULT_ID", CUSTODY_VAULT_ID)

    # Blockchain confirmations before a sent transfer counts as COMPLETED
    REQUIRED_CONFIRMATIONS = int(os.getenv("REQUIRED_CONFIRMATIONS", "3"))

    # Price oracle
    COINGECKO_PRICE_URL = os.getenv(
        "COINGECKO_PRICE_URL",
        "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd",
    )
    COINBASE_PRICE_URL = os.getenv(
        "COINBASE_PRICE_URL", "https://api.coinbase.com/v2/prices/BTC-USD/spot"
    )
    PRICE_CACHE_TTL_SECONDS = int(os.getenv("PRICE_CACHE_TTL_SECONDS", "15"))
    PRICE_REQUEST_TIMEOUT_SECONDS = int(os.getenv("PRICE_REQUEST_TIMEOUT_SECONDS", "5"))
    BTC_PRICE_MIN_USD = Decimal(os.getenv("BTC_PRICE_MIN_USD", "1000"))
    BTC_PRICE_MAX_USD = Decimal(os.getenv("BTC_PRICE_MAX_USD", "1000000"))

    # Allocator
    ALLOCATOR_BATCH_SIZE = int(os.getenv("ALLOCATOR_BATCH_SIZE", "50"))
    SENDER_BATCH_SIZE = int(os.getenv("SENDER_BATCH_SIZE", "20"))

    # Background jobs
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    ALLOCATOR_INTERVAL_SECONDS = int(os.getenv("ALLOCATOR_INTERVAL_SECONDS", "60"))
    SENDER_INTERVAL_SECONDS = int(os.getenv("SENDER_INTERVAL_SECONDS", "90"))
    RECONCILIATION_INTERVAL_MINUTES = int(os.getenv("RECONCILIATION_INTERVAL_MINUTES", "60"))
    LOW_INVENTORY_CHECK_INTERVAL_MINUTES = int(
        os.getenv("LOW_INVENTORY_CHECK_INTERVAL_MINUTES", "15")
    )
    RECONCILIATION_ASSETS: List[str] = [
        asset.strip().upper()
        for asset in os.getenv("RECONCILIATION_ASSETS", "BTC,USDC,COMPANY_USDC").split(",")
        if asset.strip()
    ]

    # Defaults seeded into system_settings on first read
    DEFAULT_AUTO_SEND_ENABLED = os.getenv("DEFAULT_AUTO_SEND_ENABLED", "false").lower() == "true"
    DEFAULT_DAILY_BTC_LIMIT = Decimal(os.getenv("DEFAULT_DAILY_BTC_LIMIT", "10"))
    DEFAULT_MAX_TX_BTC_LIMIT = Decimal(os.getenv("DEFAULT_MAX_TX_BTC_LIMIT", "1"))
    DEFAULT_LOW_INVENTORY_THRESHOLD_BTC = Decimal(
        os.getenv("DEFAULT_LOW_INVENTORY_THRESHOLD_BTC", "0.5")
    )
    DEFAULT_RECONCILIATION_TOLERANCE_PCT = Decimal(
        os.getenv("DEFAULT_RECONCILIATION_TOLERANCE_PCT", "0")
    )

    # Audit trail
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "audit.log")

    # HTTP server
    PORT = int(os.getenv("PORT", "5000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate(cls) -> Dict[str, Any]:
        """Validate required configuration and report missing items"""
        missing = []
        warnings = []

        if not cls.DATABASE_URL:
            missing.append("DATABASE_URL")

        if not cls.CUSTODY_API_KEY:
            warnings.append("CUSTODY_API_KEY not set - settlement sends and custody reconciliation disabled")

        if cls.DEFAULT_RECONCILIATION_TOLERANCE_PCT < 0:
            missing.append("DEFAULT_RECONCILIATION_TOLERANCE_PCT must be non-negative")

        for item in missing:
            logger.error(f"❌ CONFIG_MISSING: {item}")
        for item in warnings:
            logger.warning(f"⚠️ CONFIG_WARNING: {item}")

        return {"valid": not missing, "missing": missing, "warnings": warnings}

    @classmethod
    def custody_configured(cls) -> bool:
        return bool(cls.CUSTODY_API_KEY)
