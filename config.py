"""Configuration management for the settlement and ledger engine"""

import os
import logging
from decimal import Decimal
from typing import List

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database configuration
    # SQLite is only meant for local runs and tests; production uses PostgreSQL
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./settlement_ledger.db")

    # Blockchain configuration
    BLOCKCHAIN_RPC_URL = os.getenv("BLOCKCHAIN_RPC_URL", "http://localhost:8545")
    # Hot-wallet signer endpoint (Clef / web3signer); owns the key and the nonce sequence
    SIGNER_RPC_URL = os.getenv("SIGNER_RPC_URL", BLOCKCHAIN_RPC_URL)
    TOKEN_CONTRACT_ADDRESS = os.getenv("TOKEN_CONTRACT_ADDRESS", "")
    TOKEN_SYMBOL = os.getenv("TOKEN_SYMBOL", "USDT")
    DEPOSIT_ADDRESS = os.getenv("DEPOSIT_ADDRESS", "")
    HOT_WALLET_ADDRESS = os.getenv("HOT_WALLET_ADDRESS", DEPOSIT_ADDRESS)
    RPC_TIMEOUT_SECONDS = int(os.getenv("RPC_TIMEOUT_SECONDS", "30"))
    WITHDRAWAL_RECEIPT_POLL_SECONDS = float(os.getenv("WITHDRAWAL_RECEIPT_POLL_SECONDS", "3"))

    # Settlement rules
    MIN_CONFIRMATIONS = int(os.getenv("MIN_CONFIRMATIONS", "5"))
    WITHDRAWAL_FEE = Decimal(os.getenv("WITHDRAWAL_FEE", "0.4"))
    GAS_LIMIT_MARGIN = Decimal(os.getenv("GAS_LIMIT_MARGIN", "1.2"))

    # Deposit intents
    DEPOSIT_BASE_AMOUNT = Decimal(os.getenv("DEPOSIT_BASE_AMOUNT", "10"))
    DEPOSIT_INTENT_TTL_HOURS = int(os.getenv("DEPOSIT_INTENT_TTL_HOURS", "24"))

    # Exchange rates (singleton row defaults)
    DEFAULT_RATE_USD = Decimal(os.getenv("DEFAULT_RATE_USD", "1.0"))
    DEFAULT_RATE_UAH = Decimal(os.getenv("DEFAULT_RATE_UAH", "39.5"))

    HISTORY_DEFAULT_LIMIT = int(os.getenv("HISTORY_DEFAULT_LIMIT", "10"))

    # Ledger safety
    # When enabled a negative computed balance raises instead of being clamped to zero
    STRICT_LEDGER_INVARIANTS = _env_bool("STRICT_LEDGER_INVARIANTS")
    STALE_WITHDRAWAL_MINUTES = int(os.getenv("STALE_WITHDRAWAL_MINUTES", "30"))

    @classmethod
    def validate(cls) -> List[str]:
        """Return the names of required settings that are missing"""
        missing = []
        for name in ("DATABASE_URL", "BLOCKCHAIN_RPC_URL", "TOKEN_CONTRACT_ADDRESS", "DEPOSIT_ADDRESS"):
            if not getattr(cls, name):
                missing.append(name)
        return missing

    @staticmethod
    def log_environment_config():
        """Log the active configuration without exposing credentials"""
        database_kind = Config.DATABASE_URL.split(":", 1)[0]
        logger.info(f"🔧 CONFIG: environment={Config.ENVIRONMENT} database={database_kind}")
        logger.info(
            f"🔧 CONFIG: token={Config.TOKEN_SYMBOL} contract={Config.TOKEN_CONTRACT_ADDRESS or 'unset'} "
            f"deposit_address={Config.DEPOSIT_ADDRESS or 'unset'}"
        )
        logger.info(
            f"🔧 CONFIG: min_confirmations={Config.MIN_CONFIRMATIONS} withdrawal_fee={Config.WITHDRAWAL_FEE} "
            f"intent_ttl={Config.DEPOSIT_INTENT_TTL_HOURS}h strict_invariants={Config.STRICT_LEDGER_INVARIANTS}"
        )
        missing = Config.validate()
        if missing:
            logger.warning(f"⚠️ CONFIG: missing settings: {', '.join(missing)}")
