# config.py
"""
Raffle Indexer — Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".raffle.env",
        env_prefix="",            # read raw names (e.g., COREUM_RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    ADMIN_TOKEN: Optional[str] = None

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    CORS_ORIGINS: List[str] = [
        "http://localhost:4200",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # Logging
    # =========================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # =========================
    # Ledger (Coreum testnet defaults)
    # =========================
    COREUM_CHAIN_ID: str = "coreum-testnet-1"
    COREUM_RPC_URL: str = "https://full-node.testnet-1.coreum.dev:26657"
    COREUM_REST_URL: str = "https://full-node.testnet-1.coreum.dev:1317"
    BECH32_PREFIX: str = "testcore"
    FEE_DENOM: str = "utestcore"
    GAS_PRICE: float = 0.0625
    LEDGER_TIMEOUT_S: float = 15.0

    # Empty means "not configured": indexing and queries refuse to run
    RAFFLE_CONTRACT_ADDRESS: str = ""

    # Mnemonic for the automation account. MUST come from env, never commit one
    AUTOMATION_MNEMONIC: Optional[str] = None

    # Conservative fixed budget; end_raffle verifies a BLS signature on-chain
    SETTLEMENT_GAS_LIMIT: int = 1_000_000
    # broadcast + inclusion wait, run in a worker thread
    EXECUTE_TIMEOUT_S: float = 90.0

    # =========================
    # Indexer
    # =========================
    INDEXING_START_HEIGHT: int = 1
    INDEXING_BATCH_SIZE: int = 100
    INDEXING_INTERVAL_MS: int = 5_000
    EXPIRY_SWEEP_INTERVAL_MS: int = 120_000
    HEALTH_MAX_LAG: int = 500

    @field_validator("INDEXING_START_HEIGHT", "INDEXING_BATCH_SIZE")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    # =========================
    # Automation (settlement)
    # =========================
    AUTOMATION_ENABLED: bool = False
    AUTOMATION_INTERVAL_MS: int = 60_000
    SETTLEMENT_SAFETY_BUFFER_S: int = 30

    # =========================
    # Randomness beacon (drand, League of Entropy mainnet)
    # =========================
    DRAND_URL: str = "https://api.drand.sh"
    DRAND_TIMEOUT_S: float = 10.0

    # =========================
    # Database
    # =========================
    DB_PATH: str = "/data/raffle_indexer.db"

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def signing_url(self) -> str:
        """cosmpy NetworkConfig url (REST transport)."""
        return "rest+" + self.COREUM_REST_URL.rstrip("/")

    @property
    def indexing_interval_s(self) -> float:
        return self.INDEXING_INTERVAL_MS / 1000

    @property
    def expiry_sweep_interval_s(self) -> float:
        return self.EXPIRY_SWEEP_INTERVAL_MS / 1000

    @property
    def automation_interval_s(self) -> float:
        return self.AUTOMATION_INTERVAL_MS / 1000

# Instantiate global settings (values resolved from environment)
settings = Settings()
