"""
burnbot.utils.config
--------------------
Application configuration loaded from environment variables and an
optional .env file via pydantic-settings.

This covers process-level settings only (RPC endpoints, keys, timing of
the loops). The operator-editable buyback parameters live in the
BuybackConfig row managed by burnbot.store.config_store.

Usage:
    from burnbot.utils.config import settings

    url  = settings.rpc_url
    gap  = settings.manual_spacing_seconds   # 30
"""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# On-chain reserve constants
LAMPORTS_PER_SOL = 1_000_000_000
VAULT_RESERVE_LAMPORTS = 500_000_000          # 0.5 SOL kept in the vault for payouts
TREASURY_RENT_MIN_LAMPORTS = 890_880          # rent-exempt minimum for the treasury PDA

SOL_MINT = "So11111111111111111111111111111111111111112"

# Execution modes
AGGREGATOR = "aggregator"
BONDING_CURVE = "bonding-curve"
EXECUTION_MODES = (AGGREGATOR, BONDING_CURVE)


class Settings(BaseSettings):
    """All burnbot process configuration, sourced from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Solana ---
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    casino_program_id: str = "11111111111111111111111111111111"
    authority_private_key: str = ""     # JSON byte array or base58
    confirm_timeout_seconds: float = 60.0
    skim_enabled: bool = True

    # --- Aggregator (Jupiter) ---
    jupiter_api_url: str = "https://lite-api.jup.ag/swap/v1"
    max_price_impact_pct: float = 5.0
    swap_max_attempts: int = 3
    swap_backoff_seconds: float = 2.0

    # --- Bonding curve (PumpPortal) ---
    pumpportal_api_url: str = "https://pumpportal.fun/api/trade-local"
    pumpportal_pool: str = "pump"
    priority_fee_sol: float = 0.0005
    settle_delay_seconds: float = 2.0

    # --- Scheduling ---
    fast_interval_seconds: float = 10.0
    calendar_cron: str = "0 * * * *"
    manual_spacing_seconds: int = 30
    shutdown_grace_seconds: float = 30.0
    cycle_lease_seconds: float = 900.0  # cross-process cycle lease, must outlast a cycle

    # --- Operator auth ---
    operator_wallets: str = ""          # comma-separated base58 keys; empty = any valid signer
    require_operator_auth: bool = True
    auth_max_skew_seconds: int = 300

    # --- Storage ---
    database_path: Path = Path("data/burnbot.sqlite3")
    redis_url: str = "redis://localhost:6379/0"

    # --- Logging ---
    log_level: str = "INFO"
    log_dir: Path = Path("logs")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("max_price_impact_pct")
    @classmethod
    def _impact_range(cls, v: float) -> float:
        if not 0 < v <= 100:
            raise ValueError("MAX_PRICE_IMPACT_PCT must be in (0, 100]")
        return v

    @field_validator("swap_max_attempts")
    @classmethod
    def _attempts_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("SWAP_MAX_ATTEMPTS must be >= 1")
        return v

    @field_validator("fast_interval_seconds", "confirm_timeout_seconds", "cycle_lease_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("intervals and timeouts must be positive")
        return v

    @property
    def operator_wallet_list(self) -> list[str]:
        return [w.strip() for w in self.operator_wallets.split(",") if w.strip()]


# Module-level singleton, import this everywhere
settings = Settings()
