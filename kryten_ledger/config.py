"""Configuration system for kryten-ledger.

All Pydantic models live here with defaults matching the production bot.
Amounts are plain floats in YAML; engines convert them with
``Decimal(str(value))`` so no binary rounding leaks into the ledger.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from kryten import KrytenConfig
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATHS = (
    "/etc/kryten/kryten-ledger/config.yaml",
    "./config.yaml",
)


# ═══════════════════════════════════════════════════════════════
#  Storage & Identity
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "ledger.db"


class BotConfig(BaseModel):
    username: str = "LedgerBot"


# ═══════════════════════════════════════════════════════════════
#  Assets
# ═══════════════════════════════════════════════════════════════

class AssetConfig(BaseModel):
    symbol: str
    chain_decimals: int = Field(description="Decimals of the on-chain representation")
    max_withdrawal: float


class AssetsConfig(BaseModel):
    native: AssetConfig = Field(
        default_factory=lambda: AssetConfig(symbol="ETH", chain_decimals=18, max_withdrawal=100),
    )
    stable: AssetConfig = Field(
        default_factory=lambda: AssetConfig(symbol="USDC", chain_decimals=6, max_withdrawal=10000),
    )


# ═══════════════════════════════════════════════════════════════
#  Wagering
# ═══════════════════════════════════════════════════════════════

class WagerConfig(BaseModel):
    enabled: bool = True
    allowed_stakes: list[float] = Field(default=[5, 10, 100, 1000, 10000])
    win_probability: float = Field(default=0.25, ge=0.0, le=1.0)
    payout_multiplier: float = Field(default=3.6, gt=0)
    win_xp: int = 20
    loss_xp: int = 5


class JackpotConfig(BaseModel):
    enabled: bool = True
    stake: float = Field(default=100, gt=0)
    win_probability: float = Field(default=0.03, ge=0.0, le=1.0)
    win_xp: int = 50
    loss_xp: int = 10
    offer_after_win: bool = True


class ProgressionConfig(BaseModel):
    base_xp: int = Field(default=100, gt=0)
    growth: float = Field(default=1.5, ge=1.0)
    level_reward: float = Field(default=10, ge=0)
    deposit_xp: int = 15


# ═══════════════════════════════════════════════════════════════
#  Settlement
# ═══════════════════════════════════════════════════════════════

class WithdrawalConfig(BaseModel):
    enabled: bool = True
    fee_rate: float = Field(default=0.01, ge=0.0, lt=1.0)
    operator_address: str = ""


class ChainConfig(BaseModel):
    enabled: bool = False
    rpc_url: str = "http://localhost:8545"
    pool_address: str = ""
    stable_token_address: str = ""
    confirmations: int = Field(default=6, ge=0)
    poll_interval_seconds: float = Field(default=15, gt=0)
    max_blocks_per_poll: int = Field(default=500, gt=0)
    start_block: int | None = None

    @field_validator("pool_address", "stable_token_address")
    @classmethod
    def _lower_address(cls, v: str) -> str:
        return v.strip().lower()


class SignerConfig(BaseModel):
    base_url: str = "http://localhost:8600"
    api_token: str = ""
    timeout_seconds: float = 120


class CommandsConfig(BaseModel):
    rate_limit_per_minute: int = 10
    session_timeout_seconds: int = 120


# NOTE: metrics is inherited from KrytenConfig (kryten.config.MetricsConfig)
#       which includes port, health_path, metrics_path.


# ═══════════════════════════════════════════════════════════════
#  Top-Level Ledger Config
# ═══════════════════════════════════════════════════════════════

class LedgerConfig(KrytenConfig):
    """Full ledger config — extends KrytenConfig with ledger sub-models."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    bot: BotConfig = Field(default_factory=BotConfig)
    assets: AssetsConfig = Field(default_factory=AssetsConfig)
    wager: WagerConfig = Field(default_factory=WagerConfig)
    jackpot: JackpotConfig = Field(default_factory=JackpotConfig)
    progression: ProgressionConfig = Field(default_factory=ProgressionConfig)
    withdrawal: WithdrawalConfig = Field(default_factory=WithdrawalConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    signer: SignerConfig = Field(default_factory=SignerConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def find_config_path(explicit: str | None = None) -> str:
    """Return the explicit path, or the first existing default path."""
    if explicit:
        return explicit
    for candidate in DEFAULT_CONFIG_PATHS:
        if Path(candidate).exists():
            return candidate
    raise FileNotFoundError(
        "No config file found; tried " + ", ".join(DEFAULT_CONFIG_PATHS),
    )


def load_config(config_path: str) -> LedgerConfig:
    """Load and validate YAML config file into LedgerConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return LedgerConfig(**raw)
