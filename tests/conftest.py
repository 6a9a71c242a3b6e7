"""Shared test fixtures for kryten-ledger."""

from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from kryten_ledger.config import LedgerConfig
from kryten_ledger.database import LedgerDatabase
from kryten_ledger.deposit_reconciler import DepositReconciler
from kryten_ledger.jackpot import JackpotController
from kryten_ledger.models import Asset
from kryten_ledger.pm_handler import PmHandler
from kryten_ledger.progression import ProgressionTracker
from kryten_ledger.rng import Draw
from kryten_ledger.wager_engine import WagerEngine
from kryten_ledger.withdrawal import WithdrawalSettler

POOL_ADDRESS = "0x" + "b" * 40
OPERATOR_ADDRESS = "0x" + "c" * 40
TOKEN_ADDRESS = "0x" + "d" * 40
ALICE_ADDRESS = "0x" + "a1" * 20
BOB_ADDRESS = "0x" + "b2" * 20


# ── Minimal config dict matching LedgerConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "nats": {"servers": ["nats://localhost:4222"]},
        "channels": [{"domain": "cytu.be", "channel": "testchannel"}],
        "service": {"name": "ledger"},
        "database": {"path": ":memory:"},
        "bot": {"username": "TestBot"},
        "wager": {
            "allowed_stakes": [5, 10, 100, 1000, 10000],
            "win_probability": 0.25,
            "payout_multiplier": 3.6,
        },
        "jackpot": {"stake": 100, "win_probability": 0.03},
        "progression": {"base_xp": 100, "growth": 1.5, "level_reward": 10, "deposit_xp": 15},
        "withdrawal": {"fee_rate": 0.01, "operator_address": OPERATOR_ADDRESS},
        "chain": {
            "enabled": False,
            "pool_address": POOL_ADDRESS,
            "stable_token_address": TOKEN_ADDRESS,
            "confirmations": 6,
            "max_blocks_per_poll": 500,
        },
        "signer": {"base_url": "http://signer.test", "api_token": "secret"},
        "commands": {"rate_limit_per_minute": 100, "session_timeout_seconds": 120},
    }
    base.update(overrides)
    return base


class FixedDraw:
    """Deterministic stand-in for SecureDraw: yields the given values in order."""

    def __init__(self, *values: float) -> None:
        self.values = list(values) or [0.99]
        self.calls = 0

    def draw(self) -> Draw:
        value = self.values[min(self.calls, len(self.values) - 1)]
        self.calls += 1
        return Draw(value=value, digest=f"{self.calls:064x}")


WIN = 0.0
LOSS = 0.99


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> LedgerConfig:
    """Return a parsed LedgerConfig."""
    return LedgerConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_ledger.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[LedgerDatabase, None]:
    """Provide an initialized database with temp file."""
    db = LedgerDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def mock_client() -> MagicMock:
    """Return a mock KrytenClient with async methods."""
    client = MagicMock()
    client.send_pm = AsyncMock(return_value="corr-id-123")
    client.send_chat = AsyncMock(return_value="corr-id-456")
    client.connect = AsyncMock()
    client.run = AsyncMock()
    client.stop = AsyncMock()
    client.subscribe = AsyncMock()
    client.subscribe_request_reply = AsyncMock()
    client.kv_get = AsyncMock(return_value={})
    client.kv_put = AsyncMock()
    return client


@pytest.fixture
def mock_transfers() -> MagicMock:
    """Mock TransferClient that returns sequential references."""
    transfers = MagicMock()
    transfers.send = AsyncMock(side_effect=lambda to, asset, amount: f"ref-{to[-4:]}-{amount}")
    transfers.start = AsyncMock()
    transfers.stop = AsyncMock()
    return transfers


# ── Seeding helpers ─────────────────────────────────────────

async def make_account(
    db: LedgerDatabase,
    user_id: str = "alice",
    address: str = ALICE_ADDRESS,
    stable: Decimal | int = 0,
    native: Decimal | int = 0,
) -> None:
    """Register an account and seed its balances."""
    await db.upsert_account(user_id, address, username=user_id.capitalize())
    if stable:
        await db.adjust_balance(user_id, Asset.STABLE, Decimal(stable), entry_type="test")
    if native:
        await db.adjust_balance(user_id, Asset.NATIVE, Decimal(native), entry_type="test")


async def fund_pool(db: LedgerDatabase, amount: Decimal | int) -> None:
    await db.adjust_pool(Decimal(amount), entry_type="test")


# ── Engine fixtures ─────────────────────────────────────────

@pytest.fixture
def progression(sample_config: LedgerConfig, database: LedgerDatabase) -> ProgressionTracker:
    return ProgressionTracker(sample_config, database, logging.getLogger("test"))


@pytest.fixture
def wager_rng() -> FixedDraw:
    return FixedDraw(LOSS)


@pytest.fixture
def jackpot_rng() -> FixedDraw:
    return FixedDraw(LOSS)


@pytest.fixture
def wager_engine(
    sample_config: LedgerConfig,
    database: LedgerDatabase,
    progression: ProgressionTracker,
    wager_rng: FixedDraw,
) -> WagerEngine:
    """WagerEngine whose outcomes are driven by ``wager_rng``."""
    return WagerEngine(
        sample_config, database, progression, logging.getLogger("test"), rng=wager_rng,
    )


@pytest.fixture
def jackpot(
    sample_config: LedgerConfig,
    database: LedgerDatabase,
    progression: ProgressionTracker,
    jackpot_rng: FixedDraw,
) -> JackpotController:
    return JackpotController(
        sample_config, database, progression, logging.getLogger("test"), rng=jackpot_rng,
    )


@pytest.fixture
def reconciler(
    sample_config: LedgerConfig,
    database: LedgerDatabase,
    progression: ProgressionTracker,
) -> DepositReconciler:
    return DepositReconciler(sample_config, database, progression, logging.getLogger("test"))


@pytest.fixture
def settler(
    sample_config: LedgerConfig,
    database: LedgerDatabase,
    mock_transfers: MagicMock,
) -> WithdrawalSettler:
    return WithdrawalSettler(sample_config, database, mock_transfers, logging.getLogger("test"))


@pytest.fixture
def pm_handler(
    sample_config: LedgerConfig,
    database: LedgerDatabase,
    mock_client: MagicMock,
    wager_engine: WagerEngine,
    jackpot: JackpotController,
    settler: WithdrawalSettler,
    progression: ProgressionTracker,
) -> PmHandler:
    """PmHandler with all engines wired; sends PMs directly (no worker)."""
    return PmHandler(
        config=sample_config,
        database=database,
        client=mock_client,
        wager_engine=wager_engine,
        jackpot=jackpot,
        withdrawals=settler,
        progression=progression,
        logger=logging.getLogger("test"),
    )


def make_pm_event(username: str, message: str, channel: str = "testchannel") -> MagicMock:
    event = MagicMock()
    event.username = username
    event.channel = channel
    event.message = message
    return event


def last_pm(client: MagicMock) -> str:
    """Text of the most recent PM sent through the mock client."""
    return client.send_pm.call_args[0][2]


def all_pms(client: MagicMock) -> list[str]:
    return [c[0][2] for c in client.send_pm.call_args_list]


def entry_rows(db: LedgerDatabase, sql: str, params: tuple[Any, ...] = ()) -> list[dict]:
    """Run a raw read-only query against the test database (sync)."""
    conn = db._get_connection()
    try:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]
    finally:
        conn.close()
