"""SQLite ledger store for kryten-ledger.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Every mutation is either a single conditional UPDATE or a BEGIN IMMEDIATE
transaction. SQLite's write lock is therefore the serialization primitive for
accounts and the pool: no caller ever composes a separate read and write.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, TypeVar

from .errors import (
    AddressInUse,
    InsufficientFunds,
    InsufficientPool,
    InvalidAddress,
    NotRegistered,
    StoreUnavailable,
)
from .models import (
    POOL_ASSET,
    Account,
    Asset,
    DepositEvent,
    ExperienceUpdate,
    JackpotSettlement,
    WagerSettlement,
    Withdrawal,
)
from .utils import from_units, is_valid_address, normalize_address, now_utc, to_units

T = TypeVar("T")

LEADERBOARD_CRITERIA = ("balances", "winners", "bettors", "winrates")
MIN_WAGERS_FOR_WINRATE = 10


class LedgerDatabase:
    """SQLite-backed persistence for balances, the pool and settlement records."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn: Callable[[], T]) -> T:
        """Run a sync store function in the executor; map driver failures."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as e:
            self._logger.error("Ledger store unavailable: %s", e)
            raise StoreUnavailable(str(e)) from e

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        await self._run(self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    user_id TEXT PRIMARY KEY,
                    username TEXT,
                    address TEXT UNIQUE,
                    native_balance INTEGER NOT NULL DEFAULT 0 CHECK (native_balance >= 0),
                    stable_balance INTEGER NOT NULL DEFAULT 0 CHECK (stable_balance >= 0),
                    total_wagers INTEGER DEFAULT 0,
                    total_wagered INTEGER DEFAULT 0,
                    wins INTEGER DEFAULT 0,
                    losses INTEGER DEFAULT 0,
                    total_won INTEGER DEFAULT 0,
                    total_lost INTEGER DEFAULT 0,
                    biggest_wager INTEGER DEFAULT 0,
                    xp INTEGER DEFAULT 0,
                    level INTEGER DEFAULT 1,
                    login_streak INTEGER DEFAULT 0,
                    last_login_date TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS pool (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    house_retained INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("INSERT OR IGNORE INTO pool (id, balance) VALUES (1, 0)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT,
                    asset TEXT NOT NULL,
                    account_delta INTEGER NOT NULL DEFAULT 0,
                    pool_delta INTEGER NOT NULL DEFAULT 0,
                    entry_type TEXT NOT NULL,
                    reference TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # ── Deposit idempotency ─────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credited_deposits (
                    tx_key TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    block_number INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS unmatched_deposits (
                    tx_key TEXT PRIMARY KEY,
                    from_address TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    block_number INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # ── Withdrawals ─────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS withdrawals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    payout_amount INTEGER NOT NULL,
                    fee_amount INTEGER NOT NULL,
                    to_address TEXT NOT NULL,
                    fee_address TEXT,
                    status TEXT NOT NULL,
                    payout_reference TEXT,
                    fee_reference TEXT,
                    error TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS scan_cursors (
                    name TEXT PRIMARY KEY,
                    block_number INTEGER NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ledger_entries_account "
                "ON ledger_entries(account_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ledger_entries_type "
                "ON ledger_entries(entry_type)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_withdrawals_status "
                "ON withdrawals(status)"
            )

            conn.commit()
            self._logger.info("Ledger tables created/verified")
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Internal helpers (run inside an open connection)
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _insert_entry(
        conn: sqlite3.Connection,
        account_id: str | None,
        asset: Asset,
        account_delta: int,
        pool_delta: int,
        entry_type: str,
        reference: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        conn.execute(
            "INSERT INTO ledger_entries (account_id, asset, account_delta, pool_delta, "
            "entry_type, reference, metadata) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                account_id, asset.value, account_delta, pool_delta, entry_type,
                reference, json.dumps(metadata) if metadata else None,
            ),
        )

    @staticmethod
    def _account_exists(conn: sqlite3.Connection, user_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM accounts WHERE user_id = ?", (user_id,),
        ).fetchone()
        return row is not None

    @staticmethod
    def _debit_failure(conn: sqlite3.Connection, user_id: str, asset: Asset) -> Exception:
        """Explain why a conditional debit matched no row."""
        if not LedgerDatabase._account_exists(conn, user_id):
            return NotRegistered(f"No account for {user_id}")
        return InsufficientFunds(f"Insufficient {asset.value} balance for {user_id}")

    @staticmethod
    def _fetch_account(conn: sqlite3.Connection, user_id: str) -> Account | None:
        row = conn.execute(
            "SELECT * FROM accounts WHERE user_id = ?", (user_id,),
        ).fetchone()
        return Account.from_row(dict(row)) if row else None

    @staticmethod
    def _fetch_units(conn: sqlite3.Connection, user_id: str, asset: Asset) -> int:
        row = conn.execute(
            f"SELECT {asset.column} FROM accounts WHERE user_id = ?", (user_id,),
        ).fetchone()
        return row[0] if row else 0

    @staticmethod
    def _fetch_pool_units(conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT balance FROM pool WHERE id = 1").fetchone()[0]

    # ══════════════════════════════════════════════════════════
    #  Account Operations
    # ══════════════════════════════════════════════════════════

    async def get_account(self, user_id: str) -> Account | None:
        """Return the account, or None if not registered."""

        def _sync() -> Account | None:
            conn = self._get_connection()
            try:
                return self._fetch_account(conn, user_id)
            finally:
                conn.close()

        return await self._run(_sync)

    async def require_account(self, user_id: str) -> Account:
        """Return the account or raise NotRegistered."""
        account = await self.get_account(user_id)
        if account is None:
            raise NotRegistered(f"No account for {user_id}")
        return account

    async def get_account_by_address(self, address: str) -> Account | None:
        """Look up the account bound to an on-chain address."""
        addr = normalize_address(address)

        def _sync() -> Account | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM accounts WHERE address = ?", (addr,),
                ).fetchone()
                return Account.from_row(dict(row)) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def upsert_account(
        self, user_id: str, address: str, username: str | None = None,
    ) -> Account:
        """Create the account on first call, otherwise rebind its address.

        An address already bound to a different account is rejected.
        """
        if not is_valid_address(address):
            raise InvalidAddress(f"Not a valid address: {address!r}")
        addr = normalize_address(address)

        def _sync() -> Account:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                owner = conn.execute(
                    "SELECT user_id FROM accounts WHERE address = ?", (addr,),
                ).fetchone()
                if owner and owner["user_id"] != user_id:
                    conn.rollback()
                    raise AddressInUse(f"Address {addr} is bound to another account")
                conn.execute(
                    "INSERT INTO accounts (user_id, username, address) VALUES (?, ?, ?) "
                    "ON CONFLICT(user_id) DO UPDATE SET "
                    "address = excluded.address, "
                    "username = COALESCE(excluded.username, accounts.username), "
                    "updated_at = CURRENT_TIMESTAMP",
                    (user_id, username, addr),
                )
                account = self._fetch_account(conn, user_id)
                conn.commit()
                return account
            finally:
                conn.close()

        account = await self._run(_sync)
        self._logger.info("Account %s bound to %s", user_id, addr)
        return account

    async def record_login(self, user_id: str) -> int:
        """Advance the daily login streak. Returns the current streak (0 if unknown)."""
        today = now_utc().date()
        today_s = today.isoformat()
        yesterday_s = (today - timedelta(days=1)).isoformat()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT login_streak, last_login_date FROM accounts WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    return 0
                if row["last_login_date"] == today_s:
                    conn.rollback()
                    return row["login_streak"]
                streak = row["login_streak"] + 1 if row["last_login_date"] == yesterday_s else 1
                conn.execute(
                    "UPDATE accounts SET login_streak = ?, last_login_date = ? WHERE user_id = ?",
                    (streak, today_s, user_id),
                )
                conn.commit()
                return streak
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Balance & Pool Primitives
    # ══════════════════════════════════════════════════════════

    async def adjust_balance(
        self,
        user_id: str,
        asset: Asset,
        delta: Decimal,
        entry_type: str = "adjustment",
        reference: str | None = None,
    ) -> Decimal:
        """Atomically add ``delta`` to an account balance. Returns the new balance.

        Raises NotRegistered, or InsufficientFunds if the result would be negative.
        """
        units = to_units(delta, asset.decimals)
        col = asset.column

        def _sync() -> Decimal:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    f"UPDATE accounts SET {col} = {col} + ?, updated_at = CURRENT_TIMESTAMP "
                    f"WHERE user_id = ? AND {col} + ? >= 0",
                    (units, user_id, units),
                )
                if cursor.rowcount == 0:
                    error = self._debit_failure(conn, user_id, asset)
                    conn.rollback()
                    raise error
                self._insert_entry(conn, user_id, asset, units, 0, entry_type, reference)
                balance = self._fetch_units(conn, user_id, asset)
                conn.commit()
                return from_units(balance, asset.decimals)
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_pool(self) -> Decimal:
        """Return the pool balance."""

        def _sync() -> Decimal:
            conn = self._get_connection()
            try:
                return from_units(self._fetch_pool_units(conn), POOL_ASSET.decimals)
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_pool_state(self) -> dict[str, Decimal]:
        """Return pool balance and cumulative house-retained amount."""

        def _sync() -> dict[str, Decimal]:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT balance, house_retained FROM pool WHERE id = 1",
                ).fetchone()
                return {
                    "balance": from_units(row["balance"], POOL_ASSET.decimals),
                    "house_retained": from_units(row["house_retained"], POOL_ASSET.decimals),
                }
            finally:
                conn.close()

        return await self._run(_sync)

    async def adjust_pool(
        self,
        delta: Decimal,
        entry_type: str = "adjustment",
        reference: str | None = None,
    ) -> Decimal:
        """Atomically add ``delta`` to the pool. Raises InsufficientPool below zero."""
        units = to_units(delta, POOL_ASSET.decimals)

        def _sync() -> Decimal:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    "UPDATE pool SET balance = balance + ?, updated_at = CURRENT_TIMESTAMP "
                    "WHERE id = 1 AND balance + ? >= 0",
                    (units, units),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise InsufficientPool(f"Pool cannot cover {delta}")
                self._insert_entry(conn, None, POOL_ASSET, 0, units, entry_type, reference)
                balance = self._fetch_pool_units(conn)
                conn.commit()
                return from_units(balance, POOL_ASSET.decimals)
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Wager Settlement
    # ══════════════════════════════════════════════════════════

    async def settle_wager(
        self,
        user_id: str,
        stake: Decimal,
        won: bool,
        multiplier: Decimal,
        metadata: dict[str, Any] | None = None,
    ) -> WagerSettlement:
        """Debit stake to pool, pay a (possibly capped) win, update stats. One transaction."""
        decimals = POOL_ASSET.decimals
        col = POOL_ASSET.column
        stake_u = to_units(stake, decimals)
        target_u = to_units(stake * multiplier, decimals) if won else 0

        def _sync() -> WagerSettlement:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    f"UPDATE accounts SET {col} = {col} - ? WHERE user_id = ? AND {col} >= ?",
                    (stake_u, user_id, stake_u),
                )
                if cursor.rowcount == 0:
                    error = self._debit_failure(conn, user_id, POOL_ASSET)
                    conn.rollback()
                    raise error
                conn.execute("UPDATE pool SET balance = balance + ? WHERE id = 1", (stake_u,))
                self._insert_entry(
                    conn, user_id, POOL_ASSET, -stake_u, stake_u, "wager_stake", metadata=metadata,
                )

                payout_u = 0
                if won:
                    payout_u = min(target_u, self._fetch_pool_units(conn))
                    conn.execute(
                        "UPDATE pool SET balance = balance - ? WHERE id = 1", (payout_u,),
                    )
                    conn.execute(
                        f"UPDATE accounts SET {col} = {col} + ? WHERE user_id = ?",
                        (payout_u, user_id),
                    )
                    self._insert_entry(
                        conn, user_id, POOL_ASSET, payout_u, -payout_u, "wager_payout",
                        metadata=metadata,
                    )

                conn.execute(
                    "UPDATE accounts SET "
                    "total_wagers = total_wagers + 1, "
                    "total_wagered = total_wagered + ?, "
                    "wins = wins + ?, losses = losses + ?, "
                    "total_won = total_won + ?, total_lost = total_lost + ?, "
                    "biggest_wager = MAX(biggest_wager, ?), "
                    "updated_at = CURRENT_TIMESTAMP "
                    "WHERE user_id = ?",
                    (
                        stake_u, int(won), int(not won), payout_u,
                        0 if won else stake_u, stake_u, user_id,
                    ),
                )
                account_u = self._fetch_units(conn, user_id, POOL_ASSET)
                pool_u = self._fetch_pool_units(conn)
                conn.commit()
                return WagerSettlement(
                    won=won,
                    stake=from_units(stake_u, decimals),
                    payout=from_units(payout_u, decimals),
                    shortfall=from_units(target_u - payout_u, decimals),
                    account_balance=from_units(account_u, decimals),
                    pool_balance=from_units(pool_u, decimals),
                )
            finally:
                conn.close()

        return await self._run(_sync)

    async def settle_jackpot(
        self,
        user_id: str,
        stake: Decimal,
        won: bool,
        metadata: dict[str, Any] | None = None,
    ) -> JackpotSettlement:
        """Risk ``stake`` against the whole pool. One transaction.

        The payout is the pool balance captured *before* the stake is added.
        On a funded win the pool resets to zero and the stake moves to
        ``house_retained``. An empty pre-stake pool means no payout.
        """
        decimals = POOL_ASSET.decimals
        col = POOL_ASSET.column
        stake_u = to_units(stake, decimals)

        def _sync() -> JackpotSettlement:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                pool_before_u = self._fetch_pool_units(conn)
                cursor = conn.execute(
                    f"UPDATE accounts SET {col} = {col} - ? WHERE user_id = ? AND {col} >= ?",
                    (stake_u, user_id, stake_u),
                )
                if cursor.rowcount == 0:
                    error = self._debit_failure(conn, user_id, POOL_ASSET)
                    conn.rollback()
                    raise error
                conn.execute("UPDATE pool SET balance = balance + ? WHERE id = 1", (stake_u,))
                self._insert_entry(
                    conn, user_id, POOL_ASSET, -stake_u, stake_u, "jackpot_stake", metadata=metadata,
                )

                funded = pool_before_u > 0
                paid = won and funded
                payout_u = pool_before_u if paid else 0
                if paid:
                    conn.execute(
                        f"UPDATE accounts SET {col} = {col} + ? WHERE user_id = ?",
                        (payout_u, user_id),
                    )
                    conn.execute(
                        "UPDATE pool SET balance = 0, house_retained = house_retained + ?, "
                        "updated_at = CURRENT_TIMESTAMP WHERE id = 1",
                        (stake_u,),
                    )
                    self._insert_entry(
                        conn, user_id, POOL_ASSET, payout_u, -payout_u, "jackpot_payout",
                        metadata=metadata,
                    )
                    self._insert_entry(
                        conn, None, POOL_ASSET, 0, -stake_u, "house_retained",
                        reference=f"jackpot:{user_id}",
                    )

                conn.execute(
                    "UPDATE accounts SET "
                    "total_wagers = total_wagers + 1, "
                    "total_wagered = total_wagered + ?, "
                    "wins = wins + ?, losses = losses + ?, "
                    "total_won = total_won + ?, total_lost = total_lost + ?, "
                    "biggest_wager = MAX(biggest_wager, ?), "
                    "updated_at = CURRENT_TIMESTAMP "
                    "WHERE user_id = ?",
                    (
                        stake_u, int(paid), int(not paid), payout_u,
                        0 if paid else stake_u, stake_u, user_id,
                    ),
                )
                account_u = self._fetch_units(conn, user_id, POOL_ASSET)
                pool_u = self._fetch_pool_units(conn)
                conn.commit()
                return JackpotSettlement(
                    won=won,
                    funded=funded,
                    stake=from_units(stake_u, decimals),
                    payout=from_units(payout_u, decimals),
                    pool_before=from_units(pool_before_u, decimals),
                    account_balance=from_units(account_u, decimals),
                    pool_balance=from_units(pool_u, decimals),
                )
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Progression
    # ══════════════════════════════════════════════════════════

    async def add_experience(
        self, user_id: str, amount: int, threshold: Callable[[int], int],
    ) -> ExperienceUpdate:
        """Add XP and cascade level-ups while XP covers ``threshold(level)``."""

        def _sync() -> ExperienceUpdate:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT xp, level FROM accounts WHERE user_id = ?", (user_id,),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    raise NotRegistered(f"No account for {user_id}")
                xp = row["xp"] + amount
                level = row["level"]
                gained: list[int] = []
                while xp >= threshold(level):
                    xp -= threshold(level)
                    level += 1
                    gained.append(level)
                conn.execute(
                    "UPDATE accounts SET xp = ?, level = ?, updated_at = CURRENT_TIMESTAMP "
                    "WHERE user_id = ?",
                    (xp, level, user_id),
                )
                conn.commit()
                return ExperienceUpdate(xp=xp, level=level, levels_gained=gained)
            finally:
                conn.close()

        return await self._run(_sync)

    async def grant_level_reward(self, user_id: str, amount: Decimal, level: int) -> Decimal:
        """Move a level reward from the pool to the account.

        Returns the new account balance. Raises InsufficientPool if unfunded.
        """
        decimals = POOL_ASSET.decimals
        col = POOL_ASSET.column
        units = to_units(amount, decimals)

        def _sync() -> Decimal:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    "UPDATE pool SET balance = balance - ? WHERE id = 1 AND balance >= ?",
                    (units, units),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise InsufficientPool(f"Pool cannot fund level {level} reward")
                cursor = conn.execute(
                    f"UPDATE accounts SET {col} = {col} + ? WHERE user_id = ?",
                    (units, user_id),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise NotRegistered(f"No account for {user_id}")
                self._insert_entry(
                    conn, user_id, POOL_ASSET, units, -units, "level_reward",
                    reference=f"level:{level}",
                )
                balance = self._fetch_units(conn, user_id, POOL_ASSET)
                conn.commit()
                return from_units(balance, decimals)
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Deposits
    # ══════════════════════════════════════════════════════════

    async def credit_deposit(self, event: DepositEvent, account_id: str) -> Decimal | None:
        """Credit a deposit once per idempotency key.

        Returns the new balance, or None if the key was already credited.
        """
        asset = event.asset
        units = to_units(event.amount, asset.decimals)
        col = asset.column

        def _sync() -> Decimal | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO credited_deposits "
                    "(tx_key, account_id, asset, amount, block_number) VALUES (?, ?, ?, ?, ?)",
                    (event.key, account_id, asset.value, units, event.block_number),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                cursor = conn.execute(
                    f"UPDATE accounts SET {col} = {col} + ?, updated_at = CURRENT_TIMESTAMP "
                    "WHERE user_id = ?",
                    (units, account_id),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise NotRegistered(f"No account for {account_id}")
                self._insert_entry(
                    conn, account_id, asset, units, 0, "deposit", reference=event.key,
                    metadata={"block": event.block_number, "from": event.from_address},
                )
                balance = self._fetch_units(conn, account_id, asset)
                conn.commit()
                return from_units(balance, asset.decimals)
            finally:
                conn.close()

        return await self._run(_sync)

    async def is_deposit_credited(self, key: str) -> bool:
        def _sync() -> bool:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT 1 FROM credited_deposits WHERE tx_key = ?", (key,),
                ).fetchone()
                return row is not None
            finally:
                conn.close()

        return await self._run(_sync)

    async def record_unmatched_deposit(self, event: DepositEvent) -> bool:
        """Record a deposit with no matching account. Returns True the first time."""
        units = to_units(event.amount, event.asset.decimals)

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO unmatched_deposits "
                    "(tx_key, from_address, asset, amount, block_number) VALUES (?, ?, ?, ?, ?)",
                    (
                        event.key, normalize_address(event.from_address),
                        event.asset.value, units, event.block_number,
                    ),
                )
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_unmatched_deposits(self, limit: int = 50) -> list[dict]:
        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM unmatched_deposits ORDER BY created_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
                result = []
                for r in rows:
                    asset = Asset(r["asset"])
                    result.append({
                        "tx_key": r["tx_key"],
                        "from_address": r["from_address"],
                        "asset": asset.value,
                        "amount": str(from_units(r["amount"], asset.decimals)),
                        "block_number": r["block_number"],
                        "created_at": r["created_at"],
                    })
                return result
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Withdrawals
    # ══════════════════════════════════════════════════════════

    async def create_withdrawal(
        self,
        user_id: str,
        asset: Asset,
        amount: Decimal,
        fee_amount: Decimal,
        fee_address: str | None,
    ) -> Withdrawal:
        """Debit the full amount and record the withdrawal in one transaction."""
        decimals = asset.decimals
        col = asset.column
        amount_u = to_units(amount, decimals)
        fee_u = to_units(fee_amount, decimals)
        payout_u = amount_u - fee_u

        def _sync() -> Withdrawal:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT address FROM accounts WHERE user_id = ?", (user_id,),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    raise NotRegistered(f"No account for {user_id}")
                if not row["address"]:
                    conn.rollback()
                    raise InvalidAddress(f"No withdrawal address bound for {user_id}")
                cursor = conn.execute(
                    f"UPDATE accounts SET {col} = {col} - ?, updated_at = CURRENT_TIMESTAMP "
                    f"WHERE user_id = ? AND {col} >= ?",
                    (amount_u, user_id, amount_u),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise InsufficientFunds(f"Insufficient {asset.value} balance for {user_id}")
                cursor = conn.execute(
                    "INSERT INTO withdrawals (account_id, asset, amount, payout_amount, "
                    "fee_amount, to_address, fee_address, status) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, 'debited')",
                    (user_id, asset.value, amount_u, payout_u, fee_u, row["address"], fee_address),
                )
                withdrawal_id = cursor.lastrowid
                self._insert_entry(
                    conn, user_id, asset, -amount_u, 0, "withdrawal",
                    reference=f"withdrawal:{withdrawal_id}",
                )
                created = conn.execute(
                    "SELECT * FROM withdrawals WHERE id = ?", (withdrawal_id,),
                ).fetchone()
                conn.commit()
                return Withdrawal.from_row(dict(created))
            finally:
                conn.close()

        return await self._run(_sync)

    async def update_withdrawal(
        self,
        withdrawal_id: int,
        status: str,
        payout_reference: str | None = None,
        fee_reference: str | None = None,
        error: str | None = None,
    ) -> None:
        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE withdrawals SET status = ?, "
                    "payout_reference = COALESCE(?, payout_reference), "
                    "fee_reference = COALESCE(?, fee_reference), "
                    "error = COALESCE(?, error), "
                    "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (status, payout_reference, fee_reference, error, withdrawal_id),
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    async def get_withdrawal(self, withdrawal_id: int) -> Withdrawal | None:
        def _sync() -> Withdrawal | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM withdrawals WHERE id = ?", (withdrawal_id,),
                ).fetchone()
                return Withdrawal.from_row(dict(row)) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_withdrawals_by_status(self, status: str, limit: int = 50) -> list[Withdrawal]:
        def _sync() -> list[Withdrawal]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM withdrawals WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (status, limit),
                ).fetchall()
                return [Withdrawal.from_row(dict(r)) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Chain Scan Cursor
    # ══════════════════════════════════════════════════════════

    async def get_scan_cursor(self, name: str) -> int | None:
        """Return the last fully reconciled block for a scanner, or None."""

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT block_number FROM scan_cursors WHERE name = ?", (name,),
                ).fetchone()
                return row["block_number"] if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def set_scan_cursor(self, name: str, block_number: int) -> None:
        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO scan_cursors (name, block_number) VALUES (?, ?) "
                    "ON CONFLICT(name) DO UPDATE SET block_number = excluded.block_number, "
                    "updated_at = CURRENT_TIMESTAMP",
                    (name, block_number),
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Population Queries
    # ══════════════════════════════════════════════════════════

    async def get_account_count(self) -> int:
        def _sync() -> int:
            conn = self._get_connection()
            try:
                return conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_total_balances(self) -> dict[Asset, Decimal]:
        """Sum of all account balances per asset."""

        def _sync() -> dict[Asset, Decimal]:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COALESCE(SUM(native_balance), 0) AS native, "
                    "COALESCE(SUM(stable_balance), 0) AS stable FROM accounts",
                ).fetchone()
                return {
                    Asset.NATIVE: from_units(row["native"], Asset.NATIVE.decimals),
                    Asset.STABLE: from_units(row["stable"], Asset.STABLE.decimals),
                }
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_top_accounts(self, criteria: str, limit: int = 10) -> list[Account]:
        """Leaderboard query: balances, winners, bettors or winrates."""
        queries = {
            "balances": (
                "SELECT * FROM accounts ORDER BY stable_balance DESC, native_balance DESC LIMIT ?",
                (limit,),
            ),
            "winners": (
                "SELECT * FROM accounts WHERE total_won > 0 ORDER BY total_won DESC LIMIT ?",
                (limit,),
            ),
            "bettors": (
                "SELECT * FROM accounts WHERE total_wagers > 0 "
                "ORDER BY total_wagers DESC LIMIT ?",
                (limit,),
            ),
            "winrates": (
                "SELECT * FROM accounts WHERE total_wagers >= ? "
                "ORDER BY CAST(wins AS REAL) / total_wagers DESC, total_wagers DESC LIMIT ?",
                (MIN_WAGERS_FOR_WINRATE, limit),
            ),
        }
        if criteria not in queries:
            raise ValueError(f"Unknown leaderboard criteria: {criteria}")
        sql, params = queries[criteria]

        def _sync() -> list[Account]:
            conn = self._get_connection()
            try:
                rows = conn.execute(sql, params).fetchall()
                return [Account.from_row(dict(r)) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_recent_entries(self, user_id: str, limit: int = 10) -> list[dict]:
        """Recent ledger entries for an account, newest first."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM ledger_entries WHERE account_id = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
                result = []
                for r in rows:
                    asset = Asset(r["asset"])
                    result.append({
                        "entry_type": r["entry_type"],
                        "asset": asset.value,
                        "amount": from_units(r["account_delta"], asset.decimals),
                        "reference": r["reference"],
                        "created_at": r["created_at"],
                    })
                return result
            finally:
                conn.close()

        return await self._run(_sync)
