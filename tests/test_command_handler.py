"""Tests for kryten_ledger.command_handler module."""

from __future__ import annotations

import logging
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kryten_ledger.command_handler import SUBJECT, CommandHandler
from kryten_ledger.config import LedgerConfig
from kryten_ledger.database import LedgerDatabase
from kryten_ledger.errors import TransferError
from tests.conftest import ALICE_ADDRESS, BOB_ADDRESS, WIN, fund_pool, make_account


@pytest.fixture
def mock_app(
    sample_config: LedgerConfig,
    database: LedgerDatabase,
    mock_client: MagicMock,
    wager_engine,
    jackpot,
    reconciler,
    settler,
    pm_handler,
) -> MagicMock:
    """Mock LedgerApp with real database and engines."""
    app = MagicMock()
    app.config = sample_config
    app.db = database
    app.client = mock_client
    app.commands_processed = 0
    app.uptime_seconds = 42.5
    app.wager_engine = wager_engine
    app.jackpot = jackpot
    app.reconciler = reconciler
    app.withdrawals = settler
    app.pm_handler = pm_handler
    app.deposit_watcher = None
    return app


@pytest.fixture
def handler(mock_app: MagicMock, mock_client: MagicMock) -> CommandHandler:
    return CommandHandler(mock_app, mock_client, logging.getLogger("test.cmd"))


class TestEnvelope:
    """Request-reply routing and error mapping."""

    async def test_connect_subscribes(self, handler: CommandHandler, mock_client: MagicMock):
        await handler.connect()
        mock_client.subscribe_request_reply.assert_awaited_once_with(SUBJECT, handler._handle_command)

    async def test_ping(self, handler: CommandHandler, mock_app: MagicMock):
        result = await handler._handle_command({"command": "system.ping"})
        assert result["success"] is True
        assert result["service"] == "ledger"
        assert result["data"]["pong"] is True
        assert mock_app.commands_processed == 1

    async def test_health(self, handler: CommandHandler):
        result = await handler._handle_command({"command": "system.health"})
        assert result["data"]["status"] == "healthy"
        assert result["data"]["last_scanned_block"] is None
        assert result["data"]["uptime_seconds"] == 42.5

    async def test_unknown_command(self, handler: CommandHandler):
        result = await handler._handle_command({"command": "nope"})
        assert result["success"] is False
        assert result["error_kind"] == "unknown_command"

    async def test_missing_field(self, handler: CommandHandler):
        result = await handler._handle_command({"command": "account.get"})
        assert result["error_kind"] == "invalid_request"
        assert "user_id" in result["error"]

    async def test_unexpected_error_is_internal(self, handler: CommandHandler, database: LedgerDatabase):
        with patch.object(database, "get_pool_state", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await handler._handle_command({"command": "pool.get"})
        assert result["error_kind"] == "internal"


class TestAccounts:
    async def test_register_and_get(self, handler: CommandHandler):
        reply = await handler._handle_command(
            {"command": "account.register", "user_id": "Alice", "address": ALICE_ADDRESS},
        )
        assert reply["success"] is True
        assert reply["data"]["user_id"] == "alice"

        reply = await handler._handle_command({"command": "account.get", "user_id": "alice"})
        assert reply["data"]["found"] is True
        assert Decimal(reply["data"]["stable_balance"]) == 0

    async def test_get_missing(self, handler: CommandHandler):
        reply = await handler._handle_command({"command": "account.get", "user_id": "ghost"})
        assert reply["data"] == {"found": False}

    async def test_register_taken_address(self, handler: CommandHandler, database: LedgerDatabase):
        await make_account(database, "bob", ALICE_ADDRESS)
        reply = await handler._handle_command(
            {"command": "account.register", "user_id": "alice", "address": ALICE_ADDRESS},
        )
        assert reply["error_kind"] == "address_in_use"


class TestWagers:
    async def test_wager_place(self, handler: CommandHandler, database: LedgerDatabase, wager_rng):
        wager_rng.values = [WIN]
        await make_account(database, stable=100)
        await fund_pool(database, 100)

        reply = await handler._handle_command({"command": "wager.place", "user_id": "alice", "stake": "10"})

        assert reply["success"] is True
        assert reply["data"]["status"] == "won"
        assert Decimal(reply["data"]["account_balance"]) == 126

    async def test_wager_rejected(self, handler: CommandHandler, database: LedgerDatabase):
        await make_account(database, stable=100)
        reply = await handler._handle_command({"command": "wager.place", "user_id": "alice", "stake": "3"})
        assert reply["success"] is False
        assert reply["error_kind"] == "invalid_stake"
        assert reply["data"]["status"] == "rejected"

    async def test_wager_bad_amount(self, handler: CommandHandler):
        reply = await handler._handle_command({"command": "wager.place", "user_id": "alice", "stake": "ten"})
        assert reply["error_kind"] == "invalid_amount"

    async def test_jackpot_place(self, handler: CommandHandler, database: LedgerDatabase):
        await make_account(database, stable=100)
        reply = await handler._handle_command({"command": "jackpot.place", "user_id": "alice"})
        assert reply["data"]["status"] == "jackpot_lost"

    async def test_pool_get(self, handler: CommandHandler, database: LedgerDatabase):
        await fund_pool(database, 12)
        reply = await handler._handle_command({"command": "pool.get"})
        assert Decimal(reply["data"]["balance"]) == 12
        assert Decimal(reply["data"]["house_retained"]) == 0

    async def test_leaderboard(self, handler: CommandHandler, database: LedgerDatabase):
        await make_account(database, stable=5)
        await make_account(database, "bob", BOB_ADDRESS, stable=9)
        reply = await handler._handle_command({"command": "leaderboard.get", "limit": 1})
        assert [e["user_id"] for e in reply["data"]["entries"]] == ["bob"]

    async def test_leaderboard_bad_criteria(self, handler: CommandHandler):
        reply = await handler._handle_command({"command": "leaderboard.get", "criteria": "x"})
        assert reply["error_kind"] == "invalid_request"


class TestDepositsAndWithdrawals:
    async def test_deposit_notify_credits_once(self, handler: CommandHandler, database: LedgerDatabase):
        await make_account(database)
        request = {
            "command": "deposit.notify",
            "from_address": ALICE_ADDRESS,
            "asset": "usdc",
            "amount": "20",
            "block_number": 10,
            "tx_hash": "0xfeed",
            "log_index": 1,
        }

        first = await handler._handle_command(request)
        second = await handler._handle_command(request)

        assert first["data"]["status"] == "credited"
        assert second["data"]["status"] == "duplicate"
        assert (await database.get_account("alice")).stable_balance == Decimal(20)

    async def test_unmatched_deposit_listed(self, handler: CommandHandler):
        await handler._handle_command({
            "command": "deposit.notify", "from_address": BOB_ADDRESS, "asset": "eth",
            "amount": "0.5", "block_number": 10, "tx_hash": "0xbeef",
        })
        reply = await handler._handle_command({"command": "deposits.unmatched"})
        assert reply["data"]["deposits"][0]["tx_key"] == "0xbeef:-1"

    async def test_withdraw_request(self, handler: CommandHandler, database: LedgerDatabase):
        await make_account(database, stable=100)
        reply = await handler._handle_command(
            {"command": "withdraw.request", "user_id": "alice", "asset": "stable", "amount": "50"},
        )
        assert reply["success"] is True
        assert reply["data"]["status"] == "completed"
        assert Decimal(reply["data"]["payout"]) == Decimal("49.5")

    async def test_withdraw_incident_listed(
        self, handler: CommandHandler, database: LedgerDatabase, mock_transfers: MagicMock,
    ):
        mock_transfers.send = AsyncMock(side_effect=TransferError("down"))
        await make_account(database, stable=100)

        reply = await handler._handle_command(
            {"command": "withdraw.request", "user_id": "alice", "asset": "stable", "amount": "50"},
        )
        assert reply["success"] is False
        assert reply["error_kind"] == "transfer_dispatch_failed"
        withdrawal_id = reply["data"]["withdrawal_id"]

        reply = await handler._handle_command({"command": "withdrawals.incidents"})
        assert [w["id"] for w in reply["data"]["incidents"]] == [withdrawal_id]

    async def test_withdraw_unknown_asset(self, handler: CommandHandler):
        reply = await handler._handle_command(
            {"command": "withdraw.request", "user_id": "alice", "asset": "doge", "amount": "1"},
        )
        assert reply["error_kind"] == "invalid_request"
