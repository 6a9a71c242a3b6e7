"""Tests for kryten_ledger.deposit_reconciler module."""

from __future__ import annotations

import logging
from decimal import Decimal

from kryten_ledger.database import LedgerDatabase
from kryten_ledger.deposit_reconciler import DepositReconciler, DepositStatus
from kryten_ledger.models import Asset, DepositEvent
from tests.conftest import ALICE_ADDRESS, BOB_ADDRESS, entry_rows, make_account


def make_deposit(**overrides) -> DepositEvent:
    fields = {
        "from_address": ALICE_ADDRESS,
        "asset": Asset.STABLE,
        "amount": Decimal(25),
        "block_number": 1200,
        "tx_hash": "0x" + "e" * 64,
        "log_index": 0,
    }
    fields.update(overrides)
    return DepositEvent(**fields)


class TestReconcile:
    async def test_credits_matching_account(self, database: LedgerDatabase, reconciler: DepositReconciler):
        await make_account(database)

        result = await reconciler.reconcile(make_deposit())

        assert result.status is DepositStatus.CREDITED
        assert result.account_id == "alice"
        assert result.new_balance == Decimal(25)
        assert reconciler.metrics_credited == 1

    async def test_sender_address_case_ignored(self, database: LedgerDatabase, reconciler: DepositReconciler):
        await make_account(database)
        result = await reconciler.reconcile(
            make_deposit(from_address=ALICE_ADDRESS.upper().replace("0X", "0x")),
        )
        assert result.status is DepositStatus.CREDITED

    async def test_native_deposit(self, database: LedgerDatabase, reconciler: DepositReconciler):
        await make_account(database)

        result = await reconciler.reconcile(
            make_deposit(asset=Asset.NATIVE, amount=Decimal("0.25"), log_index=-1),
        )

        account = await database.get_account("alice")
        assert result.status is DepositStatus.CREDITED
        assert account.native_balance == Decimal("0.25")
        assert account.stable_balance == Decimal(0)

    async def test_replay_is_duplicate(self, database: LedgerDatabase, reconciler: DepositReconciler):
        await make_account(database)
        event = make_deposit()

        await reconciler.reconcile(event)
        result = await reconciler.reconcile(event)

        assert result.status is DepositStatus.DUPLICATE
        assert (await database.get_account("alice")).stable_balance == Decimal(25)
        assert reconciler.metrics_duplicates == 1

    async def test_same_tx_different_log_index_credits_both(
        self, database: LedgerDatabase, reconciler: DepositReconciler,
    ):
        await make_account(database)
        await reconciler.reconcile(make_deposit(log_index=0))
        await reconciler.reconcile(make_deposit(log_index=1))
        assert (await database.get_account("alice")).stable_balance == Decimal(50)

    async def test_unmatched_logged_without_mutation(
        self, database: LedgerDatabase, reconciler: DepositReconciler, caplog,
    ):
        await make_account(database)

        with caplog.at_level(logging.WARNING):
            result = await reconciler.reconcile(make_deposit(from_address=BOB_ADDRESS))

        assert result.status is DepositStatus.UNMATCHED
        assert "Unmatched deposit" in caplog.text
        assert result.to_dict()["error_kind"] == "unmatched_deposit"
        assert (await database.get_account("alice")).stable_balance == Decimal(0)
        assert entry_rows(database, "SELECT * FROM ledger_entries WHERE entry_type = 'deposit'") == []
        assert len(await database.get_unmatched_deposits()) == 1

    async def test_unmatched_replay_counted_once(self, reconciler: DepositReconciler):
        await reconciler.reconcile(make_deposit(from_address=BOB_ADDRESS))
        await reconciler.reconcile(make_deposit(from_address=BOB_ADDRESS))
        assert reconciler.metrics_unmatched == 1

    async def test_dust_below_precision_ignored(self, database: LedgerDatabase, reconciler: DepositReconciler):
        await make_account(database)
        result = await reconciler.reconcile(make_deposit(amount=Decimal("0.0000001")))
        assert result.status is DepositStatus.IGNORED
        assert not await database.is_deposit_credited(result.key)

    async def test_sub_precision_remainder_logged(
        self, database: LedgerDatabase, reconciler: DepositReconciler, caplog,
    ):
        await make_account(database)
        deposit = make_deposit(asset=Asset.NATIVE, amount=Decimal("0.123456789123456789"))

        with caplog.at_level(logging.WARNING):
            result = await reconciler.reconcile(deposit)

        assert result.status is DepositStatus.CREDITED
        assert (await database.get_account("alice")).native_balance == Decimal("0.123456789")
        assert "0.000000000123456789 native below ledger precision" in caplog.text

    async def test_exact_amount_not_flagged(
        self, database: LedgerDatabase, reconciler: DepositReconciler, caplog,
    ):
        await make_account(database)
        with caplog.at_level(logging.WARNING):
            await reconciler.reconcile(make_deposit(asset=Asset.NATIVE, amount=Decimal("0.5")))
        assert "below ledger precision" not in caplog.text

    async def test_deposit_awards_xp(self, database: LedgerDatabase, reconciler: DepositReconciler):
        await make_account(database)
        await reconciler.reconcile(make_deposit())
        assert (await database.get_account("alice")).xp == 15

    async def test_to_dict(self, database: LedgerDatabase, reconciler: DepositReconciler):
        await make_account(database)
        data = (await reconciler.reconcile(make_deposit())).to_dict()
        assert data["status"] == "credited"
        assert data["error_kind"] is None
        assert data["key"] == "0x" + "e" * 64 + ":0"
