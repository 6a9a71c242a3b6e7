"""Tests for LedgerApp wiring and counter persistence."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from kryten_ledger.__main__ import parse_args
from kryten_ledger.config import LedgerConfig
from kryten_ledger.main import LedgerApp


@pytest.fixture
def app(sample_config_dict: dict, tmp_path: Path, mock_client: MagicMock) -> LedgerApp:
    sample_config_dict["database"] = {"path": str(tmp_path / "app.db")}
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump(sample_config_dict))
    ledger = LedgerApp(str(config_path))
    ledger.build_components(LedgerConfig(**sample_config_dict))
    ledger.client = mock_client
    return ledger


class TestBuildComponents:
    def test_engines_share_database(self, app: LedgerApp):
        assert app.wager_engine._db is app.db
        assert app.reconciler._db is app.db
        assert app.withdrawals._transfers is app.transfer_client

    def test_counters_start_at_zero(self, app: LedgerApp):
        assert app.wagers_total == 0
        assert app.withdrawal_incidents_total == 0
        assert app.uptime_seconds == 0.0


class TestCounterPersistence:
    async def test_save_snapshot(self, app: LedgerApp, mock_client: MagicMock):
        app.events_processed = 3
        app.wager_engine.metrics_wagers = 11

        await app._save_counters()

        bucket, key, data = mock_client.kv_put.call_args[0]
        assert (bucket, key) == ("kryten_ledger_state", "counters")
        assert data["events_processed"] == 3
        assert data["wagers_total"] == 11

    async def test_restore_into_engines(self, app: LedgerApp, mock_client: MagicMock):
        mock_client.kv_get.return_value = {
            "commands_processed": 8,
            "jackpot_wins_total": 2,
            "withdrawals_completed_total": 5,
        }

        await app._restore_counters()

        assert app.commands_processed == 8
        assert app.jackpot.metrics_jackpot_wins == 2
        assert app.withdrawals_completed_total == 5

    async def test_restore_failure_is_logged(self, app: LedgerApp, mock_client: MagicMock, caplog):
        mock_client.kv_get.side_effect = RuntimeError("kv down")
        await app._restore_counters()
        assert "Failed to restore" in caplog.text

    async def test_stop_when_not_running_is_noop(self, app: LedgerApp, mock_client: MagicMock):
        await app.stop()
        mock_client.kv_put.assert_not_called()


class TestCli:
    def test_defaults(self):
        args = parse_args([])
        assert args.config is None
        assert args.log_level == "INFO"
        assert not args.validate_config

    def test_flags(self):
        args = parse_args(["--config", "x.yaml", "--log-level", "DEBUG", "--validate-config"])
        assert (args.config, args.log_level, args.validate_config) == ("x.yaml", "DEBUG", True)
