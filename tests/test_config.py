"""Tests for kryten_ledger.config module."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from kryten_ledger.config import (
    ChainConfig,
    LedgerConfig,
    WagerConfig,
    find_config_path,
    load_config,
)


class TestLedgerConfig:
    """Test LedgerConfig model parsing and validation."""

    def test_minimal_config(self):
        """Config with only required fields (nats, channels) should parse."""
        cfg = LedgerConfig(
            nats={"servers": ["nats://localhost:4222"]},
            channels=[{"domain": "cytu.be", "channel": "test"}],
        )
        assert cfg.database.path == "ledger.db"
        assert cfg.bot.username == "LedgerBot"

    def test_wager_defaults(self):
        cfg = WagerConfig()
        assert cfg.allowed_stakes == [5, 10, 100, 1000, 10000]
        assert cfg.win_probability == 0.25
        assert cfg.payout_multiplier == 3.6
        assert (cfg.win_xp, cfg.loss_xp) == (20, 5)

    def test_jackpot_and_progression_defaults(self):
        cfg = LedgerConfig(
            nats={"servers": ["nats://localhost:4222"]},
            channels=[{"domain": "cytu.be", "channel": "t"}],
        )
        assert cfg.jackpot.stake == 100
        assert cfg.jackpot.win_probability == 0.03
        assert cfg.progression.base_xp == 100
        assert cfg.progression.growth == 1.5
        assert cfg.progression.level_reward == 10
        assert cfg.withdrawal.fee_rate == 0.01

    def test_asset_limits(self):
        cfg = LedgerConfig(
            nats={"servers": ["nats://localhost:4222"]},
            channels=[{"domain": "cytu.be", "channel": "t"}],
        )
        assert cfg.assets.native.max_withdrawal == 100
        assert cfg.assets.stable.max_withdrawal == 10000
        assert cfg.assets.native.chain_decimals == 18

    def test_full_config(self, sample_config_dict: dict):
        cfg = LedgerConfig(**sample_config_dict)
        assert cfg.chain.confirmations == 6
        assert cfg.channels[0].channel == "testchannel"

    def test_chain_addresses_lowercased(self):
        cfg = ChainConfig(pool_address=" 0xABCDEF0000000000000000000000000000000001 ")
        assert cfg.pool_address == "0xabcdef0000000000000000000000000000000001"

    def test_probability_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            WagerConfig(win_probability=1.5)


class TestLoadConfig:
    """Test YAML file loading with environment variable expansion."""

    def test_load_valid_yaml(self, sample_config_dict: dict, tmp_path: Path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump(sample_config_dict))

        cfg = load_config(str(config_path))
        assert cfg.jackpot.stake == 100
        assert len(cfg.channels) == 1

    def test_load_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/path/config.yaml")

    def test_env_var_expansion(self, sample_config_dict: dict, tmp_path: Path, monkeypatch):
        """Environment variables in ${VAR} format should be expanded."""
        monkeypatch.setenv("TEST_SIGNER_TOKEN", "s3cret")
        sample_config_dict["signer"] = {"api_token": "${TEST_SIGNER_TOKEN}"}
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump(sample_config_dict))

        cfg = load_config(str(config_path))
        assert cfg.signer.api_token == "s3cret"

    def test_env_var_with_default(self, sample_config_dict: dict, tmp_path: Path):
        """${VAR:-default} should use default when VAR is unset."""
        os.environ.pop("UNSET_TEST_VAR", None)
        sample_config_dict["database"] = {"path": "${UNSET_TEST_VAR:-fallback.db}"}
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump(sample_config_dict))

        cfg = load_config(str(config_path))
        assert cfg.database.path == "fallback.db"

    def test_invalid_yaml_structure(self, tmp_path: Path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("- just\n- a\n- list\n")

        with pytest.raises(ValueError, match="YAML mapping"):
            load_config(str(config_path))


class TestFindConfigPath:
    def test_explicit_path_wins(self):
        assert find_config_path("/some/where.yaml") == "/some/where.yaml"

    def test_falls_back_to_cwd(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config.yaml").write_text("{}")
        assert find_config_path(None) in ("./config.yaml", "/etc/kryten/kryten-ledger/config.yaml")

    def test_nothing_found(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(
            "kryten_ledger.config.DEFAULT_CONFIG_PATHS", (str(tmp_path / "missing.yaml"),),
        )
        with pytest.raises(FileNotFoundError):
            find_config_path(None)
