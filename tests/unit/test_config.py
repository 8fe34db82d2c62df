"""
Tests for CLI Configuration

Tests layered configuration loading (defaults, profile, file, environment),
validation and the typed engine settings built from it.
"""

import json

import pytest
import yaml

from cli.config import (
    ConfigurationError,
    ConfigurationManager,
    EngineSettings,
    load_settings,
)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep user and project config files out of the tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    return home


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestConfigurationManager:
    """Test configuration layering."""

    def test_defaults(self):
        manager = ConfigurationManager(environ={})

        assert manager.get("fees.satoshis_per_kb") == 500
        assert manager.get("network.type") == "testnet"
        assert manager.get_sources() == ["defaults"]

    def test_missing_key_default(self):
        manager = ConfigurationManager(environ={})
        assert manager.get("fees.unknown", "fallback") == "fallback"
        assert manager.get("fees.satoshis_per_kb.deeper") is None

    def test_profile(self):
        manager = ConfigurationManager(profile="regtest", environ={})

        assert manager.get("network.rpc.port") == 18443
        assert manager.get("fees.use_node_estimate") is False
        assert manager.get("network.rpc.host") == "localhost"
        assert manager.get_sources() == ["defaults", "profile:regtest"]

    def test_unknown_profile(self):
        with pytest.raises(ConfigurationError, match="Unknown profile 'devnet'"):
            ConfigurationManager(profile="devnet", environ={}).load()

    def test_yaml_file(self, tmp_path):
        path = write_yaml(tmp_path / "engine.yml", {"fees": {"satoshis_per_kb": 250}})
        manager = ConfigurationManager(config_file=path, environ={})

        assert manager.get("fees.satoshis_per_kb") == 250
        assert manager.get("fees.dust_threshold") == 1

    def test_json_file(self, tmp_path):
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({"cli": {"output_format": "json"}}))

        assert ConfigurationManager(config_file=str(path), environ={}).get("cli.output_format") == "json"

    def test_project_file_discovered(self, tmp_path):
        write_yaml(tmp_path / ".covenant.yml", {"network": {"type": "regtest"}})
        manager = ConfigurationManager(environ={})

        assert manager.get("network.type") == "regtest"
        assert manager.get_sources()[-1] == "file:.covenant.yml"

    def test_unknown_file_format(self, tmp_path):
        path = tmp_path / "engine.toml"
        path.write_text("x = 1")
        with pytest.raises(ConfigurationError, match="Unknown config file format"):
            ConfigurationManager(config_file=str(path), environ={}).load()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Failed to load"):
            ConfigurationManager(config_file=str(tmp_path / "absent.yml"), environ={}).load()

    def test_file_must_hold_mapping(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            ConfigurationManager(config_file=str(path), environ={}).load()

    def test_environment_overrides_file(self, tmp_path):
        path = write_yaml(tmp_path / "engine.yml", {"fees": {"satoshis_per_kb": 250}})
        environ = {
            "COVENANT_FEES__SATOSHIS_PER_KB": "750",
            "COVENANT_FEES__USE_NODE_ESTIMATE": "false",
            "COVENANT_BROADCAST__FEE_BUMP_FACTOR": "2.5",
            "COVENANT_WALLET__API_TOKEN": "null",
            "COVENANT_RPC_HOST": "ignored",
        }
        manager = ConfigurationManager(config_file=path, environ=environ)

        assert manager.get("fees.satoshis_per_kb") == 750
        assert manager.get("fees.use_node_estimate") is False
        assert manager.get("broadcast.fee_bump_factor") == 2.5
        assert manager.get("wallet.api_token") is None
        assert manager.get("rpc_host") is None
        assert manager.get_sources()[-1] == "environment"

    def test_paths_expanded(self, isolated_home):
        manager = ConfigurationManager(environ={})
        assert manager.get("storage.handles_dir") == str(isolated_home / ".covenant" / "handles")

    def test_set_and_reset(self):
        manager = ConfigurationManager(environ={})
        manager.set("fees.change_address", "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")
        assert manager.get("fees.change_address") == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"

        manager.reset()
        assert manager.get("fees.change_address") is None


class TestValidation:
    """Test configuration validation."""

    def test_defaults_valid(self):
        assert ConfigurationManager(environ={}).validate() == []

    def test_invalid_values(self, tmp_path):
        path = write_yaml(tmp_path / "bad.yml", {
            "network": {"type": "moonnet", "rpc": {"port": -1}},
            "fees": {"satoshis_per_kb": -5},
            "broadcast": {"fee_bump_factor": 0.5},
            "cli": {"output_format": "xml"},
        })
        errors = ConfigurationManager(config_file=path, environ={}).validate()

        assert "Invalid network type: moonnet" in errors
        assert "RPC port must be a positive integer" in errors
        assert "Fee rate must be a non-negative integer, got -5" in errors
        assert "broadcast.fee_bump_factor must be at least 1" in errors
        assert "Invalid output format: xml" in errors

    def test_load_settings_rejects_invalid(self, tmp_path):
        path = write_yaml(tmp_path / "bad.yml", {"fees": {"dust_threshold": "a lot"}})
        with pytest.raises(ConfigurationError, match="Dust threshold"):
            load_settings(config_file=path)


class TestEngineSettings:
    """Test typed settings and the configs derived from them."""

    @pytest.fixture
    def settings(self, tmp_path):
        path = write_yaml(tmp_path / "engine.yml", {
            "network": {"rpc": {"username": "user", "password": "pass"}},
            "fees": {"change_address": "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH", "dust_threshold": 10},
            "broadcast": {"max_retries": 5, "fee_bump_factor": 2},
            "wallet": {"api_token": "secret"},
        })
        return load_settings(config_file=path, profile="regtest")

    def test_values(self, settings):
        assert settings.network == "regtest"
        assert settings.max_retries == 5
        assert settings.fee_bump_factor == 2.0
        assert settings.acceptance_timeout_seconds == 30.0

    def test_fee_policy(self, settings):
        policy = settings.fee_policy()

        assert policy.satoshis_per_kb == 500
        assert policy.dust_threshold == 10
        assert policy.change_locking_script()[3:23].hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"

    def test_fee_policy_needs_change_address(self):
        with pytest.raises(ConfigurationError, match="change_address"):
            EngineSettings().fee_policy()

    def test_rpc_config(self, settings):
        config = settings.rpc_config()
        assert config.port == 18443
        assert config.username == "user"

    def test_wallet_bridge_config(self, settings):
        config = settings.wallet_bridge_config()
        assert config.url == "http://localhost:3100"
        assert config.api_token == "secret"

    def test_derived_configs(self, settings):
        assert settings.broadcast_config().max_attempts == 3
        assert settings.monitor_config().poll_interval_seconds == 0.5
        assert settings.orchestrator_config().max_retries == 5
