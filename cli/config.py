#!/usr/bin/env python3
"""
Configuration Management Module for the Covenant Engine CLI

Handles hierarchical configuration loading (defaults, profile, file,
environment), validation, and conversion into typed engine settings.
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from network.broadcaster import BroadcastConfig
from network.monitor import MonitorConfig
from network.rpc import RPCConfig
from transaction.selector import FeePolicy
from wallet.bridge import WalletBridgeConfig
from workflow.orchestrator import OrchestratorConfig


# Configuration file locations in order of precedence (highest to lowest).
# Project paths are relative, so they resolve against the working directory.
CONFIG_SEARCH_PATHS = [
    Path('.covenant.yml'),
    Path('.covenant.json'),
    Path('~/.covenant/config.yml'),
    Path('~/.covenant/config.json'),
]

# Environment variable prefix; '__' separates nesting levels,
# e.g. COVENANT_FEES__SATOSHIS_PER_KB -> fees.satoshis_per_kb
ENV_PREFIX = 'COVENANT_'
ENV_NESTING = '__'

NETWORK_TYPES = ('mainnet', 'testnet', 'regtest')
OUTPUT_FORMATS = ('table', 'json', 'yaml')

DEFAULT_CONFIG = {
    'network': {
        'type': 'testnet',
        'rpc': {
            'host': 'localhost',
            'port': 18332,
            'username': None,
            'password': None,
            'cookie_file': None,
            'timeout': 30,
            'use_ssl': False,
        },
    },

    'wallet': {
        'bridge_url': 'http://localhost:3100',
        'api_token': None,
        'timeout': 120,
        'ssl_verify': True,
    },

    'fees': {
        'satoshis_per_kb': 500,
        'min_satoshis_per_kb': 1,
        'dust_threshold': 1,
        'change_address': None,
        'use_node_estimate': True,
        'target_blocks': 6,
    },

    'broadcast': {
        'max_attempts': 3,
        'initial_delay_seconds': 1.0,
        'max_retries': 3,
        'fee_bump_factor': 1.5,
    },

    'monitor': {
        'poll_interval_seconds': 2.0,
        'acceptance_timeout_seconds': 120,
        'required_confirmations': 0,
    },

    'signer': {
        'timeout': 120,
    },

    'storage': {
        'handles_dir': '~/.covenant/handles',
    },

    'cli': {
        'output_format': 'table',
        'verbose': 0,
    },
}

PROFILES = {
    'mainnet': {
        'network': {'type': 'mainnet', 'rpc': {'port': 8332}},
        'monitor': {'required_confirmations': 1},
    },
    'testnet': {
        'network': {'type': 'testnet', 'rpc': {'port': 18332}},
    },
    'regtest': {
        'network': {'type': 'regtest', 'rpc': {'port': 18443}},
        'fees': {'use_node_estimate': False},
        'monitor': {'poll_interval_seconds': 0.5, 'acceptance_timeout_seconds': 30},
        'cli': {'verbose': 1},
    },
}


class ConfigurationError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""
    pass


class ConfigurationManager:
    """Manages hierarchical configuration with environment variable support."""

    def __init__(self, config_file: Optional[str] = None, profile: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Explicit configuration file path
            profile: Configuration profile to apply (mainnet, testnet, regtest)
            environ: Environment to read overrides from (defaults to os.environ)
        """
        self.logger = logging.getLogger(__name__)
        self.config_file = config_file
        self.profile = profile
        self.environ = os.environ if environ is None else environ
        self._config_cache = None
        self._config_sources = []

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from all sources in hierarchical order.

        Returns:
            Merged configuration dictionary
        """
        if self._config_cache is not None:
            return self._config_cache

        configs = [copy.deepcopy(DEFAULT_CONFIG)]
        self._config_sources = ["defaults"]

        if self.profile:
            if self.profile not in PROFILES:
                raise ConfigurationError(
                    f"Unknown profile {self.profile!r} (choose from {', '.join(PROFILES)})"
                )
            configs.append(PROFILES[self.profile])
            self._config_sources.append(f"profile:{self.profile}")
            self.logger.debug(f"Applied profile: {self.profile}")

        if self.config_file:
            configs.append(self._load_config_file(Path(self.config_file)))
            self._config_sources.append(f"file:{self.config_file}")
        else:
            for config_path in CONFIG_SEARCH_PATHS:
                config_path = config_path.expanduser()
                if config_path.exists():
                    configs.append(self._load_config_file(config_path))
                    self._config_sources.append(f"file:{config_path}")
                    self.logger.debug(f"Loaded config from {config_path}")
                    break

        env_config = self._load_environment_variables()
        if env_config:
            configs.append(env_config)
            self._config_sources.append("environment")

        self._config_cache = self._deep_merge(*configs)
        self._expand_paths(self._config_cache)
        return self._config_cache

    def _load_config_file(self, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML or JSON file."""
        try:
            with open(path, 'r') as f:
                if path.suffix in ('.yml', '.yaml'):
                    data = yaml.safe_load(f)
                elif path.suffix == '.json':
                    data = json.load(f)
                else:
                    raise ConfigurationError(f"Unknown config file format: {path}")
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must hold a mapping")
        return data

    def _load_environment_variables(self) -> Dict[str, Any]:
        env_config = {}

        for key, value in self.environ.items():
            if not key.startswith(ENV_PREFIX) or ENV_NESTING not in key:
                continue
            parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            current = env_config
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._parse_env_value(value)

        return env_config

    def _parse_env_value(self, value: str) -> Union[str, int, float, bool, None]:
        """Parse environment variable value to appropriate type."""
        lowered = value.lower()
        if lowered in ('true', 'yes'):
            return True
        if lowered in ('false', 'no'):
            return False
        if lowered in ('null', 'none'):
            return None

        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            return value

    def _deep_merge(self, *dicts: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple dictionaries."""
        result = {}

        for dictionary in dicts:
            for key, value in dictionary.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = self._deep_merge(result[key], value)
                else:
                    result[key] = copy.deepcopy(value)

        return result

    def _expand_paths(self, config: Dict[str, Any]):
        """Expand ~ and environment variables in path values."""
        for key, value in config.items():
            if isinstance(value, dict):
                self._expand_paths(value)
            elif isinstance(value, str) and ('~' in value or '$' in value):
                config[key] = os.path.expanduser(os.path.expandvars(value))

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation path.

        Args:
            key_path: Dot-separated path (e.g., 'network.rpc.host')
            default: Default value if key not found
        """
        current = self.load()
        for key in key_path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def set(self, key_path: str, value: Any):
        """Set configuration value by dot-notation path."""
        config = self.load()
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    def validate(self) -> List[str]:
        """
        Validate current configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        config = self.load()
        errors = []

        network_type = config['network'].get('type')
        if network_type not in NETWORK_TYPES:
            errors.append(f"Invalid network type: {network_type}")

        rpc = config['network'].get('rpc', {})
        if not rpc.get('host'):
            errors.append("RPC host is required")
        if not isinstance(rpc.get('port'), int) or rpc['port'] <= 0:
            errors.append("RPC port must be a positive integer")

        fees = config['fees']
        rate = fees.get('satoshis_per_kb')
        if not isinstance(rate, int) or rate < 0:
            errors.append(f"Fee rate must be a non-negative integer, got {rate!r}")
        dust = fees.get('dust_threshold')
        if not isinstance(dust, int) or dust < 0:
            errors.append(f"Dust threshold must be a non-negative integer, got {dust!r}")

        broadcast = config['broadcast']
        if not isinstance(broadcast.get('max_retries'), int) or broadcast['max_retries'] < 0:
            errors.append("broadcast.max_retries must be a non-negative integer")
        if not isinstance(broadcast.get('fee_bump_factor'), (int, float)) or \
                broadcast['fee_bump_factor'] < 1:
            errors.append("broadcast.fee_bump_factor must be at least 1")

        output_format = config['cli'].get('output_format')
        if output_format not in OUTPUT_FORMATS:
            errors.append(f"Invalid output format: {output_format}")

        return errors

    def get_sources(self) -> List[str]:
        """Configuration sources that were loaded."""
        self.load()
        return list(self._config_sources)

    def reset(self):
        """Reset configuration cache."""
        self._config_cache = None
        self._config_sources = []


@dataclass
class EngineSettings:
    """
    Typed view of the configuration used to wire up the engine.
    """
    network: str = 'testnet'
    rpc: Dict[str, Any] = field(default_factory=dict)
    wallet: Dict[str, Any] = field(default_factory=dict)
    satoshis_per_kb: int = 500
    min_satoshis_per_kb: int = 1
    dust_threshold: int = 1
    change_address: Optional[str] = None
    use_node_estimate: bool = True
    target_blocks: int = 6
    broadcast_attempts: int = 3
    broadcast_delay_seconds: float = 1.0
    max_retries: int = 3
    fee_bump_factor: float = 1.5
    poll_interval_seconds: float = 2.0
    acceptance_timeout_seconds: float = 120.0
    required_confirmations: int = 0
    signer_timeout: Optional[float] = 120.0
    handles_dir: str = '~/.covenant/handles'

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'EngineSettings':
        """Build settings from a merged configuration dictionary."""
        fees = config.get('fees', {})
        broadcast = config.get('broadcast', {})
        monitor = config.get('monitor', {})
        return cls(
            network=config.get('network', {}).get('type', 'testnet'),
            rpc=dict(config.get('network', {}).get('rpc', {})),
            wallet=dict(config.get('wallet', {})),
            satoshis_per_kb=int(fees.get('satoshis_per_kb', 500)),
            min_satoshis_per_kb=int(fees.get('min_satoshis_per_kb', 1)),
            dust_threshold=int(fees.get('dust_threshold', 1)),
            change_address=fees.get('change_address'),
            use_node_estimate=bool(fees.get('use_node_estimate', True)),
            target_blocks=int(fees.get('target_blocks', 6)),
            broadcast_attempts=int(broadcast.get('max_attempts', 3)),
            broadcast_delay_seconds=float(broadcast.get('initial_delay_seconds', 1.0)),
            max_retries=int(broadcast.get('max_retries', 3)),
            fee_bump_factor=float(broadcast.get('fee_bump_factor', 1.5)),
            poll_interval_seconds=float(monitor.get('poll_interval_seconds', 2.0)),
            acceptance_timeout_seconds=float(monitor.get('acceptance_timeout_seconds', 120)),
            required_confirmations=int(monitor.get('required_confirmations', 0)),
            signer_timeout=config.get('signer', {}).get('timeout', 120),
            handles_dir=config.get('storage', {}).get('handles_dir', '~/.covenant/handles'),
        )

    def fee_policy(self) -> FeePolicy:
        if not self.change_address:
            raise ConfigurationError("fees.change_address is required to build transactions")
        return FeePolicy(self.satoshis_per_kb, change_address=self.change_address,
                         dust_threshold=self.dust_threshold)

    def rpc_config(self) -> RPCConfig:
        try:
            return RPCConfig(
                host=self.rpc.get('host', 'localhost'),
                port=int(self.rpc.get('port', 18332)),
                username=self.rpc.get('username'),
                password=self.rpc.get('password'),
                cookie_file=self.rpc.get('cookie_file'),
                timeout=int(self.rpc.get('timeout', 30)),
                use_ssl=bool(self.rpc.get('use_ssl', False)),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid RPC configuration: {e}")

    def wallet_bridge_config(self) -> WalletBridgeConfig:
        return WalletBridgeConfig(
            url=self.wallet.get('bridge_url', 'http://localhost:3100'),
            api_token=self.wallet.get('api_token'),
            timeout=int(self.wallet.get('timeout', 120)),
            ssl_verify=bool(self.wallet.get('ssl_verify', True)),
        )

    def broadcast_config(self) -> BroadcastConfig:
        return BroadcastConfig(max_attempts=self.broadcast_attempts,
                               initial_delay_seconds=self.broadcast_delay_seconds)

    def monitor_config(self) -> MonitorConfig:
        return MonitorConfig(
            poll_interval_seconds=self.poll_interval_seconds,
            acceptance_timeout_seconds=self.acceptance_timeout_seconds,
            required_confirmations=self.required_confirmations,
        )

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(max_retries=self.max_retries,
                                  fee_bump_factor=self.fee_bump_factor)


def load_settings(config_file: Optional[str] = None,
                  profile: Optional[str] = None) -> EngineSettings:
    """Load configuration from all sources and return typed settings."""
    manager = ConfigurationManager(config_file, profile)
    errors = manager.validate()
    if errors:
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors))
    return EngineSettings.from_config(manager.load())
