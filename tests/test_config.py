"""
Tests for configuration loading and entry point arguments.
"""

import pytest

from pnode_indexer.main import parse_args
from pnode_indexer.utils.config import (
    DEFAULT_SEED_NODES,
    _apply_env_overrides,
    default_config,
    load_config,
    should_auto_start,
    validate_config,
)


class TestLoadConfig:
    """Tests for load_config."""

    def test_partial_file_gets_defaults(self, tmp_path, monkeypatch):
        """Test that omitted keys fall back to defaults and directories are created."""
        for name in ('INDEXER_INTERVAL_MS', 'INDEXER_ENABLED', 'INDEXER_ENV', 'XANDEUM_RPC_URL',
                     'ANOMALY_THRESHOLD_STDDEV', 'PNODE_DATABASE_PATH'):
            monkeypatch.delenv(name, raising=False)

        config_file = tmp_path / 'config.yaml'
        config_file.write_text(
            "registry: {}\n"
            "blockchain: {}\n"
            "geoip:\n  enabled: false\n"
            "indexer:\n  interval_ms: 5000\n"
            f"storage:\n  database_path: {tmp_path / 'data' / 'index.db'}\n"
            f"logging:\n  logs_directory: {tmp_path / 'logs'}\n"
        )

        config = load_config(str(config_file))

        assert config['registry']['seed_nodes'] == DEFAULT_SEED_NODES
        assert config['indexer']['interval_ms'] == 5000
        assert config['indexer']['anomaly_threshold_stddev'] == 2.5
        assert config['geoip']['enabled'] is False
        assert (tmp_path / 'data').is_dir()
        assert (tmp_path / 'logs' / 'events').is_dir()

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv('INDEXER_INTERVAL_MS', '1000')
        config_file = tmp_path / 'config.yaml'
        config_file.write_text(
            "registry: {}\nblockchain: {}\ngeoip: {}\nindexer: {}\n"
            "storage:\n  database_path: ':memory:'\n"
            f"logging:\n  logs_directory: {tmp_path / 'logs'}\n"
        )

        assert load_config(str(config_file))['indexer']['interval_ms'] == 1000

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / 'absent.yaml'))

    def test_missing_section(self):
        with pytest.raises(ValueError, match='indexer'):
            validate_config({'registry': {}, 'blockchain': {}, 'geoip': {}, 'storage': {}, 'logging': {}})


class TestEnvironmentOverrides:
    """Tests for environment variable handling."""

    def test_indexer_settings(self):
        config = _apply_env_overrides(default_config(), {
            'INDEXER_INTERVAL_MS': '15000',
            'ANOMALY_THRESHOLD_STDDEV': '3',
            'INDEXER_ENABLED': 'TRUE',
            'INDEXER_ENV': 'Development',
        })

        assert config['indexer']['interval_ms'] == 15000
        assert config['indexer']['anomaly_threshold_stddev'] == 3.0
        assert config['indexer']['enabled'] is True
        assert config['indexer']['environment'] == 'development'

    def test_rpc_url_is_tried_first(self):
        """Test that XANDEUM_RPC_URL moves to the front without duplicates."""
        config = default_config()
        existing = config['blockchain']['rpc_endpoints'][1]

        config = _apply_env_overrides(config, {'XANDEUM_RPC_URL': existing})

        endpoints = config['blockchain']['rpc_endpoints']
        assert endpoints[0] == existing
        assert endpoints.count(existing) == 1

    @pytest.mark.parametrize("environment,enabled,expected", [
        ('development', False, True),
        ('production', False, False),
        ('production', True, True),
    ])
    def test_should_auto_start(self, environment, enabled, expected):
        config = default_config()
        config['indexer'].update(environment=environment, enabled=enabled)
        assert should_auto_start(config) is expected


class TestArguments:
    """Tests for command line parsing."""

    def test_defaults(self):
        args = parse_args([])
        assert args.config is None
        assert args.once is False

    def test_once_with_config(self):
        args = parse_args(['--config', 'custom.yaml', '--once'])
        assert args.config == 'custom.yaml'
        assert args.once is True
