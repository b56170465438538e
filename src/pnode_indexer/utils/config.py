"""
Indexer configuration: YAML file, built-in defaults and environment overrides.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[3] / 'config' / 'config.yaml'

REQUIRED_SECTIONS = ['registry', 'blockchain', 'geoip', 'indexer', 'storage', 'logging']

DEFAULT_SEED_NODES = [
    'http://192.190.136.28:6000/rpc',
    'http://173.212.220.65:6000/rpc',
    'http://192.190.136.37:6000/rpc',
]

DEFAULT_RPC_ENDPOINTS = [
    'https://api.devnet.xandeum.com:8899',
    'https://rpc.xandeum.network',
]


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the effective indexer configuration.

    The YAML file is read first, then missing keys are filled from the
    built-in defaults, environment variables are layered on top and
    filesystem paths are made absolute. Data and log directories are
    created as a side effect.

    Args:
        config_path: YAML file to read. Falls back to ``PNODE_INDEXER_CONFIG``
            and then ``config/config.yaml``.

    Raises:
        FileNotFoundError: The file does not exist
        yaml.YAMLError: The file is not valid YAML
        ValueError: A top-level section is absent
    """
    path = Path(config_path or os.environ.get('PNODE_INDEXER_CONFIG', DEFAULT_CONFIG_PATH)).resolve()
    if not path.is_file():
        raise FileNotFoundError(f"No indexer config at {path}")

    try:
        with path.open() as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Cannot parse {path}: {e}")

    validate_config(raw)

    config = _resolve_paths(_apply_env_overrides(_apply_defaults(raw), os.environ))
    _create_directories(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """Raise ValueError when a required section is missing."""
    for section in REQUIRED_SECTIONS:
        if section not in config:
            raise ValueError(f"Config section '{section}' is required")


def default_config() -> Dict[str, Any]:
    """Configuration used when every section is left empty."""
    return _apply_defaults({section: {} for section in REQUIRED_SECTIONS})


def _apply_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Fill every section with the values used when a key is omitted."""
    for section in REQUIRED_SECTIONS:
        if config.get(section) is None:
            config[section] = {}

    registry = config['registry']
    registry.setdefault('seed_nodes', list(DEFAULT_SEED_NODES))
    registry.setdefault('pnrpc_port', 6000)
    registry.setdefault('pods_timeout_seconds', 5)
    registry.setdefault('pods_with_stats_timeout_seconds', 10)
    registry.setdefault('node_stats_timeout_seconds', 3)
    registry.setdefault('stats_batch_size', 10)

    blockchain = config['blockchain']
    blockchain.setdefault('rpc_endpoints', list(DEFAULT_RPC_ENDPOINTS))
    blockchain.setdefault('timeout_seconds', 15)
    blockchain.setdefault('performance_sample_limit', 10)

    geoip = config['geoip']
    geoip.setdefault('enabled', True)
    geoip.setdefault('provider_url', 'http://ip-api.com/json/')
    geoip.setdefault('timeout_seconds', 5)
    geoip.setdefault('min_request_interval_ms', 50)

    indexer = config['indexer']
    indexer.setdefault('interval_ms', 30000)
    indexer.setdefault('anomaly_threshold_stddev', 2.5)
    indexer.setdefault('anomaly_lookback_hours', 24)
    indexer.setdefault('anomaly_min_history', 10)
    indexer.setdefault('history_window_days', 30)
    indexer.setdefault('persist_batch_size', 10)
    indexer.setdefault('environment', 'production')
    indexer.setdefault('enabled', False)

    storage = config['storage']
    storage.setdefault('database_path', 'data/pnode_indexer.db')
    storage.setdefault('retention_days', 90)

    logging_config = config['logging']
    logging_config.setdefault('logs_directory', 'logs')
    logging_config.setdefault('config_file', None)

    return config


def _apply_env_overrides(config: Dict[str, Any], env: Dict[str, str]) -> Dict[str, Any]:
    """Apply environment variable overrides on top of the file values."""
    indexer = config['indexer']

    if env.get('INDEXER_INTERVAL_MS'):
        indexer['interval_ms'] = int(env['INDEXER_INTERVAL_MS'])

    if env.get('ANOMALY_THRESHOLD_STDDEV'):
        indexer['anomaly_threshold_stddev'] = float(env['ANOMALY_THRESHOLD_STDDEV'])

    if env.get('INDEXER_ENABLED'):
        indexer['enabled'] = env['INDEXER_ENABLED'].strip().lower() == 'true'

    if env.get('INDEXER_ENV'):
        indexer['environment'] = env['INDEXER_ENV'].strip().lower()

    if env.get('PNODE_DATABASE_PATH'):
        config['storage']['database_path'] = env['PNODE_DATABASE_PATH']

    rpc_url = env.get('XANDEUM_RPC_URL')
    if rpc_url:
        endpoints = [e for e in config['blockchain']['rpc_endpoints'] if e != rpc_url]
        config['blockchain']['rpc_endpoints'] = [rpc_url] + endpoints

    return config


def _resolve_paths(config: Dict[str, Any]) -> Dict[str, Any]:
    storage, logging_section = config['storage'], config['logging']
    if storage['database_path'] != ':memory:':
        storage['database_path'] = os.path.abspath(storage['database_path'])
    logging_section['logs_directory'] = os.path.abspath(logging_section['logs_directory'])
    return config


def _create_directories(config: Dict[str, Any]) -> None:
    """Make sure the database parent and the journal subdirectories exist."""
    database_path = config['storage']['database_path']
    if database_path != ':memory:':
        os.makedirs(os.path.dirname(database_path), exist_ok=True)

    logs_root = config['logging']['logs_directory']
    for journal in ('events', 'analysis', 'system'):
        os.makedirs(os.path.join(logs_root, journal), exist_ok=True)


def should_auto_start(config: Dict[str, Any]) -> bool:
    """
    Decide whether the scheduler starts on its own.

    Development always auto-starts; production only when explicitly enabled,
    otherwise cycles are triggered externally one at a time.
    """
    indexer = config['indexer']
    return indexer.get('environment') == 'development' or bool(indexer.get('enabled'))
