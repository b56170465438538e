"""
Shared fixtures for the pNode indexer tests.
"""

import pytest

from pnode_indexer.storage.database import SQLiteStore
from pnode_indexer.storage.models import (
    Node,
    NodeStatus,
    PerformanceMetrics,
    StorageMetrics,
)
from pnode_indexer.utils.config import default_config


NOW = 1_700_000_000.0


@pytest.fixture
def config(tmp_path):
    """Default configuration with an in-memory database and a temporary log tree."""
    cfg = default_config()
    cfg['storage']['database_path'] = ':memory:'
    cfg['logging']['logs_directory'] = str(tmp_path / 'logs')
    cfg['geoip']['min_request_interval_ms'] = 0
    return cfg


@pytest.fixture
async def store(config):
    """Initialized in-memory SQLite store."""
    db = SQLiteStore(config)
    await db.initialize()
    yield db
    await db.close()


def build_node(node_id: str = 'node-1', status: NodeStatus = NodeStatus.ONLINE,
               score: int = 50, uptime: float = 50.0, latency: float = 25.0,
               success_rate: float = 97.5, capacity: int = 0, used: int = 0,
               version: str = '0.8.0', location: str = 'US-East',
               address: str = '8.8.8.8:9001', estimated: bool = True) -> Node:
    """Node with explicit values, bypassing normalization."""
    return Node(
        id=node_id,
        status=status,
        storage=StorageMetrics(
            capacity_bytes=capacity,
            used_bytes=used,
            utilization_percent=used / capacity * 100 if capacity else 0.0,
            is_estimated=capacity == 0
        ),
        performance=PerformanceMetrics(
            average_latency_ms=latency,
            success_rate_percent=success_rate,
            uptime_percent=uptime,
            last_updated_ms=int(NOW * 1000),
            is_estimated=estimated
        ),
        performance_score=score,
        version=version,
        location=location,
        last_seen=NOW,
        gossip_endpoint=address
    )


@pytest.fixture
def make_node():
    """Factory for Node records."""
    return build_node


class FakeClock:
    """Settable clock for code that takes a ``clock`` callable."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(NOW)
