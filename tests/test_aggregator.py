"""
Tests for network aggregation and health scoring.
"""

import pytest

from pnode_indexer.monitoring.aggregator import aggregate, calculate_health_score
from pnode_indexer.storage.models import NodeStatus

from conftest import NOW


class TestHealthScore:
    """Tests for calculate_health_score."""

    def test_empty_network(self):
        """Test that an empty node set scores zero."""
        assert calculate_health_score([]) == 0

    def test_monotonic_in_online_count(self, make_node):
        """Test that bringing nodes online never lowers health."""
        scores = []
        for online in range(6):
            nodes = [
                make_node(
                    node_id=f"n{i}",
                    status=NodeStatus.ONLINE if i < online else NodeStatus.OFFLINE,
                    score=50,
                    uptime=50.0
                )
                for i in range(5)
            ]
            scores.append(calculate_health_score(nodes))

        assert scores == sorted(scores)
        assert scores[0] < scores[-1]

    def test_all_perfect(self, make_node):
        """Test the upper bound with perfect nodes."""
        nodes = [make_node(node_id=str(i), score=100, uptime=100.0) for i in range(3)]
        assert calculate_health_score(nodes) == 100


class TestAggregate:
    """Tests for aggregate."""

    def test_empty_network(self):
        """Test that aggregating nothing yields zeroed stats."""
        stats = aggregate([], NOW)

        assert stats.is_empty
        assert stats.health_score == 0
        assert stats.utilization_percent == 0.0
        assert stats.average_performance == 0
        assert stats.version_distribution == {}
        assert stats.last_updated == NOW

    def test_counts_and_distributions(self, make_node):
        """Test status counts and version/location histograms."""
        nodes = [
            make_node('a', NodeStatus.ONLINE, version='0.8.0', location='US-East'),
            make_node('b', NodeStatus.DELINQUENT, version='0.8.0', location='EU-Central'),
            make_node('c', NodeStatus.OFFLINE, version='0.7.3', location='US-East'),
        ]
        stats = aggregate(nodes, NOW)

        assert stats.total_nodes == 3
        assert stats.online_nodes == 1
        assert stats.delinquent_nodes == 1
        assert stats.offline_nodes == 1
        assert stats.version_distribution == {'0.8.0': 2, '0.7.3': 1}
        assert stats.geo_distribution == {'US-East': 2, 'EU-Central': 1}

    def test_utilization_and_averages(self, make_node):
        """Test capacity totals and averaged metrics."""
        nodes = [
            make_node('a', score=40, latency=20.0, capacity=1000, used=100),
            make_node('b', score=60, latency=40.0, capacity=3000, used=900),
        ]
        stats = aggregate(nodes, NOW)

        assert stats.total_capacity_bytes == 4000
        assert stats.total_used_bytes == 1000
        assert stats.utilization_percent == pytest.approx(25.0)
        assert stats.average_performance == 50
        assert stats.average_latency_ms == pytest.approx(30.0)
