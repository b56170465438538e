"""
Tests for the SQLite store.
"""

import pytest

from pnode_indexer.exceptions import PersistenceError
from pnode_indexer.monitoring.aggregator import aggregate
from pnode_indexer.storage.models import (
    EpochInfo,
    EventType,
    NetworkEvent,
    NetworkSnapshot,
    NodeSnapshot,
    NodeStatus,
    PerformanceSample,
    Severity,
    VoteAccount,
)

from conftest import NOW


DAY = 24 * 3600


async def add_snapshot(store, node, timestamp):
    identity_id = await store.upsert_node(node, timestamp)
    await store.insert_node_snapshot(NodeSnapshot.from_node(node, identity_id, timestamp))
    return identity_id


# =============================================================================
# NODES
# =============================================================================

class TestNodeStorage:
    """Tests for node identities and snapshots."""

    @pytest.mark.asyncio
    async def test_upsert_keeps_identity(self, store, make_node):
        """Test that a node keeps its identity row across cycles."""
        first = await store.upsert_node(make_node('N1', version='0.7.0'), NOW)
        second = await store.upsert_node(make_node('N1', version='0.8.0'), NOW + 30)

        assert first == second
        assert await store.get_node_identity_id('N1') == first
        assert await store.get_node_identity_id('missing') is None

    @pytest.mark.asyncio
    async def test_history_averages(self, store, make_node):
        """Test averages over the node's snapshots inside the window."""
        await add_snapshot(store, make_node('N1', NodeStatus.OFFLINE, latency=999.0, estimated=False), NOW - 40 * DAY)
        await add_snapshot(store, make_node('N1', NodeStatus.ONLINE, latency=20.0, success_rate=100.0, estimated=False), NOW - 2)
        await add_snapshot(store, make_node('N1', NodeStatus.OFFLINE, latency=40.0, success_rate=80.0, estimated=False), NOW - 1)

        history = await store.get_node_history('N1', NOW - 30 * DAY)

        assert history.sample_count == 2
        assert history.online_fraction == pytest.approx(0.5)
        assert history.uptime_percent == pytest.approx(50.0)
        assert history.average_latency_ms == pytest.approx(30.0)
        assert history.average_success_rate == pytest.approx(90.0)

    @pytest.mark.asyncio
    async def test_history_ignores_estimated_metrics(self, store, make_node):
        """Test that placeholder latency and success rate never enter the averages."""
        await add_snapshot(store, make_node('N1', NodeStatus.ONLINE, latency=25.0, success_rate=97.5), NOW - 3)
        await add_snapshot(store, make_node('N1', NodeStatus.OFFLINE, latency=0.0, success_rate=0.0), NOW - 2)

        history = await store.get_node_history('N1', NOW - DAY)
        assert history.sample_count == 2
        assert history.online_fraction == pytest.approx(0.5)
        assert history.average_latency_ms is None
        assert history.average_success_rate is None

        await add_snapshot(store, make_node('N1', latency=60.0, success_rate=90.0, estimated=False), NOW - 1)

        history = await store.get_node_history('N1', NOW - DAY)
        assert history.sample_count == 3
        assert history.average_latency_ms == pytest.approx(60.0)
        assert history.average_success_rate == pytest.approx(90.0)

    @pytest.mark.asyncio
    async def test_history_of_unknown_node(self, store):
        assert await store.get_node_history('nobody', 0) is None


# =============================================================================
# NETWORK
# =============================================================================

class TestNetworkSnapshots:
    """Tests for network snapshot history."""

    @pytest.mark.asyncio
    async def test_window_and_before(self, store, make_node):
        """Test the lookback window with the current cycle excluded."""
        stats = aggregate([make_node('a', version='0.8.0'), make_node('b', version='0.7.3')], NOW)
        for offset in (3000, 2000, 1000, 0):
            await store.insert_network_snapshot(NetworkSnapshot.from_stats(stats, NOW - offset, current_epoch=7))

        snapshots = await store.get_network_snapshots_since(NOW - 2500, before=NOW)

        assert [s.timestamp for s in snapshots] == [NOW - 1000, NOW - 2000]
        assert snapshots[0].version_distribution == {'0.8.0': 1, '0.7.3': 1}
        assert snapshots[0].current_epoch == 7
        assert snapshots[0].current_tps is None

    @pytest.mark.asyncio
    async def test_limit(self, store, make_node):
        stats = aggregate([make_node()], NOW)
        for i in range(5):
            await store.insert_network_snapshot(NetworkSnapshot.from_stats(stats, NOW - i))

        assert len(await store.get_network_snapshots_since(0, limit=3)) == 3


# =============================================================================
# CHAIN DATA
# =============================================================================

class TestChainStorage:
    """Tests for validator, epoch and sample storage."""

    @pytest.mark.asyncio
    async def test_epoch_upsert(self, store):
        """Test that an epoch has exactly one row, holding the latest values."""
        await store.upsert_epoch_snapshot(EpochInfo(42, 1000, 990, 100, 400, 5), NOW)
        await store.upsert_epoch_snapshot(EpochInfo(42, 1200, 1190, 300, 400, 9), NOW + 30)

        row = await store.get_epoch_snapshot(42)

        assert await store.count_rows('epoch_snapshots') == 1
        assert row['absolute_slot'] == 1200
        assert row['progress_percent'] == pytest.approx(75.0)

    @pytest.mark.asyncio
    async def test_performance_sample_dedupe(self, store):
        """Test that a slot is stored once."""
        sample = PerformanceSample(slot=500, num_slots=150, num_transactions=6000,
                                   num_non_vote_transactions=600, sample_period_secs=60)

        assert await store.performance_sample_exists(500) is False
        await store.insert_performance_sample(sample, NOW)
        assert await store.performance_sample_exists(500) is True

        with pytest.raises(PersistenceError):
            await store.insert_performance_sample(sample, NOW + 30)

    @pytest.mark.asyncio
    async def test_validator_identity(self, store):
        account = VoteAccount('V1', 'N1', 500, 10.0, 7, 6, True, ((42, 180, 100),))

        first = await store.upsert_validator(account, NOW)
        second = await store.upsert_validator(account, NOW + 30)
        await store.insert_validator_snapshot(first, account, False, NOW)

        assert first == second
        assert await store.count_rows('validator_snapshots') == 1


# =============================================================================
# EVENTS AND RETENTION
# =============================================================================

class TestEventsAndRetention:
    """Tests for the event log and retention cleanup."""

    @pytest.mark.asyncio
    async def test_events_round_trip(self, store):
        event = NetworkEvent(EventType.NODE_OFFLINE, Severity.CRITICAL, 'Down', 'desc',
                             node_pubkey='N1', metadata={'previous_status': 'online'}, timestamp=NOW)
        await store.insert_network_event(event)

        events = await store.get_network_events(since=NOW - 1)

        assert len(events) == 1
        assert events[0].type == EventType.NODE_OFFLINE
        assert events[0].metadata == {'previous_status': 'online'}

    @pytest.mark.asyncio
    async def test_cleanup_respects_retention(self, store, make_node):
        """Test that only snapshots older than 90 days are removed."""
        await add_snapshot(store, make_node('N1'), NOW - 91 * DAY)
        await add_snapshot(store, make_node('N1'), NOW - 89 * DAY)
        stats = aggregate([make_node()], NOW)
        await store.insert_network_snapshot(NetworkSnapshot.from_stats(stats, NOW - 100 * DAY))
        await store.insert_network_snapshot(NetworkSnapshot.from_stats(stats, NOW))

        removed = await store.cleanup_old_data(NOW)

        assert removed == 2
        assert await store.count_rows('node_snapshots') == 1
        assert await store.count_rows('network_snapshots') == 1
        assert await store.count_rows('nodes') == 1
