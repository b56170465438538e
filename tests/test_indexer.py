"""
Tests for the indexing cycle and its scheduler.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from pnode_indexer.exceptions import RPCError, RegistryUnavailable
from pnode_indexer.loggers.event_logger import EventLogger
from pnode_indexer.monitoring.aggregator import aggregate
from pnode_indexer.monitoring.alert_service import AlertService
from pnode_indexer.monitoring.indexer import IndexerService, build_economics_snapshot, chain_fields
from pnode_indexer.monitoring.normalizer import LocalNodeEnricher, NodeNormalizer
from pnode_indexer.storage.models import (
    EpochInfo,
    EventType,
    InflationRate,
    NetworkSnapshot,
    PerformanceSample,
    Severity,
    SupplyInfo,
    Tier2PodWithStats,
    VoteAccount,
    VoteAccounts,
)

from conftest import NOW


PODS = [
    Tier2PodWithStats(address='8.8.8.8:9001', version='0.8.0', uptime_seconds=86400, pubkey='P1'),
    Tier2PodWithStats(address='150.0.0.1:9001', version='0.8.0', uptime_seconds=3600, pubkey='P2'),
    Tier2PodWithStats(address='200.0.0.1:9001', version='0.7.3', uptime_seconds=0, pubkey='P3'),
]

VOTE_ACCOUNTS = VoteAccounts(
    current=[VoteAccount('V1', 'N1', 600, 10.0, 7, 6, True, ((42, 180, 100),))],
    delinquent=[VoteAccount('V2', 'N2', 400, 5.0, 3, 2, False)],
)
EPOCH = EpochInfo(42, 1000, 990, 100, 400, 5000)
SAMPLES = [
    PerformanceSample(1000, 150, 6000, 600, 60),
    PerformanceSample(850, 150, 3000, 300, 60),
]


def chain_unavailable():
    return AsyncMock(side_effect=RPCError('getX', 'https://chain', 'timeout'))


@pytest.fixture
def registry():
    """Registry double serving three pods and no chain data."""
    mock = MagicMock()
    mock.fetch_raw_pods = AsyncMock(return_value=list(PODS))
    mock.fetch_network_metrics = AsyncMock(return_value={})
    mock.fetch_vote_accounts = chain_unavailable()
    mock.fetch_epoch_info = chain_unavailable()
    mock.fetch_performance_samples = chain_unavailable()
    mock.fetch_inflation_rate = chain_unavailable()
    mock.fetch_supply = chain_unavailable()
    mock.fetch_stake_minimum_delegation = chain_unavailable()
    return mock


def with_chain_data(registry):
    registry.fetch_vote_accounts = AsyncMock(return_value=VOTE_ACCOUNTS)
    registry.fetch_epoch_info = AsyncMock(return_value=EPOCH)
    registry.fetch_performance_samples = AsyncMock(return_value=list(SAMPLES))
    registry.fetch_inflation_rate = AsyncMock(return_value=InflationRate(42, 0.08, 0.07, 0.01))
    registry.fetch_supply = AsyncMock(return_value=SupplyInfo(10_000, 6_000, 4_000))
    registry.fetch_stake_minimum_delegation = AsyncMock(return_value=1)
    return registry


@pytest.fixture
def event_logger(store, config):
    return EventLogger(store, config['logging']['logs_directory'])


@pytest.fixture
def indexer(config, registry, store, event_logger, clock):
    return IndexerService(
        config,
        registry,
        NodeNormalizer(LocalNodeEnricher()),
        store,
        event_logger,
        AlertService(store, clock),
        clock=clock
    )


# =============================================================================
# HELPERS
# =============================================================================

class TestChainHelpers:
    """Tests for chain data folding."""

    def test_chain_fields_partial(self):
        """Test that only fetched sources contribute columns."""
        fields = chain_fields(None, EPOCH, SAMPLES)

        assert 'total_validators' not in fields
        assert fields['current_epoch'] == 42
        assert fields['current_tps'] == pytest.approx(100.0)
        assert fields['non_vote_tps'] == pytest.approx(10.0)

    def test_chain_fields_validators(self):
        fields = chain_fields(VOTE_ACCOUNTS, None, [])

        assert fields['total_validators'] == 2
        assert fields['delinquent_validators'] == 1
        assert fields['total_stake'] == 1000
        assert fields['average_commission'] == pytest.approx(7.5)

    def test_economics_snapshot(self):
        snapshot = build_economics_snapshot(
            InflationRate(42, 0.08, 0.07, 0.01), SupplyInfo(10_000, 6_000, 4_000), 1, VOTE_ACCOUNTS, NOW
        )

        assert snapshot.total_staked == 1000
        assert snapshot.staking_participation == pytest.approx(10.0)


# =============================================================================
# CYCLE
# =============================================================================

class TestIndexingCycle:
    """Tests for run_indexing_cycle."""

    @pytest.mark.asyncio
    async def test_successful_cycle(self, indexer, store, config):
        """Test that a cycle persists nodes and network state and logs joins."""
        result = await indexer.run_indexing_cycle()

        assert result.success
        assert result.error is None
        assert result.node_count == 3
        assert [e.type for e in result.events] == [EventType.NODE_JOINED] * 3
        assert await store.count_rows('nodes') == 3
        assert await store.count_rows('node_snapshots') == 3
        assert await store.count_rows('network_snapshots') == 1
        assert len(await store.get_network_events()) == 3

        journal = config['logging']['logs_directory'] + '/events/network_events.jsonl'
        with open(journal) as f:
            lines = [json.loads(line) for line in f]
        assert [entry['event']['type'] for entry in lines] == ['NODE_JOINED'] * 3

    @pytest.mark.asyncio
    async def test_identical_cycles_add_no_events(self, indexer, store, clock):
        """Test that unchanged inputs only grow the snapshot tables."""
        await indexer.run_indexing_cycle()
        clock.now += 30
        second = await indexer.run_indexing_cycle()
        clock.now += 30
        third = await indexer.run_indexing_cycle()

        assert second.events == []
        assert third.events == []
        assert len(await store.get_network_events()) == 3
        assert await store.count_rows('network_snapshots') == 3

    @pytest.mark.asyncio
    async def test_chain_failures_are_tolerated(self, indexer, store):
        """Test that missing chain data leaves the chain columns empty."""
        result = await indexer.run_indexing_cycle()

        snapshots = await store.get_network_snapshots_since(0)
        assert result.success
        assert snapshots[0].total_validators is None
        assert snapshots[0].current_epoch is None
        assert await store.count_rows('economics_snapshots') == 0

    @pytest.mark.asyncio
    async def test_chain_data_is_stored(self, indexer, registry, store, clock):
        """Test validators, epoch upsert, sample dedupe and economics."""
        with_chain_data(registry)

        await indexer.run_indexing_cycle()
        clock.now += 30
        await indexer.run_indexing_cycle()

        assert await store.count_rows('validators') == 2
        assert await store.count_rows('validator_snapshots') == 4
        assert await store.count_rows('epoch_snapshots') == 1
        assert await store.count_rows('performance_samples') == 2
        assert await store.count_rows('economics_snapshots') == 2

        latest = (await store.get_network_snapshots_since(0))[0]
        assert latest.current_epoch == 42
        assert latest.total_validators == 2
        assert latest.current_tps == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_registry_failure(self, indexer, registry, store):
        """Test that a failed pod fetch records a critical event and no snapshot."""
        registry.fetch_raw_pods.side_effect = RegistryUnavailable('pods', ['get-pods@seed'], {'seed': 'timeout'})

        result = await indexer.run_indexing_cycle()

        assert result.success is False
        assert 'pods unavailable' in result.error
        assert await store.count_rows('network_snapshots') == 0

        events = await store.get_network_events()
        assert len(events) == 1
        assert events[0].severity == Severity.CRITICAL
        assert events[0].title == 'Indexer Error'
        assert events[0].type == EventType.ANOMALY_DETECTED

    @pytest.mark.asyncio
    async def test_failed_cycle_keeps_previous_states(self, indexer, registry):
        """Test that a failed cycle does not reset change detection."""
        await indexer.run_indexing_cycle()
        states = dict(indexer.last_states)

        registry.fetch_raw_pods.side_effect = RegistryUnavailable('pods', [], {})
        await indexer.run_indexing_cycle()

        assert indexer.last_states == states

    @pytest.mark.asyncio
    async def test_anomaly_against_history(self, indexer, store, make_node):
        """Test that a collapse in node count against stored history is flagged."""
        stats = aggregate([make_node(f"h{i}") for i in range(100)], NOW)
        for i in range(12):
            await store.insert_network_snapshot(NetworkSnapshot.from_stats(stats, NOW - (i + 1) * 60))

        result = await indexer.run_indexing_cycle()

        assert 'totalPNodes' in [a.metric for a in result.anomalies]
        anomalies = await store.get_anomalies()
        assert 'totalPNodes' in [a.metric for a in anomalies]

    @pytest.mark.asyncio
    async def test_alert_rules_are_evaluated(self, indexer, store, clock):
        await AlertService(store, clock).create_rule('Few nodes', 'totalPNodes', '<', 10)

        result = await indexer.run_indexing_cycle()

        assert result.alerts_triggered == 1
        assert len(await store.get_alerts()) == 1


# =============================================================================
# SCHEDULER
# =============================================================================

class TestScheduler:
    """Tests for start/stop and the overlap guard."""

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, indexer, registry):
        """Test that a tick during a running cycle does nothing."""
        release = asyncio.Event()

        async def slow_fetch():
            await release.wait()
            return list(PODS)

        registry.fetch_raw_pods = AsyncMock(side_effect=slow_fetch)

        running = asyncio.create_task(indexer.run_indexing_cycle())
        while not indexer.cycle_in_progress:
            await asyncio.sleep(0)

        skipped = await indexer.run_indexing_cycle()
        release.set()
        finished = await running

        assert skipped.skipped is True
        assert skipped.success is False
        assert finished.success is True
        assert registry.fetch_raw_pods.await_count == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, indexer, registry):
        """Test that a second start keeps the existing timer."""
        await indexer.start(interval_ms=60_000)
        timer = indexer._timer_task
        await indexer.start(interval_ms=60_000)

        assert indexer._timer_task is timer
        assert indexer.is_running

        await asyncio.sleep(0.05)
        indexer.stop()
        await indexer.wait_for_cycles()

        assert not indexer.is_running
        assert registry.fetch_raw_pods.await_count == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, indexer):
        indexer.stop()
        assert not indexer.is_running
