"""
Periodic indexing cycle: fetch, persist, detect.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Any, List, Optional, Set

from ..core.registry_client import RegistryClient
from ..exceptions import PersistenceError
from ..loggers.event_logger import EventLogger
from ..storage.base import Store
from ..storage.models import (
    CycleResult,
    EconomicsSnapshot,
    EpochInfo,
    EventType,
    InflationRate,
    LastKnownState,
    NetworkEvent,
    NetworkSnapshot,
    Node,
    NodeSnapshot,
    PerformanceSample,
    Severity,
    SupplyInfo,
    VoteAccounts,
)
from .alert_service import AlertService
from .event_detector import AnomalyDetector, EventDetector, snapshot_states
from .node_service import NodeService
from .normalizer import NodeNormalizer


CLEANUP_INTERVAL_SECONDS = 24 * 3600


def chain_fields(vote_accounts: Optional[VoteAccounts], epoch_info: Optional[EpochInfo],
                 samples: Optional[List[PerformanceSample]]) -> Dict[str, Any]:
    """Network snapshot columns derived from whichever chain data was fetched."""
    fields: Dict[str, Any] = {}

    if vote_accounts is not None:
        fields.update(
            total_validators=len(vote_accounts.current) + len(vote_accounts.delinquent),
            active_validators=len(vote_accounts.current),
            delinquent_validators=len(vote_accounts.delinquent),
            total_stake=vote_accounts.total_stake,
            average_commission=vote_accounts.average_commission
        )

    if epoch_info is not None:
        fields.update(
            current_epoch=epoch_info.epoch,
            current_slot=epoch_info.absolute_slot,
            block_height=epoch_info.block_height,
            transaction_count=epoch_info.transaction_count
        )

    if samples:
        latest = samples[0]
        fields.update(current_tps=latest.tps, non_vote_tps=latest.non_vote_tps)

    return fields


def build_economics_snapshot(inflation: InflationRate, supply: SupplyInfo, stake_minimum: int,
                             vote_accounts: VoteAccounts, timestamp: float) -> EconomicsSnapshot:
    total_stake = vote_accounts.total_stake
    return EconomicsSnapshot(
        timestamp=timestamp,
        total_supply=supply.total,
        circulating_supply=supply.circulating,
        non_circulating_supply=supply.non_circulating,
        inflation_epoch=inflation.epoch,
        inflation_total=inflation.total,
        inflation_validator=inflation.validator,
        inflation_foundation=inflation.foundation,
        total_staked=total_stake,
        staking_participation=total_stake / supply.total * 100 if supply.total > 0 else 0.0,
        stake_minimum_delegation=stake_minimum
    )


class IndexerService:
    """Runs indexing cycles on a timer, one at a time."""

    def __init__(self, config: Dict[str, Any], registry: RegistryClient, normalizer: NodeNormalizer,
                 store: Store, event_logger: EventLogger, alert_service: Optional[AlertService] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize indexer.

        Args:
            config: Configuration dictionary
            registry: Pod and chain data source
            normalizer: Builds nodes from pods
            store: Snapshot and event storage
            event_logger: Event/anomaly journal
            alert_service: Evaluated after each cycle when given
            clock: Source of the current time in epoch seconds
        """
        self.config = config
        self.registry = registry
        self.node_service = NodeService(registry, normalizer)
        self.store = store
        self.event_logger = event_logger
        self.alert_service = alert_service
        self.clock = clock
        self.logger = logging.getLogger('indexer')

        indexer_config = config['indexer']
        self.interval_ms = indexer_config['interval_ms']
        self.persist_batch_size = indexer_config['persist_batch_size']
        self.performance_sample_limit = config['blockchain']['performance_sample_limit']
        self.anomaly_lookback_seconds = indexer_config['anomaly_lookback_hours'] * 3600

        self.event_detector = EventDetector()
        self.anomaly_detector = AnomalyDetector(
            threshold=indexer_config['anomaly_threshold_stddev'],
            lookback_hours=indexer_config['anomaly_lookback_hours'],
            min_history=indexer_config['anomaly_min_history']
        )

        # State
        self.last_states: Dict[str, LastKnownState] = {}
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self._cycle_lock = asyncio.Lock()
        self._last_cleanup: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    async def start(self, interval_ms: Optional[int] = None):
        """
        Start the timer; the first cycle runs immediately.

        Calling this while already running does nothing.
        """
        if self._timer_task is not None:
            self.logger.debug("Indexer already running")
            return

        interval_ms = interval_ms or self.interval_ms
        self.logger.info(f"Starting indexer with {interval_ms}ms interval")
        self._timer_task = asyncio.create_task(self._timer(interval_ms / 1000))

    def stop(self):
        """Cancel the timer. A cycle already running is left to finish."""
        if self._timer_task is None:
            return
        self._timer_task.cancel()
        self._timer_task = None
        self.logger.info("Indexer stopped")

    async def wait_for_cycles(self):
        """Wait for in-flight cycles, e.g. before shutting down."""
        if self._cycle_tasks:
            await asyncio.gather(*list(self._cycle_tasks), return_exceptions=True)

    async def _timer(self, interval: float):
        while True:
            task = asyncio.create_task(self.run_indexing_cycle())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)
            await asyncio.sleep(interval)

    async def run_indexing_cycle(self) -> CycleResult:
        """
        Run one cycle unless another is still in progress.

        Never raises: failures are logged, recorded as a CRITICAL event and
        reported in the returned result.
        """
        if self._cycle_lock.locked():
            self.logger.warning("Previous indexing cycle still running, skipping this tick")
            return CycleResult(started_at=self.clock(), skipped=True)

        async with self._cycle_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> CycleResult:
        started_at = self.clock()
        result = CycleResult(started_at=started_at)
        self.logger.info("Starting indexing cycle")

        try:
            (nodes, stats), vote_accounts, epoch_info, samples, inflation, supply, stake_minimum = \
                await asyncio.gather(
                    self.node_service.fetch_network_stats(include_network_metrics=True, now=started_at),
                    self._optional('Vote accounts', self.registry.fetch_vote_accounts()),
                    self._optional('Epoch info', self.registry.fetch_epoch_info()),
                    self._optional('Performance samples',
                                   self.registry.fetch_performance_samples(self.performance_sample_limit)),
                    self._optional('Inflation', self.registry.fetch_inflation_rate()),
                    self._optional('Supply', self.registry.fetch_supply()),
                    self._optional('Stake minimum', self.registry.fetch_stake_minimum_delegation()),
                )
            result.node_count = len(nodes)

            self.logger.info(
                f"Data fetch results: nodes={len(nodes)}, vote_accounts={vote_accounts is not None}, "
                f"epoch_info={epoch_info is not None}, samples={len(samples or [])}, "
                f"inflation={inflation is not None}, supply={supply is not None}, "
                f"stake_minimum={stake_minimum is not None}"
            )

            await self._store_node_snapshots(nodes, started_at)

            if vote_accounts is not None:
                await self._store_validators(vote_accounts, started_at)

            if epoch_info is not None:
                await self.store.upsert_epoch_snapshot(epoch_info, started_at)

            if samples:
                await self._store_performance_samples(samples, started_at)

            if inflation is not None and supply is not None and stake_minimum is not None \
                    and vote_accounts is not None:
                await self.store.insert_economics_snapshot(
                    build_economics_snapshot(inflation, supply, stake_minimum, vote_accounts, started_at)
                )
            else:
                self.logger.debug("Skipping economics snapshot, chain data incomplete")

            # Written last so it never precedes its node-level rows
            await self.store.insert_network_snapshot(
                NetworkSnapshot.from_stats(stats, started_at, **chain_fields(vote_accounts, epoch_info, samples))
            )

            result.events = self.event_detector.detect(nodes, self.last_states, started_at)
            for event in result.events:
                await self._log_event(event)

            history = await self.store.get_network_snapshots_since(
                started_at - self.anomaly_lookback_seconds,
                limit=self.anomaly_detector.history_limit,
                before=started_at
            )
            for anomaly, event in self.anomaly_detector.detect(stats, history, started_at):
                result.anomalies.append(anomaly)
                try:
                    await self.event_logger.log_anomaly(anomaly, event)
                except PersistenceError as e:
                    self.logger.error(f"Failed to record anomaly {anomaly.metric}: {e}")

            if self.alert_service is not None:
                result.alerts_triggered = await self._evaluate_alerts(stats, nodes)

            self.last_states = snapshot_states(nodes)
            await self._maybe_cleanup(started_at)

            result.success = True
            result.duration_ms = (self.clock() - started_at) * 1000
            self.logger.info(
                f"Cycle completed in {result.duration_ms:.0f}ms - {len(nodes)} pNodes, "
                f"{len(result.events)} events, {len(result.anomalies)} anomalies"
            )

        except Exception as e:
            result.error = str(e) or type(e).__name__
            result.duration_ms = (self.clock() - started_at) * 1000
            self.logger.error(f"Error during indexing cycle: {result.error}", exc_info=True)
            await self._log_event(NetworkEvent(
                type=EventType.ANOMALY_DETECTED,
                severity=Severity.CRITICAL,
                title='Indexer Error',
                description=f"Failed to complete indexing cycle: {result.error}",
                metadata={'error_type': type(e).__name__},
                timestamp=self.clock()
            ))

        return result

    async def _optional(self, label: str, fetch):
        """Await an auxiliary fetch; any failure yields None."""
        try:
            return await fetch
        except Exception as e:
            self.logger.warning(f"{label} fetch failed: {e}")
            return None

    async def _store_node(self, node: Node, timestamp: float):
        identity_id = await self.store.upsert_node(node, timestamp)
        await self.store.insert_node_snapshot(NodeSnapshot.from_node(node, identity_id, timestamp))

    async def _store_node_snapshots(self, nodes: List[Node], timestamp: float) -> int:
        """Persist nodes in batches; one node failing does not stop the rest."""
        failures = 0
        for start in range(0, len(nodes), self.persist_batch_size):
            batch = nodes[start:start + self.persist_batch_size]
            outcomes = await asyncio.gather(
                *(self._store_node(node, timestamp) for node in batch),
                return_exceptions=True
            )
            for node, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    failures += 1
                    self.logger.error(f"Failed to persist snapshot for {node.id}: {outcome}")

        if failures:
            self.logger.warning(f"{failures}/{len(nodes)} node snapshots failed to persist")
        return failures

    async def _store_validators(self, vote_accounts: VoteAccounts, timestamp: float):
        self.logger.info(f"Storing {len(vote_accounts.all)} validators")
        for account, is_delinquent in vote_accounts.all:
            try:
                validator_id = await self.store.upsert_validator(account, timestamp)
                await self.store.insert_validator_snapshot(validator_id, account, is_delinquent, timestamp)
            except PersistenceError as e:
                self.logger.error(f"Failed to persist validator {account.vote_pubkey}: {e}")

    async def _store_performance_samples(self, samples: List[PerformanceSample], timestamp: float):
        stored = 0
        for sample in samples:
            if await self.store.performance_sample_exists(sample.slot):
                continue
            await self.store.insert_performance_sample(sample, timestamp)
            stored += 1
        self.logger.debug(f"Stored {stored}/{len(samples)} new performance samples")

    async def _log_event(self, event: NetworkEvent):
        try:
            await self.event_logger.log_event(event)
        except PersistenceError as e:
            self.logger.error(f"Failed to record event '{event.title}': {e}")

    async def _evaluate_alerts(self, stats, nodes: List[Node]) -> int:
        try:
            alerts = await self.alert_service.evaluate_rules(stats, nodes)
        except Exception as e:
            self.logger.error(f"Alert rule evaluation failed: {e}")
            return 0
        return len(alerts)

    async def _maybe_cleanup(self, now: float):
        if self._last_cleanup is not None and now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        try:
            await self.store.cleanup_old_data(now)
        except PersistenceError as e:
            self.logger.error(f"Retention cleanup failed: {e}")
