"""
Turns raw pod payloads into canonical Node records and scores them.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..core.geoip import GeoIPResolver, estimate_location_from_ip
from ..storage.models import (
    NetworkMetrics,
    Node,
    NodeHistory,
    NodeStatus,
    PerformanceMetrics,
    RawPod,
    StorageMetrics,
    Tier1Pod,
    Tier2PodWithStats,
)


ONLINE_WINDOW_SECONDS = 5 * 60
DELINQUENT_WINDOW_SECONDS = 30 * 60
UPTIME_REFERENCE_SECONDS = 30 * 24 * 3600
TIB = 1024 ** 4

# Placeholders for metrics no source measures, keyed by status
ESTIMATED_UPTIME = {
    NodeStatus.ONLINE: 97.5,
    NodeStatus.DELINQUENT: 77.5,
    NodeStatus.OFFLINE: 25.0,
}
ESTIMATED_LATENCY_MS = {
    NodeStatus.ONLINE: 25.0,
    NodeStatus.DELINQUENT: 100.0,
    NodeStatus.OFFLINE: 100.0,
}
ESTIMATED_SUCCESS_RATE = {
    NodeStatus.ONLINE: 97.5,
    NodeStatus.DELINQUENT: 85.0,
    NodeStatus.OFFLINE: 65.0,
}


def calculate_performance_score(performance: PerformanceMetrics, storage: StorageMetrics) -> int:
    """
    Score a node from 0 to 100.

    Weights: uptime 30%, capacity 20% (full marks at 1 TiB), inverse latency
    25%, success rate 15%, and a flat 10 for version currency.

    Args:
        performance: Performance metrics of the node
        storage: Storage metrics of the node

    Returns:
        Rounded score clamped to [0, 100]
    """
    uptime_score = performance.uptime_percent * 0.30
    storage_score = min(storage.capacity_bytes / TIB * 20, 20)
    response_score = max((100 - performance.average_latency_ms) / 100, 0) * 25
    reliability_score = performance.success_rate_percent * 0.15
    version_score = 10

    score = round(uptime_score + storage_score + response_score + reliability_score + version_score)
    return max(0, min(100, score))


def derive_status_from_last_seen(last_seen_timestamp: float, now: float) -> NodeStatus:
    """Status of a presence-only record from the age of its last sighting."""
    age = now - last_seen_timestamp
    if age < ONLINE_WINDOW_SECONDS:
        return NodeStatus.ONLINE
    if age < DELINQUENT_WINDOW_SECONDS:
        return NodeStatus.DELINQUENT
    return NodeStatus.OFFLINE


def derive_status_from_uptime(uptime_seconds: int) -> NodeStatus:
    """A live uptime counter above zero means the node is up."""
    return NodeStatus.ONLINE if uptime_seconds > 0 else NodeStatus.OFFLINE


def uptime_percent(uptime_seconds: int) -> float:
    """Share of the 30-day reference window covered by the current uptime."""
    return min(uptime_seconds / UPTIME_REFERENCE_SECONDS * 100, 100.0)


def build_storage(pod: RawPod) -> StorageMetrics:
    """Measured storage for pods that report it, zeroed placeholders otherwise."""
    if isinstance(pod, Tier2PodWithStats) and pod.has_storage:
        return StorageMetrics(
            capacity_bytes=pod.storage_committed,
            used_bytes=pod.storage_used or 0,
            utilization_percent=(pod.storage_usage_percent or 0.0) * 100,
            file_system_count=0,
            is_estimated=False
        )
    return StorageMetrics()


class NodeEnricher(ABC):
    """Supplies location and history for nodes being normalized."""

    @abstractmethod
    async def locate(self, ip: str) -> str:
        """Coarse region label for an IP."""

    @abstractmethod
    async def history(self, node_id: str, now: float) -> Optional[NodeHistory]:
        """Averages over the node's recent snapshots, or None when there are none."""


class LocalNodeEnricher(NodeEnricher):
    """No network access and no store: heuristic location only."""

    async def locate(self, ip: str) -> str:
        return estimate_location_from_ip(ip)

    async def history(self, node_id: str, now: float) -> Optional[NodeHistory]:
        return None


class ServerNodeEnricher(NodeEnricher):
    """GeoIP lookups plus averages from persisted node snapshots."""

    def __init__(self, geoip: GeoIPResolver, store=None, history_window_days: int = 30):
        """
        Initialize server-side enricher.

        Args:
            geoip: Shared GeoIP resolver
            store: Store to read node history from; history is skipped when None
            history_window_days: How far back snapshots count towards history
        """
        self.geoip = geoip
        self.store = store
        self.history_window_seconds = history_window_days * 24 * 3600
        self.logger = logging.getLogger('normalizer')

    async def locate(self, ip: str) -> str:
        try:
            return await self.geoip.location_for(ip)
        except Exception as e:
            self.logger.warning(f"GeoIP failed for {ip}, using heuristic: {e}")
            return estimate_location_from_ip(ip)

    async def history(self, node_id: str, now: float) -> Optional[NodeHistory]:
        if self.store is None:
            return None
        try:
            return await self.store.get_node_history(node_id, now - self.history_window_seconds)
        except Exception as e:
            self.logger.warning(f"Could not load history for {node_id}: {e}")
            return None


class NodeNormalizer:
    """Builds canonical Node records from raw pods."""

    def __init__(self, enricher: NodeEnricher, batch_size: int = 10):
        """
        Initialize normalizer.

        Args:
            enricher: Location/history provider for the execution context
            batch_size: Pods normalized concurrently per batch
        """
        self.enricher = enricher
        self.batch_size = batch_size
        self.logger = logging.getLogger('normalizer')

    async def normalize(self, pod: RawPod, network_metrics: Optional[NetworkMetrics] = None,
                        now: Optional[float] = None) -> Node:
        """
        Normalize one pod.

        Nodes with persisted history get measured averages in place of the
        single-sample or estimated figures, so the same pod can produce a
        different record depending on what the store holds.

        Args:
            pod: Tier-1 or tier-2 pod record
            network_metrics: Host counters from ``get-stats``, if fetched
            now: Reference time in epoch seconds

        Returns:
            Canonical Node record
        """
        now = now if now is not None else time.time()

        if isinstance(pod, Tier2PodWithStats):
            status = derive_status_from_uptime(pod.uptime_seconds)
            last_seen = pod.last_seen_timestamp or now
            measured_uptime = uptime_percent(pod.uptime_seconds)
            uptime_seconds = pod.uptime_seconds
            rpc_endpoint = f"http://{pod.ip}:{pod.rpc_port}" if pod.rpc_port else None
            is_public = pod.is_public
            pnrpc_port = pod.rpc_port
        elif isinstance(pod, Tier1Pod):
            status = derive_status_from_last_seen(pod.last_seen_timestamp, now)
            last_seen = pod.last_seen_timestamp
            measured_uptime = None
            uptime_seconds = None
            rpc_endpoint = pod.rpc or f"http://{pod.ip}:8899"
            is_public = None
            pnrpc_port = None
        else:
            raise TypeError(f"Unsupported pod type: {type(pod).__name__}")

        uptime = measured_uptime if measured_uptime is not None else ESTIMATED_UPTIME[status]
        latency = ESTIMATED_LATENCY_MS[status]
        success_rate = ESTIMATED_SUCCESS_RATE[status]
        is_estimated = True

        history = await self.enricher.history(pod.node_id, now)
        if history and history.sample_count > 0:
            uptime = history.uptime_percent
            if history.average_latency_ms is not None:
                latency = history.average_latency_ms
            if history.average_success_rate is not None:
                success_rate = history.average_success_rate
            is_estimated = history.average_latency_ms is None or history.average_success_rate is None

        performance = PerformanceMetrics(
            average_latency_ms=latency,
            success_rate_percent=success_rate,
            uptime_percent=uptime,
            last_updated_ms=int(now * 1000),
            uptime_seconds=uptime_seconds,
            is_estimated=is_estimated
        )
        storage = build_storage(pod)

        return Node(
            id=pod.node_id,
            status=status,
            storage=storage,
            performance=performance,
            performance_score=calculate_performance_score(performance, storage),
            version=pod.version,
            location=await self.enricher.locate(pod.ip),
            last_seen=last_seen,
            gossip_endpoint=pod.address,
            rpc_endpoint=rpc_endpoint,
            network_metrics=network_metrics,
            is_public=is_public,
            pnrpc_port=pnrpc_port
        )

    async def normalize_all(self, pods: List[RawPod],
                            network_metrics: Optional[Dict[str, NetworkMetrics]] = None,
                            now: Optional[float] = None) -> List[Node]:
        """Normalize pods in bounded batches, preserving input order."""
        now = now if now is not None else time.time()
        network_metrics = network_metrics or {}
        nodes: List[Node] = []

        for start in range(0, len(pods), self.batch_size):
            batch = pods[start:start + self.batch_size]
            nodes.extend(await asyncio.gather(*(
                self.normalize(pod, network_metrics.get(pod.node_id), now) for pod in batch
            )))

        self.logger.debug(f"Normalized {len(nodes)} pods")
        return nodes
