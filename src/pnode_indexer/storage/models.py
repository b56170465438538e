"""
Data models for the indexing pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple, Union
import time


class NodeStatus(str, Enum):
    """Derived liveness status of a pNode."""

    ONLINE = 'online'
    OFFLINE = 'offline'
    DELINQUENT = 'delinquent'


class EventType(str, Enum):
    """Kinds of network events written to the event log."""

    NODE_JOINED = 'NODE_JOINED'
    NODE_LEFT = 'NODE_LEFT'
    NODE_ONLINE = 'NODE_ONLINE'
    NODE_OFFLINE = 'NODE_OFFLINE'
    NODE_DELINQUENT = 'NODE_DELINQUENT'
    PERFORMANCE_DEGRADATION = 'PERFORMANCE_DEGRADATION'
    PERFORMANCE_IMPROVEMENT = 'PERFORMANCE_IMPROVEMENT'
    ANOMALY_DETECTED = 'ANOMALY_DETECTED'


class Severity(str, Enum):
    """Event and alert severity."""

    INFO = 'INFO'
    SUCCESS = 'SUCCESS'
    WARNING = 'WARNING'
    CRITICAL = 'CRITICAL'


def split_address(address: str, default_port: int = 9001) -> Tuple[str, int]:
    """Split an ``ip[:port]`` gossip address into its parts."""
    host, _, port = address.partition(':')
    try:
        return host, int(port) if port else default_port
    except ValueError:
        return host, default_port


@dataclass(frozen=True)
class Tier1Pod:
    """Presence-only pod record from ``get-pods``."""

    address: str
    version: str
    last_seen_timestamp: float
    pubkey: Optional[str] = None
    rpc: Optional[str] = None

    @property
    def ip(self) -> str:
        return split_address(self.address)[0]

    @property
    def port(self) -> int:
        return split_address(self.address)[1]

    @property
    def node_id(self) -> str:
        return self.pubkey or f"{self.ip}:{self.port}"


@dataclass(frozen=True)
class Tier2PodWithStats:
    """Pod record with storage and uptime telemetry from ``get-pods-with-stats``."""

    address: str
    version: str
    uptime_seconds: int
    pubkey: Optional[str] = None
    storage_committed: Optional[int] = None
    storage_used: Optional[int] = None
    storage_usage_percent: Optional[float] = None
    is_public: Optional[bool] = None
    rpc_port: Optional[int] = None
    last_seen_timestamp: Optional[float] = None

    @property
    def ip(self) -> str:
        return split_address(self.address)[0]

    @property
    def port(self) -> int:
        return split_address(self.address)[1]

    @property
    def node_id(self) -> str:
        return self.pubkey or f"{self.ip}:{self.port}"

    @property
    def has_storage(self) -> bool:
        return bool(self.storage_committed)


RawPod = Union[Tier1Pod, Tier2PodWithStats]


@dataclass
class StorageMetrics:
    """Storage figures of a node. Zeroed placeholders when ``is_estimated``."""

    capacity_bytes: int = 0
    used_bytes: int = 0
    utilization_percent: float = 0.0
    file_system_count: int = 0
    is_estimated: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'capacity_bytes': self.capacity_bytes,
            'used_bytes': self.used_bytes,
            'utilization_percent': self.utilization_percent,
            'file_system_count': self.file_system_count,
            'is_estimated': self.is_estimated
        }


@dataclass
class PerformanceMetrics:
    """Latency, reliability and uptime of a node."""

    average_latency_ms: float
    success_rate_percent: float
    uptime_percent: float
    last_updated_ms: int
    uptime_seconds: Optional[int] = None
    is_estimated: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'average_latency_ms': self.average_latency_ms,
            'success_rate_percent': self.success_rate_percent,
            'uptime_percent': self.uptime_percent,
            'uptime_seconds': self.uptime_seconds,
            'last_updated_ms': self.last_updated_ms,
            'is_estimated': self.is_estimated
        }


@dataclass
class NetworkMetrics:
    """Host counters from the per-node ``get-stats`` call."""

    cpu_percent: float
    ram_used_bytes: int
    ram_total_bytes: int
    active_streams: int
    packets_sent: int
    packets_received: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'cpu_percent': self.cpu_percent,
            'ram_used_bytes': self.ram_used_bytes,
            'ram_total_bytes': self.ram_total_bytes,
            'active_streams': self.active_streams,
            'packets_sent': self.packets_sent,
            'packets_received': self.packets_received
        }


@dataclass
class Node:
    """One pNode observation, rebuilt every indexing cycle."""

    id: str
    status: NodeStatus
    storage: StorageMetrics
    performance: PerformanceMetrics
    performance_score: int
    version: str
    location: str
    last_seen: float
    gossip_endpoint: str
    rpc_endpoint: Optional[str] = None
    network_metrics: Optional[NetworkMetrics] = None
    is_public: Optional[bool] = None
    pnrpc_port: Optional[int] = None

    @property
    def ip(self) -> str:
        return split_address(self.gossip_endpoint)[0]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'status': self.status.value,
            'storage': self.storage.to_dict(),
            'performance': self.performance.to_dict(),
            'performance_score': self.performance_score,
            'network_metrics': self.network_metrics.to_dict() if self.network_metrics else None,
            'version': self.version,
            'location': self.location,
            'last_seen': self.last_seen,
            'gossip_endpoint': self.gossip_endpoint,
            'rpc_endpoint': self.rpc_endpoint,
            'is_public': self.is_public,
            'pnrpc_port': self.pnrpc_port
        }


@dataclass(frozen=True)
class LastKnownState:
    """Projection of a node kept between cycles for change detection."""

    status: NodeStatus
    performance_score: int


@dataclass
class NodeHistory:
    """Averages computed from a node's persisted snapshots."""

    sample_count: int
    online_fraction: float
    average_latency_ms: Optional[float] = None
    average_success_rate: Optional[float] = None

    @property
    def uptime_percent(self) -> float:
        return self.online_fraction * 100


@dataclass
class NetworkStats:
    """Network-wide aggregate of one node set."""

    total_nodes: int
    online_nodes: int
    offline_nodes: int
    delinquent_nodes: int
    total_capacity_bytes: int
    total_used_bytes: int
    utilization_percent: float
    health_score: int
    average_performance: int
    average_latency_ms: float
    average_uptime_percent: float
    version_distribution: Dict[str, int] = field(default_factory=dict)
    geo_distribution: Dict[str, int] = field(default_factory=dict)
    last_updated: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return self.total_nodes == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'total_nodes': self.total_nodes,
            'online_nodes': self.online_nodes,
            'offline_nodes': self.offline_nodes,
            'delinquent_nodes': self.delinquent_nodes,
            'total_capacity_bytes': self.total_capacity_bytes,
            'total_used_bytes': self.total_used_bytes,
            'utilization_percent': self.utilization_percent,
            'health_score': self.health_score,
            'average_performance': self.average_performance,
            'average_latency_ms': self.average_latency_ms,
            'average_uptime_percent': self.average_uptime_percent,
            'version_distribution': self.version_distribution,
            'geo_distribution': self.geo_distribution,
            'last_updated': self.last_updated
        }


@dataclass
class NetworkSnapshot:
    """Persisted row for one completed indexing cycle."""

    timestamp: float
    total_nodes: int
    online_nodes: int
    offline_nodes: int
    delinquent_nodes: int
    total_capacity_bytes: int
    total_used_bytes: int
    utilization_percent: float
    health_score: int
    average_performance: int
    average_latency_ms: float
    version_distribution: Dict[str, int] = field(default_factory=dict)
    geo_distribution: Dict[str, int] = field(default_factory=dict)
    total_validators: Optional[int] = None
    active_validators: Optional[int] = None
    delinquent_validators: Optional[int] = None
    total_stake: Optional[int] = None
    average_commission: Optional[float] = None
    current_epoch: Optional[int] = None
    current_slot: Optional[int] = None
    block_height: Optional[int] = None
    transaction_count: Optional[int] = None
    current_tps: Optional[float] = None
    non_vote_tps: Optional[float] = None

    @classmethod
    def from_stats(cls, stats: NetworkStats, timestamp: float, **extra: Any) -> 'NetworkSnapshot':
        """Build a snapshot from aggregate stats plus optional chain data."""
        return cls(
            timestamp=timestamp,
            total_nodes=stats.total_nodes,
            online_nodes=stats.online_nodes,
            offline_nodes=stats.offline_nodes,
            delinquent_nodes=stats.delinquent_nodes,
            total_capacity_bytes=stats.total_capacity_bytes,
            total_used_bytes=stats.total_used_bytes,
            utilization_percent=stats.utilization_percent,
            health_score=stats.health_score,
            average_performance=stats.average_performance,
            average_latency_ms=stats.average_latency_ms,
            version_distribution=dict(stats.version_distribution),
            geo_distribution=dict(stats.geo_distribution),
            **extra
        )


@dataclass
class NodeSnapshot:
    """Persisted row for one node in one cycle."""

    node_identity_id: int
    timestamp: float
    status: NodeStatus
    performance_score: int
    uptime_percent: float
    average_latency_ms: float
    success_rate_percent: float
    capacity_bytes: int
    used_bytes: int
    utilization_percent: float
    file_system_count: int
    uptime_seconds: Optional[int] = None
    cpu_percent: Optional[float] = None
    ram_used_bytes: Optional[int] = None
    ram_total_bytes: Optional[int] = None
    active_streams: Optional[int] = None
    packets_received: Optional[int] = None
    packets_sent: Optional[int] = None
    is_public: bool = False
    pnrpc_port: Optional[int] = None
    is_estimated: bool = True

    @classmethod
    def from_node(cls, node: Node, node_identity_id: int, timestamp: float) -> 'NodeSnapshot':
        metrics = node.network_metrics
        return cls(
            node_identity_id=node_identity_id,
            timestamp=timestamp,
            status=node.status,
            performance_score=node.performance_score,
            uptime_percent=node.performance.uptime_percent,
            average_latency_ms=node.performance.average_latency_ms,
            success_rate_percent=node.performance.success_rate_percent,
            capacity_bytes=int(node.storage.capacity_bytes),
            used_bytes=int(node.storage.used_bytes),
            utilization_percent=node.storage.utilization_percent,
            file_system_count=node.storage.file_system_count,
            uptime_seconds=node.performance.uptime_seconds,
            cpu_percent=metrics.cpu_percent if metrics else None,
            ram_used_bytes=metrics.ram_used_bytes if metrics else None,
            ram_total_bytes=metrics.ram_total_bytes if metrics else None,
            active_streams=metrics.active_streams if metrics else None,
            packets_received=metrics.packets_received if metrics else None,
            packets_sent=metrics.packets_sent if metrics else None,
            is_public=bool(node.is_public),
            pnrpc_port=node.pnrpc_port,
            is_estimated=node.performance.is_estimated
        )


@dataclass
class NetworkEvent:
    """Append-only entry of the network event log."""

    type: EventType
    severity: Severity
    title: str
    description: Optional[str] = None
    node_pubkey: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'type': self.type.value,
            'severity': self.severity.value,
            'title': self.title,
            'description': self.description,
            'node_pubkey': self.node_pubkey,
            'metadata': self.metadata,
            'timestamp': self.timestamp
        }


@dataclass
class Anomaly:
    """Metric-level statistical outlier."""

    metric: str
    expected_value: float
    actual_value: float
    deviation: float
    description: str
    timestamp: float = field(default_factory=time.time)
    node_pubkey: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'metric': self.metric,
            'expected_value': self.expected_value,
            'actual_value': self.actual_value,
            'deviation': self.deviation,
            'description': self.description,
            'timestamp': self.timestamp,
            'node_pubkey': self.node_pubkey
        }


class AlertScope(str, Enum):
    """Whether a rule watches network aggregates or individual nodes."""

    NETWORK = 'NETWORK'
    PNODE = 'PNODE'


@dataclass
class AlertRule:
    """User-configured threshold rule."""

    name: str
    metric: str
    operator: str
    threshold: float
    scope: AlertScope = AlertScope.NETWORK
    cooldown_minutes: int = 15
    enabled: bool = True
    description: Optional[str] = None
    pnode_filter: Optional[str] = None
    notify_email: Optional[str] = None
    notify_webhook: Optional[str] = None
    last_triggered: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'metric': self.metric,
            'operator': self.operator,
            'threshold': self.threshold,
            'scope': self.scope.value,
            'pnode_filter': self.pnode_filter,
            'cooldown_minutes': self.cooldown_minutes,
            'enabled': self.enabled,
            'notify_email': self.notify_email,
            'notify_webhook': self.notify_webhook,
            'last_triggered': self.last_triggered,
            'created_at': self.created_at
        }


@dataclass
class Alert:
    """A rule firing."""

    rule_id: int
    severity: Severity
    message: str
    metric: str
    value: float
    threshold: float
    node_pubkey: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[float] = None
    timestamp: float = field(default_factory=time.time)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'rule_id': self.rule_id,
            'severity': self.severity.value,
            'message': self.message,
            'metric': self.metric,
            'value': self.value,
            'threshold': self.threshold,
            'node_pubkey': self.node_pubkey,
            'resolved': self.resolved,
            'resolved_at': self.resolved_at,
            'timestamp': self.timestamp
        }


@dataclass(frozen=True)
class VoteAccount:
    """Validator vote account from ``getVoteAccounts``."""

    vote_pubkey: str
    node_pubkey: str
    activated_stake: int
    commission: float
    last_vote: int
    root_slot: int
    epoch_vote_account: bool
    epoch_credits: Tuple[Tuple[int, int, int], ...] = ()

    @property
    def latest_credits(self) -> Tuple[int, int]:
        """(credits, prior_credits) of the most recent epoch."""
        if not self.epoch_credits:
            return 0, 0
        _, credits, prior = self.epoch_credits[-1]
        return credits, prior


@dataclass
class VoteAccounts:
    current: List[VoteAccount]
    delinquent: List[VoteAccount]

    @property
    def all(self) -> List[Tuple[VoteAccount, bool]]:
        """Every validator paired with its delinquency flag."""
        return [(v, False) for v in self.current] + [(v, True) for v in self.delinquent]

    @property
    def total_stake(self) -> int:
        return sum(v.activated_stake for v, _ in self.all)

    @property
    def average_commission(self) -> float:
        validators = self.all
        if not validators:
            return 0.0
        return sum(v.commission for v, _ in validators) / len(validators)


@dataclass(frozen=True)
class EpochInfo:
    epoch: int
    absolute_slot: int
    block_height: int
    slot_index: int
    slots_in_epoch: int
    transaction_count: int

    @property
    def progress_percent(self) -> float:
        if self.slots_in_epoch <= 0:
            return 0.0
        return self.slot_index / self.slots_in_epoch * 100


@dataclass(frozen=True)
class PerformanceSample:
    slot: int
    num_slots: int
    num_transactions: int
    num_non_vote_transactions: int
    sample_period_secs: int

    @property
    def tps(self) -> float:
        return self.num_transactions / self.sample_period_secs if self.sample_period_secs else 0.0

    @property
    def non_vote_tps(self) -> float:
        return self.num_non_vote_transactions / self.sample_period_secs if self.sample_period_secs else 0.0

    @property
    def slot_time_ms(self) -> float:
        return self.sample_period_secs * 1000 / self.num_slots if self.num_slots else 0.0


@dataclass(frozen=True)
class InflationRate:
    epoch: int
    total: float
    validator: float
    foundation: float


@dataclass(frozen=True)
class SupplyInfo:
    total: int
    circulating: int
    non_circulating: int


@dataclass
class EconomicsSnapshot:
    """Supply, inflation and staking figures of one cycle."""

    timestamp: float
    total_supply: int
    circulating_supply: int
    non_circulating_supply: int
    inflation_epoch: int
    inflation_total: float
    inflation_validator: float
    inflation_foundation: float
    total_staked: int
    staking_participation: float
    stake_minimum_delegation: int


@dataclass
class CycleResult:
    """Outcome of one indexing cycle."""

    started_at: float
    success: bool = False
    node_count: int = 0
    events: List[NetworkEvent] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    alerts_triggered: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'started_at': self.started_at,
            'success': self.success,
            'skipped': self.skipped,
            'node_count': self.node_count,
            'events': [e.to_dict() for e in self.events],
            'anomalies': [a.to_dict() for a in self.anomalies],
            'alerts_triggered': self.alerts_triggered,
            'duration_ms': self.duration_ms,
            'error': self.error
        }
