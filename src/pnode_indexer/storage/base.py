"""
Abstract persistence interface consumed by the indexing pipeline.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import (
    Alert,
    AlertRule,
    Anomaly,
    EconomicsSnapshot,
    EpochInfo,
    NetworkEvent,
    NetworkSnapshot,
    Node,
    NodeHistory,
    NodeSnapshot,
    PerformanceSample,
    VoteAccount,
)


class Store(ABC):
    """
    Storage operations for node identities, snapshots, events and alerts.

    Identities are upserted by their natural key (node id, vote pubkey,
    epoch number); snapshots, events and anomalies are append-only. Write
    failures raise ``PersistenceError``.
    """

    async def initialize(self):
        """Prepare the backend (schema, connections)."""

    async def close(self):
        """Release backend resources."""

    # Nodes

    @abstractmethod
    async def upsert_node(self, node: Node, timestamp: float) -> int:
        """Create or refresh the identity row of a node and return its key."""

    @abstractmethod
    async def insert_node_snapshot(self, snapshot: NodeSnapshot) -> int:
        pass

    @abstractmethod
    async def get_node_identity_id(self, pubkey: str) -> Optional[int]:
        pass

    @abstractmethod
    async def get_node_history(self, pubkey: str, since: float) -> Optional[NodeHistory]:
        """Averages over the node's snapshots newer than ``since``; None without any."""

    # Network

    @abstractmethod
    async def insert_network_snapshot(self, snapshot: NetworkSnapshot) -> int:
        pass

    @abstractmethod
    async def get_network_snapshots_since(self, since: float, limit: int = 100,
                                          before: Optional[float] = None) -> List[NetworkSnapshot]:
        """Snapshots in ``[since, before)``, most recent first, at most ``limit``."""

    # Chain data

    @abstractmethod
    async def upsert_validator(self, account: VoteAccount, timestamp: float) -> int:
        pass

    @abstractmethod
    async def insert_validator_snapshot(self, validator_id: int, account: VoteAccount,
                                        is_delinquent: bool, timestamp: float) -> int:
        pass

    @abstractmethod
    async def upsert_epoch_snapshot(self, epoch: EpochInfo, timestamp: float):
        """Insert or update the row for ``epoch.epoch``."""

    @abstractmethod
    async def performance_sample_exists(self, slot: int) -> bool:
        pass

    @abstractmethod
    async def insert_performance_sample(self, sample: PerformanceSample, timestamp: float) -> int:
        pass

    @abstractmethod
    async def insert_economics_snapshot(self, snapshot: EconomicsSnapshot) -> int:
        pass

    # Events

    @abstractmethod
    async def insert_network_event(self, event: NetworkEvent, node_identity_id: Optional[int] = None) -> int:
        pass

    @abstractmethod
    async def get_network_events(self, since: Optional[float] = None, limit: int = 100) -> List[NetworkEvent]:
        """Events newer than ``since``, most recent first."""

    @abstractmethod
    async def insert_anomaly(self, anomaly: Anomaly) -> int:
        pass

    @abstractmethod
    async def get_anomalies(self, since: Optional[float] = None, limit: int = 100) -> List[Anomaly]:
        pass

    # Alerting

    @abstractmethod
    async def create_alert_rule(self, rule: AlertRule) -> AlertRule:
        """Persist a rule and return it with its id set."""

    @abstractmethod
    async def get_alert_rule(self, rule_id: int) -> Optional[AlertRule]:
        pass

    @abstractmethod
    async def get_alert_rules(self, enabled_only: bool = False) -> List[AlertRule]:
        pass

    @abstractmethod
    async def update_alert_rule(self, rule: AlertRule) -> bool:
        pass

    @abstractmethod
    async def delete_alert_rule(self, rule_id: int) -> bool:
        pass

    @abstractmethod
    async def insert_alert(self, alert: Alert) -> Alert:
        pass

    @abstractmethod
    async def get_alerts(self, resolved: Optional[bool] = None, limit: int = 100) -> List[Alert]:
        pass

    @abstractmethod
    async def resolve_alert(self, alert_id: int, resolved_at: float) -> bool:
        pass

    @abstractmethod
    async def resolve_alerts_for_rule(self, rule_id: int, resolved_at: float) -> int:
        pass

    # Maintenance

    @abstractmethod
    async def cleanup_old_data(self, now: Optional[float] = None) -> int:
        """Delete snapshots past the retention period; return rows removed."""
