"""
Status-change events and statistical anomaly detection.
"""

import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..storage.models import (
    Anomaly,
    EventType,
    LastKnownState,
    NetworkEvent,
    NetworkSnapshot,
    NetworkStats,
    Node,
    NodeStatus,
    Severity,
)


PERFORMANCE_DELTA_THRESHOLD = 10

STATUS_EVENTS = {
    NodeStatus.ONLINE: (EventType.NODE_ONLINE, Severity.SUCCESS),
    NodeStatus.OFFLINE: (EventType.NODE_OFFLINE, Severity.CRITICAL),
    NodeStatus.DELINQUENT: (EventType.NODE_DELINQUENT, Severity.WARNING),
}


def truncate_id(node_id: str) -> str:
    """Shorten long ids to ``abcdef...wxyz`` for titles."""
    if len(node_id) <= 12:
        return node_id
    return f"{node_id[:6]}...{node_id[-4:]}"


def mean_and_std(values: Sequence[float]) -> Tuple[float, float]:
    """Mean and population standard deviation."""
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def snapshot_states(nodes: List[Node]) -> Dict[str, LastKnownState]:
    """Projection of a node set kept for the next cycle's comparison."""
    return {n.id: LastKnownState(status=n.status, performance_score=n.performance_score) for n in nodes}


class EventDetector:
    """Compares a node set against the previous cycle's states."""

    def detect(self, nodes: List[Node], last_states: Mapping[str, LastKnownState],
               timestamp: Optional[float] = None) -> List[NetworkEvent]:
        """
        Emit join, status-change and score-delta events, then left-network events.

        Args:
            nodes: Current cycle's nodes
            last_states: Previous cycle's projection, keyed by node id
            timestamp: Event time in epoch seconds

        Returns:
            Events in detection order
        """
        events = []
        for node in nodes:
            events.extend(self._node_events(node, last_states.get(node.id), timestamp))
        events.extend(self.detect_departures(nodes, last_states, timestamp))
        return events

    def detect_departures(self, nodes: List[Node], last_states: Mapping[str, LastKnownState],
                          timestamp: Optional[float] = None) -> List[NetworkEvent]:
        """Events for ids present last cycle but missing now."""
        current_ids = {n.id for n in nodes}
        events = []
        for node_id in last_states:
            if node_id in current_ids:
                continue
            events.append(self._event(
                EventType.NODE_LEFT,
                Severity.WARNING,
                'pNode Left Network',
                f"pNode {truncate_id(node_id)} is no longer visible in gossip",
                node_id,
                {'previous_status': last_states[node_id].status.value},
                timestamp
            ))
        return events

    def _node_events(self, node: Node, last_state: Optional[LastKnownState],
                     timestamp: Optional[float]) -> List[NetworkEvent]:
        short_id = truncate_id(node.id)

        if last_state is None:
            return [self._event(
                EventType.NODE_JOINED,
                Severity.SUCCESS,
                'New pNode Detected',
                f"pNode {short_id} has joined the network",
                node.id,
                {'version': node.version, 'location': node.location},
                timestamp
            )]

        events = []

        if last_state.status != node.status:
            event_type, severity = STATUS_EVENTS[node.status]
            events.append(self._event(
                event_type,
                severity,
                f"pNode Status Changed to {node.status.value.upper()}",
                f"pNode {short_id} changed from {last_state.status.value} to {node.status.value}",
                node.id,
                {'previous_status': last_state.status.value, 'new_status': node.status.value},
                timestamp
            ))

        delta = last_state.performance_score - node.performance_score
        score_metadata = {'previous_score': last_state.performance_score, 'new_score': node.performance_score}
        if delta > PERFORMANCE_DELTA_THRESHOLD:
            events.append(self._event(
                EventType.PERFORMANCE_DEGRADATION,
                Severity.WARNING,
                'Performance Degradation Detected',
                f"pNode {short_id} performance dropped by {delta} points",
                node.id,
                score_metadata,
                timestamp
            ))
        elif delta < -PERFORMANCE_DELTA_THRESHOLD:
            events.append(self._event(
                EventType.PERFORMANCE_IMPROVEMENT,
                Severity.SUCCESS,
                'Performance Improvement',
                f"pNode {short_id} performance improved by {-delta} points",
                node.id,
                score_metadata,
                timestamp
            ))

        return events

    @staticmethod
    def _event(event_type, severity, title, description, node_pubkey, metadata, timestamp) -> NetworkEvent:
        event = NetworkEvent(
            type=event_type,
            severity=severity,
            title=title,
            description=description,
            node_pubkey=node_pubkey,
            metadata=metadata
        )
        if timestamp is not None:
            event.timestamp = timestamp
        return event


class AnomalyDetector:
    """Flags network aggregates that stray too far from recent history."""

    def __init__(self, threshold: float = 2.5, lookback_hours: float = 24,
                 min_history: int = 10, history_limit: int = 100):
        """
        Initialize anomaly detector.

        Args:
            threshold: Deviation, in standard deviations, that counts as anomalous
            lookback_hours: Age of the oldest snapshot considered
            min_history: Snapshots required before anything is flagged
            history_limit: Most recent snapshots considered
        """
        self.threshold = threshold
        self.lookback_seconds = lookback_hours * 3600
        self.min_history = min_history
        self.history_limit = history_limit
        self.logger = logging.getLogger('anomaly_detector')

    def _severity(self, deviation: float) -> Severity:
        return Severity.CRITICAL if deviation > self.threshold * 2 else Severity.WARNING

    def detect(self, stats: NetworkStats, history: Sequence[NetworkSnapshot],
               timestamp: Optional[float] = None) -> List[Tuple[Anomaly, NetworkEvent]]:
        """
        Compare current stats against historical snapshots.

        Node count is flagged in both directions; health score only when it
        falls below the mean.

        Args:
            stats: This cycle's aggregate
            history: Snapshots from the lookback window
            timestamp: Detection time in epoch seconds

        Returns:
            (anomaly, event) pairs, empty when history is too short
        """
        if len(history) < self.min_history:
            self.logger.debug(
                f"Skipping anomaly detection: {len(history)} snapshots, need {self.min_history}"
            )
            return []

        findings = []

        node_mean, node_std = mean_and_std([s.total_nodes for s in history])
        node_deviation = abs(stats.total_nodes - node_mean) / max(node_std, 1)
        if node_deviation > self.threshold:
            expected = round(node_mean)
            findings.append(self._finding(
                metric='totalPNodes',
                expected=node_mean,
                actual=stats.total_nodes,
                deviation=node_deviation,
                description=f"Unusual pNode count: expected ~{expected}, got {stats.total_nodes}",
                title='Unusual pNode Count',
                event_description=f"Network has {stats.total_nodes} pNodes (expected ~{expected})",
                timestamp=timestamp
            ))

        health_mean, health_std = mean_and_std([s.health_score for s in history])
        health_deviation = abs(stats.health_score - health_mean) / max(health_std, 1)
        if health_deviation > self.threshold and stats.health_score < health_mean:
            expected = round(health_mean)
            findings.append(self._finding(
                metric='healthScore',
                expected=health_mean,
                actual=stats.health_score,
                deviation=health_deviation,
                description=f"Network health below expected: {stats.health_score}% vs expected ~{expected}%",
                title='Network Health Anomaly',
                event_description=f"Health score is {stats.health_score}% (expected ~{expected}%)",
                timestamp=timestamp
            ))

        for anomaly, _ in findings:
            self.logger.warning(
                f"Anomaly in {anomaly.metric}: {anomaly.actual_value} vs ~{anomaly.expected_value:.1f} "
                f"({anomaly.deviation:.2f} std)"
            )

        return findings

    def _finding(self, metric, expected, actual, deviation, description,
                 title, event_description, timestamp) -> Tuple[Anomaly, NetworkEvent]:
        anomaly = Anomaly(
            metric=metric,
            expected_value=expected,
            actual_value=actual,
            deviation=deviation,
            description=description
        )
        event = NetworkEvent(
            type=EventType.ANOMALY_DETECTED,
            severity=self._severity(deviation),
            title=title,
            description=event_description,
            metadata={'expected': expected, 'actual': actual, 'deviation': deviation}
        )
        if timestamp is not None:
            anomaly.timestamp = timestamp
            event.timestamp = timestamp
        return anomaly, event
