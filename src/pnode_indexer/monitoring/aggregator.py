"""
Network-wide statistics over one node set.
"""

import time
from collections import Counter
from typing import List, Optional

from ..storage.models import NetworkStats, Node, NodeStatus


def calculate_health_score(nodes: List[Node]) -> int:
    """
    Network health from 0 to 100.

    Online ratio carries the largest weight (40 points), so a network with few
    nodes online cannot score high however good those nodes are. Average node
    score and average uptime contribute 40% and 20% of their values.
    """
    if not nodes:
        return 0

    count = len(nodes)
    online_ratio = sum(1 for n in nodes if n.status == NodeStatus.ONLINE) / count
    avg_performance = sum(n.performance_score for n in nodes) / count
    avg_uptime = sum(n.performance.uptime_percent for n in nodes) / count

    return round(online_ratio * 40 + avg_performance * 0.4 + avg_uptime * 0.2)


def aggregate(nodes: List[Node], now: Optional[float] = None) -> NetworkStats:
    """
    Reduce a node set to network statistics.

    An empty set yields zeroed stats with a health score of 0.
    """
    now = now if now is not None else time.time()
    count = len(nodes)

    status_counts = Counter(n.status for n in nodes)
    total_capacity = sum(int(n.storage.capacity_bytes) for n in nodes)
    total_used = sum(int(n.storage.used_bytes) for n in nodes)

    if count:
        avg_performance = round(sum(n.performance_score for n in nodes) / count)
        avg_latency = sum(n.performance.average_latency_ms for n in nodes) / count
        avg_uptime = sum(n.performance.uptime_percent for n in nodes) / count
    else:
        avg_performance = 0
        avg_latency = 0.0
        avg_uptime = 0.0

    return NetworkStats(
        total_nodes=count,
        online_nodes=status_counts[NodeStatus.ONLINE],
        offline_nodes=status_counts[NodeStatus.OFFLINE],
        delinquent_nodes=status_counts[NodeStatus.DELINQUENT],
        total_capacity_bytes=total_capacity,
        total_used_bytes=total_used,
        utilization_percent=total_used / total_capacity * 100 if total_capacity else 0.0,
        health_score=calculate_health_score(nodes),
        average_performance=avg_performance,
        average_latency_ms=avg_latency,
        average_uptime_percent=avg_uptime,
        version_distribution=dict(Counter(n.version for n in nodes)),
        geo_distribution=dict(Counter(n.location for n in nodes)),
        last_updated=now
    )
