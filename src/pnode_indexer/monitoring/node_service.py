"""
Read-side facade: live nodes and network stats on demand.
"""

import logging
import time
from typing import List, Optional, Tuple

from ..core.registry_client import RegistryClient
from ..storage.models import NetworkStats, Node
from .aggregator import aggregate
from .normalizer import NodeNormalizer


class NodeNotFound(LookupError):
    """No live node carries the requested id."""
    pass


class NodeService:
    """Fetches the pod set and turns it into scored nodes."""

    def __init__(self, registry: RegistryClient, normalizer: NodeNormalizer):
        self.registry = registry
        self.normalizer = normalizer
        self.logger = logging.getLogger('node_service')

    async def fetch_all_nodes(self, include_network_metrics: bool = False,
                              now: Optional[float] = None) -> List[Node]:
        """
        Fetch and normalize every live node.

        Args:
            include_network_metrics: Also query ``get-stats`` on every node
            now: Reference time in epoch seconds

        Raises:
            RegistryUnavailable: If no pod source answered
        """
        pods = await self.registry.fetch_raw_pods()
        metrics = await self.registry.fetch_network_metrics(pods) if include_network_metrics else {}
        nodes = await self.normalizer.normalize_all(pods, metrics, now)
        self.logger.info(f"Normalized {len(nodes)} nodes")
        return nodes

    async def fetch_node_details(self, node_id: str) -> Node:
        """
        Fetch one node with its host counters.

        Raises:
            NodeNotFound: If the node is not in the current pod set
        """
        pods = await self.registry.fetch_raw_pods()
        pod = next((p for p in pods if p.node_id == node_id), None)
        if pod is None:
            raise NodeNotFound(f"pNode not found: {node_id}")

        metrics = await self.registry.fetch_node_stats(pod)
        return await self.normalizer.normalize(pod, metrics)

    async def fetch_network_stats(self, include_network_metrics: bool = False,
                                  now: Optional[float] = None) -> Tuple[List[Node], NetworkStats]:
        """Fetch nodes once and aggregate them."""
        now = now if now is not None else time.time()
        nodes = await self.fetch_all_nodes(include_network_metrics, now)
        return nodes, aggregate(nodes, now)
