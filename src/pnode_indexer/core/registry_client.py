"""
Client for the pnRPC seed nodes and the chain JSON-RPC endpoints.
"""

import asyncio
import logging
import time
from typing import Dict, Any, List, Optional

from .rpc_client import JsonRpcClient
from ..exceptions import RPCError, RegistryUnavailable
from ..storage.models import (
    EpochInfo,
    InflationRate,
    NetworkMetrics,
    PerformanceSample,
    RawPod,
    SupplyInfo,
    Tier1Pod,
    Tier2PodWithStats,
    VoteAccount,
    VoteAccounts,
)


def _has_pods(result: Any) -> bool:
    return isinstance(result, dict) and bool(result.get('pods'))


def _is_non_empty_list(result: Any) -> bool:
    return isinstance(result, list) and len(result) > 0


def _has_value(result: Any) -> bool:
    return isinstance(result, dict) and result.get('value') is not None


def parse_tier1_pod(entry: Dict[str, Any], now: Optional[float] = None) -> Optional[Tier1Pod]:
    """Parse a ``get-pods`` entry; entries without an address are rejected."""
    address = entry.get('address')
    if not address:
        return None

    last_seen = entry.get('last_seen_timestamp')
    return Tier1Pod(
        address=address,
        version=entry.get('version') or 'unknown',
        last_seen_timestamp=float(last_seen) if last_seen is not None else (now or time.time()),
        pubkey=entry.get('pubkey'),
        rpc=entry.get('rpc')
    )


def parse_tier2_pod(entry: Dict[str, Any]) -> Optional[Tier2PodWithStats]:
    """Parse a ``get-pods-with-stats`` entry; entries without an address are rejected."""
    address = entry.get('address')
    if not address:
        return None

    def _int(key):
        value = entry.get(key)
        return int(value) if value is not None else None

    usage = entry.get('storage_usage_percent')
    last_seen = entry.get('last_seen_timestamp')

    return Tier2PodWithStats(
        address=address,
        version=entry.get('version') or 'unknown',
        uptime_seconds=int(entry.get('uptime') or 0),
        pubkey=entry.get('pubkey'),
        storage_committed=_int('storage_committed'),
        storage_used=_int('storage_used'),
        storage_usage_percent=float(usage) if usage is not None else None,
        is_public=entry.get('is_public'),
        rpc_port=_int('rpc_port'),
        last_seen_timestamp=float(last_seen) if last_seen is not None else None
    )


def parse_network_metrics(result: Dict[str, Any]) -> NetworkMetrics:
    """Parse a ``get-stats`` result."""
    return NetworkMetrics(
        cpu_percent=float(result.get('cpu_percent') or 0.0),
        ram_used_bytes=int(result.get('ram_used') or 0),
        ram_total_bytes=int(result.get('ram_total') or 0),
        active_streams=int(result.get('active_streams') or 0),
        packets_sent=int(result.get('packets_sent') or 0),
        packets_received=int(result.get('packets_received') or 0)
    )


def parse_vote_account(entry: Dict[str, Any]) -> VoteAccount:
    return VoteAccount(
        vote_pubkey=entry['votePubkey'],
        node_pubkey=entry['nodePubkey'],
        activated_stake=int(entry.get('activatedStake', 0)),
        commission=float(entry.get('commission', 0)),
        last_vote=int(entry.get('lastVote', 0)),
        root_slot=int(entry.get('rootSlot', 0)),
        epoch_vote_account=bool(entry.get('epochVoteAccount', False)),
        epoch_credits=tuple(tuple(int(v) for v in c) for c in entry.get('epochCredits', []))
    )


class RegistryClient:
    """Discovers live pNodes across seed nodes and queries chain data."""

    def __init__(self, config: Dict[str, Any], rpc: Optional[JsonRpcClient] = None):
        """
        Initialize registry client.

        Args:
            config: Configuration dictionary
            rpc: JSON-RPC transport; a new one is created when omitted
        """
        self.config = config
        self.registry_config = config['registry']
        self.blockchain_config = config['blockchain']
        self.logger = logging.getLogger('registry_client')
        self.rpc = rpc or JsonRpcClient('registry_client')

        self.seed_nodes: List[str] = list(self.registry_config['seed_nodes'])
        self.rpc_endpoints: List[str] = list(self.blockchain_config['rpc_endpoints'])

        self.pods_timeout = self.registry_config['pods_timeout_seconds']
        self.pods_with_stats_timeout = self.registry_config['pods_with_stats_timeout_seconds']
        self.node_stats_timeout = self.registry_config['node_stats_timeout_seconds']
        self.stats_batch_size = self.registry_config['stats_batch_size']
        self.pnrpc_port = self.registry_config['pnrpc_port']
        self.chain_timeout = self.blockchain_config['timeout_seconds']

    async def start(self):
        await self.rpc.start()

    async def close(self):
        await self.rpc.close()

    # pnRPC seed queries

    async def fetch_pods(self) -> List[Tier1Pod]:
        """
        Fetch the presence-only pod list (``get-pods``).

        Raises:
            RegistryUnavailable: If every seed failed or returned no pods
        """
        endpoint, result = await self.rpc.call_first_success(
            self.seed_nodes, 'get-pods', timeout=self.pods_timeout, accept=_has_pods
        )
        pods = self._parse_pods(result['pods'], parse_tier1_pod)
        self.logger.info(f"Fetched {len(pods)} pods from {endpoint}")
        return pods

    async def fetch_pods_with_stats(self) -> List[Tier2PodWithStats]:
        """
        Fetch pods with storage and uptime telemetry (``get-pods-with-stats``).

        Raises:
            RegistryUnavailable: If every seed failed or returned no pods
        """
        endpoint, result = await self.rpc.call_first_success(
            self.seed_nodes, 'get-pods-with-stats',
            timeout=self.pods_with_stats_timeout, accept=_has_pods
        )
        pods = self._parse_pods(result['pods'], parse_tier2_pod)
        self.logger.info(f"Fetched {len(pods)} pods with stats from {endpoint}")
        return pods

    async def fetch_cluster_nodes(self) -> List[Tier1Pod]:
        """
        Fetch gossip peers from the chain endpoints (``getClusterNodes``).

        Cluster nodes carry no last-seen time; being listed counts as seen now.
        """
        endpoint, result = await self.rpc.call_first_success(
            self.rpc_endpoints, 'getClusterNodes',
            timeout=self.chain_timeout, accept=_is_non_empty_list
        )
        now = time.time()
        pods = []
        for node in result:
            pubkey = node.get('pubkey')
            pods.append(Tier1Pod(
                address=node.get('gossip') or f"{pubkey}:9001",
                version=node.get('version') or 'unknown',
                last_seen_timestamp=now,
                pubkey=pubkey,
                rpc=node.get('rpc')
            ))
        self.logger.info(f"Fetched {len(pods)} cluster nodes from {endpoint}")
        return pods

    async def fetch_raw_pods(self) -> List[RawPod]:
        """
        Fetch the richest pod list available.

        Order: ``get-pods-with-stats`` on the seeds, then ``get-pods`` on the
        seeds, then ``getClusterNodes`` on the chain endpoints.

        Raises:
            RegistryUnavailable: Naming every endpoint tried when all sources fail
        """
        errors: Dict[str, str] = {}
        tried: List[str] = []

        sources = [
            self.fetch_pods_with_stats,
            self.fetch_pods,
            self.fetch_cluster_nodes,
        ]

        for source in sources:
            try:
                return list(await source())
            except RegistryUnavailable as e:
                self.logger.warning(f"Pod source unavailable: {e}")
                tried.extend(f"{e.method}@{endpoint}" for endpoint in e.endpoints)
                errors.update({f"{e.method}@{k}": v for k, v in e.errors.items()})

        raise RegistryUnavailable('pods', tried, errors)

    async def fetch_node_stats(self, pod: RawPod) -> Optional[NetworkMetrics]:
        """
        Fetch host counters of one node (``get-stats``).

        Returns:
            NetworkMetrics, or None when the node did not answer in time
        """
        endpoint = f"http://{pod.ip}:{self.pnrpc_port}/rpc"
        try:
            result = await self.rpc.call(endpoint, 'get-stats', timeout=self.node_stats_timeout)
        except RPCError as e:
            self.logger.debug(f"Stats unavailable for {pod.node_id}: {e}")
            return None

        if not isinstance(result, dict):
            return None

        try:
            return parse_network_metrics(result)
        except (TypeError, ValueError) as e:
            self.logger.debug(f"Malformed stats from {pod.node_id}: {e}")
            return None

    async def fetch_network_metrics(self, pods: List[RawPod],
                                    batch_size: Optional[int] = None) -> Dict[str, NetworkMetrics]:
        """
        Fetch host counters for many nodes with bounded concurrency.

        Args:
            pods: Pods to query
            batch_size: Concurrent requests per batch

        Returns:
            Mapping of node id to metrics, containing only nodes that answered
        """
        batch_size = batch_size or self.stats_batch_size
        metrics: Dict[str, NetworkMetrics] = {}

        for start in range(0, len(pods), batch_size):
            batch = pods[start:start + batch_size]
            results = await asyncio.gather(*(self.fetch_node_stats(pod) for pod in batch))
            for pod, result in zip(batch, results):
                if result is not None:
                    metrics[pod.node_id] = result

        self.logger.info(f"Collected network metrics for {len(metrics)}/{len(pods)} nodes")
        return metrics

    # Chain JSON-RPC queries

    async def fetch_vote_accounts(self) -> VoteAccounts:
        _, result = await self.rpc.call_first_success(
            self.rpc_endpoints, 'getVoteAccounts', timeout=self.chain_timeout
        )
        accounts = VoteAccounts(
            current=[parse_vote_account(v) for v in result.get('current', [])],
            delinquent=[parse_vote_account(v) for v in result.get('delinquent', [])]
        )
        self.logger.info(
            f"Got {len(accounts.current)} current and {len(accounts.delinquent)} delinquent validators"
        )
        return accounts

    async def fetch_epoch_info(self) -> EpochInfo:
        _, result = await self.rpc.call_first_success(
            self.rpc_endpoints, 'getEpochInfo', timeout=self.chain_timeout
        )
        return EpochInfo(
            epoch=int(result['epoch']),
            absolute_slot=int(result['absoluteSlot']),
            block_height=int(result['blockHeight']),
            slot_index=int(result['slotIndex']),
            slots_in_epoch=int(result['slotsInEpoch']),
            transaction_count=int(result.get('transactionCount') or 0)
        )

    async def fetch_performance_samples(self, limit: int = 10) -> List[PerformanceSample]:
        _, result = await self.rpc.call_first_success(
            self.rpc_endpoints, 'getRecentPerformanceSamples', [limit], timeout=self.chain_timeout
        )
        return [
            PerformanceSample(
                slot=int(s['slot']),
                num_slots=int(s['numSlots']),
                num_transactions=int(s['numTransactions']),
                num_non_vote_transactions=int(s.get('numNonVoteTransactions', 0)),
                sample_period_secs=int(s['samplePeriodSecs'])
            )
            for s in result
        ]

    async def fetch_inflation_rate(self) -> InflationRate:
        _, result = await self.rpc.call_first_success(
            self.rpc_endpoints, 'getInflationRate', timeout=self.chain_timeout
        )
        return InflationRate(
            epoch=int(result['epoch']),
            total=float(result['total']),
            validator=float(result['validator']),
            foundation=float(result['foundation'])
        )

    async def fetch_supply(self) -> SupplyInfo:
        _, result = await self.rpc.call_first_success(
            self.rpc_endpoints, 'getSupply', timeout=self.chain_timeout, accept=_has_value
        )
        value = result['value']
        return SupplyInfo(
            total=int(value['total']),
            circulating=int(value['circulating']),
            non_circulating=int(value['nonCirculating'])
        )

    async def fetch_stake_minimum_delegation(self) -> int:
        _, result = await self.rpc.call_first_success(
            self.rpc_endpoints, 'getStakeMinimumDelegation',
            timeout=self.chain_timeout, accept=_has_value
        )
        return int(result['value'])

    def _parse_pods(self, entries: List[Dict[str, Any]], parser) -> list:
        pods = []
        for entry in entries:
            pod = parser(entry) if isinstance(entry, dict) else None
            if pod is None:
                self.logger.warning(f"Skipping malformed pod entry: {entry!r}")
                continue
            pods.append(pod)
        return pods
