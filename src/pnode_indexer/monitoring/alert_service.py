"""
User-configurable threshold alerting over network and node metrics.
"""

import logging
import time
from enum import Enum
from operator import eq, ge, gt, le, lt
from typing import Callable, Dict, Any, List, Optional

from ..storage.base import Store
from ..storage.models import Alert, AlertRule, AlertScope, NetworkStats, Node, Severity


class Metric(str, Enum):
    """Metrics a rule can watch."""

    # Network scope
    TOTAL_PNODES = 'totalPNodes'
    ONLINE_PNODES = 'onlinePNodes'
    OFFLINE_PERCENT = 'offlinePercent'
    HEALTH_SCORE = 'healthScore'
    AVG_LATENCY = 'avgLatency'
    AVG_UPTIME = 'avgUptime'
    AVG_UTILIZATION = 'avgUtilization'

    # Node scope
    PERFORMANCE_SCORE = 'performanceScore'
    UPTIME = 'uptime'
    LATENCY = 'latency'
    UTILIZATION = 'utilization'


class Operator(str, Enum):
    LT = '<'
    GT = '>'
    EQ = '=='
    LE = '<='
    GE = '>='


COMPARATORS: Dict[Operator, Callable[[float, float], bool]] = {
    Operator.LT: lt,
    Operator.GT: gt,
    Operator.EQ: eq,
    Operator.LE: le,
    Operator.GE: ge,
}


def _offline_percent(stats: NetworkStats) -> float:
    if not stats.total_nodes:
        return 0.0
    return (stats.total_nodes - stats.online_nodes) / stats.total_nodes * 100


NETWORK_METRICS: Dict[Metric, Callable[[NetworkStats], float]] = {
    Metric.TOTAL_PNODES: lambda s: s.total_nodes,
    Metric.ONLINE_PNODES: lambda s: s.online_nodes,
    Metric.OFFLINE_PERCENT: _offline_percent,
    Metric.HEALTH_SCORE: lambda s: s.health_score,
    Metric.AVG_LATENCY: lambda s: s.average_latency_ms,
    Metric.AVG_UPTIME: lambda s: s.average_uptime_percent,
    Metric.AVG_UTILIZATION: lambda s: s.utilization_percent,
}

NODE_METRICS: Dict[Metric, Callable[[Node], float]] = {
    Metric.PERFORMANCE_SCORE: lambda n: n.performance_score,
    Metric.UPTIME: lambda n: n.performance.uptime_percent,
    Metric.LATENCY: lambda n: n.performance.average_latency_ms,
    Metric.UTILIZATION: lambda n: n.storage.utilization_percent,
}

_unmapped = set(Metric) - set(NETWORK_METRICS) - set(NODE_METRICS)
if _unmapped:
    raise RuntimeError(f"Metrics without a value mapping: {sorted(m.value for m in _unmapped)}")

CRITICAL_WHEN_LOW = {Metric.HEALTH_SCORE, Metric.UPTIME, Metric.ONLINE_PNODES}
CRITICAL_WHEN_HIGH = {Metric.LATENCY}


def metric_scope(metric: Metric) -> AlertScope:
    return AlertScope.NETWORK if metric in NETWORK_METRICS else AlertScope.PNODE


def metric_value(metric: Metric, network: Optional[NetworkStats] = None, node: Optional[Node] = None) -> float:
    """
    Read a metric from network stats or a node.

    Raises:
        ValueError: If the metric needs a source that was not given
    """
    if metric in NETWORK_METRICS:
        if network is None:
            raise ValueError(f"{metric.value} needs network stats")
        return float(NETWORK_METRICS[metric](network))
    if metric in NODE_METRICS:
        if node is None:
            raise ValueError(f"{metric.value} needs a node")
        return float(NODE_METRICS[metric](node))
    raise ValueError(f"Unhandled metric: {metric}")


def determine_severity(metric: Metric, value: float, threshold: float) -> Severity:
    """Severity of a firing, from how far the value sits past the threshold."""
    if metric in CRITICAL_WHEN_LOW and value < threshold * 0.5:
        return Severity.CRITICAL
    if metric in CRITICAL_WHEN_HIGH and value > threshold * 2:
        return Severity.CRITICAL

    if threshold == 0:
        ratio = 0.0 if value == 0 else float('inf')
    else:
        ratio = abs(value - threshold) / abs(threshold)

    if ratio > 0.2:
        return Severity.WARNING
    return Severity.INFO


def format_alert_message(rule: AlertRule, value: float, node_pubkey: Optional[str] = None) -> str:
    target = f"pNode {node_pubkey[:8]}..." if node_pubkey else 'Network'
    return f"{rule.name}: {target} {rule.metric} is {value:.2f} (threshold: {rule.operator} {rule.threshold:g})"


class AlertService:
    """Rule CRUD and evaluation with per-rule cooldown."""

    def __init__(self, store: Store, clock: Callable[[], float] = time.time):
        """
        Initialize alert service.

        Args:
            store: Store holding rules and alerts
            clock: Source of the current time in epoch seconds
        """
        self.store = store
        self.clock = clock
        self.logger = logging.getLogger('alert_service')

    async def create_rule(self, name: str, metric: str, operator: str, threshold: float,
                          scope: Optional[str] = None, cooldown_minutes: int = 15,
                          description: Optional[str] = None, pnode_filter: Optional[str] = None,
                          notify_email: Optional[str] = None,
                          notify_webhook: Optional[str] = None) -> AlertRule:
        """
        Create a rule.

        Scope defaults to the scope the metric belongs to.

        Raises:
            ValueError: On an unknown metric or operator, or a scope the metric does not support
        """
        metric_enum = Metric(metric)
        operator_enum = Operator(operator)
        scope_enum = AlertScope(scope) if scope else metric_scope(metric_enum)

        if scope_enum != metric_scope(metric_enum):
            raise ValueError(f"Metric {metric_enum.value} cannot be used with scope {scope_enum.value}")

        rule = AlertRule(
            name=name,
            metric=metric_enum.value,
            operator=operator_enum.value,
            threshold=float(threshold),
            scope=scope_enum,
            cooldown_minutes=cooldown_minutes,
            description=description,
            pnode_filter=pnode_filter,
            notify_email=notify_email,
            notify_webhook=notify_webhook,
            created_at=self.clock()
        )
        rule = await self.store.create_alert_rule(rule)
        self.logger.info(f"Created alert rule {rule.id}: {rule.name}")
        return rule

    async def get_rules(self, include_disabled: bool = False) -> List[AlertRule]:
        return await self.store.get_alert_rules(enabled_only=not include_disabled)

    async def update_rule(self, rule_id: int, **updates: Any) -> Optional[AlertRule]:
        """
        Update fields of a rule.

        Returns:
            The updated rule, or None if it does not exist

        Raises:
            ValueError: On an unknown field, metric or operator
        """
        rule = await self.store.get_alert_rule(rule_id)
        if rule is None:
            return None

        allowed = {'name', 'description', 'enabled', 'metric', 'operator', 'threshold',
                   'cooldown_minutes', 'pnode_filter', 'notify_email', 'notify_webhook'}
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        if 'metric' in updates:
            metric_enum = Metric(updates['metric'])
            if metric_scope(metric_enum) != rule.scope:
                raise ValueError(f"Metric {metric_enum.value} cannot be used with scope {rule.scope.value}")
            updates['metric'] = metric_enum.value
        if 'operator' in updates:
            updates['operator'] = Operator(updates['operator']).value
        if 'threshold' in updates:
            updates['threshold'] = float(updates['threshold'])

        for key, value in updates.items():
            setattr(rule, key, value)

        await self.store.update_alert_rule(rule)
        return rule

    async def delete_rule(self, rule_id: int) -> bool:
        return await self.store.delete_alert_rule(rule_id)

    async def evaluate_rules(self, network: NetworkStats, nodes: Optional[List[Node]] = None) -> List[Alert]:
        """
        Evaluate enabled rules and record an alert for each firing.

        A rule inside its cooldown window is skipped entirely. Node-scoped
        rules are checked against every node, or only the filtered one.

        Args:
            network: Current network aggregate
            nodes: Current nodes, needed for node-scoped rules

        Returns:
            Alerts created by this evaluation
        """
        now = self.clock()
        rules = await self.store.get_alert_rules(enabled_only=True)
        fired = []

        for rule in rules:
            if rule.last_triggered is not None and now - rule.last_triggered < rule.cooldown_minutes * 60:
                continue

            try:
                metric = Metric(rule.metric)
                compare = COMPARATORS[Operator(rule.operator)]
            except ValueError:
                self.logger.warning(f"Skipping rule {rule.id} with invalid metric/operator: "
                                    f"{rule.metric} {rule.operator}")
                continue

            if rule.scope == AlertScope.NETWORK:
                value = metric_value(metric, network=network)
                if compare(value, rule.threshold):
                    fired.append((rule, metric, value, None))
            elif nodes:
                for node in nodes:
                    if rule.pnode_filter and node.id != rule.pnode_filter:
                        continue
                    value = metric_value(metric, node=node)
                    if compare(value, rule.threshold):
                        fired.append((rule, metric, value, node.id))

        alerts = []
        for rule, metric, value, node_pubkey in fired:
            alerts.append(await self._trigger(rule, metric, value, node_pubkey, now))
        return alerts

    async def _trigger(self, rule: AlertRule, metric: Metric, value: float,
                       node_pubkey: Optional[str], now: float) -> Alert:
        message = format_alert_message(rule, value, node_pubkey)
        alert = await self.store.insert_alert(Alert(
            rule_id=rule.id,
            severity=determine_severity(metric, value, rule.threshold),
            message=message,
            metric=rule.metric,
            value=value,
            threshold=rule.threshold,
            node_pubkey=node_pubkey,
            timestamp=now
        ))

        rule.last_triggered = now
        await self.store.update_alert_rule(rule)

        self.logger.warning(f"[Alert] {alert.severity.value} {message}")
        # Delivery is handled by an external notifier; only the intent is logged here
        if rule.notify_email:
            self.logger.info(f"[Alert] Would send email to {rule.notify_email}: {message}")
        if rule.notify_webhook:
            self.logger.info(f"[Alert] Would call webhook {rule.notify_webhook}")

        return alert

    async def get_alerts(self, unresolved: Optional[bool] = None, limit: int = 50) -> List[Alert]:
        resolved = None if unresolved is None else not unresolved
        return await self.store.get_alerts(resolved=resolved, limit=limit)

    async def resolve_alert(self, alert_id: int) -> bool:
        return await self.store.resolve_alert(alert_id, self.clock())

    async def resolve_all_for_rule(self, rule_id: int) -> int:
        return await self.store.resolve_alerts_for_rule(rule_id, self.clock())
