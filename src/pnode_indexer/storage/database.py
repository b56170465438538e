"""
SQLite storage for node snapshots, network history, events and alerts.
"""

import asyncio
import json
import logging
import time
from typing import Dict, Any, List, Optional

import aiosqlite

from ..exceptions import PersistenceError
from .base import Store
from .models import (
    Alert,
    AlertRule,
    AlertScope,
    Anomaly,
    EconomicsSnapshot,
    EpochInfo,
    EventType,
    NetworkEvent,
    NetworkSnapshot,
    Node,
    NodeHistory,
    NodeSnapshot,
    PerformanceSample,
    Severity,
    VoteAccount,
)


class SQLiteStore(Store):
    """Store implementation on a single aiosqlite connection."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize SQLite store.

        Args:
            config: Configuration dictionary
        """
        self.config = config
        self.db_path = config['storage']['database_path']
        self.retention_days = config['storage']['retention_days']
        self.logger = logging.getLogger('pnode_database')

        self.db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self):
        """Open the connection and create tables and indexes."""
        self.db = await aiosqlite.connect(self.db_path)
        self.db.row_factory = aiosqlite.Row
        await self.db.execute("PRAGMA foreign_keys = ON")

        await self._create_tables()
        await self._create_indexes()

        self.logger.info(f"Database initialized: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self.db:
            await self.db.close()
            self.db = None

    async def _create_tables(self):
        """Create database tables."""
        # Long-lived node identities, one row per pubkey
        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS nodes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pubkey TEXT UNIQUE NOT NULL,
                gossip_endpoint TEXT NOT NULL,
                rpc_endpoint TEXT,
                version TEXT,
                location TEXT,
                is_public INTEGER,
                pnrpc_port INTEGER,
                first_seen REAL NOT NULL,
                last_seen REAL NOT NULL
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS node_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_id INTEGER NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
                timestamp REAL NOT NULL,
                status TEXT NOT NULL,
                performance_score INTEGER NOT NULL,
                uptime_percent REAL NOT NULL,
                uptime_seconds INTEGER,
                average_latency_ms REAL NOT NULL,
                success_rate_percent REAL NOT NULL,
                capacity_bytes INTEGER NOT NULL,
                used_bytes INTEGER NOT NULL,
                utilization_percent REAL NOT NULL,
                file_system_count INTEGER NOT NULL,
                cpu_percent REAL,
                ram_used_bytes INTEGER,
                ram_total_bytes INTEGER,
                active_streams INTEGER,
                packets_received INTEGER,
                packets_sent INTEGER,
                is_public INTEGER NOT NULL DEFAULT 0,
                pnrpc_port INTEGER,
                is_estimated INTEGER NOT NULL DEFAULT 1
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS network_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                total_nodes INTEGER NOT NULL,
                online_nodes INTEGER NOT NULL,
                offline_nodes INTEGER NOT NULL,
                delinquent_nodes INTEGER NOT NULL,
                total_capacity_bytes INTEGER NOT NULL,
                total_used_bytes INTEGER NOT NULL,
                utilization_percent REAL NOT NULL,
                health_score INTEGER NOT NULL,
                average_performance INTEGER NOT NULL,
                average_latency_ms REAL NOT NULL,
                version_distribution TEXT NOT NULL,
                geo_distribution TEXT NOT NULL,
                total_validators INTEGER,
                active_validators INTEGER,
                delinquent_validators INTEGER,
                total_stake INTEGER,
                average_commission REAL,
                current_epoch INTEGER,
                current_slot INTEGER,
                block_height INTEGER,
                transaction_count INTEGER,
                current_tps REAL,
                non_vote_tps REAL
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS validators (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                vote_pubkey TEXT UNIQUE NOT NULL,
                node_pubkey TEXT NOT NULL,
                commission REAL NOT NULL,
                first_seen REAL NOT NULL,
                last_seen REAL NOT NULL
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS validator_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                validator_id INTEGER NOT NULL REFERENCES validators(id) ON DELETE CASCADE,
                timestamp REAL NOT NULL,
                activated_stake INTEGER NOT NULL,
                commission REAL NOT NULL,
                last_vote INTEGER NOT NULL,
                root_slot INTEGER NOT NULL,
                credits INTEGER NOT NULL,
                prior_credits INTEGER NOT NULL,
                epoch_vote_account INTEGER NOT NULL,
                is_delinquent INTEGER NOT NULL
            )
        """)

        # Epochs recur across cycles, hence the unique epoch number
        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS epoch_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                epoch INTEGER UNIQUE NOT NULL,
                absolute_slot INTEGER NOT NULL,
                block_height INTEGER NOT NULL,
                slot_index INTEGER NOT NULL,
                slots_in_epoch INTEGER NOT NULL,
                transaction_count INTEGER NOT NULL,
                progress_percent REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS performance_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                slot INTEGER UNIQUE NOT NULL,
                timestamp REAL NOT NULL,
                num_slots INTEGER NOT NULL,
                num_transactions INTEGER NOT NULL,
                num_non_vote_transactions INTEGER NOT NULL,
                sample_period_secs INTEGER NOT NULL,
                tps REAL NOT NULL,
                non_vote_tps REAL NOT NULL,
                slot_time_ms REAL NOT NULL
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS economics_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                total_supply INTEGER NOT NULL,
                circulating_supply INTEGER NOT NULL,
                non_circulating_supply INTEGER NOT NULL,
                inflation_epoch INTEGER NOT NULL,
                inflation_total REAL NOT NULL,
                inflation_validator REAL NOT NULL,
                inflation_foundation REAL NOT NULL,
                total_staked INTEGER NOT NULL,
                staking_participation REAL NOT NULL,
                stake_minimum_delegation INTEGER NOT NULL
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS network_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                type TEXT NOT NULL,
                severity TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                node_id INTEGER REFERENCES nodes(id) ON DELETE SET NULL,
                node_pubkey TEXT,
                metadata TEXT NOT NULL
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS anomalies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                metric TEXT NOT NULL,
                expected_value REAL NOT NULL,
                actual_value REAL NOT NULL,
                deviation REAL NOT NULL,
                description TEXT NOT NULL,
                node_pubkey TEXT
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS alert_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                metric TEXT NOT NULL,
                operator TEXT NOT NULL,
                threshold REAL NOT NULL,
                scope TEXT NOT NULL,
                pnode_filter TEXT,
                cooldown_minutes INTEGER NOT NULL,
                enabled INTEGER NOT NULL,
                notify_email TEXT,
                notify_webhook TEXT,
                last_triggered REAL,
                created_at REAL NOT NULL
            )
        """)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id INTEGER NOT NULL REFERENCES alert_rules(id) ON DELETE CASCADE,
                timestamp REAL NOT NULL,
                severity TEXT NOT NULL,
                message TEXT NOT NULL,
                metric TEXT NOT NULL,
                value REAL NOT NULL,
                threshold REAL NOT NULL,
                node_pubkey TEXT,
                resolved INTEGER NOT NULL DEFAULT 0,
                resolved_at REAL
            )
        """)

        await self.db.commit()

    async def _create_indexes(self):
        """Create database indexes for performance."""
        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_node_snapshots_node_timestamp
            ON node_snapshots(node_id, timestamp)
        """)

        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_network_snapshots_timestamp
            ON network_snapshots(timestamp)
        """)

        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_validator_snapshots_validator_timestamp
            ON validator_snapshots(validator_id, timestamp)
        """)

        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_network_events_timestamp
            ON network_events(timestamp)
        """)

        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_anomalies_timestamp
            ON anomalies(timestamp)
        """)

        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_alerts_rule_timestamp
            ON alerts(rule_id, timestamp)
        """)

        await self.db.commit()

    async def _write(self, query: str, parameters: tuple = ()) -> aiosqlite.Cursor:
        """Execute one statement and commit; rolls back and raises on failure."""
        async with self._write_lock:
            try:
                cursor = await self.db.execute(query, parameters)
                await self.db.commit()
                return cursor
            except aiosqlite.Error as e:
                self.logger.error(f"Database write failed: {e}")
                await self.db.rollback()
                raise PersistenceError(str(e)) from e

    async def _fetchone(self, query: str, parameters: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self.db.execute(query, parameters) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, query: str, parameters: tuple = ()) -> List[aiosqlite.Row]:
        async with self.db.execute(query, parameters) as cursor:
            return list(await cursor.fetchall())

    # Nodes

    async def upsert_node(self, node: Node, timestamp: float) -> int:
        await self._write("""
            INSERT INTO nodes
            (pubkey, gossip_endpoint, rpc_endpoint, version, location, is_public, pnrpc_port,
             first_seen, last_seen)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(pubkey) DO UPDATE SET
                gossip_endpoint = excluded.gossip_endpoint,
                rpc_endpoint = excluded.rpc_endpoint,
                version = excluded.version,
                location = excluded.location,
                is_public = excluded.is_public,
                pnrpc_port = excluded.pnrpc_port,
                last_seen = excluded.last_seen
        """, (
            node.id,
            node.gossip_endpoint,
            node.rpc_endpoint,
            node.version,
            node.location,
            None if node.is_public is None else int(node.is_public),
            node.pnrpc_port,
            timestamp,
            timestamp
        ))

        identity_id = await self.get_node_identity_id(node.id)
        if identity_id is None:
            raise PersistenceError(f"Node identity missing after upsert: {node.id}")
        return identity_id

    async def insert_node_snapshot(self, snapshot: NodeSnapshot) -> int:
        cursor = await self._write("""
            INSERT INTO node_snapshots
            (node_id, timestamp, status, performance_score, uptime_percent, uptime_seconds,
             average_latency_ms, success_rate_percent, capacity_bytes, used_bytes,
             utilization_percent, file_system_count, cpu_percent, ram_used_bytes,
             ram_total_bytes, active_streams, packets_received, packets_sent, is_public,
             pnrpc_port, is_estimated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            snapshot.node_identity_id,
            snapshot.timestamp,
            snapshot.status.value,
            snapshot.performance_score,
            snapshot.uptime_percent,
            snapshot.uptime_seconds,
            snapshot.average_latency_ms,
            snapshot.success_rate_percent,
            snapshot.capacity_bytes,
            snapshot.used_bytes,
            snapshot.utilization_percent,
            snapshot.file_system_count,
            snapshot.cpu_percent,
            snapshot.ram_used_bytes,
            snapshot.ram_total_bytes,
            snapshot.active_streams,
            snapshot.packets_received,
            snapshot.packets_sent,
            int(snapshot.is_public),
            snapshot.pnrpc_port,
            int(snapshot.is_estimated)
        ))
        return cursor.lastrowid

    async def get_node_identity_id(self, pubkey: str) -> Optional[int]:
        row = await self._fetchone("SELECT id FROM nodes WHERE pubkey = ?", (pubkey,))
        return row['id'] if row else None

    async def get_node_history(self, pubkey: str, since: float) -> Optional[NodeHistory]:
        row = await self._fetchone("""
            SELECT COUNT(*) AS sample_count,
                   AVG(CASE WHEN s.status = 'online' THEN 1.0 ELSE 0.0 END) AS online_fraction,
                   AVG(CASE WHEN s.is_estimated = 0 THEN s.average_latency_ms END) AS average_latency_ms,
                   AVG(CASE WHEN s.is_estimated = 0 THEN s.success_rate_percent END) AS average_success_rate
            FROM node_snapshots s
            JOIN nodes n ON n.id = s.node_id
            WHERE n.pubkey = ? AND s.timestamp >= ?
        """, (pubkey, since))

        if not row or not row['sample_count']:
            return None

        return NodeHistory(
            sample_count=row['sample_count'],
            online_fraction=row['online_fraction'],
            average_latency_ms=row['average_latency_ms'],
            average_success_rate=row['average_success_rate']
        )

    # Network

    async def insert_network_snapshot(self, snapshot: NetworkSnapshot) -> int:
        cursor = await self._write("""
            INSERT INTO network_snapshots
            (timestamp, total_nodes, online_nodes, offline_nodes, delinquent_nodes,
             total_capacity_bytes, total_used_bytes, utilization_percent, health_score,
             average_performance, average_latency_ms, version_distribution, geo_distribution,
             total_validators, active_validators, delinquent_validators, total_stake,
             average_commission, current_epoch, current_slot, block_height, transaction_count,
             current_tps, non_vote_tps)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            snapshot.timestamp,
            snapshot.total_nodes,
            snapshot.online_nodes,
            snapshot.offline_nodes,
            snapshot.delinquent_nodes,
            snapshot.total_capacity_bytes,
            snapshot.total_used_bytes,
            snapshot.utilization_percent,
            snapshot.health_score,
            snapshot.average_performance,
            snapshot.average_latency_ms,
            json.dumps(snapshot.version_distribution),
            json.dumps(snapshot.geo_distribution),
            snapshot.total_validators,
            snapshot.active_validators,
            snapshot.delinquent_validators,
            snapshot.total_stake,
            snapshot.average_commission,
            snapshot.current_epoch,
            snapshot.current_slot,
            snapshot.block_height,
            snapshot.transaction_count,
            snapshot.current_tps,
            snapshot.non_vote_tps
        ))
        return cursor.lastrowid

    async def get_network_snapshots_since(self, since: float, limit: int = 100,
                                          before: Optional[float] = None) -> List[NetworkSnapshot]:
        query = "SELECT * FROM network_snapshots WHERE timestamp >= ?"
        parameters: tuple = (since,)
        if before is not None:
            query += " AND timestamp < ?"
            parameters += (before,)
        rows = await self._fetchall(query + " ORDER BY timestamp DESC LIMIT ?", parameters + (limit,))
        return [self._row_to_network_snapshot(row) for row in rows]

    @staticmethod
    def _row_to_network_snapshot(row: aiosqlite.Row) -> NetworkSnapshot:
        data = dict(row)
        data.pop('id')
        data['version_distribution'] = json.loads(data['version_distribution'])
        data['geo_distribution'] = json.loads(data['geo_distribution'])
        return NetworkSnapshot(**data)

    # Chain data

    async def upsert_validator(self, account: VoteAccount, timestamp: float) -> int:
        await self._write("""
            INSERT INTO validators (vote_pubkey, node_pubkey, commission, first_seen, last_seen)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(vote_pubkey) DO UPDATE SET
                node_pubkey = excluded.node_pubkey,
                commission = excluded.commission,
                last_seen = excluded.last_seen
        """, (account.vote_pubkey, account.node_pubkey, account.commission, timestamp, timestamp))

        row = await self._fetchone("SELECT id FROM validators WHERE vote_pubkey = ?", (account.vote_pubkey,))
        if row is None:
            raise PersistenceError(f"Validator missing after upsert: {account.vote_pubkey}")
        return row['id']

    async def insert_validator_snapshot(self, validator_id: int, account: VoteAccount,
                                        is_delinquent: bool, timestamp: float) -> int:
        credits, prior_credits = account.latest_credits
        cursor = await self._write("""
            INSERT INTO validator_snapshots
            (validator_id, timestamp, activated_stake, commission, last_vote, root_slot,
             credits, prior_credits, epoch_vote_account, is_delinquent)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            validator_id,
            timestamp,
            account.activated_stake,
            account.commission,
            account.last_vote,
            account.root_slot,
            credits,
            prior_credits,
            int(account.epoch_vote_account),
            int(is_delinquent)
        ))
        return cursor.lastrowid

    async def upsert_epoch_snapshot(self, epoch: EpochInfo, timestamp: float):
        await self._write("""
            INSERT INTO epoch_snapshots
            (epoch, absolute_slot, block_height, slot_index, slots_in_epoch, transaction_count,
             progress_percent, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(epoch) DO UPDATE SET
                absolute_slot = excluded.absolute_slot,
                block_height = excluded.block_height,
                slot_index = excluded.slot_index,
                slots_in_epoch = excluded.slots_in_epoch,
                transaction_count = excluded.transaction_count,
                progress_percent = excluded.progress_percent,
                updated_at = excluded.updated_at
        """, (
            epoch.epoch,
            epoch.absolute_slot,
            epoch.block_height,
            epoch.slot_index,
            epoch.slots_in_epoch,
            epoch.transaction_count,
            epoch.progress_percent,
            timestamp
        ))

    async def get_epoch_snapshot(self, epoch: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM epoch_snapshots WHERE epoch = ?", (epoch,))
        return dict(row) if row else None

    async def performance_sample_exists(self, slot: int) -> bool:
        row = await self._fetchone("SELECT 1 FROM performance_samples WHERE slot = ?", (slot,))
        return row is not None

    async def insert_performance_sample(self, sample: PerformanceSample, timestamp: float) -> int:
        cursor = await self._write("""
            INSERT INTO performance_samples
            (slot, timestamp, num_slots, num_transactions, num_non_vote_transactions,
             sample_period_secs, tps, non_vote_tps, slot_time_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            sample.slot,
            timestamp,
            sample.num_slots,
            sample.num_transactions,
            sample.num_non_vote_transactions,
            sample.sample_period_secs,
            sample.tps,
            sample.non_vote_tps,
            sample.slot_time_ms
        ))
        return cursor.lastrowid

    async def insert_economics_snapshot(self, snapshot: EconomicsSnapshot) -> int:
        cursor = await self._write("""
            INSERT INTO economics_snapshots
            (timestamp, total_supply, circulating_supply, non_circulating_supply,
             inflation_epoch, inflation_total, inflation_validator, inflation_foundation,
             total_staked, staking_participation, stake_minimum_delegation)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            snapshot.timestamp,
            snapshot.total_supply,
            snapshot.circulating_supply,
            snapshot.non_circulating_supply,
            snapshot.inflation_epoch,
            snapshot.inflation_total,
            snapshot.inflation_validator,
            snapshot.inflation_foundation,
            snapshot.total_staked,
            snapshot.staking_participation,
            snapshot.stake_minimum_delegation
        ))
        return cursor.lastrowid

    async def count_rows(self, table: str) -> int:
        """Row count of a table; only for names defined in this module."""
        row = await self._fetchone(f"SELECT COUNT(*) AS n FROM {table}")
        return row['n']

    # Events

    async def insert_network_event(self, event: NetworkEvent, node_identity_id: Optional[int] = None) -> int:
        cursor = await self._write("""
            INSERT INTO network_events
            (timestamp, type, severity, title, description, node_id, node_pubkey, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.timestamp,
            event.type.value,
            event.severity.value,
            event.title,
            event.description,
            node_identity_id,
            event.node_pubkey,
            json.dumps(event.metadata, default=str)
        ))
        return cursor.lastrowid

    async def get_network_events(self, since: Optional[float] = None, limit: int = 100) -> List[NetworkEvent]:
        rows = await self._fetchall(
            "SELECT * FROM network_events WHERE timestamp >= ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (since or 0, limit)
        )
        return [
            NetworkEvent(
                type=EventType(row['type']),
                severity=Severity(row['severity']),
                title=row['title'],
                description=row['description'],
                node_pubkey=row['node_pubkey'],
                metadata=json.loads(row['metadata']),
                timestamp=row['timestamp']
            )
            for row in rows
        ]

    async def insert_anomaly(self, anomaly: Anomaly) -> int:
        cursor = await self._write("""
            INSERT INTO anomalies
            (timestamp, metric, expected_value, actual_value, deviation, description, node_pubkey)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            anomaly.timestamp,
            anomaly.metric,
            anomaly.expected_value,
            anomaly.actual_value,
            anomaly.deviation,
            anomaly.description,
            anomaly.node_pubkey
        ))
        return cursor.lastrowid

    async def get_anomalies(self, since: Optional[float] = None, limit: int = 100) -> List[Anomaly]:
        rows = await self._fetchall(
            "SELECT * FROM anomalies WHERE timestamp >= ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (since or 0, limit)
        )
        return [
            Anomaly(
                metric=row['metric'],
                expected_value=row['expected_value'],
                actual_value=row['actual_value'],
                deviation=row['deviation'],
                description=row['description'],
                timestamp=row['timestamp'],
                node_pubkey=row['node_pubkey']
            )
            for row in rows
        ]

    # Alerting

    async def create_alert_rule(self, rule: AlertRule) -> AlertRule:
        cursor = await self._write("""
            INSERT INTO alert_rules
            (name, description, metric, operator, threshold, scope, pnode_filter,
             cooldown_minutes, enabled, notify_email, notify_webhook, last_triggered, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            rule.name,
            rule.description,
            rule.metric,
            rule.operator,
            rule.threshold,
            rule.scope.value,
            rule.pnode_filter,
            rule.cooldown_minutes,
            int(rule.enabled),
            rule.notify_email,
            rule.notify_webhook,
            rule.last_triggered,
            rule.created_at
        ))
        rule.id = cursor.lastrowid
        return rule

    async def get_alert_rule(self, rule_id: int) -> Optional[AlertRule]:
        row = await self._fetchone("SELECT * FROM alert_rules WHERE id = ?", (rule_id,))
        return self._row_to_rule(row) if row else None

    async def get_alert_rules(self, enabled_only: bool = False) -> List[AlertRule]:
        query = "SELECT * FROM alert_rules"
        if enabled_only:
            query += " WHERE enabled = 1"
        rows = await self._fetchall(query + " ORDER BY created_at DESC, id DESC")
        return [self._row_to_rule(row) for row in rows]

    async def update_alert_rule(self, rule: AlertRule) -> bool:
        cursor = await self._write("""
            UPDATE alert_rules SET
                name = ?, description = ?, metric = ?, operator = ?, threshold = ?, scope = ?,
                pnode_filter = ?, cooldown_minutes = ?, enabled = ?, notify_email = ?,
                notify_webhook = ?, last_triggered = ?
            WHERE id = ?
        """, (
            rule.name,
            rule.description,
            rule.metric,
            rule.operator,
            rule.threshold,
            rule.scope.value,
            rule.pnode_filter,
            rule.cooldown_minutes,
            int(rule.enabled),
            rule.notify_email,
            rule.notify_webhook,
            rule.last_triggered,
            rule.id
        ))
        return cursor.rowcount > 0

    async def delete_alert_rule(self, rule_id: int) -> bool:
        cursor = await self._write("DELETE FROM alert_rules WHERE id = ?", (rule_id,))
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_rule(row: aiosqlite.Row) -> AlertRule:
        return AlertRule(
            id=row['id'],
            name=row['name'],
            description=row['description'],
            metric=row['metric'],
            operator=row['operator'],
            threshold=row['threshold'],
            scope=AlertScope(row['scope']),
            pnode_filter=row['pnode_filter'],
            cooldown_minutes=row['cooldown_minutes'],
            enabled=bool(row['enabled']),
            notify_email=row['notify_email'],
            notify_webhook=row['notify_webhook'],
            last_triggered=row['last_triggered'],
            created_at=row['created_at']
        )

    async def insert_alert(self, alert: Alert) -> Alert:
        cursor = await self._write("""
            INSERT INTO alerts
            (rule_id, timestamp, severity, message, metric, value, threshold, node_pubkey,
             resolved, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            alert.rule_id,
            alert.timestamp,
            alert.severity.value,
            alert.message,
            alert.metric,
            alert.value,
            alert.threshold,
            alert.node_pubkey,
            int(alert.resolved),
            alert.resolved_at
        ))
        alert.id = cursor.lastrowid
        return alert

    async def get_alerts(self, resolved: Optional[bool] = None, limit: int = 100) -> List[Alert]:
        query = "SELECT * FROM alerts"
        parameters: tuple = ()
        if resolved is not None:
            query += " WHERE resolved = ?"
            parameters = (int(resolved),)
        rows = await self._fetchall(query + " ORDER BY timestamp DESC, id DESC LIMIT ?", parameters + (limit,))
        return [
            Alert(
                id=row['id'],
                rule_id=row['rule_id'],
                severity=Severity(row['severity']),
                message=row['message'],
                metric=row['metric'],
                value=row['value'],
                threshold=row['threshold'],
                node_pubkey=row['node_pubkey'],
                resolved=bool(row['resolved']),
                resolved_at=row['resolved_at'],
                timestamp=row['timestamp']
            )
            for row in rows
        ]

    async def resolve_alert(self, alert_id: int, resolved_at: float) -> bool:
        cursor = await self._write(
            "UPDATE alerts SET resolved = 1, resolved_at = ? WHERE id = ? AND resolved = 0",
            (resolved_at, alert_id)
        )
        return cursor.rowcount > 0

    async def resolve_alerts_for_rule(self, rule_id: int, resolved_at: float) -> int:
        cursor = await self._write(
            "UPDATE alerts SET resolved = 1, resolved_at = ? WHERE rule_id = ? AND resolved = 0",
            (resolved_at, rule_id)
        )
        return cursor.rowcount

    # Maintenance

    async def cleanup_old_data(self, now: Optional[float] = None) -> int:
        """Clean up snapshots older than the retention period."""
        cutoff_time = (now if now is not None else time.time()) - self.retention_days * 24 * 3600
        removed = 0

        for table in ('node_snapshots', 'validator_snapshots', 'network_snapshots', 'economics_snapshots'):
            cursor = await self._write(f"DELETE FROM {table} WHERE timestamp < ?", (cutoff_time,))
            removed += cursor.rowcount

        self.logger.info(f"Database cleanup removed {removed} rows")
        return removed
