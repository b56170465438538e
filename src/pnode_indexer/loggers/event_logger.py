"""
Network event and anomaly journal.

Every event is persisted to the store and mirrored as one JSON line under
the logs directory so operators can tail or ship the stream.
"""

import json
import logging
import time
from pathlib import Path
from typing import Dict, Any, Optional

from ..storage.base import Store
from ..storage.models import Anomaly, NetworkEvent, Severity


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
}


class EventLogger:
    """Writes network events and anomalies to the store and the JSONL journal."""

    def __init__(self, store: Store, logs_directory: str):
        """
        Initialize event logger.

        Args:
            store: Store the records are persisted to
            logs_directory: Root of the log tree
        """
        self.store = store
        self.logger = logging.getLogger('event_logger')

        self.logs_dir = Path(logs_directory)
        self.events_log_path = self.logs_dir / 'events' / 'network_events.jsonl'
        self.anomaly_log_path = self.logs_dir / 'analysis' / 'anomalies.jsonl'

    async def log_event(self, event: NetworkEvent) -> int:
        """
        Persist an event and append it to the journal.

        The node reference is resolved to the stored identity; events about
        nodes that were never persisted keep only the pubkey.

        Raises:
            PersistenceError: If the store rejects the write
        """
        node_identity_id: Optional[int] = None
        if event.node_pubkey:
            node_identity_id = await self.store.get_node_identity_id(event.node_pubkey)

        event_id = await self.store.insert_network_event(event, node_identity_id)

        self.logger.log(_LOG_LEVELS[event.severity], f"{event.title}: {event.description}")
        self._write_log_entry(self.events_log_path, {
            'log_metadata': {
                'log_type': 'network_event',
                'event_id': event_id,
                'logged_at': time.time()
            },
            'event': event.to_dict()
        })
        return event_id

    async def log_anomaly(self, anomaly: Anomaly, event: NetworkEvent) -> int:
        """
        Persist an anomaly and the event announcing it.

        Raises:
            PersistenceError: If the store rejects either write
        """
        anomaly_id = await self.store.insert_anomaly(anomaly)
        self._write_log_entry(self.anomaly_log_path, {
            'log_metadata': {
                'log_type': 'metric_anomaly',
                'anomaly_id': anomaly_id,
                'logged_at': time.time()
            },
            'anomaly_data': anomaly.to_dict(),
            'context': {
                'detection_method': 'standard_deviation',
                'baseline_window': 'network_snapshots'
            }
        })

        await self.log_event(event)
        return anomaly_id

    def _write_log_entry(self, log_path: Path, entry: Dict[str, Any]):
        """Append one JSON line; failures are logged, never raised."""
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, 'a') as f:
                f.write(json.dumps(entry, default=str) + '\n')
        except (OSError, TypeError, ValueError) as e:
            self.logger.error(f"Failed to write log entry to {log_path}: {e}")
