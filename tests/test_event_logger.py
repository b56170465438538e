"""
Tests for the event and anomaly journal.
"""

import json

import pytest
from unittest.mock import AsyncMock

from pnode_indexer.exceptions import PersistenceError
from pnode_indexer.loggers.event_logger import EventLogger
from pnode_indexer.storage.models import Anomaly, EventType, NetworkEvent, Severity

from conftest import NOW


def read_jsonl(path):
    with open(path) as f:
        return [json.loads(line) for line in f]


class TestEventLogger:
    """Tests for EventLogger."""

    @pytest.mark.asyncio
    async def test_event_links_known_node(self, store, make_node, tmp_path):
        """Test that events about stored nodes reference their identity row."""
        identity_id = await store.upsert_node(make_node('N1'), NOW)
        logger = EventLogger(store, str(tmp_path))

        event_id = await logger.log_event(NetworkEvent(
            EventType.NODE_OFFLINE, Severity.CRITICAL, 'pNode Status Changed to OFFLINE',
            node_pubkey='N1', timestamp=NOW
        ))

        row = await store._fetchone("SELECT node_id FROM network_events WHERE id = ?", (event_id,))
        assert row['node_id'] == identity_id

        entries = read_jsonl(logger.events_log_path)
        assert entries[0]['log_metadata']['event_id'] == event_id
        assert entries[0]['event']['severity'] == 'CRITICAL'

    @pytest.mark.asyncio
    async def test_anomaly_is_journaled_with_event(self, store, tmp_path):
        logger = EventLogger(store, str(tmp_path))
        anomaly = Anomaly('totalPNodes', 100.0, 50, 45.6, 'Unusual pNode count', timestamp=NOW)
        event = NetworkEvent(EventType.ANOMALY_DETECTED, Severity.CRITICAL, 'Unusual pNode Count', timestamp=NOW)

        await logger.log_anomaly(anomaly, event)

        anomalies = read_jsonl(logger.anomaly_log_path)
        assert anomalies[0]['anomaly_data']['metric'] == 'totalPNodes'
        assert anomalies[0]['context']['detection_method'] == 'standard_deviation'
        assert len(read_jsonl(logger.events_log_path)) == 1
        assert len(await store.get_anomalies()) == 1

    @pytest.mark.asyncio
    async def test_journal_failure_is_not_raised(self, store, tmp_path):
        """Test that an unwritable journal does not lose the stored event."""
        blocker = tmp_path / 'not-a-dir'
        blocker.write_text('')
        logger = EventLogger(store, str(blocker))

        await logger.log_event(NetworkEvent(EventType.NODE_JOINED, Severity.SUCCESS, 'New pNode Detected'))

        assert len(await store.get_network_events()) == 1

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, tmp_path):
        store = AsyncMock()
        store.insert_network_event.side_effect = PersistenceError('disk full')
        logger = EventLogger(store, str(tmp_path))

        with pytest.raises(PersistenceError):
            await logger.log_event(NetworkEvent(EventType.NODE_JOINED, Severity.SUCCESS, 'New pNode Detected'))

        assert not logger.events_log_path.exists()
