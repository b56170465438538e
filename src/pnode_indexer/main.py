"""
pNode Indexer - Main Entry Point

Discovers pNodes, scores them, and snapshots network state on an interval
while recording status-change events and statistical anomalies.
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

from .core.geoip import GeoIPResolver
from .core.registry_client import RegistryClient
from .loggers.event_logger import EventLogger
from .monitoring.alert_service import AlertService
from .monitoring.indexer import IndexerService
from .monitoring.normalizer import LocalNodeEnricher, NodeNormalizer, ServerNodeEnricher
from .storage.database import SQLiteStore
from .utils.config import load_config, should_auto_start
from .utils.logger import get_logger, setup_logging


class IndexerApp:
    """Wires the indexer's components together and owns their lifecycle."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config = None
        self.logger = None

        # Components
        self.store = None
        self.registry = None
        self.geoip = None
        self.normalizer = None
        self.event_logger = None
        self.alert_service = None
        self.indexer = None

    async def initialize(self):
        """Load configuration, set up logging and build every component."""
        self.config = load_config(self.config_path)

        logging_config = self.config['logging']
        setup_logging(logging_config.get('config_file'), logging_config['logs_directory'])
        self.logger = get_logger('pnode_indexer')
        self.logger.info("Initializing pNode indexer...")

        self.store = SQLiteStore(self.config)
        await self.store.initialize()

        self.registry = RegistryClient(self.config)
        await self.registry.start()

        history_days = self.config['indexer']['history_window_days']
        if self.config['geoip']['enabled']:
            self.geoip = GeoIPResolver(self.config)
            enricher = ServerNodeEnricher(self.geoip, self.store, history_days)
        else:
            enricher = LocalNodeEnricher()
        self.normalizer = NodeNormalizer(enricher)

        self.event_logger = EventLogger(self.store, logging_config['logs_directory'])
        self.alert_service = AlertService(self.store)
        self.indexer = IndexerService(
            self.config,
            self.registry,
            self.normalizer,
            self.store,
            self.event_logger,
            self.alert_service
        )

        self.logger.info("pNode indexer initialized successfully")

    async def run_once(self) -> bool:
        """Run a single cycle; returns whether it succeeded."""
        result = await self.indexer.run_indexing_cycle()
        if result.success:
            self.logger.info(f"Indexed {result.node_count} pNodes in {result.duration_ms:.0f}ms")
        else:
            self.logger.error(f"Indexing cycle failed: {result.error}")
        return result.success

    async def run_forever(self, shutdown_event: asyncio.Event):
        """Run the scheduler until the shutdown event is set."""
        await self.indexer.start()
        await shutdown_event.wait()
        self.indexer.stop()
        await self.indexer.wait_for_cycles()

    async def shutdown(self):
        """Close every component that holds a connection."""
        if self.indexer:
            self.indexer.stop()
        if self.registry:
            await self.registry.close()
        if self.geoip:
            await self.geoip.close()
        if self.store:
            await self.store.close()
        if self.logger:
            self.logger.info("pNode indexer shutdown complete")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="pNode status and scoring indexer")
    parser.add_argument('--config', help="Path to config.yaml")
    parser.add_argument('--once', action='store_true', help="Run a single indexing cycle and exit")
    return parser.parse_args(argv)


async def async_main(argv=None) -> int:
    """Run the indexer; returns the process exit code."""
    args = parse_args(argv)
    app = IndexerApp(args.config)

    try:
        await app.initialize()

        if args.once or not should_auto_start(app.config):
            return 0 if await app.run_once() else 1

        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)

        await app.run_forever(shutdown_event)
        return 0

    finally:
        await app.shutdown()


def main():
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
