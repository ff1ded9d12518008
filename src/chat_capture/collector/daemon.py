"""Collector service: wires endpoints, merge step and drain together."""

import threading
import time
from functools import partial

from werkzeug.serving import BaseWSGIServer, make_server

from chat_capture.agent.channels import ImageBeaconChannel
from chat_capture.collector.drain import BeaconDrainer
from chat_capture.collector.endpoints import handle_scheme_request
from chat_capture.collector.events import EventBus
from chat_capture.collector.ingest import IngestionCollector
from chat_capture.collector.journal import CaptureJournal
from chat_capture.collector.server import create_app
from chat_capture.collector.state import DedupIndex
from chat_capture.config import Config
from chat_capture.logging import get_logger, setup_logging
from chat_capture.session import SchemeHandler, SurfaceRegistry

logger = get_logger("collector")

# Global flag for graceful shutdown
_shutdown_requested = False


def request_shutdown() -> None:
    """Request graceful shutdown of the collector daemon."""
    global _shutdown_requested
    _shutdown_requested = True


def is_shutdown_requested() -> bool:
    """Check if shutdown has been requested."""
    return _shutdown_requested


def reset_shutdown() -> None:
    """Reset shutdown flag (useful for testing)."""
    global _shutdown_requested
    _shutdown_requested = False


def build_collector(config: Config, bus: EventBus | None = None) -> IngestionCollector:
    """Create the collector from storage configuration."""
    return IngestionCollector(
        journal=CaptureJournal(config.storage.journal_path),
        index=DedupIndex(config.storage.state_db),
        bus=bus,
    )


class CollectorService:
    """Everything the host process runs on the privileged side.

    The host hands `collector.capture_direct` to the surface it owns,
    registers `scheme_handler` for its private URI scheme, and registers
    every surface it creates in `surfaces` so the drainer can reach it.
    """

    def __init__(self, config: Config, collector: IngestionCollector | None = None) -> None:
        self.config = config
        self.collector = collector or build_collector(config)
        self.surfaces = SurfaceRegistry()
        self.scheme_handler: SchemeHandler = partial(handle_scheme_request, self.collector)
        self.drainer = BeaconDrainer(
            self.surfaces,
            ImageBeaconChannel(
                config.server.base_url,
                max_content=config.drain.beacon_max_content,
            ),
            interval_seconds=config.drain.interval_seconds,
        )
        self._server: BaseWSGIServer | None = None
        self._server_thread: threading.Thread | None = None
        self._indexer = None

    def start(self) -> None:
        """Start the loopback server and the beacon drainer."""
        if self.config.typesense.enabled:
            self._start_indexer()

        app = create_app(self.collector)
        server = self.config.server
        self._server = make_server(server.host, server.port, app, threaded=True)
        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            name="capture-http",
            daemon=True,
        )
        self._server_thread.start()
        logger.info("HTTP endpoint listening: url=%s", server.base_url)

        self.drainer.start()

    def stop(self) -> None:
        self.drainer.stop()
        if self._server is not None:
            self._server.shutdown()
            self._server = None
        if self._server_thread is not None:
            self._server_thread.join(5.0)
            self._server_thread = None
        self.collector.index.close()

    def _start_indexer(self) -> None:
        from chat_capture.history.indexer import TypesenseIndexer

        indexer = TypesenseIndexer(self.config.typesense)
        try:
            indexer.ensure_collections()
        except Exception:
            logger.exception("Search index unavailable, captures will not be indexed")
            return
        self.collector.bus.subscribe(indexer.index_event)
        self._indexer = indexer


def run_collector(config: Config) -> None:
    """Run the collector daemon until shutdown is requested.

    Args:
        config: Application configuration
    """
    reset_shutdown()

    setup_logging("collector")

    logger.info(
        "Starting collector daemon: journal=%s state_db=%s port=%d",
        config.storage.journal_path,
        config.storage.state_db,
        config.server.port,
    )

    service = CollectorService(config)
    service.start()
    try:
        # Sleep in small increments to allow graceful shutdown
        while not is_shutdown_requested():
            time.sleep(1.0)
    finally:
        service.stop()

    logger.info("Collector daemon stopped")
