"""CLI entry point for the collector daemon.

Runs the loopback capture server and the beacon drainer:
    python -m chat_capture.collector --port 33445
"""

import signal
from pathlib import Path
from types import FrameType

import click

from chat_capture.collector.daemon import request_shutdown, run_collector
from chat_capture.config import Config, load_config
from chat_capture.logging import get_logger

logger = get_logger("collector")


def signal_handler(signum: int, frame: FrameType | None) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
    request_shutdown()


def apply_overrides(
    config: Config,
    port: int | None = None,
    journal: Path | None = None,
    state_db: Path | None = None,
) -> Config:
    """Apply command-line overrides on top of the loaded config."""
    if port is not None:
        config.server.port = port
    if journal is not None:
        config.storage.journal_path = journal.expanduser()
    if state_db is not None:
        config.storage.state_db = state_db.expanduser()
    return config


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Config file (default: ./config.yaml, then ~/.config/chat-capture/config.yaml)",
)
@click.option("--port", type=click.IntRange(1, 65535), help="Loopback server port")
@click.option(
    "--journal",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Capture journal (JSONL) to append to",
)
@click.option(
    "--state-db",
    type=click.Path(dir_okay=False, path_type=Path),
    help="SQLite dedup index",
)
def main(
    config_path: Path | None,
    port: int | None,
    journal: Path | None,
    state_db: Path | None,
) -> None:
    """Capture chat messages delivered by page agents until interrupted."""
    config = apply_overrides(load_config(config_path), port, journal, state_db)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_collector(config)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        request_shutdown()


if __name__ == "__main__":
    main()
