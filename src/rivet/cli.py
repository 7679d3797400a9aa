from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from rivet import __version__
from rivet.errors import ConfigError
from rivet.paths import default_config_path
from rivet.process_runner import ProcessRunner
from rivet.repo_inventory import load_repo_inventory
from rivet.watcher import Fleet

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@contextmanager
def _cancel_on_signals(cancel: threading.Event) -> Iterator[None]:
    def _handler(signum: int, frame: object) -> None:
        del frame
        logger.info("Received %s, shutting down...", signal.Signals(signum).name)
        cancel.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rivet",
        description=(
            "Watch git repositories and redeploy their docker compose service "
            "whenever the tracked branch fast-forwards."
        ),
    )
    parser.add_argument(
        "-config",
        "--config",
        dest="config",
        default=None,
        help=f"Path to the configuration file (default: {default_config_path()}).",
    )
    parser.add_argument(
        "-version",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=_LOG_LEVELS,
        default=os.environ.get("RIVET_LOG_LEVEL", "INFO").upper(),
        help="Logging level (defaults to $RIVET_LOG_LEVEL or INFO).",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    config_path = Path(args.config).expanduser() if args.config else default_config_path()
    logger.info("Starting rivet %s (config=%s)", __version__, config_path)

    try:
        inventory = load_repo_inventory(config_path)
    except ConfigError as e:
        raise SystemExit(f"rivet: {e}") from e

    if not inventory.repositories:
        logger.info("No repositories configured. Exiting.")
        return 0
    logger.info("Configuration loaded (%d repositories)", len(inventory))

    fleet = Fleet.from_inventory(inventory, runner=ProcessRunner())
    cancel = threading.Event()
    with _cancel_on_signals(cancel):
        fleet.run(cancel=cancel)

    logger.info("rivet shut down gracefully.")
    return 0
