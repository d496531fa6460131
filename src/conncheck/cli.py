"""CLI entry point for running a connectivity checker.

Usage:
    conncheck --config checker.json
    conncheck --metadata http://169.254.169.250/connectivity.json --port 8080
    conncheck --metadata ./snapshot.json --check-interval-ms 2000

Environment variables:
    CONNCHECK_PORT:               Override listening port
    CONNCHECK_METADATA:           Directory document path or URL
    CONNCHECK_CHECK_INTERVAL_MS:  Override base check interval
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from conncheck.checker import Checker
from conncheck.config import load_config

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Monitor reachability of peer containers in the same service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to JSON config file",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        help="Port for the local ping endpoint",
    )
    parser.add_argument(
        "--metadata", "-m",
        help="Directory document: file path or http(s) URL",
    )
    parser.add_argument(
        "--check-interval-ms",
        type=int,
        help="Base period between checks of one peer",
    )
    parser.add_argument(
        "--connection-timeout-ms",
        type=int,
        help="Per-probe network timeout",
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser.parse_args(argv)


async def run_checker(checker: Checker) -> None:
    """Start the checker and run until interrupted."""
    await checker.start()

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutting down...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await stop_event.wait()
    await checker.stop()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    overrides = {
        "port": args.port,
        "metadata": args.metadata,
        "check_interval_ms": args.check_interval_ms,
        "connection_timeout_ms": args.connection_timeout_ms,
    }
    try:
        config = load_config(args.config, overrides)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if not config.metadata:
        print("Error: no metadata source configured (--metadata)", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run_checker(Checker(config)))


if __name__ == "__main__":
    main()
