"""
tapfarm - Main Entry Point

Loads the key list and execution contexts, wires the dispatcher and
scheduler, and keeps every key cycling through its cooldown until the
process receives SIGTERM or SIGINT.

Usage:
    python main.py                  # Run with settings from .env
    python main.py --visible        # Show the browser windows
    python main.py --dry-run        # Simulated executor, no browsers
    python main.py --dashboard      # Rich status table every interval
    python main.py --max-browsers 0 # One pipeline per key (unbounded)

Exit codes:
    0  graceful shutdown
    1  configuration error (no keys, no contexts, bad settings)
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from pydantic import ValidationError

from core.config import ConfigurationError, FarmSettings, load_contexts, load_keys
from core.health_endpoint import SnapshotStore, start_health_server
from core.logging_setup import setup_logging
from core.monitoring import LoggingStatusSink, RichStatusSink, StatusSink
from core.scheduler import FarmScheduler
from executors.registry import create_executor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="tapfarm - per-key cooldown scheduler")
    parser.add_argument("--visible", action="store_true", help="Show browser")
    parser.add_argument("--dry-run", action="store_true", help="Use the simulated executor (no browsers)")
    parser.add_argument("--dashboard", action="store_true", help="Print a Rich status table every interval")
    parser.add_argument("--max-browsers", type=int, help="Concurrent browser cap (0 = unbounded)")
    parser.add_argument("--keys", type=str, help="Path to the keys file")
    parser.add_argument("--contexts", type=str, help="Path to the user agents file")
    return parser


def apply_overrides(settings: FarmSettings, args: argparse.Namespace) -> FarmSettings:
    """Fold command-line flags into *settings* (flags win)."""
    if args.visible:
        settings.headless = False
    if args.dry_run:
        settings.executor = "simulated"
    if args.max_browsers is not None:
        if args.max_browsers < 0:
            raise ConfigurationError("--max-browsers must be >= 0")
        settings.max_concurrent_browsers = args.max_browsers or None
    if args.keys:
        settings.keys_file = args.keys
    if args.contexts:
        settings.contexts_file = args.contexts
    return settings


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Main execution loop.

    1. Parses command line arguments and loads settings.
    2. Loads keys and contexts (fatal if either is empty).
    3. Builds the executor, dispatcher and scheduler.
    4. Seeds the staggered initial attempts and runs until SIGTERM / SIGINT.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)

    try:
        settings = apply_overrides(FarmSettings(), args)
    except (ValidationError, ConfigurationError) as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(settings.log_level)

    try:
        keys = load_keys(settings.keys_file)
        contexts = load_contexts(settings.contexts_file)
        executor = create_executor(settings)
    except ConfigurationError as e:
        logger.error(f"❌ {e}")
        return 1

    logger.info(f"Loaded {len(keys)} keys and {len(contexts)} user agents (executor: {executor.name})")

    sinks: List[StatusSink] = [LoggingStatusSink()]
    if args.dashboard:
        sinks.append(RichStatusSink())
    health_server = None
    if settings.health_port is not None:
        store = SnapshotStore()
        sinks.append(store)
        health_server = start_health_server(store, settings.health_port)

    scheduler = FarmScheduler.from_settings(settings, executor, contexts, sinks=sinks)

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"🛑 Received {sig.name}. Initiating graceful shutdown...")
        scheduler.stop()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal, sig)

    try:
        scheduler.start(keys, settings.stagger_seconds)
        await scheduler.run_forever()
    except ConfigurationError as e:
        logger.error(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("👋 Stopping Farm (KeyboardInterrupt)...")
    finally:
        logger.info("🧹 Cleaning up resources...")
        await scheduler.shutdown(grace=settings.timeout_grace_seconds)
        if health_server is not None:
            health_server.shutdown()
    return 0


def run() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
