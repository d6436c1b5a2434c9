"""Command-line entry point.

Usage:
    python -m copytrade_tracker run
    python -m copytrade_tracker ingest-once
    python -m copytrade_tracker init-db
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

from pydantic import ValidationError

from copytrade_tracker.config import Settings, get_settings
from copytrade_tracker.errors import CopyTradeError
from copytrade_tracker.scheduler import IngestScheduler
from copytrade_tracker.storage.database import DatabaseManager

logger = logging.getLogger("copytrade_tracker")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


async def _run(settings: Settings) -> int:
    async with IngestScheduler.from_settings(settings) as scheduler:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on every platform's event loop.
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, scheduler.request_stop)

        await scheduler.start()
        if not scheduler.is_running:
            return 0
        await scheduler.wait_stopped()
        logger.info("Shutdown requested; draining in-flight tick")
    return 0


async def _ingest_once(settings: Settings) -> int:
    async with IngestScheduler.from_settings(settings) as scheduler:
        tick = await scheduler.run_tick()
    if tick is None:
        return 1
    print(json.dumps(tick.to_dict(), indent=2))
    return 0 if tick.leads_failed == 0 else 1


async def _init_db(settings: Settings) -> int:
    db = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    logger.info("Database schema created")
    return 0


COMMANDS = {
    "run": _run,
    "ingest-once": _ingest_once,
    "init-db": _init_db,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="copytrade_tracker",
        description="Track copy-trading lead traders and derive their positions",
    )
    parser.add_argument("command", choices=sorted(COMMANDS), help="Command to run")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override LOG_LEVEL",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.error("Invalid configuration: %s", e)
        return 2

    level = getattr(logging, args.log_level) if args.log_level else settings.get_logging_level()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        settings.validate_requirements(command=args.command)
        return asyncio.run(COMMANDS[args.command](settings))
    except CopyTradeError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
