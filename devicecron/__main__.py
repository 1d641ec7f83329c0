"""Devicecron process entry-point.

Usage:
    python -m devicecron [--once] [--status] [--log-level LEVEL] [--log-format FORMAT]

The orchestration logic lives in ``devicecron.orchestrator``.  This module
is intentionally thin: it calls ``configure_logging()`` first so that every
subsequent import already has a working logger, then hands off to the
orchestrator.

Default behaviour is continuous: the scheduler ticks every
``TICK_INTERVAL_S`` seconds until stopped.  ``--once`` runs a single tick,
waits for the dispatched tasks and exits.  ``--status`` loads the task
tables and prints the queue as JSON without running anything.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from devicecron.core import configure_logging
from devicecron.core.exceptions import ConfigError, SchedulerError
from devicecron.core.settings import Settings


async def _print_status(settings: Settings) -> None:
    from devicecron.orchestrator.runner import build_scheduler  # noqa: PLC0415

    scheduler = build_scheduler(settings)
    try:
        await scheduler.ensure_initialized()
        print(json.dumps(scheduler.status().as_dict(), indent=2))  # noqa: T201
    finally:
        await scheduler.sessions.driver.close()


def main() -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    parser = argparse.ArgumentParser(
        prog="devicecron",
        description="Periodic task scheduler for a remote device automation session.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scheduler tick, wait for the tasks it started, and exit.",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Load the task tables, print the queue as JSON, and exit without running tasks.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )

    args = parser.parse_args()

    # Logging first, so every module gets a configured logger on import.
    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"devicecron: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    logger = logging.getLogger(__name__)

    try:
        settings = Settings()
    except ValidationError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)

    # Lazy import keeps startup fast when module is imported without running.
    from devicecron.orchestrator.runner import run_once  # noqa: PLC0415
    from devicecron.orchestrator.scheduler import run_continuous  # noqa: PLC0415

    try:
        if args.status:
            asyncio.run(_print_status(settings))
        elif args.once:
            logger.info("Devicecron running a single tick (--once).")
            asyncio.run(run_once(settings=settings))
        else:
            logger.info("Devicecron starting in continuous mode (Ctrl+C to stop).")
            asyncio.run(run_continuous(settings=settings))
    except (ConfigError, SchedulerError) as exc:
        logger.critical("Startup failed: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        sys.exit(0)
    except asyncio.CancelledError:
        # run_continuous() stopped via SIGTERM; the scheduler already logged it.
        logger.info("Shutdown complete; exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
