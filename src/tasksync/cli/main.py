# src/tasksync/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds the SyncSession, starts the connectivity
monitor and periodic sync, then runs the console REPL (optional).
"""

from __future__ import annotations

import asyncio
import logging

from ..cli.bootstrap import create_session
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _run(settings) -> None:
    session = create_session(settings=settings)
    session.start()
    try:
        if settings.console_enabled:
            await run_console_loop(session)
        else:
            logger.info("Console disabled. Syncing in the background. Press Ctrl+C to stop.")
            await asyncio.Event().wait()
    finally:
        await session.close()


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", settings.app_name)
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    logger.info("Bye.")


if __name__ == "__main__":
    main()
