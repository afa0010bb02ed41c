# src/tasksync/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from ..cli.commands import CommandRegistry
from ..cli.commands import registry as command_registry
from ..core.state import SyncSession
from ..sync.orchestrator import SyncPhase, SyncStatus

logger = logging.getLogger(__name__)

LineReader = Callable[[], Awaitable[str]]


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


async def _read_stdin() -> str:
    # input() blocks; keep the event loop (sync, monitor) running meanwhile.
    return await asyncio.to_thread(input, ">>> ")


async def run_console_loop(
    session: SyncSession,
    *,
    registry: CommandRegistry | None = None,
    read_line: LineReader | None = None,
) -> None:
    registry = registry or command_registry
    read_line = read_line or _read_stdin

    logger.info("Console connector started (owner=%s).", session.owner_id)
    _print_ts("[CONSOLE] Use /help for commands. Use /exit to quit.\n")

    last_phase = session.status().phase

    def _on_status(st: SyncStatus) -> None:
        nonlocal last_phase
        # Only surface transitions into ERROR; the rest is visible via /status.
        if st.phase == SyncPhase.ERROR and last_phase != SyncPhase.ERROR:
            _print_ts(f"[SYNC] Sync failed: {st.last_error}")
        last_phase = st.phase

    unsubscribe = session.subscribe(_on_status)

    try:
        while True:
            try:
                user_input = (await read_line()).strip()
            except EOFError:
                logger.info("Console EOF received, exiting.")
                break
            except KeyboardInterrupt:
                logger.info("Console KeyboardInterrupt, exiting.")
                print()
                break

            if not user_input:
                continue

            if user_input.lower() in ("/exit", "/quit"):
                logger.info("Console exit command received.")
                break

            try:
                response = await registry.handle(session, user_input, emit=_print_ts)
            except Exception:
                logger.exception("Command handler crashed.")
                response = "Internal error while handling a command."

            if response is None:
                response = "Not a command. Use /help to list available commands."
            _print_ts(response)
    finally:
        unsubscribe()
        logger.info("Console connector finished.")
