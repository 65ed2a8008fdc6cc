"""
Async runner shared by the CLI commands.

Commands are synchronous argparse handlers returning dicts. The ones that
touch the store or the network hand an async operation to run_with_runtime(),
which builds the IngestRuntime, wires SIGINT/SIGTERM to a CancelToken and
drives the operation with asyncio.run().
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable, Callable
from typing import Any

from ..core.cancellation import CancelToken
from ..core.config import KillfeedSettings, get_settings
from ..core.logging import get_logger
from ..services.ingest import IngestRuntime

logger = get_logger(__name__)

Operation = Callable[[IngestRuntime, CancelToken], Awaitable[dict[str, Any]]]


def build_runtime(settings: KillfeedSettings) -> IngestRuntime:
    """Construct the runtime for a command (tests replace this to inject a transport)."""
    return IngestRuntime.from_settings(settings)


def run_with_runtime(operation: Operation) -> dict[str, Any]:
    """
    Run ``operation`` against a freshly opened runtime.

    Ctrl+C fires the token instead of killing the process, so a backfill
    persists its cursor and the command still prints its summary.
    """
    settings = get_settings()
    token = CancelToken()

    async def main() -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Shutdown signal received (%s)", sig.name)
            token.cancel(f"interrupted by {sig.name}")

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, signal_handler, sig)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows and non-main threads don't support add_signal_handler
                pass

        try:
            async with build_runtime(settings) as runtime:
                return await operation(runtime, token)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    return asyncio.run(main())
