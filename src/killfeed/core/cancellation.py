"""
Cooperative cancellation for long-running ingestion work.

A CancelToken is handed down from the CLI (or any caller) through the backfill
driver, the ingestor, the HTTP clients, the retry executor and the rate
limiter. Every suspension point either checks it or races against it, so a
cancelled backfill stops promptly and reports what it managed to persist.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class OperationCancelledError(Exception):
    """Raised from a suspension point once its cancellation token has fired."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)
        self.message = message


class CancelToken:
    """
    One-shot cancellation signal shared by cooperating tasks.

    Attributes:
        reason: Optional text describing why cancellation was requested
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Fire the token. Idempotent; the first reason wins."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "Operation cancelled")

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """
        Sleep for ``seconds`` unless the token fires first.

        Raises:
            OperationCancelledError: If the token fired before or during the sleep
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        The losing side is cancelled. If the token fires, the awaitable's task
        is cancelled and OperationCancelledError is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        raise OperationCancelledError(self.reason or "Operation cancelled")


# =============================================================================
# Helpers tolerating an absent token
# =============================================================================


def check_cancelled(token: CancelToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


async def cancellable_sleep(seconds: float, token: CancelToken | None = None) -> None:
    """Sleep that honours ``token`` when one is given."""
    if token is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return
    await token.sleep(seconds)


async def run_cancellable(awaitable: Awaitable[T], token: CancelToken | None = None) -> T:
    """Await ``awaitable``, racing it against ``token`` when one is given."""
    if token is None:
        return await awaitable
    return await token.run(awaitable)
