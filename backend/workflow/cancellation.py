"""Cancellation token threaded through every suspension point of an execution.

Usage:
    token = CancellationToken()
    result = await token.run(handler.execute(node, context))
    await token.sleep(0.5)
    ...
    token.cancel()  # in-flight run()/sleep() raise StepCancelledError
"""

import asyncio
import contextlib
from typing import Any, Awaitable, Optional

from core.exceptions import StepCancelledError


class CancellationToken:
    """A one-shot stop signal that in-flight awaits can race against."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Execution stopped by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StepCancelledError(self.reason or "Execution stopped by user")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early with StepCancelledError if cancelled."""
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the token fires first.

        When the token fires, the awaited task is cancelled and
        StepCancelledError is raised.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise StepCancelledError(self.reason or "Execution stopped by user")
