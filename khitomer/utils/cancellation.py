"""Cooperative cancellation signal shared by the long-running loops.

The poller and orchestrator loops stop when the signal fires rather than
being torn down with ``Task.cancel()``, so a blocked queue put can observe
the stop and return cleanly and the orchestrator can report why it stopped.
"""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class CancellationSignal:
    """One-shot stop signal carrying a reason.

    Example:
        >>> stop = CancellationSignal()
        >>> stop.cancel("shutdown requested")
        >>> stop.is_cancelled, stop.reason
        (True, 'shutdown requested')
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the signal. Only the first reason is kept."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> str:
        """Block until the signal fires and return its reason."""
        await self._event.wait()
        return self._reason or "cancelled"

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if the signal fired first."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def race(self, awaitable: Awaitable[T]) -> tuple[bool, T | None]:
        """Await ``awaitable`` unless the signal fires first.

        Returns:
            ``(True, result)`` when the awaitable finished, ``(False, None)``
            when the signal fired first. The losing side is cancelled.
        """
        work = asyncio.ensure_future(awaitable)
        stopped = asyncio.ensure_future(self._event.wait())
        try:
            done, pending = await asyncio.wait({work, stopped}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            stopped.cancel()
            raise
        for future in pending:
            future.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if work in done:
            return True, work.result()
        return False, None
