"""Shared cooperative cancellation signal."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when the cancellation signal wins a race against pending work."""


class CancellationToken:
    """Idempotent broadcast signal observed by every concurrent unit.

    One instance is created by the orchestrator and handed to each unit at
    construction time. Units never own it; they only observe it at their
    suspension points through ``wait_for`` and ``sleep``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def cancelled(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep until ``seconds`` elapse or the signal fires.

        Returns True when the sleep was cut short by cancellation.
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, float(seconds)))
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_for(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the signal fires first.

        The pending work is cancelled and ``OperationCancelled`` is raised when
        the signal wins. If both finish together, the completed work wins.
        """
        if self.is_cancelled():
            if inspect.iscoroutine(aw):
                aw.close()
            raise OperationCancelled()
        work = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise OperationCancelled()
