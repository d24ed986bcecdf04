"""
Cooperative cancellation for monitoring loops

A StopSignal is shared by one profile's loop and whoever wants to stop it.
Sleeps and in-flight awaitables are raced against the signal so a stop
request is honoured without waiting for the current iteration to finish.
"""

import asyncio
from typing import Awaitable, TypeVar

from ..errors import MonitoringStopped

T = TypeVar("T")


class StopSignal:
    """One-shot stop flag with cancellable sleep"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    def set(self, reason: str = "stop requested"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if the signal fired first"""
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, aborting it with MonitoringStopped if the signal fires first"""
        work = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            work.cancel()
            await asyncio.wait({work})
            raise MonitoringStopped(self.reason)

        stopper = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not stopper.done():
                stopper.cancel()
            if not work.done():
                work.cancel()
                # asyncio.wait does not re-raise the work's CancelledError
                await asyncio.wait({work})

        if work.cancelled() and self._event.is_set():
            raise MonitoringStopped(self.reason)
        return work.result()
