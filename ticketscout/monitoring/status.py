"""
Profile lifecycle states and the status-reporting sink

Loops push events without ever awaiting delivery: the sink buffers them in a
bounded queue and a single dispatcher task hands them to subscribers.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union


class ProfileStatus(str, Enum):
    IDLE = 'Idle'
    MONITORING = 'SearchingTickets'
    SESSION_REFRESHING = 'SessionRefreshing'
    QUEUE_REDIRECT = 'InQueue'
    RATE_LIMITED = 'RateLimited'
    PURCHASING = 'Purchasing'
    SUCCESS = 'Tickets'
    BLOCKED = 'Blocked'
    KEYWORD_MISSING = 'KeyNotFound'
    ERROR = 'Error'
    STOPPED = 'Stopped'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ProfileStatus.SUCCESS,
    ProfileStatus.BLOCKED,
    ProfileStatus.KEYWORD_MISSING,
    ProfileStatus.ERROR,
    ProfileStatus.STOPPED,
})

# Error kinds let an operator tell a seller block from network trouble
ERROR_NETWORK = 'network'
ERROR_SESSION = 'session-invalid'
ERROR_SELLER = 'seller-rejection'
ERROR_UNEXPECTED = 'unexpected'


@dataclass(frozen=True)
class StateTransitionEvent:
    profile_id: str
    state: ProfileStatus
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    error_kind: Optional[str] = None


@dataclass(frozen=True)
class TicketFallEvent:
    profile_id: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class PurchaseSuccessEvent:
    profile_id: str
    details: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)


StatusEvent = Union[StateTransitionEvent, TicketFallEvent, PurchaseSuccessEvent]
Subscriber = Callable[[StatusEvent], Any]


class StatusSink:
    """Bounded, non-blocking event publisher shared by every profile loop"""

    def __init__(self, max_size: int = 1000):
        self.logger = logging.getLogger(__name__)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._subscribers: List[Subscriber] = []
        self._dispatcher: Optional[asyncio.Task] = None
        self.dropped = 0

    def subscribe(self, callback: Subscriber):
        """Register a plain callable or coroutine function"""
        self._subscribers.append(callback)

    def publish(self, event: StatusEvent):
        """Queue an event; never blocks. Drops the oldest event when full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                self._queue.get_nowait()
                self._queue.task_done()
            except asyncio.QueueEmpty:
                pass
            self.dropped += 1
            self.logger.warning(f"Status queue full, dropped oldest event ({self.dropped} dropped so far)")
            self._queue.put_nowait(event)

    def drain(self) -> List[StatusEvent]:
        """Remove and return everything currently queued"""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
                self._queue.task_done()
            except asyncio.QueueEmpty:
                return events

    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> asyncio.Task:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.ensure_future(self._dispatch_loop())
        return self._dispatcher

    async def _deliver(self, event: StatusEvent):
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Status subscriber {getattr(callback, '__name__', callback)!r} failed: {e}")

    async def _dispatch_loop(self):
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def flush(self):
        """Wait until the dispatcher has delivered everything queued so far"""
        if self._dispatcher is not None and not self._dispatcher.done():
            await self._queue.join()

    async def close(self):
        """Deliver what is queued, then stop the dispatcher"""
        if self._dispatcher is None:
            return
        await self.flush()
        self._dispatcher.cancel()
        try:
            await self._dispatcher
        except asyncio.CancelledError:
            pass
        self._dispatcher = None
