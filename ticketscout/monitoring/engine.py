#!/usr/bin/env python3
"""
Monitoring engine - runs one ProfileMonitor task per profile

Profiles are independent: each gets its own task, stop signal and HTTP
session. Stopping a profile sets its signal first and only cancels the task
if it has not wound down within the grace period.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from ..config import EngineSettings, ProfileConfig
from ..errors import TicketScoutError
from ..session.debug_handle import RemoteDebuggingHandle
from ..session.registry import EngineRegistry
from ..session.session_bridge import SessionBridge
from ..utils.cancellation import StopSignal
from .status import ProfileStatus, StatusSink
from .ticket_monitor import ConfigProvider, ProfileMonitor, ShouldContinue

if TYPE_CHECKING:
    from ..purchasing.purchase_executor import PurchaseExecutor


class MonitoringEngine:
    """Starts, tracks and stops concurrent profile monitors"""

    def __init__(self, settings: EngineSettings, sink: StatusSink, bridge: SessionBridge,
                 executor: "PurchaseExecutor", registry: Optional[EngineRegistry] = None,
                 should_continue: Optional[ShouldContinue] = None,
                 config_provider: Optional[ConfigProvider] = None):
        self.settings = settings
        self.sink = sink
        self.bridge = bridge
        self.executor = executor
        self.registry = registry or EngineRegistry()
        self.should_continue = should_continue
        self.config_provider = config_provider
        self.logger = logging.getLogger(__name__)

        self._tasks: Dict[str, asyncio.Task] = {}
        self._signals: Dict[str, StopSignal] = {}

    def is_running(self, profile_id: str) -> bool:
        task = self._tasks.get(profile_id)
        return task is not None and not task.done()

    def start_profile(self, profile: ProfileConfig, handle: RemoteDebuggingHandle) -> asyncio.Task:
        """Launch monitoring for one profile; raises if it is already running"""
        profile_id = profile.profile_id
        if self.is_running(profile_id):
            raise TicketScoutError(f"Profile {profile_id} is already being monitored")

        stop_signal = StopSignal()
        monitor = ProfileMonitor(
            profile,
            handle,
            self.bridge,
            self.executor,
            self.sink,
            settings=self.settings,
            stop_signal=stop_signal,
            registry=self.registry,
            should_continue=self.should_continue,
            config_provider=self.config_provider,
        )

        self.registry.handles.add(profile_id, handle)
        self.registry.monitors.add(profile_id, monitor)
        self._signals[profile_id] = stop_signal

        task = asyncio.ensure_future(monitor.run())
        task.add_done_callback(lambda t, pid=profile_id: self._on_done(pid, t))
        self._tasks[profile_id] = task

        self.logger.info(f"Started monitoring for profile {profile_id}")
        return task

    def _on_done(self, profile_id: str, task: asyncio.Task):
        if task.cancelled():
            self.logger.info(f"Monitoring task for {profile_id} cancelled")
        elif task.exception() is not None:
            self.logger.error(f"Monitoring task for {profile_id} crashed: {task.exception()!r}")
        else:
            self.logger.info(f"Monitoring task for {profile_id} finished: {task.result().value}")

    async def stop_profile(self, profile_id: str, reason: str = "stop requested") -> bool:
        """Stop one profile; returns False if it was not running"""
        task = self._tasks.get(profile_id)
        if task is None or task.done():
            return False

        self._signals[profile_id].set(reason)
        done, _ = await asyncio.wait({task}, timeout=self.settings.stop_grace_period)
        if not done:
            self.logger.warning(f"Profile {profile_id} did not stop within "
                                f"{self.settings.stop_grace_period}s, cancelling")
            task.cancel()
            await asyncio.wait({task})

        self.logger.info(f"Stopped monitoring for profile {profile_id}")
        return True

    async def stop_all(self, reason: str = "engine shutdown"):
        running = [pid for pid in self._tasks if self.is_running(pid)]
        if running:
            self.logger.info(f"Stopping {len(running)} monitoring tasks")
            await asyncio.gather(*(self.stop_profile(pid, reason) for pid in running))

    def get_status(self, profile_id: Optional[str] = None) -> Dict[str, Dict]:
        """Run state of one profile, or of every profile started so far"""
        ids = [profile_id] if profile_id is not None else self.registry.monitors.ids()
        status = {}
        for pid in ids:
            monitor = self.registry.monitors.get(pid)
            if monitor is not None:
                status[pid] = monitor.state.to_dict()
        return status

    def final_status(self, profile_id: str) -> Optional[ProfileStatus]:
        monitor = self.registry.monitors.get(profile_id)
        return monitor.state.status if monitor is not None else None

    async def wait(self) -> Dict[str, ProfileStatus]:
        """Wait for every started monitor to finish; returns final statuses"""
        tasks: List[asyncio.Task] = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return {pid: self.final_status(pid) for pid in self._tasks}
