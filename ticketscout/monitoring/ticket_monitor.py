#!/usr/bin/env python3
"""
Per-profile monitoring loop

One ProfileMonitor runs as one asyncio task. Its iterations are strictly
sequential: sleep, periodic housekeeping, fetch the event page, classify the
response, check availability and, when something qualifies, try to reserve.
Every state change is pushed to the status sink.
"""

import asyncio
import inspect
import random
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import unquote

from ..config import EngineSettings, ProfileConfig
from ..errors import MonitoringStopped, RetriesExhaustedError, SessionCreationError, SessionRefreshError
from ..session.debug_handle import RemoteDebuggingHandle
from ..session.http_session import HttpResponse, HttpSession
from ..session.registry import EngineRegistry
from ..session.session_bridge import SessionBridge
from ..utils.cancellation import StopSignal
from ..utils.logging_setup import get_profile_logger
from ..utils.retry import execute_with_retry, is_retryable_error
from ..verification.availability import (EMPTY_INVENTORY_MARKER, SOLD_OUT_MARKER, InventorySnapshot,
                                         check_availability)
from .status import (ERROR_NETWORK, ERROR_SELLER, ERROR_SESSION, ERROR_UNEXPECTED, ProfileStatus,
                     StateTransitionEvent, StatusSink)

if TYPE_CHECKING:
    from ..purchasing.purchase_executor import PurchaseExecutor

QUEUE_REDIRECT_PATTERN = re.compile(r"decodeURIComponent\('(.*?)'\)")
QUEUE_DOMAIN = '.queue-it.net'

# Operator-facing labels for statuses that end the loop
BLOCKED_LABELS = {
    400: '400NotFound',
    403: '403Forbidden',
    404: '404NotFound',
    406: '406RateLimit',
}
RATE_LIMIT_STATUS = 429

# What the loop does after an iteration
CONTINUE = 'continue'
BACKOFF = 'backoff'
STOP = 'stop'

ShouldContinue = Callable[[str], Union[bool, Awaitable[bool]]]
ConfigProvider = Callable[[str], Union[Optional[ProfileConfig], Awaitable[Optional[ProfileConfig]]]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class ProfileRunState:
    """Live state of one monitored profile"""
    profile_id: str
    target_url: str
    requested_seats: int
    area_filter: List[str]
    access_keyword: str
    poll_speed_tier: str
    iteration: int = 0
    status: ProfileStatus = ProfileStatus.IDLE
    last_activity: datetime = field(default_factory=datetime.now)
    last_error: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: ProfileConfig) -> "ProfileRunState":
        return cls(
            profile_id=profile.profile_id,
            target_url=profile.target_url,
            requested_seats=profile.requested_seats,
            area_filter=list(profile.area_filter),
            access_keyword=profile.access_keyword,
            poll_speed_tier=profile.poll_speed_tier,
        )

    def apply_profile(self, profile: ProfileConfig):
        self.target_url = profile.target_url
        self.requested_seats = profile.requested_seats
        self.area_filter = list(profile.area_filter)
        self.access_keyword = profile.access_keyword
        self.poll_speed_tier = profile.poll_speed_tier

    def to_dict(self) -> Dict[str, Any]:
        return {
            'profile_id': self.profile_id,
            'target_url': self.target_url,
            'requested_seats': self.requested_seats,
            'area_filter': list(self.area_filter),
            'access_keyword': self.access_keyword,
            'poll_speed_tier': self.poll_speed_tier,
            'iteration': self.iteration,
            'status': self.status.value,
            'last_activity': self.last_activity.isoformat(),
            'last_error': self.last_error,
        }


class ProfileMonitor:
    """Monitoring loop and state machine for a single profile"""

    def __init__(self, profile: ProfileConfig, handle: RemoteDebuggingHandle, bridge: SessionBridge,
                 executor: "PurchaseExecutor", sink: StatusSink, settings: Optional[EngineSettings] = None,
                 stop_signal: Optional[StopSignal] = None, registry: Optional[EngineRegistry] = None,
                 should_continue: Optional[ShouldContinue] = None,
                 config_provider: Optional[ConfigProvider] = None,
                 rng: Optional[random.Random] = None):
        self.profile = profile
        self.handle = handle
        self.bridge = bridge
        self.executor = executor
        self.sink = sink
        self.settings = settings or EngineSettings()
        self.stop_signal = stop_signal or StopSignal()
        self.registry = registry
        self.should_continue = should_continue
        self.config_provider = config_provider
        self.rng = rng or random.Random()

        self.state = ProfileRunState.from_profile(profile)
        self.session: Optional[HttpSession] = None
        self.logger = get_profile_logger(__name__, profile.profile_id)

    @property
    def profile_id(self) -> str:
        return self.profile.profile_id

    # -------------------------------------------------------------- transitions

    def _transition(self, status: ProfileStatus, message: str, error_kind: Optional[str] = None):
        self.state.status = status
        self.state.last_activity = datetime.now()
        if error_kind is not None:
            self.state.last_error = message

        if error_kind is None:
            self.logger.info(f"{status.value}: {message}")
        else:
            self.logger.error(f"{status.value}: {message} ({error_kind})")

        self.sink.publish(StateTransitionEvent(self.profile_id, status, message, error_kind=error_kind))

    def _resume_monitoring(self, message: str = "Searching for tickets"):
        if self.state.status != ProfileStatus.MONITORING:
            self._transition(ProfileStatus.MONITORING, message)

    # ------------------------------------------------------------------ session

    async def _set_session(self, session: HttpSession):
        previous = self.session
        self.session = session
        if self.registry is not None:
            self.registry.sessions.add(self.profile_id, session)
        if previous is not None and previous is not session:
            await previous.close()

    async def _create_session(self) -> HttpSession:
        return await self.stop_signal.guard(
            self.bridge.create_session_from_browser(self.handle, self.profile)
        )

    async def _refresh_session(self) -> bool:
        """Refresh cookies, falling back to a full rebuild; False if both fail"""
        self._transition(ProfileStatus.SESSION_REFRESHING, "Refreshing HTTP session")
        try:
            count = await self.bridge.refresh_session_cookies(self.session, self.handle, self.stop_signal)
            self.logger.info(f"Session refreshed with {count} cookies")
        except SessionRefreshError as e:
            self.logger.warning(f"Session refresh failed: {e.reason}, creating a new session")
            try:
                await self._set_session(await self._create_session())
            except SessionCreationError as creation_error:
                self._transition(ProfileStatus.ERROR, f"Session refresh failed: {creation_error.reason}",
                                 ERROR_SESSION)
                return False

        self._resume_monitoring("Session refreshed, searching for tickets")
        return True

    async def _close_session(self):
        if self.session is not None:
            await self.session.close()
        if self.registry is not None:
            self.registry.sessions.remove(self.profile_id)

    # ------------------------------------------------------------ housekeeping

    async def _check_should_continue(self) -> bool:
        if self.should_continue is None:
            return True
        return bool(await _maybe_await(self.should_continue(self.profile_id)))

    async def _refresh_config(self):
        if self.config_provider is None:
            return
        updated = await _maybe_await(self.config_provider(self.profile_id))
        if updated is None or updated == self.profile:
            return
        self.profile = updated
        self.state.apply_profile(updated)
        self.logger.info(f"Configuration refreshed: seats={updated.requested_seats}, "
                         f"areas={updated.area_filter}, tier={updated.poll_speed_tier}")

    # -------------------------------------------------------------------- fetch

    def _page_headers(self, referer: str) -> Dict[str, str]:
        return {
            'priority': 'u=0, i',
            'referer': referer,
            'sec-fetch-dest': 'document',
            'sec-fetch-mode': 'navigate',
            'sec-fetch-site': 'same-origin',
            'sec-fetch-user': '?1',
        }

    async def _get(self, url: str, referer: str) -> HttpResponse:
        headers = self._page_headers(referer)

        async def fetch():
            return await self.session.get(url, headers=headers)

        return await self.stop_signal.guard(execute_with_retry(
            fetch,
            self.settings.fetch_retry,
            operation_name="page fetch",
            profile_id=self.profile_id,
            stop_signal=self.stop_signal,
            rng=self.rng,
        ))

    async def _follow_queue_redirect(self, response: HttpResponse) -> HttpResponse:
        match = QUEUE_REDIRECT_PATTERN.search(response.text)
        if not match:
            return response

        queue_host = self.profile.queue_host or self.settings.queue_host
        if not queue_host:
            self.logger.warning("Queue redirect found but no queue host configured, not following")
            return response

        queue_url = f"https://{queue_host}{QUEUE_DOMAIN}{unquote(match.group(1))}"
        self._transition(ProfileStatus.QUEUE_REDIRECT, f"Following queue redirect to {queue_url}")
        queue_response = await self._get(queue_url, referer=queue_url)

        if QUEUE_DOMAIN in queue_response.url:
            self.logger.info(f"Queue landed on {queue_response.url}, following once more")
            queue_response = await self._get(queue_response.url, referer=queue_response.url)
        return queue_response

    async def fetch_page(self) -> HttpResponse:
        response = await self._get(self.profile.target_url, referer=self.profile.referer)
        response = await self._follow_queue_redirect(response)
        self.logger.info(f"Response {response.status}: hit count {self.state.iteration}")
        return response

    # ---------------------------------------------------------------- iteration

    async def run_iteration(self) -> str:
        """One pass of the loop; returns CONTINUE, BACKOFF or STOP"""
        iteration = self.state.iteration
        settings = self.settings

        if iteration % settings.config_refresh_every == 0:
            if not await self._check_should_continue():
                self._transition(ProfileStatus.STOPPED, "Monitoring disabled externally")
                return STOP
            await self._refresh_config()

        if iteration % settings.session_refresh_every == 0:
            if not await self._refresh_session():
                return STOP

        response = await self.fetch_page()

        if response.status in BLOCKED_LABELS:
            self._transition(ProfileStatus.BLOCKED, BLOCKED_LABELS[response.status], ERROR_SESSION)
            return STOP
        if response.status == RATE_LIMIT_STATUS:
            self._transition(ProfileStatus.RATE_LIMITED, "429 rate limited, backing off")
            return BACKOFF
        if response.status != 200:
            self._transition(ProfileStatus.ERROR, f"Unexpected HTTP status {response.status}", ERROR_UNEXPECTED)
            return STOP

        page_text = response.text
        keyword = self.profile.access_keyword
        if keyword and keyword not in page_text:
            self._transition(ProfileStatus.KEYWORD_MISSING, f"Access keyword '{keyword}' not found on page",
                             ERROR_SESSION)
            return STOP

        self._resume_monitoring()

        if not check_availability(page_text, self.profile.requested_seats, self.profile.area_filter,
                                  settings.affordability_ceiling):
            if EMPTY_INVENTORY_MARKER in page_text or SOLD_OUT_MARKER in page_text:
                return BACKOFF
            return CONTINUE

        return await self._purchase(InventorySnapshot.from_page(page_text))

    async def _purchase(self, snapshot: InventorySnapshot) -> str:
        self._transition(ProfileStatus.PURCHASING,
                         f"Tickets found, reserving {self.profile.requested_seats} seat(s)")
        outcome = await self.stop_signal.guard(
            self.executor.attempt_purchase(self.session, self.profile, snapshot, self.stop_signal)
        )

        if outcome.purchased:
            message = (outcome.ticket_details or {}).get('message', "Tickets reserved")
            self._transition(ProfileStatus.SUCCESS, message)
            return STOP
        if outcome.should_stop_loop:
            self._transition(ProfileStatus.ERROR, f"Reservation rejected: {outcome.reason}", ERROR_SELLER)
            return STOP

        self._transition(ProfileStatus.MONITORING, f"{outcome.reason}, searching for tickets")
        return BACKOFF

    # --------------------------------------------------------------------- loop

    def _failure(self, error: Exception):
        if isinstance(error, RetriesExhaustedError) or is_retryable_error(error):
            return 'ProxyError', ERROR_NETWORK
        return f"Error: {error}", ERROR_UNEXPECTED

    async def _loop(self):
        penalized = False
        failures = 0

        first = True
        while not self.stop_signal.is_set:
            # first fetch goes out immediately
            if not first:
                delay = self.settings.poll_interval(self.state.poll_speed_tier, penalized, self.rng)
                if await self.stop_signal.sleep(delay):
                    break
            first = False

            self.state.iteration += 1
            self.state.last_activity = datetime.now()
            try:
                result = await self.run_iteration()
            except (MonitoringStopped, asyncio.CancelledError):
                raise
            except Exception as e:
                failures += 1
                self.logger.error(f"Iteration {self.state.iteration} failed "
                                  f"({failures}/{self.settings.max_consecutive_failures}): {e}", exc_info=True)
                if failures >= self.settings.max_consecutive_failures:
                    message, kind = self._failure(e)
                    self._transition(ProfileStatus.ERROR, message, kind)
                    return
                penalized = True
                continue

            failures = 0
            if result == STOP:
                return
            penalized = result == BACKOFF

        raise MonitoringStopped(self.stop_signal.reason)

    async def run(self) -> ProfileStatus:
        """Run until success, a fatal classification or a stop request; returns the final status"""
        self.logger.info(f"Starting monitoring of {self.profile.target_url}")
        try:
            try:
                await self._set_session(await self._create_session())
            except SessionCreationError as e:
                self._transition(ProfileStatus.ERROR, f"Session creation failed: {e.reason}", ERROR_SESSION)
                return self.state.status

            self._transition(ProfileStatus.MONITORING, "Searching for tickets")
            await self._loop()
        except MonitoringStopped as e:
            self._transition(ProfileStatus.STOPPED, f"Monitoring stopped: {e}")
        except asyncio.CancelledError:
            self._transition(ProfileStatus.STOPPED, "Monitoring cancelled")
            raise
        finally:
            await self._close_session()
            self.logger.info(f"Monitoring ended with status {self.state.status.value} "
                             f"after {self.state.iteration} iterations")
        return self.state.status
