"""
Session Bridge - converts a live browser session into an HTTP session

Reads every cookie the controlled tab can see over the remote-debugging
channel and builds an HttpSession that presents the same cookies, the same
client hints and the same proxy as the browser's own requests.
"""

import asyncio
import logging
from typing import List, Optional

from ..config import EngineSettings, ProfileConfig, ProxyDescriptor
from ..errors import MonitoringStopped, RetriesExhaustedError, SessionCreationError, SessionRefreshError
from ..utils.cancellation import StopSignal
from ..utils.retry import execute_with_retry
from .debug_handle import RemoteDebuggingHandle
from .http_session import BrowserCookie, HttpSession

DOCUMENT_ACCEPT = ('text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,'
                   'image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7')


class SessionBridge:
    """Builds and refreshes HttpSessions from remote-debugging handles"""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()
        self.logger = logging.getLogger(__name__)

    async def extract_cookies(self, handle: RemoteDebuggingHandle, profile_id: str) -> List[BrowserCookie]:
        """Read all cookies visible to the tab"""
        raw_cookies = await handle.get_cookies()
        cookies = []
        for raw in raw_cookies:
            try:
                cookies.append(BrowserCookie.from_cdp(raw))
            except KeyError:
                self.logger.warning(f"[{profile_id}] Ignoring malformed cookie record: {raw!r}")
        self.logger.info(f"[{profile_id}] Extracted {len(cookies)} cookies from browser")
        return cookies

    def build_headers(self, profile: ProfileConfig):
        headers = profile.fingerprint.base_headers()
        headers.update({
            'accept': DOCUMENT_ACCEPT,
            'accept-encoding': 'gzip, deflate, br',
            'upgrade-insecure-requests': '1',
        })
        return headers

    async def create_session_from_browser(self, handle: RemoteDebuggingHandle, profile: ProfileConfig,
                                          proxy: Optional[ProxyDescriptor] = None) -> HttpSession:
        """Create a fresh HttpSession from the browser's cookie jar.

        Raises SessionCreationError if the handle is missing or does not answer.
        """
        profile_id = profile.profile_id
        if handle is None:
            raise SessionCreationError(profile_id, "no remote debugging handle for profile")

        self.logger.info(f"[{profile_id}] Creating HTTP session from browser")
        try:
            cookies = await asyncio.wait_for(self.extract_cookies(handle, profile_id),
                                             timeout=self.settings.request_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"[{profile_id}] Cookie extraction failed: {e}")
            raise SessionCreationError(profile_id, str(e) or type(e).__name__) from e

        proxy = proxy if proxy is not None else profile.proxy
        session = HttpSession(
            profile_id,
            cookies,
            self.build_headers(profile),
            proxy=proxy,
            timeout=self.settings.request_timeout,
            connect_timeout=self.settings.connect_timeout,
        )

        if proxy.enabled:
            self.logger.info(f"[{profile_id}] Session configured with {proxy.mode} proxy {proxy.host}:{proxy.port}")
        self.logger.info(f"[{profile_id}] HTTP session created with {len(cookies)} cookies")
        return session

    async def refresh_session_cookies(self, session: HttpSession, handle: RemoteDebuggingHandle,
                                      stop_signal: Optional[StopSignal] = None) -> int:
        """Re-read cookies and merge them into `session`, keeping headers and proxy.

        Raises SessionRefreshError when the handle is gone or keeps failing;
        callers fall back to create_session_from_browser.
        """
        profile_id = session.profile_id
        if handle is None:
            raise SessionRefreshError(profile_id, "no remote debugging handle for profile")
        if session.closed:
            raise SessionRefreshError(profile_id, "session already closed")

        async def read_cookies():
            return await asyncio.wait_for(self.extract_cookies(handle, profile_id),
                                          timeout=self.settings.request_timeout)

        try:
            cookies = await execute_with_retry(
                read_cookies,
                self.settings.session_retry,
                operation_name="cookie refresh",
                profile_id=profile_id,
                stop_signal=stop_signal,
            )
        except RetriesExhaustedError as e:
            raise SessionRefreshError(profile_id, str(e.last_error)) from e
        except (MonitoringStopped, asyncio.CancelledError):
            raise
        except Exception as e:
            raise SessionRefreshError(profile_id, str(e) or type(e).__name__) from e

        changed = await session.merge_cookies(cookies)
        self.logger.info(f"[{profile_id}] Session cookies refreshed: {len(cookies)} cookies ({changed} changed)")
        return len(cookies)
