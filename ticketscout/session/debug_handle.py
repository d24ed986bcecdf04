"""
Remote-debugging handle for one controlled browser tab

The engine only ever reads through this handle: cookies for the tab and
read-only expressions evaluated in page context. The browser itself belongs
to the profile provider and may be torn down at any time, so a vanished
tab surfaces as a ConnectionError (retryable) rather than a crash.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from playwright.async_api import Browser, BrowserContext, CDPSession, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError


@runtime_checkable
class RemoteDebuggingHandle(Protocol):
    """What the engine needs from a browser tab"""

    async def get_cookies(self) -> List[Dict[str, Any]]:
        """Cookies visible to the tab, as CDP cookie dicts (name, value, domain, path, ...)"""
        ...

    async def evaluate(self, expression: str) -> Any:
        """Evaluate a read-only expression in page context"""
        ...


class PlaywrightDebugHandle:
    """RemoteDebuggingHandle backed by Playwright's connect_over_cdp"""

    def __init__(self, endpoint_url: str, timeout: float = 15.0):
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._cdp: Optional[CDPSession] = None

    async def connect(self) -> "PlaywrightDebugHandle":
        """Attach to the already-running browser and its first tab"""
        self.playwright = await async_playwright().start()
        try:
            self.browser = await self.playwright.chromium.connect_over_cdp(
                self.endpoint_url, timeout=self.timeout * 1000)

            # Reuse the provider's context and tab; never open a new window if one exists
            contexts = self.browser.contexts
            self.context = contexts[0] if contexts else await self.browser.new_context()
            pages = self.context.pages
            self.page = pages[0] if pages else await self.context.new_page()

            self._cdp = await self.context.new_cdp_session(self.page)
        except PlaywrightError as e:
            await self.close()
            raise ConnectionError(f"Cannot connect to browser at {self.endpoint_url}: {e}") from e
        except Exception:
            await self.close()
            raise

        self.logger.info(f"[CDP] Attached to {self.endpoint_url} (page: {self.page.url})")
        return self

    def _ensure_alive(self):
        if self.page is None or self._cdp is None:
            raise ConnectionError("Remote debugging handle gone: not connected")
        if self.page.is_closed() or (self.browser is not None and not self.browser.is_connected()):
            raise ConnectionError("Remote debugging handle gone: browser disconnected")

    async def get_cookies(self) -> List[Dict[str, Any]]:
        self._ensure_alive()
        try:
            result = await asyncio.wait_for(self._cdp.send('Network.getCookies'), timeout=self.timeout)
        except PlaywrightError as e:
            raise ConnectionError(f"Remote debugging handle gone: {e}") from e
        return result.get('cookies', [])

    async def evaluate(self, expression: str) -> Any:
        self._ensure_alive()
        try:
            return await asyncio.wait_for(self.page.evaluate(expression), timeout=self.timeout)
        except PlaywrightError as e:
            raise ConnectionError(f"Remote debugging handle gone: {e}") from e

    async def close(self):
        """Detach without closing the provider's browser"""
        if self._cdp is not None:
            try:
                await self._cdp.detach()
            except PlaywrightError as e:
                self.logger.debug(f"[CDP] Detach failed (browser already gone): {e}")
            self._cdp = None
        if self.playwright is not None:
            await self.playwright.stop()
            self.playwright = None
        self.browser = self.context = self.page = None
