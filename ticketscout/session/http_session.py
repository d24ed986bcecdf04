"""
Lightweight HTTP session carrying a browser's identity

Wraps an aiohttp ClientSession with the cookies, fingerprint headers and
proxy of one profile. A per-session lock keeps cookie refreshes from
overlapping an in-flight request.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from http.cookies import CookieError, Morsel
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import aiohttp
from aiohttp.abc import AbstractCookieJar

from ..config import ProxyDescriptor

CookieKey = Tuple[str, str, str]


@dataclass(frozen=True)
class BrowserCookie:
    """One cookie as reported by the browser"""
    name: str
    value: str
    domain: str
    path: str = "/"
    expires: Optional[float] = None
    secure: bool = False
    http_only: bool = False
    same_site: Optional[str] = None

    @property
    def key(self) -> CookieKey:
        return (self.name, self.domain, self.path)

    @classmethod
    def from_cdp(cls, data: Mapping[str, Any]) -> "BrowserCookie":
        expires = data.get('expires')
        return cls(
            name=data['name'],
            value=data.get('value', ''),
            domain=data.get('domain', ''),
            path=data.get('path') or '/',
            # CDP reports -1 for session cookies
            expires=expires if expires not in (None, -1) else None,
            secure=bool(data.get('secure', False)),
            http_only=bool(data.get('httpOnly', data.get('http_only', False))),
            same_site=data.get('sameSite'),
        )

    def to_morsel(self) -> "Morsel[str]":
        # Coded value is the browser's raw value; it goes on the wire unquoted
        morsel: "Morsel[str]" = Morsel()
        morsel.set(self.name, self.value, self.value)
        morsel['domain'] = self.domain
        morsel['path'] = self.path
        if self.secure:
            morsel['secure'] = True
        if self.http_only:
            morsel['httponly'] = True
        return morsel


@dataclass(frozen=True)
class HttpResponse:
    """Fully-read response; the body is consumed before the connection is released"""
    status: int
    text: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)


class HttpSession:
    """Cookie store + fingerprint headers + proxy for one profile"""

    def __init__(self, profile_id: str, cookies: Iterable[BrowserCookie], headers: Mapping[str, str],
                 proxy: Optional[ProxyDescriptor] = None, timeout: float = 30.0, connect_timeout: float = 10.0):
        self.profile_id = profile_id
        self.logger = logging.getLogger(__name__)
        self.headers: Dict[str, str] = dict(headers)
        self.proxy = proxy or ProxyDescriptor()
        self.timeout = aiohttp.ClientTimeout(total=timeout, connect=connect_timeout)

        self.cookies: Dict[CookieKey, BrowserCookie] = {}
        for cookie in cookies:
            self.cookies[cookie.key] = cookie

        self.created_at = datetime.now()
        self.refreshed_at: Optional[datetime] = None
        self.request_count = 0

        self._client: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._closed = False

    # ------------------------------------------------------------------ cookies

    def cookie_list(self) -> List[BrowserCookie]:
        return list(self.cookies.values())

    def get_cookie(self, name: str, domain: Optional[str] = None) -> Optional[BrowserCookie]:
        for cookie in self.cookies.values():
            if cookie.name == name and (domain is None or cookie.domain == domain):
                return cookie
        return None

    async def merge_cookies(self, cookies: Iterable[BrowserCookie]) -> int:
        """Merge fresh browser cookies; waits for any in-flight request. Returns number changed."""
        async with self._lock:
            changed = 0
            fresh = list(cookies)
            for cookie in fresh:
                if self.cookies.get(cookie.key) != cookie:
                    self.cookies[cookie.key] = cookie
                    changed += 1
            if self._client is not None:
                self._load_jar(self._client.cookie_jar, fresh)
            self.refreshed_at = datetime.now()
            return changed

    def _load_jar(self, jar: AbstractCookieJar, cookies: Iterable[BrowserCookie]):
        pairs = []
        for cookie in cookies:
            try:
                pairs.append((cookie.name, cookie.to_morsel()))
            except CookieError as e:
                self.logger.warning(f"[{self.profile_id}] Skipping cookie {cookie.name!r} on {cookie.domain}: {e}")
        jar.update_cookies(pairs)

    # ----------------------------------------------------------------- requests

    def _ensure_client(self) -> aiohttp.ClientSession:
        if self._closed:
            raise RuntimeError(f"HTTP session for {self.profile_id} is closed")
        if self._client is None:
            jar = aiohttp.CookieJar(unsafe=True, quote_cookie=False)
            self._load_jar(jar, self.cookies.values())
            self._client = aiohttp.ClientSession(cookie_jar=jar, timeout=self.timeout)
        return self._client

    @property
    def _proxy_auth(self) -> Optional[aiohttp.BasicAuth]:
        if self.proxy.username and self.proxy.password:
            return aiohttp.BasicAuth(self.proxy.username, self.proxy.password)
        return None

    async def request(self, method: str, url: str, headers: Optional[Mapping[str, str]] = None,
                      **kwargs) -> HttpResponse:
        async with self._lock:
            client = self._ensure_client()
            merged = dict(self.headers)
            merged.update(headers or {})
            self.request_count += 1

            self.logger.debug(f"[{self.profile_id}] HTTP {method} {url}")
            async with client.request(method, url, headers=merged, proxy=self.proxy.url,
                                      proxy_auth=self._proxy_auth, **kwargs) as response:
                text = await response.text(errors='replace')
                self.logger.debug(f"[{self.profile_id}] HTTP {response.status} {response.url}")
                return HttpResponse(
                    status=response.status,
                    text=text,
                    url=str(response.url),
                    headers=dict(response.headers),
                )

    async def get(self, url: str, headers: Optional[Mapping[str, str]] = None, **kwargs) -> HttpResponse:
        return await self.request('GET', url, headers=headers, **kwargs)

    async def post(self, url: str, data: Any = None, headers: Optional[Mapping[str, str]] = None,
                   **kwargs) -> HttpResponse:
        return await self.request('POST', url, headers=headers, data=data, **kwargs)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self):
        self._closed = True
        if self._client is not None:
            await self._client.close()
            self._client = None
