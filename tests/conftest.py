"""
Shared fixtures: scripted browser handle, scripted HTTP session, fast settings
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from ticketscout.config import BrowserFingerprint, EngineSettings, ProfileConfig
from ticketscout.errors import SessionCreationError, SessionRefreshError
from ticketscout.monitoring.status import StatusSink
from ticketscout.session.http_session import HttpResponse
from ticketscout.utils.retry import RetryPolicy


TARGET_URL = "https://tickets.example-club.com/EDP/Event/Index/1234"


def pricing_page(pricing: Dict[str, Any], extra: str = "") -> str:
    """Event page embedding `pricing` the way the seller does"""
    return (
        "<html><body><h1>Select your seats</h1>"
        f"<script>var eventPricing = {json.dumps(pricing)};</script>"
        f"{extra}</body></html>"
    )


def area(availability: int, *prices: float) -> Dict[str, Any]:
    levels = {f"lvl{i + 1}": {"fullPrice": price} for i, price in enumerate(prices)}
    return {"availability": availability, "pricing": {"areaPricing": {"p": {"priceLevels": levels}}}}


SOLD_OUT_PAGE = "<html><body><h1>Select your seats</h1><script>var eventPricing = {};</script></body></html>"


class FakeDebugHandle:
    """Stands in for the browser's remote-debugging channel"""

    def __init__(self, cookies: Optional[List[Dict[str, Any]]] = None, page_source: str = ""):
        self.cookies = list(cookies or [])
        self.page_source = page_source
        self.gone = False
        self.cookie_reads = 0
        self.evaluations = 0

    async def get_cookies(self) -> List[Dict[str, Any]]:
        self.cookie_reads += 1
        if self.gone:
            raise ConnectionError("Remote debugging handle gone: browser disconnected")
        return [dict(c) for c in self.cookies]

    async def evaluate(self, expression: str) -> Any:
        self.evaluations += 1
        if self.gone:
            raise ConnectionError("Remote debugging handle gone: browser disconnected")
        return self.page_source


class FakeHttpSession:
    """Returns scripted responses; the last one repeats once the script runs out"""

    def __init__(self, responses=None, posts=None, profile_id: str = "p1"):
        self.profile_id = profile_id
        self.responses = list(responses or [])
        self.posts = list(posts or [])
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def _next(self, script):
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def get(self, url, headers=None, **kwargs):
        self.requests.append({'method': 'GET', 'url': url, 'headers': dict(headers or {})})
        await asyncio.sleep(0)
        return self._next(self.responses)

    async def post(self, url, data=None, headers=None, **kwargs):
        self.requests.append({'method': 'POST', 'url': url, 'data': data, 'headers': dict(headers or {})})
        await asyncio.sleep(0)
        return self._next(self.posts)

    async def merge_cookies(self, cookies):
        return 0

    async def close(self):
        self.closed = True


class FakeBridge:
    """Hands out a prepared session instead of reading a real browser"""

    def __init__(self, session: FakeHttpSession, fail_create: bool = False, fail_refresh: bool = False):
        self.session = session
        self.fail_create = fail_create
        self.fail_refresh = fail_refresh
        self.created = 0
        self.refreshed = 0

    async def create_session_from_browser(self, handle, profile, proxy=None):
        self.created += 1
        if self.fail_create:
            raise SessionCreationError(profile.profile_id, "browser gone")
        return self.session

    async def refresh_session_cookies(self, session, handle, stop_signal=None):
        self.refreshed += 1
        if self.fail_refresh:
            raise SessionRefreshError(session.profile_id, "browser gone")
        return 3


def ok(text: str, url: str = TARGET_URL) -> HttpResponse:
    return HttpResponse(status=200, text=text, url=url)


def status(code: int, text: str = "") -> HttpResponse:
    return HttpResponse(status=code, text=text, url=TARGET_URL)


@pytest.fixture
def fast_settings():
    """Settings with every delay at zero so loops run as fast as the event loop allows"""
    instant = RetryPolicy(max_attempts=2, min_delay=0.0, max_delay=0.0)
    return EngineSettings(
        speed_tiers={'fast': 0.0, 'normal': 0.0, 'slow': 0.0},
        sleep_base_offset=0.0,
        sleep_jitter_window=0.0,
        penalty_delay=0.0,
        stop_grace_period=0.5,
        fetch_retry=instant,
        purchase_retry=instant,
        session_retry=instant,
    )


@pytest.fixture
def profile():
    return ProfileConfig(
        profile_id="p1",
        target_url=TARGET_URL,
        requested_seats=1,
        access_keyword="Select your seats",
        event_id="1234",
        homepage_url="https://tickets.example-club.com",
        price_type_id="guid-adult",
        price_levels=["1"],
        queue_host="exampleclub",
        fingerprint=BrowserFingerprint(),
    )


@pytest.fixture
def sink():
    return StatusSink(max_size=100)


@pytest.fixture
def browser_cookies():
    return [
        {'name': 'ASP.NET_SessionId', 'value': 'abc123', 'domain': 'tickets.example-club.com',
         'path': '/', 'expires': -1, 'httpOnly': True, 'secure': True},
        {'name': '__cf_bm', 'value': 'x.y-z', 'domain': '.example-club.com', 'path': '/',
         'expires': 1893456000.0, 'secure': True, 'sameSite': 'None'},
        {'name': 'lang', 'value': 'en', 'domain': 'tickets.example-club.com', 'path': '/'},
    ]
