"""
Browser-to-HTTP session bridging

Turns a live, logged-in browser tab into a lightweight aiohttp session that
carries the same cookies, client hints and proxy.
"""

from .debug_handle import RemoteDebuggingHandle, PlaywrightDebugHandle
from .http_session import BrowserCookie, HttpResponse, HttpSession
from .session_bridge import SessionBridge
from .registry import Registry, EngineRegistry

__all__ = ['RemoteDebuggingHandle', 'PlaywrightDebugHandle', 'BrowserCookie', 'HttpResponse',
           'HttpSession', 'SessionBridge', 'Registry', 'EngineRegistry']
