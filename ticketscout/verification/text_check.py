"""
Text verification through the remote-debugging channel
"""

import asyncio
import logging
import time

from ..session.debug_handle import RemoteDebuggingHandle

logger = logging.getLogger(__name__)

PAGE_SOURCE_EXPRESSION = "document.documentElement.outerHTML"


async def wait_for_text(handle: RemoteDebuggingHandle, text: str, max_wait: float = 40.0,
                        interval: float = 3.0, profile_id: str = "global",
                        sleep=asyncio.sleep, clock=time.monotonic) -> bool:
    """Poll the tab's page source until `text` appears or `max_wait` elapses.

    Evaluation errors (tab navigating, channel hiccup) are logged and polling continues.
    """
    logger.info(f"[{profile_id}] Checking for text: {text!r} (timeout: {max_wait}s, interval: {interval}s)")
    deadline = clock() + max_wait

    while clock() < deadline:
        try:
            source = await handle.evaluate(PAGE_SOURCE_EXPRESSION)
            if text in (source or ''):
                logger.info(f"[{profile_id}] Text {text!r} found on page")
                return True
        except (ConnectionError, asyncio.TimeoutError) as e:
            logger.warning(f"[{profile_id}] Error during text check iteration: {e}")
        await sleep(interval)

    logger.warning(f"[{profile_id}] Text {text!r} not found within {max_wait} seconds")
    return False
