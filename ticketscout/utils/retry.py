"""
Retry controller - exponential backoff with error classification

Every network-touching component funnels transient failures through
execute_with_retry. It is the only place in the engine that swallows an
error and tries again; everything else returns a typed outcome or raises.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..errors import MonitoringStopped, RetriesExhaustedError
from .cancellation import StopSignal

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Substrings that mark an error as transient (network, CDP channel, navigation)
RETRYABLE_PATTERNS = (
    # network
    'network', 'connection', 'timeout', 'timed out', 'etimedout', 'econnrefused',
    'econnreset', 'ehostunreach', 'enetunreach', 'dns', 'getaddrinfo',
    'name or service not known', 'temporary failure in name resolution',
    'socket hang up', 'fetch failed', 'request failed', 'server disconnected',
    'connection closed', 'connection lost', 'connection reset',
    # remote debugging channel
    'websocket', 'ws connection', 'inspector', 'devtools', 'browser disconnected',
    'browser has been closed', 'target closed', 'target page, context or browser has been closed',
    'session not created', 'cannot connect to browser', 'handle gone',
    # navigation
    'navigation timeout', 'page load timeout', 'load timeout', 'navigation failed',
    'net::err_network_changed', 'net::err_internet_disconnected',
    'net::err_name_not_resolved', 'net::err_connection_timed_out',
    'net::err_connection_refused',
)

# Substrings that must never be retried, even if a retryable pattern also matches
NON_RETRYABLE_PATTERNS = (
    'authentication', 'unauthorized', 'invalid credentials', 'login failed',
    'captcha', 'challenge', 'validation', 'invalid input', 'forbidden',
    'access denied', 'not found', 'bad request',
)

# Exception types that are transient regardless of their message
RETRYABLE_TYPES = (asyncio.TimeoutError, ConnectionError, TimeoutError)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration for one call site (delays in seconds)"""
    max_attempts: int = 3
    min_delay: float = 5.0
    max_delay: float = 15.0
    backoff_multiplier: float = 1.5
    jitter: float = 0.2

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.min_delay < 0 or self.min_delay > self.max_delay:
            raise ValueError(f"min_delay ({self.min_delay}) must be between 0 and max_delay ({self.max_delay})")
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")
        if not 0 <= self.jitter < 1:
            raise ValueError(f"jitter must be in [0, 1), got {self.jitter}")

    @classmethod
    def from_dict(cls, data: dict) -> "RetryPolicy":
        return cls(**{k: data[k] for k in ('max_attempts', 'min_delay', 'max_delay',
                                            'backoff_multiplier', 'jitter') if k in data})

    def base_delay(self, attempt: int) -> float:
        """Capped exponential delay before retry number `attempt` (1-based), without jitter"""
        return min(self.max_delay, self.min_delay * (self.backoff_multiplier ** (attempt - 1)))

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        capped = self.base_delay(attempt)
        spread = capped * self.jitter
        return max(0.0, capped + (rng or random).uniform(-spread, spread))


def is_retryable_error(error: Optional[BaseException]) -> bool:
    """Default classifier: transient network/CDP/navigation failures are retryable"""
    if error is None or isinstance(error, (MonitoringStopped, asyncio.CancelledError)):
        return False

    message = (str(error) or type(error).__name__).lower()
    if any(pattern in message for pattern in NON_RETRYABLE_PATTERNS):
        return False
    if isinstance(error, RETRYABLE_TYPES):
        return True

    # aiohttp wraps most transport failures in ClientConnectionError/ServerDisconnectedError
    type_name = type(error).__name__.lower()
    if 'timeout' in type_name or 'connection' in type_name or 'disconnected' in type_name:
        return True

    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    classifier: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Optional[Callable[[int, int, float], Any]] = None,
    *,
    operation_name: str = "operation",
    profile_id: str = "global",
    stop_signal: Optional[StopSignal] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run `operation` until it succeeds, fails non-retryably, or exhausts `policy`.

    `on_retry(attempt, max_attempts, delay)` is called before each backoff sleep,
    with strictly increasing attempt numbers. Callback errors are logged, not raised.
    A set `stop_signal` cuts the backoff short with MonitoringStopped.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await operation()
            if attempt > 1:
                logger.info(f"[{profile_id}] {operation_name} succeeded on attempt {attempt}/{policy.max_attempts}")
            return result
        except (MonitoringStopped, asyncio.CancelledError):
            raise
        except Exception as e:
            if not classifier(e):
                logger.warning(f"[{profile_id}] {operation_name} failed with non-retryable error: {e}")
                raise

            if attempt >= policy.max_attempts:
                logger.error(f"[{profile_id}] {operation_name} failed after {attempt} attempts: {e}")
                raise RetriesExhaustedError(operation_name, attempt, e) from e

            delay = policy.compute_delay(attempt, rng)
            logger.warning(f"[{profile_id}] {operation_name} failed (attempt {attempt}/{policy.max_attempts}), "
                           f"retrying in {delay:.2f}s: {e}")

            if on_retry is not None:
                try:
                    on_retry(attempt, policy.max_attempts, delay)
                except Exception as callback_error:
                    logger.warning(f"[{profile_id}] Retry callback error: {callback_error}")

            if stop_signal is not None:
                if await stop_signal.sleep(delay):
                    raise MonitoringStopped(stop_signal.reason)
            else:
                await sleep(delay)
