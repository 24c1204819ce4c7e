"""
Retry with exponential backoff and jitter for outbound completion calls.

The schedule is base * exponential_base^(attempt-1), capped at max_delay,
randomized by +/- jitter_factor and never shorter than 100ms. A server
retry-after hint lengthens the wait but never shortens it.
"""

import asyncio
import email.utils
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_DELAY_SECONDS = 0.1

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

RETRYABLE_MESSAGE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rate.?limit",
        r"too many requests",
        r"timed? ?out",
        r"network",
        r"connection (reset|refused|aborted)",
        r"\b(429|500|502|503|504)\b",
        r"insufficient_quota",
        r"token limit",
        r"overloaded",
        r"capacity",
        r"server is busy",
    )
]


@dataclass
class RetryPolicy:
    """
    Backoff schedule for a single backend call.

    Attributes:
        max_attempts: Total attempts including the first one (default: 3)
        base_delay: Delay before the second attempt in seconds (default: 1.0)
        max_delay: Upper bound for any single wait (default: 10.0)
        exponential_base: Growth factor between attempts (default: 2.0)
        jitter: Randomize delays to avoid synchronized retries (default: True)
        jitter_factor: Relative jitter amplitude (default: 0.1)
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})"
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(
                f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}"
            )

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds to wait after the given (1-based) failed attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            spread = delay * self.jitter_factor
            delay += random.uniform(-spread, spread)

        return max(MIN_DELAY_SECONDS, delay)


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def parse_retry_after(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return max(0.0, float(value))

    text = str(value).strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass

    try:
        moment = email.utils.parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if moment is None:
        return None
    return max(0.0, moment.timestamp() - time.time())


def extract_retry_after(error: BaseException) -> Optional[float]:
    """
    Read a server-advised retry delay (seconds) from an error, if any.

    Looks at a ``retry_after`` attribute first, then at the ``Retry-After``
    header of an attached httpx response. Values may be seconds or an HTTP date.
    """
    hint = parse_retry_after(getattr(error, "retry_after", None))
    if hint is not None:
        return hint

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        return parse_retry_after(headers.get("retry-after"))
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether a failed call is worth repeating against the same backend."""
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.NetworkError)):
        return True

    status = _status_code(error)
    if status is not None:
        if status in RETRYABLE_STATUS_CODES or status >= 500:
            return True
        if 400 <= status < 500:
            return False

    message = str(error)
    return any(pattern.search(message) for pattern in RETRYABLE_MESSAGE_PATTERNS)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_condition: Optional[Callable[[BaseException, int], bool]] = None,
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or retrying stops being worthwhile.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Backoff schedule
        retry_condition: Extra veto, called with (error, attempt) after the
            retryability check; returning False re-raises immediately
        on_retry: Observer called with (error, attempt, delay) before waiting
        sleep: Awaitable sleep function (injectable for tests)

    Raises:
        The last error raised by ``operation``.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt >= policy.max_attempts:
                logger.warning(f"Giving up after {attempt} attempt(s): {e}")
                raise
            if not is_retryable_error(e):
                raise
            if retry_condition is not None and not retry_condition(e, attempt):
                raise

            delay = policy.calculate_delay(attempt)
            hint = extract_retry_after(e)
            if hint is not None:
                delay = max(delay, hint)

            if on_retry is not None:
                on_retry(e, attempt, delay)
            logger.info(
                f"🔄 Attempt {attempt}/{policy.max_attempts} failed ({e}), retrying in {delay:.2f}s"
            )
            await sleep(delay)
