"""
Retry with model fallback for upstream calls.

An overloaded error (rate limit / 529) first walks down the model ladder,
retrying immediately on each cheaper tier. Once the ladder is exhausted the
call falls back to exponential backoff; if the error said how long to wait,
the ladder is reset to the top tier and the wait is honoured.

Usage:
    retrier = FallbackRetrier()
    text = await retrier.run(lambda: call_model(ladder.current), ladder)
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import anthropic

from common.config import INITIAL_RETRY_DELAY, MAX_RETRIES, RATE_LIMIT_BUFFER, RESET_COOLDOWN

from .ladder import ModelLadder

logger = logging.getLogger(__name__)

OVERLOADED_STATUS_CODES = (429, 529)
OVERLOADED_MARKERS = ("rate limit", "rate_limit", "429", "overloaded")

# "Please try again in 2m30s" / "try again in 7.5s" / "try again in 1m20"
WAIT_HINT_PATTERN = re.compile(r'try again in\s+([\d.hms\s]+)', re.IGNORECASE)
DURATION_PART_PATTERN = re.compile(r'(\d+(?:\.\d+)?)([hms]?)')
UNIT_SECONDS = {'h': 3600, 'm': 60, 's': 1, '': 1}


# ============== CLASSIFICATION ==============

def is_overloaded(exc: BaseException) -> bool:
    """True for errors that mean "slow down", not "this request is broken"."""
    if isinstance(exc, anthropic.RateLimitError):
        return True
    if getattr(exc, 'status_code', None) in OVERLOADED_STATUS_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in OVERLOADED_MARKERS)


def parse_wait_duration(message: str) -> Optional[float]:
    """Seconds from a "try again in 2m30s" hint, or None."""
    match = WAIT_HINT_PATTERN.search(message)
    if not match:
        return None
    parts = DURATION_PART_PATTERN.findall(match.group(1))
    if not parts:
        return None
    return sum(float(value) * UNIT_SECONDS[unit] for value, unit in parts)


def extract_wait_seconds(exc: BaseException) -> Optional[float]:
    retry_after = getattr(exc, 'retry_after', None)
    if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool) and retry_after > 0:
        return float(retry_after)

    response = getattr(exc, 'response', None)
    headers = getattr(response, 'headers', None) if response is not None else None
    if headers:
        raw = headers.get('retry-after') or headers.get('Retry-After')
        if raw:
            try:
                return float(raw)
            except ValueError:
                logger.debug(f"Unparseable retry-after header: {raw!r}")

    return parse_wait_duration(str(exc))


# ============== RESULTS ==============

class RetryStatus(Enum):
    SUCCESS = "success"
    OVERLOADED_EXHAUSTED = "overloaded_exhausted"
    FAILED = "failed"


@dataclass
class RetryResult:
    status: RetryStatus
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    tier: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is RetryStatus.SUCCESS


class UpstreamExhausted(Exception):
    """Fallback tiers and retries are used up; the item gets an apology."""

    def __init__(self, result: RetryResult):
        self.result = result
        super().__init__(
            f"{result.status.value} after {result.attempts} attempts "
            f"(last model {result.tier}): {result.error}"
        )

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.result.error


# ============== RETRIER ==============

class FallbackRetrier:
    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        initial_delay: float = INITIAL_RETRY_DELAY,
        rate_limit_buffer: float = RATE_LIMIT_BUFFER,
        reset_cooldown: bool = RESET_COOLDOWN,
        classify: Callable[[BaseException], bool] = is_overloaded,
        extract_wait: Callable[[BaseException], Optional[float]] = extract_wait_seconds,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.rate_limit_buffer = rate_limit_buffer
        # False: the first reset to the top tier in a run retries without waiting
        self.reset_cooldown = reset_cooldown
        self._classify = classify
        self._extract_wait = extract_wait
        self._sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[Any]], ladder: ModelLadder) -> Any:
        result = await self.run_outcome(operation, ladder)
        if result.ok:
            return result.value
        raise UpstreamExhausted(result) from result.error

    async def run_outcome(self, operation: Callable[[], Awaitable[Any]], ladder: ModelLadder) -> RetryResult:
        retries = 0
        attempts = 0
        delay = self.initial_delay
        immediate_reset_used = False

        while True:
            attempts += 1
            tier = ladder.current
            try:
                value = await operation()
                return RetryResult(RetryStatus.SUCCESS, value=value, attempts=attempts, tier=tier)
            except Exception as e:
                error = e

            overloaded = self._classify(error)
            wait = self._extract_wait(error) if overloaded else None

            if overloaded:
                if ladder.advance():
                    logger.warning(f"{tier} overloaded, retrying on {ladder.current}")
                    continue

                if wait is not None:
                    logger.warning(
                        f"All {ladder.modality} models overloaded, upstream asks to wait {wait:.0f}s; "
                        f"resetting to {ladder.tiers[0]}"
                    )
                    ladder.reset()
                    if not self.reset_cooldown and not immediate_reset_used:
                        immediate_reset_used = True
                        continue
                else:
                    logger.warning(f"No more fallback {ladder.modality} models available")

            if retries >= self.max_retries:
                status = RetryStatus.OVERLOADED_EXHAUSTED if overloaded else RetryStatus.FAILED
                logger.error(f"Giving up after {attempts} attempts on {tier}: {error}")
                return RetryResult(status, error=error, attempts=attempts, tier=tier)

            pause = delay
            if overloaded and wait is not None:
                pause = max(delay, wait + self.rate_limit_buffer)

            logger.warning(
                f"Retrying operation after error (retry {retries + 1}/{self.max_retries}, "
                f"waiting {pause:.1f}s): {error}"
            )
            await self._sleep(pause)
            retries += 1
            delay *= 2
