"""
Retry/backoff controller for metadata fetches.

Stream opening is not retried: once bytes start flowing a failure
ends the request.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, TypeVar
import logging

from . import config
from .errors import RETRYABLE_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    initial_delay: float = config.RETRY_INITIAL_DELAY
    multiplier: float = config.RETRY_BACKOFF_MULTIPLIER

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def initial_state(self) -> "RetryState":
        return RetryState(attempts_remaining=self.max_attempts, delay_seconds=self.initial_delay)


@dataclass
class RetryState:
    """Per-request retry counters. Never shared between requests."""
    attempts_remaining: int
    delay_seconds: float
    attempts_made: int = 0
    delays: List[float] = field(default_factory=list)

    def record_attempt(self) -> None:
        self.attempts_made += 1
        self.attempts_remaining -= 1

    def advance(self, multiplier: float) -> float:
        """Return the delay to sleep now and grow the next one."""
        delay = self.delay_seconds
        self.delays.append(delay)
        self.delay_seconds = delay * multiplier
        return delay


def is_retryable(error: BaseException, state: RetryState) -> bool:
    return isinstance(error, RETRYABLE_ERRORS) and state.attempts_remaining > 0


async def fetch_with_retry(
    fetch: Callable[[str], Awaitable[T]],
    url: str,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    state: Optional[RetryState] = None,
) -> T:
    """
    Call ``fetch(url)`` until it succeeds, fails terminally or attempts run out.

    The last error is re-raised as the same object so the caller can classify it.
    """
    policy = policy or RetryPolicy()
    state = state or policy.initial_state()

    while True:
        state.record_attempt()
        try:
            return await fetch(url)
        except Exception as e:
            logger.warning(
                f"⚠️ Metadata attempt {state.attempts_made}/{policy.max_attempts} failed: "
                f"{type(e).__name__}: {str(e)[:150]}"
            )
            if not is_retryable(e, state):
                raise
            delay = state.advance(policy.multiplier)
            logger.info(
                f"🔄 Retrying in {delay * 1000:.0f}ms... ({state.attempts_remaining} attempts left)"
            )
            await sleep(delay)
