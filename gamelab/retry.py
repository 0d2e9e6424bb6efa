"""Retry policy for provider calls.

A policy is a plain value: how many attempts, which error codes are worth
another attempt, and how long to wait in between. The live orchestrator
retries malformed structured output once; the translation tool also retries
generic provider failures with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from gamelab.errors import ErrorCode, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunction = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts plus a classifier predicate."""

    max_attempts: int = 2
    retry_on: frozenset[ErrorCode] = field(
        default_factory=lambda: frozenset({ErrorCode.MALFORMED_AI_RESPONSE})
    )
    initial_backoff: float = 0.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        problems = [message for broken, message in (
            (self.max_attempts < 1, "max_attempts must be at least 1"),
            (self.initial_backoff < 0, "initial_backoff cannot be negative"),
            (self.backoff_multiplier < 1, "backoff_multiplier below 1 would shrink delays"),
            (self.max_backoff < self.initial_backoff, "max_backoff is below initial_backoff"),
            (not 0 <= self.jitter <= 1, "jitter is a fraction between 0 and 1"),
        ) if broken]
        if problems:
            raise ValueError("invalid retry policy: " + "; ".join(problems))

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Whether ``error`` on the 1-indexed ``attempt`` earns another try."""
        if attempt >= self.max_attempts:
            return False
        return classify(error) in self.retry_on

    def delay_after(self, attempt: int, roll: Callable[[], float] = random.random) -> float:
        """Seconds to wait after the failed 1-indexed ``attempt``.

        The wait grows by ``backoff_multiplier`` per attempt up to
        ``max_backoff``; ``jitter`` spreads it by that fraction either way.
        """
        if attempt < 1:
            raise ValueError(f"attempt is 1-indexed, got {attempt}")
        delay = min(self.initial_backoff * self.backoff_multiplier ** (attempt - 1), self.max_backoff)
        if self.jitter:
            delay *= 1 + self.jitter * (2 * roll() - 1)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        sleep: SleepFunction | None = None,
        label: str = "operation",
    ) -> T:
        """Await ``operation`` until it succeeds or the policy gives up.

        The last error is re-raised unchanged.
        """
        sleep_fn = sleep or asyncio.sleep
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.should_retry(e, attempt):
                    raise
                delay = self.delay_after(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d, %s), retrying in %.1fs",
                    label, attempt, self.max_attempts, classify(e).value, delay,
                )
                if delay > 0:
                    await sleep_fn(delay)
                attempt += 1


# Text step: one extra attempt, only for unparseable structured output.
MALFORMED_OUTPUT_RETRY = RetryPolicy(max_attempts=2)

# Offline translation: generic provider failures are worth waiting for.
TRANSLATION_RETRY = RetryPolicy(
    max_attempts=3,
    retry_on=frozenset({ErrorCode.AI_ERROR, ErrorCode.MALFORMED_AI_RESPONSE, ErrorCode.RATE_LIMIT_EXCEEDED}),
    initial_backoff=2.0,
    backoff_multiplier=2.0,
    max_backoff=30.0,
    jitter=0.1,
)
