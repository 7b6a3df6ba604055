"""Bounded exponential backoff, parameterized by the error taxonomy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from deploy_orchestrator.errors import OrchestratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry only errors flagged ``retryable``; decisions propagate at once.

    ``max_attempts`` counts the first call. ``retry_on`` narrows which
    retryable errors this policy handles.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    retry_on: tuple[type[OrchestratorError], ...] = (OrchestratorError,)
    sleep: Sleep = field(default=asyncio.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def should_retry(self, exc: BaseException) -> bool:
        return (
            isinstance(exc, self.retry_on)
            and isinstance(exc, OrchestratorError)
            and exc.retryable
        )

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except OrchestratorError as exc:
                if not self.should_retry(exc) or attempt >= self.max_attempts:
                    if self.should_retry(exc):
                        logger.warning(
                            "%s failed after %d attempt(s): %s", label, attempt, exc
                        )
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "%s attempt %d/%d failed (%s); retrying in %.1fs",
                    label,
                    attempt,
                    self.max_attempts,
                    exc.code,
                    delay,
                )
                await self.sleep(delay)
                attempt += 1
