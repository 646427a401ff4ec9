"""Backoff for calls to the billing processor.

A pause batch touches one window at a time, so retries stay short: a
processor that is still down after a couple of attempts marks the window
failed and the next daily run picks it up again.

Usage:
    reference = await retry_async(
        lambda: gateway.resume_collection(ref),
        config=RetryConfig.from_settings(settings),
        operation="resume_collection",
    )
"""

import asyncio
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from memberbill.exceptions import ExternalServiceError
from memberbill.utils.logging import get_logger

if TYPE_CHECKING:
    from memberbill.utils.config import Settings

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """How often and how patiently a billing call is retried.

    ``max_retries`` counts attempts after the first one. Delays grow by
    ``backoff_factor`` from ``base_delay`` up to ``max_delay``; with
    ``jitter`` each delay moves by up to ``jitter_range`` of itself.
    Only ``retryable_exceptions`` are retried.
    """

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 5.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: tuple[type[Exception], ...] = (ExternalServiceError,)

    def __post_init__(self) -> None:
        problems = []
        if self.max_retries < 0:
            problems.append("max_retries must be >= 0")
        if self.base_delay <= 0:
            problems.append("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            problems.append("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            problems.append("backoff_factor must be >= 1")
        if not 0 <= self.jitter_range <= 1:
            problems.append("jitter_range must be between 0 and 1")
        if problems:
            raise ValueError("; ".join(problems))

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryConfig":
        return cls(
            max_retries=settings.billing_max_retries,
            base_delay=settings.billing_retry_base_delay,
            max_delay=max(5.0, settings.billing_retry_base_delay),
        )

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait before retry ``attempt`` (0 for the first retry)."""
        delay = min(self.base_delay * self.backoff_factor**attempt, self.max_delay)
        if not self.jitter:
            return delay
        spread = delay * self.jitter_range
        return max(0.0, delay + random.uniform(-spread, spread))

    def delays(self) -> Iterator[float]:
        for attempt in range(self.max_retries):
            yield self.calculate_delay(attempt)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int], Awaitable[None]] | None = None,
    operation: str = "billing_call",
) -> T:
    """Await ``func()`` until it succeeds or the retries run out.

    The last error is re-raised unchanged. ``on_retry`` is awaited with the
    error and the retry number before each wait; a failing callback is
    logged and does not stop the retries.
    """
    config = config or RetryConfig()
    delays = config.delays()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await func()
        except config.retryable_exceptions as e:
            delay = next(delays, None)
            if delay is None:
                logger.error(
                    "billing_retry_exhausted",
                    operation=operation,
                    attempts=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            logger.warning(
                "billing_retry_scheduled",
                operation=operation,
                attempt=attempt,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 3),
                error_type=type(e).__name__,
            )
            if on_retry is not None:
                try:
                    await on_retry(e, attempt)
                except Exception as callback_error:
                    logger.warning(
                        "billing_retry_callback_failed",
                        operation=operation,
                        error=str(callback_error),
                    )
            await asyncio.sleep(delay)


BILLING_RETRY = RetryConfig()

NO_RETRY = RetryConfig(max_retries=0, base_delay=0.01, max_delay=0.01, jitter=False)
