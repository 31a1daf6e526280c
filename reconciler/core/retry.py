"""Retry policy with exponential backoff."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

from reconciler.core.exceptions import TransientStoreError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry an async operation with exponential backoff.

    The delay after failed attempt ``n`` (1-based) is
    ``base_delay * multiplier ** (n - 1)``, capped at ``max_delay`` when set.
    Only exceptions listed in ``retry_on`` and not in ``give_up_on`` are
    retried; anything else is raised immediately. When attempts run out
    the last exception is raised.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: Optional[float] = None
    retry_on: Tuple[Type[BaseException], ...] = (TransientStoreError,)
    give_up_on: Tuple[Type[BaseException], ...] = ()
    sleep: Callable[[float], Awaitable[Any]] = field(
        default=asyncio.sleep, compare=False, repr=False
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on) and not isinstance(exc, self.give_up_on)

    async def run(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        description: str = "operation",
        **kwargs: Any,
    ) -> T:
        """Call ``operation(*args, **kwargs)`` until it succeeds or attempts run out."""
        attempt = 1
        while True:
            try:
                return await operation(*args, **kwargs)
            except self.retry_on as e:
                if isinstance(e, self.give_up_on):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        "Retries exhausted",
                        operation=description,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise

                delay = self.delay_for(attempt)
                logger.warning(
                    "Attempt failed, backing off",
                    operation=description,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e),
                )
                await self.sleep(delay)
                attempt += 1
