"""
Retry utilities with exponential backoff.

Only idempotent steps are retried: credential resolution, chain id checks,
nonce and fee reads. Submissions are never retried here, because a resend
after an ambiguous failure could race the original.

Usage:
    from passkey_multichain.retry import retry_async, RPC_RETRY_CONFIG

    chain_id = await retry_async(ledger.chain_id, config=RPC_RETRY_CONFIG)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, Type, TypeVar

import httpx

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retryable_exceptions: Tuple of exception types that trigger retries
        non_retryable_exceptions: Tuple of exception types that should not be retried
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Delay for the given 0-based attempt, capped and jittered."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        # Non-retryable takes precedence
        if isinstance(exception, self.non_retryable_exceptions):
            return False
        return isinstance(exception, self.retryable_exceptions)


# Network reads: transport failures and 5xx-style HTTP errors only
RPC_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=0.5,
    max_delay=4.0,
    jitter=0.2,
    retryable_exceptions=(httpx.TransportError,),
)

NO_RETRY_CONFIG = RetryConfig(max_retries=0)


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        attempts: Number of attempts made
        original_exception: The last exception that was raised
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Raises:
        RetryExhausted: If all retry attempts fail with retryable errors
    """
    if config is None:
        config = RetryConfig()

    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not config.should_retry(e):
                raise

            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        attempts=config.max_retries + 1,
        original_exception=last_exception,
    ) from last_exception
