"""
Bounded retries for calls to external systems.
"""

import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger


class RetryConfig:
    """Attempt limit and capped exponential backoff."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.5,
                 max_delay: float = 5.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        """Build a retry config from a ``BaseConfig`` instance."""
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def single_attempt(self) -> "RetryConfig":
        """Copy of this config that never retries."""
        return RetryConfig(
            max_attempts=1,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


class RetryError(Exception):
    """Every attempt failed; ``last_exception`` is the final cause."""

    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def retry_on_exception(exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                       config: Optional[RetryConfig] = None) -> Callable:
    """Decorator for retrying async functions on exceptions.

    Exceptions outside ``exceptions`` propagate immediately. Once
    ``config.max_attempts`` is reached a ``RetryError`` wrapping the last
    exception is raised.
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        logger = get_logger("approvals.retry")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_exception: Optional[Exception] = None

            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt == config.max_attempts:
                        break
                    delay = _calculate_delay(attempt, config)
                    logger.warning("Attempt failed, retrying", function=func.__name__,
                                   attempt=attempt, delay=round(delay, 3), error=str(e))
                    await asyncio.sleep(delay)
                    continue

                if attempt > 1:
                    logger.info("Retry succeeded", function=func.__name__, attempt=attempt)
                return result

            attempts = max(config.max_attempts, 0)
            logger.error("Retry attempts exhausted", function=func.__name__,
                         attempts=attempts, error=str(last_exception))
            raise RetryError(
                f"{func.__name__} failed after {attempts} attempts",
                last_exception=last_exception or RuntimeError("max_attempts < 1"),
                attempts=attempts
            ) from last_exception

        return wrapper

    return decorator


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before attempt ``attempt + 1``."""
    delay = min(config.base_delay * (config.exponential_base ** (attempt - 1)), config.max_delay)
    if config.jitter:
        # +/-10%
        delay += random.uniform(-delay * 0.1, delay * 0.1)
    return max(0.0, delay)
