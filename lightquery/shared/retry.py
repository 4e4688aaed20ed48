"""
Retry mechanism for query operations.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from lightquery.shared.logging import get_logger

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 delay_ms: float = 1000.0,
                 give_up: Optional[Callable[[], bool]] = None):
        self.max_attempts = max_attempts
        self.delay_ms = delay_ms
        # Checked after each failure; True stops retrying at once
        self.give_up = give_up


def retry_on_exception(exceptions: tuple = (Exception,),
                       config: Optional[RetryConfig] = None) -> Callable:
    """Decorator for retrying async functions with a fixed delay.

    The last exception is re-raised unchanged once every attempt failed.
    """

    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        name = getattr(func, "__name__", "operation")

        async def wrapper(*args, **kwargs) -> Any:
            logger = get_logger(f"retry.{name}")

            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            "Retry succeeded",
                            attempt=attempt,
                            function=name
                        )

                    return result

                except exceptions as e:
                    if config.give_up is not None and config.give_up():
                        logger.info(
                            "Retry abandoned",
                            attempt=attempt,
                            function=name,
                            error=str(e)
                        )
                        raise

                    if attempt >= config.max_attempts:
                        logger.error(
                            "All retry attempts exhausted",
                            attempt=attempt,
                            max_attempts=config.max_attempts,
                            function=name,
                            error=str(e)
                        )
                        raise

                    logger.warning(
                        "Retry attempt failed, waiting before next attempt",
                        attempt=attempt,
                        delay_ms=config.delay_ms,
                        function=name,
                        error=str(e)
                    )

                    await asyncio.sleep(config.delay_ms / 1000)

        return wrapper

    return decorator


async def run_with_retry(operation: Callable[[], Awaitable[T]],
                         attempts: int,
                         delay_ms: float,
                         give_up: Optional[Callable[[], bool]] = None) -> T:
    """Run ``operation`` up to ``attempts`` times, waiting ``delay_ms`` between failures.

    With ``attempts <= 0`` the operation runs exactly once without retry wrapping.
    Once ``give_up()`` returns True the last failure is re-raised without further attempts.
    """
    if attempts <= 0:
        return await operation()

    config = RetryConfig(max_attempts=attempts, delay_ms=delay_ms, give_up=give_up)
    return await retry_on_exception((Exception,), config)(operation)()
