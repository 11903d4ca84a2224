"""
Retry utilities with exponential backoff and deadlines for external calls
"""

import asyncio
from typing import Awaitable, Callable, Optional, Type, Tuple, TypeVar

from tenacity import (
    AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception
)

from ..logging_adapter import get_safe_logger
from ..error_models import StoreUnavailableError, OperationTimeoutError

logger = get_safe_logger("dr_orchestrator.retry_utils")

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Tuple[Type[BaseException], ...]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (
            ConnectionError,
            TimeoutError,
            OSError,
            asyncio.TimeoutError
        )


# Retry configurations for callers without their own settings
DEFAULT_RETRY_CONFIGS = {
    "webhook": RetryConfig(max_attempts=3, base_delay=1.0, max_delay=15.0),
}


def _wait_strategy(config: RetryConfig):
    wait = wait_exponential(
        multiplier=config.base_delay,
        max=config.max_delay,
        exp_base=config.exponential_base
    )
    if config.jitter:
        # Small jitter component on top of the exponential delay
        wait = wait + wait_exponential(
            multiplier=config.base_delay * 0.1,
            max=config.max_delay * 0.1,
            exp_base=config.exponential_base
        )
    return wait


async def call_with_retry(
    operation: Callable[..., Awaitable[T]],
    *args,
    config: RetryConfig,
    service_name: str,
    **kwargs
) -> T:
    """
    Await ``operation`` with bounded retries and exponential backoff.

    Retryable exceptions that survive every attempt are converted into
    StoreUnavailableError; anything else propagates unchanged on first
    occurrence.
    """

    def log_retry_attempt(retry_state):
        logger.warning(
            "retry_attempt",
            service=service_name,
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome.failed else None,
            next_sleep=getattr(retry_state.next_action, "sleep", None)
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=_wait_strategy(config),
        retry=retry_if_exception(lambda exc: isinstance(exc, config.retryable_exceptions)),
        before_sleep=log_retry_attempt,
        reraise=True
    )

    try:
        async for attempt in retrying:
            with attempt:
                return await operation(*args, **kwargs)
    except config.retryable_exceptions as e:
        logger.error(
            "retry_exhausted",
            service=service_name,
            attempts=config.max_attempts,
            final_exception=str(e)
        )
        raise StoreUnavailableError(
            service=service_name,
            message=f"failed after {config.max_attempts} attempts: {e}",
            details={
                "attempts": config.max_attempts,
                "original_error": str(e),
                "error_type": type(e).__name__
            }
        ) from e
    raise AssertionError("unreachable")  # pragma: no cover


async def with_deadline(awaitable: Awaitable[T], timeout: Optional[float], operation: str) -> T:
    """
    Await ``awaitable`` for at most ``timeout`` seconds.

    The underlying task is cancelled on expiry, so cleanup in its finally
    blocks runs before OperationTimeoutError is raised.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning("operation_deadline_exceeded", operation=operation, timeout_seconds=timeout)
        raise OperationTimeoutError(operation, timeout) from e
