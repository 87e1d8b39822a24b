"""
Retry utilities.

Two layers:

- ``retry_on_k8s_error``: decorator absorbing short transient Kubernetes API
  failures (throttling, 5xx) with exponential backoff and a fixed number of attempts.
- ``retry_until``: deadline-bounded retry engine used to wait for eventually
  consistent state (cluster health, secret provisioning). The deadline is an
  explicit argument so every caller decides how long it may block.
"""
import asyncio
import functools
from typing import Awaitable, Callable, Optional, TypeVar

from kubernetes_asyncio.client import ApiException
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_delay,
    wait_exponential,
)

from arango_operator.config.logging import get_logger
from arango_operator.exceptions import RetryTimeoutError, is_retryable

logger = get_logger(__name__)

T = TypeVar('T')

# Floor of the sleep between attempts so a retry loop never spins.
MIN_RETRY_INTERVAL = 0.01


def is_retryable_k8s_error(exception: Exception) -> bool:
    """
    Determine if a Kubernetes API exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if not isinstance(exception, ApiException):
        return False

    retryable_status_codes = {
        408,  # Request Timeout
        429,  # Too Many Requests (rate limiting)
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }

    return exception.status in retryable_status_codes


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
) -> Callable:
    """
    Decorator to retry Kubernetes API calls with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay between retries in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        exponential_base: Base for exponential backoff calculation (default: 2.0)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_on_k8s_error(max_retries=5, initial_delay=2.0)
        async def list_pods(namespace: str):
            # ... Kubernetes API call ...
            pass
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(
                            "k8s_api_call_succeeded_after_retry",
                            function=func.__name__,
                            attempt=attempt + 1,
                            max_retries=max_retries,
                        )

                    return result

                except Exception as e:
                    should_retry = is_retryable_k8s_error(e)

                    if attempt >= max_retries or not should_retry:
                        if should_retry:
                            logger.error(
                                "k8s_api_call_failed_max_retries",
                                function=func.__name__,
                                attempt=attempt + 1,
                                max_retries=max_retries,
                                error_type=type(e).__name__,
                                error=str(e),
                            )
                        raise

                    delay = min(
                        initial_delay * (exponential_base ** attempt),
                        max_delay
                    )

                    logger.warning(
                        "k8s_api_call_failed_retrying",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay_seconds=delay,
                        error_type=type(e).__name__,
                        error=str(e),
                        status_code=getattr(e, 'status', None),
                    )

                    await asyncio.sleep(delay)

            raise AssertionError("unreachable")

        return wrapper
    return decorator


def _wait_within_deadline(timeout: float, interval: float, max_interval: float) -> Callable[[RetryCallState], float]:
    """Exponential wait clamped to the time left before the deadline."""
    backoff = wait_exponential(multiplier=interval, min=interval, max=max_interval)

    def wait(retry_state: RetryCallState) -> float:
        remaining = timeout - (retry_state.seconds_since_start or 0.0)
        return max(min(backoff(retry_state), remaining), MIN_RETRY_INTERVAL)

    return wait


async def retry_until(
    operation: Callable[[], Awaitable[T]],
    timeout: float,
    interval: float = 1.0,
    max_interval: Optional[float] = None,
    operation_name: Optional[str] = None,
) -> T:
    """
    Invoke ``operation`` until it succeeds or ``timeout`` seconds have elapsed.

    Failures flagged retryable (see ``arango_operator.exceptions.is_retryable``)
    are retried after a sleep that grows from ``interval`` to ``max_interval``;
    any other failure propagates immediately.

    Args:
        operation: Zero-argument coroutine function, safe to call repeatedly
        timeout: Deadline in seconds, measured from the first attempt
        interval: First sleep between attempts in seconds
        max_interval: Upper bound of the sleep (default: 8 x interval)
        operation_name: Name used in logs and in the timeout error

    Returns:
        The result of the first successful attempt

    Raises:
        RetryTimeoutError: If the deadline elapsed; wraps the last failure

    Example:
        report = await retry_until(fetch_and_check_health, timeout=60, interval=0.5)
    """
    name = operation_name or getattr(operation, "__name__", "operation")
    interval = max(interval, MIN_RETRY_INTERVAL)
    max_interval = max(max_interval or interval * 8, interval)

    def log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.debug(
            "operation_failed_retrying",
            operation=name,
            attempt=retry_state.attempt_number,
            delay_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error_type=type(error).__name__ if error else None,
            error=str(error) if error else None,
        )

    retrying = AsyncRetrying(
        stop=stop_after_delay(timeout),
        wait=_wait_within_deadline(timeout, interval, max_interval),
        retry=retry_if_exception(is_retryable),
        before_sleep=log_retry,
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await operation()
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.warning(
            "operation_timed_out",
            operation=name,
            timeout_seconds=timeout,
            attempts=e.last_attempt.attempt_number,
            error=str(last_error),
        )
        raise RetryTimeoutError(name, timeout, last_error) from last_error

    return result
