"""
Retry with exponential backoff and jitter for capability calls

The engine never retries a step. Invokers that talk to flaky services wrap
their own transport calls with this decorator, so every retry happens inside
the step's timeout window.
"""
import time
import random
import logging
from typing import Callable, Type, Tuple, Any
from functools import wraps

from stepflow.utils.exceptions import CapabilityAPIError, PipelineError

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Delay before retry number ``attempt + 1`` (attempt counts from 0).

    Without jitter: base, base*2, base*4, ... capped at max_delay.
    With jitter the capped value is scaled to 50-150%.
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        delay *= 0.5 + random.random()
    return delay


def is_retriable(error: Exception, retriable_exceptions: Tuple[Type[Exception], ...]) -> bool:
    """A listed exception type is retried unless it is a PipelineError marked unrecoverable."""
    if not isinstance(error, retriable_exceptions):
        return False
    if isinstance(error, PipelineError):
        return error.recoverable
    return True


def exponential_backoff_with_jitter(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 32.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retriable_exceptions: Tuple[Type[Exception], ...] = (CapabilityAPIError, ConnectionError)
):
    """
    Decorator retrying a call on transient capability failures

    Args:
        max_retries: Retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Upper bound for a single delay in seconds
        exponential_base: Growth factor between delays
        jitter: Randomize delays so parallel siblings don't retry in lockstep
        retriable_exceptions: Exception types that may be retried
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            attempts = max_retries + 1

            for attempt in range(attempts):
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    if not is_retriable(e, retriable_exceptions):
                        logger.error(f"{func.__name__} failed with non-retriable error: {e}")
                        raise

                    if attempt + 1 >= attempts:
                        logger.error(f"{func.__name__} gave up after {attempts} attempts: {e}")
                        raise

                    delay = backoff_delay(attempt, base_delay, max_delay, exponential_base, jitter)
                    logger.warning(
                        f"{func.__name__} attempt {attempt + 1}/{attempts} failed: {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    continue

                if attempt > 0:
                    logger.info(f"{func.__name__} succeeded on attempt {attempt + 1}/{attempts}")
                return result

        return wrapper
    return decorator
