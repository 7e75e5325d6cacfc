"""
Resilience utilities for error handling and fault tolerance.

This module provides:
- retry_with_backoff decorator for idempotent operations
- CircuitBreaker class for ledger calls
"""

import asyncio
import time
import logging
from typing import Callable, Any, Awaitable, Optional, TypeVar, ParamSpec
from functools import wraps
from enum import Enum

from burstguard.errors import StoreUnavailable

logger = logging.getLogger(__name__)

# Type variables for generic decorator
P = ParamSpec('P')
T = TypeVar('T')


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenError(StoreUnavailable):
    """Raised when circuit breaker is open."""
    pass


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator for retrying async functions with exponential backoff.

    Only apply it to idempotent operations: a retried ledger mutation could
    count one occurrence twice.

    Args:
        max_retries: Maximum number of attempts (default: 3)
        base_delay: Initial delay in seconds between retries (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        exponential_base: Base for exponential backoff calculation (default: 2.0)
        exceptions: Tuple of exception types to catch and retry (default: all exceptions)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_retries=5, base_delay=1.0)
        async def connect():
            await ledger.initialize()
    """
    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception = None

            for attempt in range(max_retries):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt + 1}/{max_retries}"
                        )

                    return result

                except exceptions as e:
                    last_exception = e

                    if attempt == max_retries - 1:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}",
                            exc_info=True
                        )
                        raise

                    delay = min(base_delay * (exponential_base ** attempt), max_delay)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries}: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )

                    await asyncio.sleep(delay)

            raise last_exception

        return wrapper

    return decorator


class CircuitBreaker:
    """
    Circuit breaker pattern implementation for ledger calls.

    While the ledger is down the engine should fail open immediately instead
    of waiting out a timeout on every event.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Store is failing, requests are rejected immediately
    - HALF_OPEN: Testing if the store recovered, limited requests allowed

    Args:
        failure_threshold: Number of consecutive failures before opening circuit (default: 5)
        timeout: Seconds to wait before attempting recovery (default: 10)
        half_open_max_calls: Max calls allowed in half-open state (default: 3)
        time_func: Monotonic time source

    Example:
        breaker = CircuitBreaker(failure_threshold=5, timeout=10)
        observation = await breaker.call(lambda: ledger.observe(...))
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 10,
        half_open_max_calls: int = 3,
        time_func: Callable[[], float] = time.monotonic
    ):
        """Initialize circuit breaker."""
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self._time = time_func

        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        self.half_open_calls = 0

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute function with circuit breaker protection.

        Args:
            func: Zero-argument callable returning an awaitable

        Returns:
            Function result

        Raises:
            CircuitBreakerOpenError: If circuit is open
            Exception: Any exception raised by the function
        """
        if self.state == CircuitState.OPEN:
            if self.last_failure_time is not None and (self._time() - self.last_failure_time) > self.timeout:
                logger.info("Circuit breaker transitioning to HALF_OPEN state")
                self.state = CircuitState.HALF_OPEN
                self.half_open_calls = 0
                self.success_count = 0
            else:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker is OPEN. Ledger unavailable. "
                    f"Will retry after {self.timeout}s timeout."
                )

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.half_open_max_calls:
                raise CircuitBreakerOpenError(
                    "Circuit breaker is HALF_OPEN and max test calls reached"
                )
            self.half_open_calls += 1

        try:
            result = await func()
        except Exception:
            self._record_failure()
            raise

        self._record_success()
        return result

    def _record_success(self) -> None:
        """Record successful call."""
        self.success_count += 1

        if self.state == CircuitState.HALF_OPEN:
            if self.success_count >= self.half_open_max_calls:
                logger.info("Circuit breaker transitioning to CLOSED state (ledger recovered)")
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
                self.half_open_calls = 0
        elif self.state == CircuitState.CLOSED:
            if self.failure_count > 0:
                logger.debug("Circuit breaker: resetting failure count after success")
                self.failure_count = 0

    def _record_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self._time()

        if self.state == CircuitState.HALF_OPEN:
            logger.warning("Circuit breaker transitioning to OPEN state (ledger still failing)")
            self.state = CircuitState.OPEN
            self.success_count = 0
            self.half_open_calls = 0
        elif self.state == CircuitState.CLOSED:
            if self.failure_count >= self.failure_threshold:
                logger.warning(
                    f"Circuit breaker transitioning to OPEN state "
                    f"(failure threshold {self.failure_threshold} exceeded)"
                )
                self.state = CircuitState.OPEN
                self.success_count = 0


def create_ledger_circuit_breaker() -> CircuitBreaker:
    """Create circuit breaker configured for ledger operations."""
    return CircuitBreaker(
        failure_threshold=5,
        timeout=10,
        half_open_max_calls=3
    )
