from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Generic, Tuple, Type, TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from batchgate.core.exceptions import TransientItemError

T = TypeVar("T")


class IRetryStrategy(ABC, Generic[T]):
    """Abstract base class for retry strategies.

    Implementations of this interface define how to execute a callable function
    with retries and backoff policies. Attempts always run one after another,
    never concurrently.
    """

    @abstractmethod
    def execute(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a callable under a configured retry policy.

        Args:
            func: A callable representing the operation to perform.
            *args: Variable length argument list to pass to the callable.
            **kwargs: Arbitrary keyword arguments to pass to the callable.

        Returns:
            The result of the callable execution.

        Raises:
            Exception: Propagates the last exception encountered if all retry attempts fail.
        """
        raise NotImplementedError("Subclasses must implement this method.")


class ExponentialBackoffStrategy(IRetryStrategy[T]):
    """Retry strategy using tenacity's exponential backoff.

    This strategy waits for a random, exponentially increasing amount of time
    between retries, with configurable minimum and maximum wait times and a
    maximum number of attempts. Only exceptions listed in ``retry_on`` are
    retried; anything else propagates immediately.

    Attributes:
        min_wait (float): Minimum wait time (in seconds) before the first retry.
        max_wait (float): Maximum wait time (in seconds) allowed between retries.
        max_attempts (int): Total number of allowed attempts.
        retry_on (tuple): Exception types that trigger another attempt.
    """

    def __init__(
        self,
        min_wait: float = 1,
        max_wait: float = 60,
        max_attempts: int = 3,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> None:
        """Initialize the exponential backoff strategy.

        Args:
            min_wait: Minimum wait time in seconds before retrying.
            max_wait: Maximum wait time in seconds for waiting between retries.
            max_attempts: Number of attempts before the operation is considered failed.
            retry_on: Exception types worth another attempt.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.min_wait: float = min_wait
        self.max_wait: float = max_wait
        self.max_attempts: int = max_attempts
        self.retry_on: Tuple[Type[BaseException], ...] = tuple(retry_on)

    def execute(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute the given callable using exponential backoff for retries.

        Exceptions are re-raised when the retry policy is exhausted or when
        they are not retryable.

        Args:
            func: The callable to execute.
            *args: Positional arguments passed to the callable.
            **kwargs: Keyword arguments passed to the callable.

        Returns:
            The result returned by the callable.

        Raises:
            Exception: The last exception raised by the callable if all retries fail.
        """

        @retry(
            wait=wait_random_exponential(min=self.min_wait, max=self.max_wait),
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
        )
        def wrapped() -> T:
            return func(*args, **kwargs)

        return wrapped()


class NoRetryStrategy(IRetryStrategy[T]):
    """Run the callable exactly once."""

    max_attempts = 1

    def execute(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return func(*args, **kwargs)


def item_retry_strategy(
    max_attempts: int, *, min_wait: float = 1, max_wait: float = 30
) -> IRetryStrategy[Any]:
    """Strategy used for item attempts: retry only transient item errors."""
    if max_attempts <= 1:
        return NoRetryStrategy()
    return ExponentialBackoffStrategy(
        min_wait=min_wait,
        max_wait=max_wait,
        max_attempts=max_attempts,
        retry_on=(TransientItemError,),
    )
