"""
Retry policy applied to every chain and record store call
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Awaitable, Callable, TypeVar

from kioskauction.errors import ChainTimeoutError, TransientError

T = TypeVar("T")

Backoff = Callable[[int], timedelta]


def linear_backoff(step: timedelta) -> Backoff:
    """
    Delay grows with the attempt number: step, 2 * step, 3 * step, ...
    """
    return lambda attempt: step * attempt


def fixed_backoff(delay: timedelta) -> Backoff:
    return lambda _attempt: delay


def is_transient(err: BaseException) -> bool:
    return isinstance(err, TransientError)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with backoff.

    - each attempt is bounded by `timeout`; an attempt that times out raises ChainTimeoutError, which is transient
    - only errors accepted by `retriable` are retried; anything else propagates immediately
    - after `max_attempts` the last error is raised
    """

    max_attempts: int = 3
    backoff: Backoff = field(default=linear_backoff(timedelta(seconds=2)))
    retriable: Callable[[BaseException], bool] = field(default=is_transient)
    timeout: timedelta | None = timedelta(seconds=20)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def with_max_attempts(self, max_attempts: int) -> "RetryPolicy":
        return replace(self, max_attempts=max_attempts)

    async def run(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """
        :param operation: zero-arg callable producing a fresh awaitable per attempt
        :param description: used in logs and timeout errors
        """
        logger = logging.getLogger(self.__class__.__name__)
        attempt = 1
        while True:
            try:
                return await self.__attempt(operation, description)
            except Exception as err:
                if attempt >= self.max_attempts or not self.retriable(err):
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "%s failed [attempt %s/%s], retrying in %ss: %s",
                    description,
                    attempt,
                    self.max_attempts,
                    delay.total_seconds(),
                    err,
                )
                await asyncio.sleep(delay.total_seconds())
                attempt += 1

    async def __attempt(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        if self.timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), self.timeout.total_seconds())
        except asyncio.TimeoutError as err:
            raise ChainTimeoutError(
                f"{description} timed out after {self.timeout.total_seconds()}s"
            ) from err
