"""Exponential-backoff retry policy.

Each operation category (file, database, git, network) carries its own
RetrySettings so that a contended SQLite file can be retried more eagerly
than, say, a slow filesystem.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetrySettings:
    """Retry policy for one category of operations."""

    max_attempts: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 5000
    backoff_factor: float = 2.0

    def delays(self) -> Iterator[float]:
        """Yield the sleep (in seconds) before each retry.

        Produces ``max_attempts - 1`` values: the first is ``initial_delay_ms``
        and each following one is multiplied by ``backoff_factor``, capped at
        ``max_delay_ms``.
        """
        delay = float(self.initial_delay_ms)
        for _ in range(max(self.max_attempts, 1) - 1):
            yield min(delay, float(self.max_delay_ms)) / 1000.0
            delay *= self.backoff_factor


def retry_call(
    func: Callable[[], T],
    settings: RetrySettings,
    retry_on: Tuple[Type[BaseException], ...],
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or the attempts are exhausted.

    Args:
        func: Zero-argument callable to invoke.
        settings: Attempts and backoff schedule.
        retry_on: Exception types that trigger another attempt. Anything else
            propagates immediately.
        description: Label used in log messages.
        sleep: Sleep function (injectable for tests).

    Returns:
        Whatever ``func`` returns.

    Raises:
        The last exception raised by ``func`` once ``max_attempts`` is reached.
    """
    delays = settings.delays()
    attempt = 1
    while True:
        try:
            return func()
        except retry_on as e:
            delay = next(delays, None)
            if delay is None:
                logger.debug(f"{description} failed after {attempt} attempt(s): {e}")
                raise
            logger.debug(
                f"{description} failed (attempt {attempt}/{settings.max_attempts}): "
                f"{e}; retrying in {delay:.3f}s"
            )
            sleep(delay)
            attempt += 1
