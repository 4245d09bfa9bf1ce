"""Bounded retry with exponential backoff for transient failures."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from .errors import TransientError


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """Retry transient orchestration errors a bounded number of times.

    Only TransientError subclasses are retried. Once ``max_attempts`` is
    exhausted the last error is re-raised unchanged so callers report it
    as fatal for that target.
    """

    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Get the backoff delay after the given (1-based) attempt."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)

    def run(self, operation: Callable[[], T], description: str = 'operation') -> T:
        """Run an operation, retrying transient failures.

        Args:
            operation: Zero-argument callable to invoke
            description: Human readable name used in log messages

        Returns:
            The operation's return value

        Raises:
            TransientError: When every attempt failed transiently
            OrchestrationError: Non-transient failures, immediately
        """
        attempt = 1
        while True:
            try:
                return operation()
            except TransientError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} hit {e.kind} (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s"
                )
                self.sleep(delay)
                attempt += 1
