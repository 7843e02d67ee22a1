"""
Retry policy for attach-style diagnostics.

A debugger attach can lose a race against the target (thread creation, a
signal in flight, another tracer detaching). Those failures surface as
``TransientToolFailure`` and are retried a bounded number of times with a fixed
delay. Every other error is final on the first attempt.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from crashpack.exceptions import TransientToolFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry parameters.

    Attributes:
        max_attempts: Total attempts including the first one.
        delay_s: Fixed delay between attempts.
    """

    max_attempts: int = 3
    delay_s: float = 2.0

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Decide whether attempt number ``attempt`` (1-based) may be followed by another."""
        return isinstance(error, TransientToolFailure) and attempt < self.max_attempts

    def call(
        self,
        func: Callable[[], T],
        operation_name: str = "operation",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Run func, retrying transient failures.

        Raises:
            The last exception once attempts are exhausted, or any
            non-transient exception immediately.
        """
        attempt = 1
        while True:
            try:
                result = func()
                if attempt > 1:
                    logger.info(f"[Retry] {operation_name} succeeded on attempt {attempt}")
                return result
            except TransientToolFailure as e:
                if not self.should_retry(e, attempt):
                    logger.warning(f"[Retry] {operation_name} failed after {attempt} attempt(s): {e}")
                    raise
                logger.warning(
                    f"[Retry] {operation_name} attempt {attempt}/{self.max_attempts} failed: {e}; "
                    f"retrying in {self.delay_s}s"
                )
                sleep(self.delay_s)
                attempt += 1


NO_RETRY = RetryPolicy(max_attempts=1, delay_s=0.0)
