"""In-place retry with linear backoff for transient unit failures."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from code_rover.agents.failure_classifier import is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """`max_retries` extra attempts; attempt N waits `base_seconds * N` first."""

    max_retries: int = 2
    base_seconds: float = 1.0

    def delay_for(self, retry_number: int) -> float:
        return self.base_seconds * retry_number


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    on_retry: RetryCallback | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run `operation`, retrying transient failures in place.

    Terminal failures and the last transient failure propagate unchanged.
    """

    retry_number = 0
    while True:
        try:
            return operation()
        except Exception as error:
            if retry_number >= policy.max_retries or not is_transient_error(error):
                raise
            retry_number += 1
            delay = policy.delay_for(retry_number)
            logger.warning(
                "Transient failure (retry %d/%d in %.1fs): %s",
                retry_number,
                policy.max_retries,
                delay,
                error,
            )
            if on_retry is not None:
                on_retry(retry_number, error, delay)
            sleep(delay)
