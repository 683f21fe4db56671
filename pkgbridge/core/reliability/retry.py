"""
Bounded retry driven by a RetryPolicy.

Used for two multi-process hazards: a staging repository that vanishes
under a running install, and flaky downloads of package URLs.  The
policy (attempts, delay, backoff) is configuration; the caller supplies
which exceptions count as transient.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from pkgbridge.core.models.settings import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_retry(
    func: Callable[[int], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[Exception], ...],
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call ``func(attempt)`` until it succeeds or the policy is exhausted.

    Args:
        func: Receives the 1-based attempt number.
        policy: Max attempts and delay schedule.
        retry_on: Exception types treated as transient.
        should_retry: Extra predicate on a caught exception.
        sleep: Injected for tests.
        label: Used in log messages.

    Returns:
        Whatever ``func`` returns on the first successful attempt.

    Raises:
        The last exception once attempts are exhausted, or any exception
        not covered by ``retry_on``/``should_retry`` immediately.
    """
    attempt = 1
    while True:
        try:
            return func(attempt)
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.debug("%s: giving up after %d attempts", label, attempt)
                raise
            if should_retry is not None and not should_retry(e):
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label, attempt, policy.max_attempts, e, delay,
            )
            if delay:
                sleep(delay)
            attempt += 1
