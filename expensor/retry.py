"""
Rate-limit retry policy for quota-bound sinks.

Only ``RateLimitError`` is retried, a fixed number of times, with a fixed
delay matching the sink's quota window. Every other error surfaces on the
first attempt.
"""

import logging
import time
from typing import Callable, TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY = 60.0


def _log_retry(retry_state) -> None:
    logger.warning(
        "Rate limited (attempt %d), retrying in %.0fs: %s",
        retry_state.attempt_number,
        retry_state.next_action.sleep if retry_state.next_action else 0,
        retry_state.outcome.exception() if retry_state.outcome else None,
    )


def call_with_rate_limit_retry(
    call: Callable[[], T],
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``call`` under the rate-limit policy.

    Args:
        call: Zero-argument callable performing one network request
        attempts: Total tries including the first
        delay: Seconds to wait between tries
        sleep: Sleep function (swappable in tests)

    Returns:
        Whatever ``call`` returns

    Raises:
        RateLimitError: still rate limited after the last attempt
    """
    retrying = Retrying(
        retry=retry_if_exception_type(RateLimitError),
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        sleep=sleep,
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(call)
