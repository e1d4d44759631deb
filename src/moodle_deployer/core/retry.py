"""Bounded polling and transient-error retries."""

import logging
import time
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from moodle_deployer.core.errors import StageTimeout, is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], None]


class PollPolicy(BaseModel):
    """Bounds for waiting on one class of operation."""

    timeout_seconds: float
    max_attempts: Optional[int] = None
    initial_interval: float = 5.0
    max_interval: float = 60.0


def wait_until(
    probe: Callable[[], T],
    *,
    description: str,
    resource_id: str,
    policy: PollPolicy,
    sleep: Sleeper = time.sleep,
) -> T:
    """Poll ``probe`` until it returns a truthy value.

    Waits grow exponentially from ``initial_interval`` up to ``max_interval``.
    Transient API errors raised by the probe count as "not ready yet".

    Returns:
        The first truthy value returned by the probe.

    Raises:
        StageTimeout: If the timeout or attempt bound is reached first.
    """
    stop = stop_after_delay(policy.timeout_seconds)
    if policy.max_attempts:
        stop = stop | stop_after_attempt(policy.max_attempts)

    started = time.monotonic()
    retryer = Retrying(
        stop=stop,
        wait=wait_exponential(multiplier=policy.initial_interval, max=policy.max_interval),
        retry=retry_if_result(lambda value: not value) | retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        sleep=sleep,
    )

    logger.info(f"Waiting for {description} ({resource_id})")
    try:
        return retryer(probe)
    except RetryError as e:
        raise StageTimeout(
            description=description,
            resource_id=resource_id,
            attempts=e.last_attempt.attempt_number,
            elapsed=time.monotonic() - started,
        ) from None


def call_with_retries(
    fn: Callable[[], T],
    *,
    attempts: int,
    initial_interval: float = 2.0,
    max_interval: float = 30.0,
    sleep: Sleeper = time.sleep,
) -> T:
    """Call ``fn``, retrying transient ``ExternalApiError``s.

    Non-transient errors propagate immediately. After ``attempts`` tries the
    last transient error is re-raised.
    """
    retryer = Retrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=initial_interval, max=max_interval),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    return retryer(fn)
