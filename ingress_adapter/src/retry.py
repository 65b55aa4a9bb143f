from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from kubernetes.client import ApiException

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attempt ``n`` (1-based) that fails is followed by a wait of
    ``base_delay * multiplier ** (n - 1)`` seconds, capped at ``max_delay``,
    until ``max_attempts`` attempts have been made.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


class RetryExhaustedError(RuntimeError):
    """Raised by :func:`call_with_retry` once every attempt has failed."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"Giving up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_retryable_api_error(exc: Exception) -> bool:
    """Everything is retried except RBAC/auth rejections from the API server."""
    return not (isinstance(exc, ApiException) and exc.status in {401, 403})


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str,
    sleep: Callable[[float], bool],
    retryable: Callable[[Exception], bool] = is_retryable_api_error,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` is exhausted.

    ``sleep`` waits for the given number of seconds and returns ``True`` when
    waiting was interrupted (e.g. by a stop request), in which case the last
    error is re-raised without further attempts.  Errors for which
    ``retryable`` returns ``False`` propagate immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            if not retryable(exc):
                raise
            if attempt >= policy.max_attempts:
                LOGGER.error(
                    "%s failed on attempt %d/%d; giving up",
                    description,
                    attempt,
                    policy.max_attempts,
                )
                raise RetryExhaustedError(attempt, exc) from exc

            delay = policy.delay_for(attempt)
            LOGGER.warning(
                "%s failed on attempt %d/%d (%s); retrying in %.1fs",
                description,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            if sleep(delay):
                raise
