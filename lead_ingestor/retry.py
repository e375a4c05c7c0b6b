"""Retry policy shared by every store transaction.

Campaign resolution, duplicate prefetch queries and batch writes all go
through :class:`RetryPolicy`, so transient failures are handled identically
at each call site.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Tuple, Type, TypeVar

import psycopg
from psycopg import errors as pg_errors
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    TransientStoreError,
    pg_errors.DeadlockDetected,
    pg_errors.LockNotAvailable,
    pg_errors.SerializationFailure,
    pg_errors.QueryCanceled,
    psycopg.OperationalError,
)


def is_transient_error(exception: BaseException) -> bool:
    """Return True for connection loss, lock timeouts, deadlocks and serialization failures."""

    return isinstance(exception, TRANSIENT_EXCEPTIONS)


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.5
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.initial_delay, max=self.max_delay, jitter=self.jitter
            ),
            retry=retry_if_exception(is_transient_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` until it succeeds, a non-transient error occurs or attempts run out."""

        return self.retrying()(fn, *args, **kwargs)


__all__ = ["RetryPolicy", "TRANSIENT_EXCEPTIONS", "is_transient_error"]
