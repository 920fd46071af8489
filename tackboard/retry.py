"""Bounded retry of transactions aborted by a concurrent writer.

Every attempt is classified into a ``Success``, ``Retry`` or ``Fatal``
outcome. tenacity drives the loop on those outcomes; the delay between
attempts is ``backoff_delay``, a pure function of the attempt number.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
)

from .errors import storage_conflict

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True)
class Retry:
    error: BaseException


@dataclass(frozen=True)
class Fatal:
    error: BaseException


Outcome = Success | Retry | Fatal


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Seconds to wait before ``attempt`` (1-based): 0, base, 2*base, 4*base, ..."""
    if attempt <= 1:
        return 0.0
    return base_delay * 2 ** (attempt - 2)


def run_attempt(
    fn: Callable[[], T], is_transient: Callable[[BaseException], bool]
) -> Outcome:
    try:
        return Success(fn())
    except Exception as exc:  # pylint: disable=broad-except
        if is_transient(exc):
            return Retry(exc)
        return Fatal(exc)


def _is_retry(outcome: Outcome) -> bool:
    return isinstance(outcome, Retry)


def _last_outcome(retry_state: RetryCallState) -> Outcome:
    # only called once an attempt has run
    return retry_state.outcome.result()  # type: ignore[union-attr]


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.1
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def _wait(self, retry_state: RetryCallState) -> float:
        # called after attempt N failed, returns the delay before attempt N+1
        return backoff_delay(retry_state.attempt_number + 1, self.base_delay)

    def run(
        self,
        fn: Callable[[], T],
        is_transient: Callable[[BaseException], bool],
    ) -> T:
        """Calls ``fn`` until it succeeds, fails fatally, or attempts run out.

        Raises the fatal error unchanged, or a STORAGE_CONFLICT ``DomainError``
        once every attempt hit a transient conflict.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_result(_is_retry),
            before_sleep=before_sleep_log(_logger, logging.WARNING),
            sleep=self.sleep,
            retry_error_callback=_last_outcome,
        )
        outcome = retrying(run_attempt, fn, is_transient)

        if isinstance(outcome, Success):
            return outcome.value
        if isinstance(outcome, Fatal):
            raise outcome.error
        _logger.error(
            "Giving up after %d attempts on transient conflict: %s",
            self.max_attempts,
            outcome.error,
        )
        raise storage_conflict() from outcome.error
