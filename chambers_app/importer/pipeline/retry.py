"""Retry policy and a generic execute-with-retry helper backed by tenacity."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransientBatchError(RuntimeError):
    """A batch-level failure worth retrying (lost connection, lock timeout)."""


TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientBatchError,
    OperationalError,
    InterfaceError,
    DisconnectionError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: wait ``base_delay * multiplier ** (attempt - 1)`` between attempts."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=int(config.get("IMPORTER_RETRY_ATTEMPTS", 3)),
            base_delay=float(config.get("IMPORTER_RETRY_BASE_DELAY", 1.0)),
            multiplier=float(config.get("IMPORTER_RETRY_MULTIPLIER", 2.0)),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay slept after failed ``attempt`` (1-based) before the next one."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


def execute_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``; retry on ``retry_on`` errors and re-raise the last one when exhausted."""

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Transient failure on attempt %s/%s; retrying in %.2fs: %s",
            retry_state.attempt_number,
            policy.max_attempts,
            delay,
            exc,
        )
        if on_retry is not None and exc is not None:
            on_retry(retry_state.attempt_number, exc, delay)

    retryer = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.base_delay, exp_base=policy.multiplier, max=policy.max_delay),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return retryer(operation)
