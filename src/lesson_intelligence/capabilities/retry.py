"""
Bounded retry with exponential backoff for capability calls.

Classes:
    RetryPolicy: Retry budget and backoff parameters.

Functions:
    call_with_retry: Invoke a callable, retrying transient failures.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from ..utils.error_handlers import get_retry_delay, is_retriable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget and backoff parameters.

    Attributes:
        max_attempts: Total attempts including the first call. Must be >= 1.
        initial_delay_seconds: Delay before the first retry.
        backoff_base: Multiplier applied to the delay per further retry.
        max_delay_seconds: Cap of the delay before jitter.
        jitter: Maximum random fraction added to each delay, in [0, 1].
    """

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    backoff_base: float = 2.0
    max_delay_seconds: float = 30.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("Retry delays must be non-negative")
        if self.backoff_base < 1:
            raise ValueError(f"backoff_base must be >= 1, got {self.backoff_base}")
        if not 0 <= self.jitter <= 1:
            raise ValueError(f"jitter must be in [0, 1], got {self.jitter}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            initial_delay_seconds=float(data.get("initial_delay_seconds", 1.0)),
            backoff_base=float(data.get("backoff_base", 2.0)),
            max_delay_seconds=float(data.get("max_delay_seconds", 30.0)),
            jitter=float(data.get("jitter", 0.1)),
        )

    def delay_for(self, retry_number: int) -> float:
        """Delay in seconds before retry `retry_number` (1-indexed)."""
        return get_retry_delay(
            retry_number,
            base_delay=self.initial_delay_seconds,
            backoff_base=self.backoff_base,
            max_delay=self.max_delay_seconds,
            jitter=self.jitter,
        )


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    description: str = "capability call",
    context: Optional[Dict[str, Any]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `func`, retrying transient failures within the policy budget.

    Only errors accepted by is_retriable_error are retried. Permanent errors
    propagate immediately; a transient error on the last attempt propagates
    as-is.

    Args:
        func: Zero-argument callable performing one capability call.
        policy: Retry budget and backoff parameters.
        description: Human readable name of the call, used in logs.
        context: Extra logging context (job_id, stage, unit_index).
        sleep: Sleep function, replaceable in tests.

    Returns:
        The value returned by `func`.

    Raises:
        Exception: The last error raised by `func`.
    """
    context = context or {}
    attempt = 1
    while True:
        try:
            return func()
        except Exception as e:
            if not is_retriable_error(e):
                raise
            if attempt >= policy.max_attempts:
                logger.warning(
                    f"{description} failed after {attempt} attempts: {e}",
                    extra=context,
                )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                f"{description} failed (attempt {attempt}/{policy.max_attempts}), "
                f"retrying in {delay:.2f}s: {e}",
                extra=context,
            )
            sleep(delay)
            attempt += 1
