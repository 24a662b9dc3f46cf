"""Bounded retry and polling helpers driven by explicit delay sequences."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Tuple, Type, TypeVar

from ..errors import TransientUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_READY_DELAYS: Tuple[float, ...] = (2, 4, 8, 16, 32)


@dataclass(frozen=True)
class RetryPolicy:
    """Explicit delay sequence plus an attempt cap.

    Attributes:
        delays: Seconds to sleep before each attempt, in order
        max_attempts: Number of attempts; defaults to len(delays) and may not exceed it
    """

    delays: Tuple[float, ...] = DEFAULT_READY_DELAYS
    max_attempts: Optional[int] = None
    retriable_exceptions: Tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (TransientUnavailable,)
    )

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        object.__setattr__(self, "delays", tuple(float(d) for d in self.delays))
        if not self.delays:
            raise ValueError("delays must contain at least one entry")
        if any(d < 0 for d in self.delays):
            raise ValueError("delays must be non-negative")
        if self.max_attempts is None:
            object.__setattr__(self, "max_attempts", len(self.delays))
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_attempts > len(self.delays):
            raise ValueError(
                f"max_attempts ({self.max_attempts}) exceeds delay sequence length "
                f"({len(self.delays)})"
            )

    @classmethod
    def from_sequence(cls, delays: Sequence[float], max_attempts: Optional[int] = None) -> "RetryPolicy":
        return cls(delays=tuple(delays), max_attempts=max_attempts)

    @property
    def schedule(self) -> Tuple[float, ...]:
        """Delays actually used, truncated to max_attempts."""
        return self.delays[: self.max_attempts]

    @property
    def total_delay(self) -> float:
        return sum(self.schedule)


class RetryExhaustedError(TransientUnavailable):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        attempts: Number of attempts made
        last_exception: The final exception that caused the retry to fail
        total_delay: Total time spent in delays
    """

    def __init__(self, attempts: int, last_exception: BaseException, total_delay: float) -> None:
        self.attempts = attempts
        self.last_exception = last_exception
        self.total_delay = total_delay
        super().__init__(
            f"Retry exhausted after {attempts} attempts over {total_delay:.2f}s. "
            f"Last error: {last_exception}"
        )


def is_present(value: Any) -> bool:
    """Return True for a non-empty polling result.

    None, False and empty sized values (strings, lists, dicts) count as empty.
    """
    if value is None or value is False:
        return False
    if hasattr(value, "__len__"):
        return len(value) > 0
    return True


class RetryWaiter:
    """Poll an eventually-consistent condition along a fixed delay sequence."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        """Initialize the waiter.

        Args:
            sleep: Sleep function, injectable for tests
        """
        self._sleep = sleep

    def wait_for(
        self,
        condition: Callable[[], Optional[T]],
        delays: Optional[Sequence[float] | RetryPolicy] = None,
        description: str = "condition",
    ) -> Optional[T]:
        """Sleep, check, repeat until the condition yields a value.

        Args:
            condition: Zero-argument callable returning a value or something empty
            delays: Delay sequence or RetryPolicy; defaults to 2, 4, 8, 16, 32
            description: Label used in log messages

        Returns:
            The first non-empty value, or None if the sequence is exhausted
        """
        policy = delays if isinstance(delays, RetryPolicy) else RetryPolicy(
            delays=tuple(delays) if delays is not None else DEFAULT_READY_DELAYS
        )
        schedule = policy.schedule

        for attempt, delay in enumerate(schedule, start=1):
            if delay:
                logger.debug(f"Waiting {delay:.1f}s before check {attempt}/{len(schedule)} of {description}")
                self._sleep(delay)
            value = condition()
            if is_present(value):
                logger.debug(f"{description} satisfied on check {attempt}")
                return value

        logger.warning(
            f"{description} not satisfied after {len(schedule)} checks ({policy.total_delay:.0f}s)"
        )
        return None


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    name: str = "operation",
) -> T:
    """Invoke func, retrying retriable exceptions along the policy's schedule.

    The first attempt runs immediately; delay i is slept before retry i.

    Raises:
        RetryExhaustedError: If every attempt raised a retriable exception
        Exception: Any non-retriable exception, unchanged
    """
    last_exception: Optional[BaseException] = None
    total_delay = 0.0
    schedule = policy.schedule

    for attempt in range(policy.max_attempts):
        if attempt > 0:
            delay = schedule[attempt - 1]
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed for {name}: {last_exception}. "
                f"Retrying in {delay:.2f}s..."
            )
            sleep(delay)
            total_delay += delay
        try:
            return func()
        except policy.retriable_exceptions as e:
            last_exception = e

    logger.error(f"All retry attempts exhausted for {name}: {last_exception}")
    raise RetryExhaustedError(policy.max_attempts, last_exception, total_delay)
