"""Retry policies with fixed or exponential backoff."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often, and how patiently, an operation is retried.

    ``max_attempts=None`` means the operation is retried forever; this is only
    used for queue polling, where the worker has nothing better to do.
    """

    max_attempts: Optional[int] = 3
    backoff_seconds: float = 1.0
    exponential: bool = True
    jitter: bool = False
    max_backoff: float = 60.0

    @classmethod
    def unbounded(cls, backoff_seconds: float) -> "RetryPolicy":
        return cls(max_attempts=None, backoff_seconds=backoff_seconds, exponential=False)

    def allows_retry(self, attempt: int) -> bool:
        """True if another attempt may follow attempt number ``attempt`` (1-based)."""
        return self.max_attempts is None or attempt < self.max_attempts

    def compute_delay(self, attempt: int) -> float:
        if self.exponential:
            delay = self.backoff_seconds * (2 ** (attempt - 1))
        else:
            delay = self.backoff_seconds

        if self.jitter:
            delay = delay * (0.5 + random.random())

        return min(delay, self.max_backoff)

    def call(
        self,
        func: Callable[[], T],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        give_up_on: Tuple[Type[BaseException], ...] = (),
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """
        Call ``func`` until it succeeds or the policy is exhausted.

        The last exception is re-raised once no attempts remain; exceptions in
        ``give_up_on`` are re-raised immediately. ``on_retry`` is invoked with
        (attempt, exception, delay) before every sleep.
        """
        attempt = 1
        while True:
            try:
                return func()
            except retry_on as e:
                if isinstance(e, give_up_on) or not self.allows_retry(attempt):
                    raise

                delay = self.compute_delay(attempt)
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                else:
                    logger.debug(
                        "Retrying after failure",
                        extra={"attempt": attempt, "delay_seconds": delay, "error": str(e)},
                    )
                sleep(delay)
                attempt += 1
