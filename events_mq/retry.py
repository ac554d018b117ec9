"""Delivery outcome policy for failed handler invocations.

A failed delivery resolves to one of three tagged outcomes:

- ``Ack``: drop the message (used for successes, never for failures here).
- ``Retry(attempt, delay)``: wait ``delay`` seconds then requeue for redelivery.
- ``DeadLetter(reason)``: move the message to the dead-letter queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import islice

import backoff

from .config import Config


@dataclass(frozen=True)
class Ack:
    pass


@dataclass(frozen=True)
class Retry:
    attempt: int
    delay: float


@dataclass(frozen=True)
class DeadLetter:
    reason: str


Outcome = Ack | Retry | DeadLetter


class RetryPolicy:
    def __init__(
        self,
        *,
        max_attempts: int = 5,
        initial_backoff: float = 0.25,
        max_backoff: float = 30.0,
        jitter: bool = True,
    ):
        """
        Args:
            max_attempts: Deliveries allowed (including the first) before dead-lettering.
                Zero or less means retry forever.
            initial_backoff: Delay in seconds before the first redelivery.
            max_backoff: Cap on the delay in seconds.
            jitter: Apply backoff.full_jitter to each delay.
        """
        if initial_backoff < 0 or max_backoff < 0:
            raise ValueError('initial_backoff and max_backoff must be >= 0')
        if initial_backoff > max_backoff:
            raise ValueError('initial_backoff must be <= max_backoff')
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter

    @classmethod
    def from_config(cls, cfg: Config) -> RetryPolicy:
        return cls(
            max_attempts=cfg.max_retry_attempts,
            initial_backoff=cfg.initial_retry_backoff_ms / 1000.0,
            max_backoff=cfg.max_retry_backoff_ms / 1000.0,
        )

    @property
    def unbounded(self) -> bool:
        return self.max_attempts <= 0

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before redelivering after the given 1-based failed attempt."""
        if attempt < 1 or self.initial_backoff == 0:
            return 0.0
        wait = backoff.expo(factor=self.initial_backoff, max_value=self.max_backoff)
        next(wait)  # prime the generator
        value = float(next(islice(wait, attempt - 1, None)))
        return backoff.full_jitter(value) if self.jitter else value

    def decide(self, attempt: int, error: BaseException) -> Outcome:
        if self.unbounded or attempt < self.max_attempts:
            return Retry(attempt=attempt, delay=self.delay_for_attempt(attempt))
        return DeadLetter(reason=f'{type(error).__name__}: {error} (after {attempt} attempts)')
