"""Retry/backoff decisions for failed installment charges"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from bnpl_scheduler.domain.models import InstallmentStatus

DEFAULT_BACKOFF = (timedelta(hours=1), timedelta(hours=4), timedelta(hours=24))

RETRYABLE_CODES = frozenset(
    {
        "card_declined",
        "insufficient_funds",
        "processing_error",
        "timeout",
        "network_error",
        "gateway_unavailable",
        "rate_limited",
    }
)


class FailureKind(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


def classify_failure(code: Optional[str]) -> FailureKind:
    """Declines and transient errors are retryable; anything else (missing instrument etc.) is fatal"""
    if code and code in RETRYABLE_CODES:
        return FailureKind.RETRYABLE
    return FailureKind.FATAL


@dataclass
class RetryDecision:
    """Next state of an installment after a failed attempt"""

    status: InstallmentStatus
    retry_count: int
    next_retry_at: Optional[datetime]

    @property
    def is_terminal(self) -> bool:
        return self.status == InstallmentStatus.FAILED


class RetryPolicy:
    """
    Exponential backoff with jitter and a bounded attempt budget.

    `retry_count` is the number of retries already scheduled. A retryable
    failure at count r < max_retries schedules retry r+1 after
    backoff[min(r, len-1)]; at r >= max_retries the installment fails for good.
    Fatal failures fail immediately and leave retry_count untouched.
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff: Sequence[timedelta] = DEFAULT_BACKOFF,
        jitter_ratio: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        if not backoff:
            raise ValueError("Backoff table cannot be empty")
        self.max_retries = max_retries
        self.backoff = tuple(backoff)
        self.jitter_ratio = jitter_ratio
        self.rng = rng or random.Random()

    @classmethod
    def from_hours(cls, hours: Sequence[float], **kwargs) -> "RetryPolicy":
        return cls(backoff=[timedelta(hours=h) for h in hours], **kwargs)

    def base_delay(self, retry_count: int) -> timedelta:
        return self.backoff[min(retry_count, len(self.backoff) - 1)]

    def jittered_delay(self, retry_count: int) -> timedelta:
        base = self.base_delay(retry_count)
        factor = self.rng.uniform(1 - self.jitter_ratio, 1 + self.jitter_ratio)
        return timedelta(seconds=base.total_seconds() * factor)

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def decide(self, retry_count: int, kind: FailureKind, now: datetime) -> RetryDecision:
        if kind == FailureKind.FATAL or not self.can_retry(retry_count):
            return RetryDecision(status=InstallmentStatus.FAILED, retry_count=retry_count, next_retry_at=None)

        return RetryDecision(
            status=InstallmentStatus.SCHEDULED,
            retry_count=retry_count + 1,
            next_retry_at=now + self.jittered_delay(retry_count),
        )
