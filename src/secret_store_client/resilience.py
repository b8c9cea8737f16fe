"""Retry policy and per-call retry state.

Usage example:
    from secret_store_client.resilience import FailureClass, RetryPolicy

    policy = RetryPolicy(max_retries=3, backoff_base_seconds=0.1)
    delay = policy.should_retry(attempt=0, failure=FailureClass.NETWORK, elapsed_seconds=0.2)
    deadline = policy.call_deadline(per_attempt_timeout_seconds=30.0)
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import StrEnum
from typing import override

from .exceptions import (
    AuthenticationError,
    HttpError,
    NetworkError,
    RequestTimeoutError,
    SecretStoreError,
)
from .protocols import RetryPolicy as RetryPolicyProtocol

DEFAULT_MAX_RETRIES = 3
DEFAULT_DEADLINE_BUFFER_SECONDS = 30.0


class FailureClass(StrEnum):
    """Classification of one failed attempt."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    AUTH_REJECTED = "auth_rejected"
    CLIENT_ERROR = "client_error"
    SERIALIZATION = "serialization"
    OTHER = "other"


def classify_status(status: int) -> FailureClass:
    if status in (401, 403):
        return FailureClass.AUTH_REJECTED
    if status == 429:
        return FailureClass.RATE_LIMITED
    if status >= 500:
        return FailureClass.SERVER_ERROR
    return FailureClass.CLIENT_ERROR


def classify_error(error: SecretStoreError) -> FailureClass:
    """Map a client error onto the failure class the retry policy understands."""
    if isinstance(error, RequestTimeoutError):
        return FailureClass.TIMEOUT
    if isinstance(error, NetworkError):
        return FailureClass.NETWORK
    if isinstance(error, AuthenticationError):
        return FailureClass.AUTH_REJECTED
    if isinstance(error, HttpError):
        return classify_status(error.status)
    return FailureClass.OTHER


class RetryPhase(StrEnum):
    ATTEMPTING = "attempting"
    BACKOFF = "backoff"
    EXHAUSTED = "exhausted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RetryState:
    """State of one logical call; discarded once the call finishes."""

    started_at: float
    attempt: int = 0
    elapsed_seconds: float = 0.0
    last_failure: FailureClass | None = None
    phase: RetryPhase = RetryPhase.ATTEMPTING
    backoff_until: float | None = None

    def record_failure(self, failure: FailureClass, now: float) -> None:
        self.last_failure = failure
        self.elapsed_seconds = now - self.started_at

    def enter_backoff(self, now: float, delay: float) -> None:
        self.phase = RetryPhase.BACKOFF
        self.backoff_until = now + delay

    def next_attempt(self) -> None:
        self.attempt += 1
        self.phase = RetryPhase.ATTEMPTING
        self.backoff_until = None

    def succeed(self, now: float) -> None:
        self.phase = RetryPhase.SUCCEEDED
        self.elapsed_seconds = now - self.started_at

    def exhaust(self) -> None:
        self.phase = RetryPhase.EXHAUSTED

    def fail(self) -> None:
        self.phase = RetryPhase.FAILED


def _default_retryable() -> frozenset[FailureClass]:
    return frozenset(
        {
            FailureClass.NETWORK,
            FailureClass.TIMEOUT,
            FailureClass.RATE_LIMITED,
            FailureClass.SERVER_ERROR,
        }
    )


@dataclass
class RetryPolicy(RetryPolicyProtocol):
    """Exponential backoff with full jitter for transient failures."""

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base_seconds: float = 0.1
    max_backoff_seconds: float = 10.0
    deadline_buffer_seconds: float = DEFAULT_DEADLINE_BUFFER_SECONDS
    retry_statuses: tuple[int, ...] = (429, 500, 502, 503, 504)
    retryable_failures: frozenset[FailureClass] = field(default_factory=_default_retryable)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def compute_backoff(self, attempt: int, retry_after: int | None = None) -> float:
        """Full jitter: uniform(0, min(cap, base * 2**attempt)), floored by Retry-After."""
        ceiling = min(self.max_backoff_seconds, self.backoff_base_seconds * (2**attempt))
        delay = self.rng.uniform(0.0, ceiling) if ceiling > 0 else 0.0
        if retry_after is not None:
            delay = max(delay, min(float(retry_after), self.max_backoff_seconds))
        return float(delay)

    @override
    def should_retry(
        self,
        attempt: int,
        failure: FailureClass,
        elapsed_seconds: float,
        retry_after: int | None = None,
    ) -> float | None:
        _ = elapsed_seconds
        if attempt >= self.max_retries:
            return None
        if failure not in self.retryable_failures:
            return None
        return self.compute_backoff(attempt, retry_after)

    @override
    def call_deadline(self, per_attempt_timeout_seconds: float) -> float:
        """Overall deadline: (max_retries + 1) * timeout + buffer."""
        return (self.max_retries + 1) * per_attempt_timeout_seconds + self.deadline_buffer_seconds
