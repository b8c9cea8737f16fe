"""Request lifecycle events for an optional telemetry hook.

Usage example:
    from secret_store_client.telemetry import LoggingTelemetryHook

    config = ClientConfig(..., telemetry_hook=LoggingTelemetryHook())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import override

from .observability import get_logger
from .protocols import TelemetryHook


@dataclass(frozen=True)
class RequestEvent:
    """One transport attempt. ``status`` is None when no response was received."""

    method: str
    path: str
    status: int | None
    duration_seconds: float
    attempt: int
    error: str | None = None


@dataclass(frozen=True)
class RetryEvent:
    method: str
    path: str
    attempt: int
    delay_seconds: float
    reason: str


@dataclass(frozen=True)
class CacheEvent:
    namespace: str
    hit: bool
    revalidated: bool = False


class LoggingTelemetryHook(TelemetryHook):
    """Writes lifecycle events to the standard logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or get_logger("secret_store_client.telemetry")

    @override
    def on_request(self, event: RequestEvent) -> None:
        self._logger.info(
            "%s %s -> %s in %.3fs (attempt %d)",
            event.method,
            event.path,
            event.status if event.status is not None else event.error,
            event.duration_seconds,
            event.attempt,
        )

    @override
    def on_retry(self, event: RetryEvent) -> None:
        self._logger.info(
            "retry %d for %s %s in %.2fs (%s)",
            event.attempt,
            event.method,
            event.path,
            event.delay_seconds,
            event.reason,
        )

    @override
    def on_cache(self, event: CacheEvent) -> None:
        outcome = "hit" if event.hit else "miss"
        if event.revalidated:
            outcome = f"{outcome} (revalidated)"
        self._logger.info("cache %s in namespace %s", outcome, event.namespace)
