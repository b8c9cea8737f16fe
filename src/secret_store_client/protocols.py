"""Protocol definitions for dependency injection.

These protocols define the abstract interfaces the request pipeline depends on,
enabling isolated unit testing with fake implementations.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .auth import AuthHeader, AuthMode
    from .cache import CacheEntry, CacheStats, RequestFingerprint
    from .credentials import Credential
    from .models import ExportFormat
    from .resilience import FailureClass
    from .telemetry import CacheEvent, RequestEvent, RetryEvent
    from .transport import TransportRequest, TransportResponse


@runtime_checkable
class Transport(Protocol):
    """Abstract wire transport (HTTP/TLS stack)."""

    def send(self, request: TransportRequest, *, timeout_seconds: float) -> TransportResponse:
        """Send one request and return the raw response.

        Raises:
            NetworkError: On connection, DNS or TLS failures.
            RequestTimeoutError: When the attempt exceeds ``timeout_seconds``.
        """
        ...

    def close(self) -> None:
        """Release pooled connections."""
        ...


@runtime_checkable
class TokenSource(Protocol):
    """External source of dynamic bearer tokens."""

    def get_token(self) -> Credential | str:
        """Return the current token. Should be cheap (typically cached)."""
        ...

    def refresh_token(self) -> None:
        """Obtain a new token from the upstream identity service."""
        ...


@runtime_checkable
class AuthProvider(Protocol):
    """Produces the authentication header for outgoing requests."""

    mode: AuthMode

    @property
    def supports_refresh(self) -> bool:
        """Whether :meth:`refresh` can obtain a new credential."""
        ...

    def authorize(self) -> AuthHeader:
        """Return the header to attach to the next request."""
        ...

    def refresh(self, seen_generation: int) -> None:
        """Replace the credential after the server rejected ``seen_generation``."""
        ...


@runtime_checkable
class ResponseCache(Protocol):
    """Bounded, TTL-aware store of response bodies keyed by request fingerprint."""

    def lookup(self, fingerprint: RequestFingerprint) -> CacheEntry | None:
        """Return a fresh entry (recording a hit) or None (recording a miss)."""
        ...

    def peek(self, fingerprint: RequestFingerprint) -> CacheEntry | None:
        """Return a fresh entry without touching statistics."""
        ...

    def generation(self) -> int:
        """Return the current invalidation generation, to pass back to :meth:`insert`."""
        ...

    def insert(
        self,
        fingerprint: RequestFingerprint,
        body: bytes,
        revalidation_token: str | None,
        ttl_seconds: float | None = None,
        headers: Mapping[str, str] | None = None,
        since_generation: int | None = None,
    ) -> None:
        """Insert or replace an entry, resetting its TTL clock.

        When ``since_generation`` is given and the secret (or its namespace) was
        invalidated after that generation, the body is stale and is not stored.
        """
        ...

    def touch_revalidated(
        self, fingerprint: RequestFingerprint, held: CacheEntry | None = None
    ) -> CacheEntry | None:
        """Record a server-confirmed (304) hit without resetting the TTL clock.

        ``held`` is the entry the conditional request was built from; it is
        served when the stored entry expired while the request was in flight.
        """
        ...

    def record_miss(self) -> None:
        """Record a miss that was detected outside :meth:`lookup`."""
        ...

    def invalidate(self, fingerprint: RequestFingerprint) -> None:
        """Drop one entry."""
        ...

    def invalidate_secret(self, namespace: str, key: str) -> None:
        """Drop every entry derived from ``namespace``/``key``."""
        ...

    def invalidate_namespace(self, namespace: str) -> None:
        """Drop every entry in ``namespace``."""
        ...

    def clear(self) -> None:
        """Drop every entry and reset statistics."""
        ...

    def stats(self) -> CacheStats:
        """Return a snapshot of the cache counters."""
        ...


@runtime_checkable
class RetryPolicy(Protocol):
    """Decides whether and when a failed attempt is retried."""

    max_retries: int
    retry_statuses: tuple[int, ...]

    def should_retry(
        self,
        attempt: int,
        failure: FailureClass,
        elapsed_seconds: float,
        retry_after: int | None = None,
    ) -> float | None:
        """Return the delay before the next attempt, or None to stop."""
        ...

    def call_deadline(self, per_attempt_timeout_seconds: float) -> float:
        """Return the overall deadline for one logical call."""
        ...


@runtime_checkable
class TelemetryHook(Protocol):
    """Receives request lifecycle events. Export backends live outside this package."""

    def on_request(self, event: RequestEvent) -> None:
        """Called after every transport attempt."""
        ...

    def on_retry(self, event: RetryEvent) -> None:
        """Called before sleeping for a retry."""
        ...

    def on_cache(self, event: CacheEvent) -> None:
        """Called on cache hits and misses."""
        ...


@runtime_checkable
class ExportRenderer(Protocol):
    """Renders a fetched secret set into export text (dotenv, shell, ...)."""

    def __call__(
        self,
        namespace: str,
        secrets: Mapping[str, str],
        export_format: ExportFormat,
    ) -> str:
        """Return the rendered export document."""
        ...
