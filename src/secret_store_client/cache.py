"""In-memory response cache keyed by request fingerprint.

Usage example:
    from secret_store_client.cache import CacheStore, RequestFingerprint

    cache = CacheStore(max_entries=1000, default_ttl_seconds=300)
    fingerprint = RequestFingerprint.for_secret("prod", "db-password")
    cache.insert(fingerprint, b'{"value": "..."}', revalidation_token='"etag-1"')
    entry = cache.lookup(fingerprint)
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import override

from .observability import get_logger
from .protocols import ResponseCache

logger = get_logger("secret_store_client.cache")

DEFAULT_CACHE_MAX_ENTRIES = 10_000
DEFAULT_CACHE_TTL_SECONDS = 300.0


class CachePolicy(StrEnum):
    """How a read interacts with the cache."""

    USE = "use"
    REVALIDATE = "revalidate"
    BYPASS = "bypass"


@dataclass(frozen=True)
class RequestFingerprint:
    """Deterministic identity of a cacheable read."""

    namespace: str
    key: str
    verb: str = "GET"
    params: tuple[tuple[str, str], ...] = ()

    @classmethod
    def for_secret(
        cls,
        namespace: str,
        key: str,
        *,
        verb: str = "GET",
        params: Mapping[str, object] | None = None,
    ) -> RequestFingerprint:
        items = tuple(sorted((str(k), str(v)) for k, v in (params or {}).items() if v is not None))
        return cls(namespace=namespace, key=key, verb=verb.upper(), params=items)

    @property
    def digest(self) -> str:
        canonical = json.dumps(
            [self.namespace, self.key, self.verb, [list(item) for item in self.params]],
            ensure_ascii=False,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _empty_headers() -> dict[str, str]:
    return {}


@dataclass(frozen=True)
class CacheEntry:
    """Cached response body plus its revalidation token."""

    fingerprint: RequestFingerprint
    body: bytes
    revalidation_token: str | None
    inserted_at: float
    ttl_seconds: float
    headers: Mapping[str, str] = field(default_factory=_empty_headers)

    @property
    def namespace(self) -> str:
        return self.fingerprint.namespace

    @property
    def key(self) -> str:
        return self.fingerprint.key

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl_seconds


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache counters since construction or the last clear()."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    insertions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total


class CacheStore(ResponseCache):
    """Thread-safe LRU cache with per-entry TTL.

    Expired entries are never served: they are dropped lazily on lookup and
    swept eagerly (best effort) on insert.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        default_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1.")
        self.max_entries = max_entries
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._insertions = 0
        # Invalidation generations: a response read before an invalidation of its
        # secret (or namespace) must not be inserted after it.
        self._generation = 0
        self._cleared_at = 0
        self._secret_generations: dict[tuple[str, str], int] = {}
        self._namespace_generations: dict[str, int] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @override
    def lookup(self, fingerprint: RequestFingerprint) -> CacheEntry | None:
        with self._lock:
            entry = self._get_fresh(fingerprint.digest)
            if entry is None:
                self._misses += 1
                logger.debug("Cache miss for %s/%s", fingerprint.namespace, fingerprint.key)
                return None
            self._hits += 1
            logger.debug("Cache hit for %s/%s", fingerprint.namespace, fingerprint.key)
            return entry

    @override
    def peek(self, fingerprint: RequestFingerprint) -> CacheEntry | None:
        with self._lock:
            return self._get_fresh(fingerprint.digest)

    @override
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @override
    def insert(
        self,
        fingerprint: RequestFingerprint,
        body: bytes,
        revalidation_token: str | None,
        ttl_seconds: float | None = None,
        headers: Mapping[str, str] | None = None,
        since_generation: int | None = None,
    ) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        with self._lock:
            if since_generation is not None and self._invalidated_since(
                fingerprint, since_generation
            ):
                logger.debug(
                    "Dropped stale response for %s/%s read before an invalidation",
                    fingerprint.namespace,
                    fingerprint.key,
                )
                return
            now = self._clock()
            self._sweep_locked(now)
            digest = fingerprint.digest
            self._entries[digest] = CacheEntry(
                fingerprint=fingerprint,
                body=bytes(body),
                revalidation_token=revalidation_token,
                inserted_at=now,
                ttl_seconds=ttl,
                headers=dict(headers or {}),
            )
            self._entries.move_to_end(digest)
            self._insertions += 1
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1

    @override
    def touch_revalidated(
        self, fingerprint: RequestFingerprint, held: CacheEntry | None = None
    ) -> CacheEntry | None:
        with self._lock:
            entry = self._get_fresh(fingerprint.digest) or held
            if entry is None:
                return None
            self._hits += 1
            return entry

    @override
    def record_miss(self) -> None:
        with self._lock:
            self._misses += 1

    @override
    def invalidate(self, fingerprint: RequestFingerprint) -> None:
        with self._lock:
            self._generation += 1
            self._secret_generations[(fingerprint.namespace, fingerprint.key)] = self._generation
            self._entries.pop(fingerprint.digest, None)

    @override
    def invalidate_secret(self, namespace: str, key: str) -> None:
        with self._lock:
            self._generation += 1
            self._secret_generations[(namespace, key)] = self._generation
            stale = [
                digest
                for digest, entry in self._entries.items()
                if entry.namespace == namespace and entry.key == key
            ]
            for digest in stale:
                del self._entries[digest]

    @override
    def invalidate_namespace(self, namespace: str) -> None:
        with self._lock:
            self._generation += 1
            self._namespace_generations[namespace] = self._generation
            stale = [
                digest for digest, entry in self._entries.items() if entry.namespace == namespace
            ]
            for digest in stale:
                del self._entries[digest]
        if stale:
            logger.debug("Invalidated %d cache entries in namespace %s", len(stale), namespace)

    @override
    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generation += 1
            self._cleared_at = self._generation
            self._secret_generations.clear()
            self._namespace_generations.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._expirations = 0
            self._insertions = 0

    def sweep_expired(self) -> int:
        """Drop every expired entry now; returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    @override
    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
                insertions=self._insertions,
            )

    def _get_fresh(self, digest: str) -> CacheEntry | None:
        entry = self._entries.get(digest)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[digest]
            self._expirations += 1
            self._evictions += 1
            return None
        self._entries.move_to_end(digest)
        return entry

    def _invalidated_since(self, fingerprint: RequestFingerprint, generation: int) -> bool:
        latest = max(
            self._cleared_at,
            self._namespace_generations.get(fingerprint.namespace, 0),
            self._secret_generations.get((fingerprint.namespace, fingerprint.key), 0),
        )
        return latest > generation

    def _sweep_locked(self, now: float) -> int:
        expired = [digest for digest, entry in self._entries.items() if entry.is_expired(now)]
        for digest in expired:
            del self._entries[digest]
        self._expirations += len(expired)
        self._evictions += len(expired)
        return len(expired)


class NullCacheStore(ResponseCache):
    """Cache used when caching is disabled: stores nothing, counts misses."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._misses = 0

    @override
    def lookup(self, fingerprint: RequestFingerprint) -> CacheEntry | None:
        self.record_miss()
        return None

    @override
    def peek(self, fingerprint: RequestFingerprint) -> CacheEntry | None:
        return None

    @override
    def generation(self) -> int:
        return 0

    @override
    def insert(
        self,
        fingerprint: RequestFingerprint,
        body: bytes,
        revalidation_token: str | None,
        ttl_seconds: float | None = None,
        headers: Mapping[str, str] | None = None,
        since_generation: int | None = None,
    ) -> None:
        return None

    @override
    def touch_revalidated(
        self, fingerprint: RequestFingerprint, held: CacheEntry | None = None
    ) -> CacheEntry | None:
        return held

    @override
    def record_miss(self) -> None:
        with self._lock:
            self._misses += 1

    @override
    def invalidate(self, fingerprint: RequestFingerprint) -> None:
        return None

    @override
    def invalidate_secret(self, namespace: str, key: str) -> None:
        return None

    @override
    def invalidate_namespace(self, namespace: str) -> None:
        return None

    @override
    def clear(self) -> None:
        with self._lock:
            self._misses = 0

    @override
    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(misses=self._misses)
