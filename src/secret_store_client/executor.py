"""Request execution pipeline: cache, auth, idempotency, retry and deadline.

Usage example:
    from secret_store_client.auth import select_auth
    from secret_store_client.cache import CacheStore, RequestFingerprint
    from secret_store_client.executor import CacheDirective, RequestExecutor
    from secret_store_client.transport import RequestsTransport

    executor = RequestExecutor(
        base_url="https://secrets.example.com",
        transport=RequestsTransport(),
        auth=select_auth(api_key="svc-key"),
        cache=CacheStore(),
    )
    response = executor.execute(
        "GET",
        "/v2/prod/secrets/db-password",
        cache=CacheDirective(RequestFingerprint.for_secret("prod", "db-password")),
    )
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from urllib.parse import urlencode

from .cache import CacheEntry, CachePolicy, RequestFingerprint
from .exceptions import (
    AuthenticationError,
    BodyNotReplayableError,
    HttpError,
    NetworkError,
    NotModifiedError,
    RequestTimeoutError,
    SerializationError,
)
from .observability import get_logger
from .protocols import AuthProvider, ResponseCache, RetryPolicy, TelemetryHook, Transport
from .resilience import FailureClass, RetryPolicy as RetryPolicyImpl
from .resilience import RetryState, classify_error, classify_status
from .telemetry import CacheEvent, RequestEvent, RetryEvent
from .transport import (
    REQUEST_ID_HEADER,
    RequestBody,
    TransportRequest,
    TransportResponse,
    is_replayable,
    parse_retry_after,
)

logger = get_logger("secret_store_client.executor")

IDEMPOTENCY_HEADER = "Idempotency-Key"
WRITE_VERBS = frozenset({"PUT", "POST", "DELETE", "PATCH"})
DEFAULT_TIMEOUT_SECONDS = 30.0

_CACHED_HEADERS = ("ETag", "Last-Modified", "Content-Type")


def generate_request_id() -> str:
    return f"sdk-{uuid.uuid4()}"


def generate_idempotency_key() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class CacheDirective:
    """How one read interacts with the response cache."""

    fingerprint: RequestFingerprint
    policy: CachePolicy = CachePolicy.USE
    if_none_match: str | None = None
    if_modified_since: str | None = None


def _empty_headers() -> dict[str, str]:
    return {}


@dataclass(frozen=True)
class ApiResponse:
    """Successful response, from the network or from the cache."""

    status: int
    body: bytes
    headers: Mapping[str, str] = field(default_factory=_empty_headers)
    request_id: str | None = None
    from_cache: bool = False
    revalidated: bool = False

    @property
    def etag(self) -> str | None:
        return _header(self.headers, "ETag")

    @property
    def last_modified(self) -> str | None:
        return _header(self.headers, "Last-Modified")

    def json(self) -> object:
        try:
            return json.loads(self.body)
        except (UnicodeDecodeError, ValueError) as exc:
            raise SerializationError.for_response("JSON body", self.request_id) from exc

    def text(self) -> str:
        try:
            return self.body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SerializationError.for_response("text body", self.request_id) from exc


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _error_from_response(response: TransportResponse) -> HttpError:
    request_id = response.request_id
    server_category: str | None = None
    message = f"HTTP error {response.status}"
    try:
        payload = json.loads(response.body) if response.body else None
    except (UnicodeDecodeError, ValueError):
        payload = None
    if isinstance(payload, dict):
        category = payload.get("error")
        text = payload.get("message")
        if isinstance(category, str):
            server_category = category
        if isinstance(text, str) and text:
            message = text
    error_cls = AuthenticationError if response.status in (401, 403) else HttpError
    return error_cls(
        response.status,
        message,
        server_category=server_category,
        request_id=request_id,
    )


def _encode_params(params: Mapping[str, object] | None) -> str:
    if not params:
        return ""
    pairs: list[tuple[str, str]] = []
    for name, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return urlencode(pairs)


class RequestExecutor:
    """Executes one logical operation with caching, auth refresh and retries.

    - Fresh cache hits return without network I/O.
    - Every write carries the ``Idempotency-Key`` header; the key is reused for
      every retry of the same call.
    - Writes invalidate the affected cache entries before returning, whether or
      not the server confirmed the write.
    - 401 with a refreshable credential triggers one single-flight refresh and
      one extra attempt outside the retry budget.
    - Retryable failures back off with full jitter until the policy gives up or
      the call deadline passes.
    """

    def __init__(
        self,
        *,
        base_url: str,
        transport: Transport,
        auth: AuthProvider,
        cache: ResponseCache,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str | None = None,
        telemetry: TelemetryHook | None = None,
        store_on_bypass: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.auth = auth
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicyImpl()
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.telemetry = telemetry
        self.store_on_bypass = store_on_bypass
        self._sleep = sleep
        self._clock = clock

    @property
    def call_deadline_seconds(self) -> float:
        return self.retry_policy.call_deadline(self.timeout_seconds)

    def execute(
        self,
        verb: str,
        path: str,
        *,
        params: Mapping[str, object] | None = None,
        payload: object | None = None,
        body: RequestBody = None,
        idempotency_key: str | None = None,
        cache: CacheDirective | None = None,
        invalidates: Iterable[tuple[str, str]] = (),
        invalidate_namespace: str | None = None,
        retry: bool = True,
    ) -> ApiResponse:
        """Run one logical call.

        Args:
            verb: HTTP method.
            path: Path below the base URL (already percent-encoded).
            params: Query parameters; None values are dropped.
            payload: JSON document to send. Mutually exclusive with ``body``.
            body: Raw body; bytes are replayable, iterators/streams are one-shot.
            idempotency_key: Caller token for writes; generated when omitted.
            cache: Cache directive for reads.
            invalidates: (namespace, key) pairs a write makes stale.
            invalidate_namespace: Namespace a write makes stale as a whole.
            retry: False runs a single attempt (health checks).

        Raises:
            HttpError: Terminal non-success status.
            AuthenticationError: Credential rejected (after one refresh if possible).
            NetworkError: Transport failure after retries, or token refresh failure.
            RequestTimeoutError: Call deadline exceeded.
            BodyNotReplayableError: A retry would need a consumed one-shot body.
            NotModifiedError: 304 with no cached entry to serve.
        """
        verb = verb.upper()
        is_write = verb in WRITE_VERBS
        invalidated = tuple(invalidates)

        headers: dict[str, str] = {
            "Accept": "application/json",
            REQUEST_ID_HEADER: generate_request_id(),
        }
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        if payload is not None:
            if body is not None:
                raise ValueError("payload and body are mutually exclusive.")
            body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if is_write:
            headers[IDEMPOTENCY_HEADER] = idempotency_key or generate_idempotency_key()

        directive = cache if not is_write else None
        revalidating: CacheEntry | None = None
        if directive is not None:
            if directive.policy is CachePolicy.USE:
                entry = self.cache.lookup(directive.fingerprint)
                self._emit_cache(directive.fingerprint, hit=entry is not None)
                if entry is not None:
                    return self._from_entry(entry)
            elif directive.policy is CachePolicy.REVALIDATE:
                revalidating = self.cache.peek(directive.fingerprint)
                if revalidating is not None and revalidating.revalidation_token:
                    headers["If-None-Match"] = revalidating.revalidation_token
            if directive.if_none_match:
                headers["If-None-Match"] = directive.if_none_match
            if directive.if_modified_since:
                headers["If-Modified-Since"] = directive.if_modified_since

        url = self.base_url + path
        query = _encode_params(params)
        if query:
            url = f"{url}?{query}"

        generation = self.cache.generation() if directive is not None else None
        if is_write:
            self._invalidate(invalidated, invalidate_namespace)
        try:
            response = self._run(verb, path, url, headers, body, retry=retry)
        finally:
            if is_write:
                self._invalidate(invalidated, invalidate_namespace)

        if directive is None:
            return self._to_api_response(response)
        return self._complete_read(directive, response, revalidating, generation)

    def _complete_read(
        self,
        directive: CacheDirective,
        response: TransportResponse,
        revalidating: CacheEntry | None,
        generation: int | None = None,
    ) -> ApiResponse:
        fingerprint = directive.fingerprint
        if response.status == 304:
            entry = self.cache.touch_revalidated(fingerprint, revalidating)
            if entry is None:
                raise NotModifiedError(fingerprint.namespace, fingerprint.key, response.request_id)
            self._emit_cache(fingerprint, hit=True, revalidated=True)
            logger.debug(
                "Revalidated cache entry for %s/%s", fingerprint.namespace, fingerprint.key
            )
            return self._from_entry(entry, revalidated=True, request_id=response.request_id)

        if directive.policy is CachePolicy.REVALIDATE:
            self.cache.record_miss()
            self._emit_cache(fingerprint, hit=False, revalidated=revalidating is not None)

        if response.status == 200 and (
            directive.policy is not CachePolicy.BYPASS or self.store_on_bypass
        ):
            kept = {
                name: value
                for name in _CACHED_HEADERS
                if (value := response.header(name)) is not None
            }
            self.cache.insert(
                fingerprint,
                response.body,
                response.etag,
                headers=kept,
                since_generation=generation,
            )
        return self._to_api_response(response)

    def _run(
        self,
        verb: str,
        path: str,
        url: str,
        headers: Mapping[str, str],
        body: RequestBody,
        *,
        retry: bool,
    ) -> TransportResponse:
        deadline_seconds = self.call_deadline_seconds
        state = RetryState(started_at=self._clock())
        deadline = state.started_at + deadline_seconds
        refreshed = False
        sent_once = False

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                state.fail()
                raise RequestTimeoutError(deadline_seconds)
            if sent_once and not is_replayable(body):
                state.fail()
                raise BodyNotReplayableError(verb, path)

            auth_header = self.auth.authorize()
            name, value = auth_header.as_pair()
            request = TransportRequest(
                method=verb,
                url=url,
                headers={**headers, name: value},
                body=body,
            )
            attempt_timeout = min(self.timeout_seconds, remaining)
            started = self._clock()
            sent_once = True
            retry_after: int | None = None
            try:
                response = self.transport.send(request, timeout_seconds=attempt_timeout)
            except (NetworkError, RequestTimeoutError) as exc:
                self._emit_request(verb, path, None, started, state.attempt, type(exc).__name__)
                error: Exception = exc
                failure = classify_error(exc)
            else:
                self._emit_request(verb, path, response.status, started, state.attempt)
                if response.ok or response.status == 304:
                    state.succeed(self._clock())
                    return response

                if response.status == 401 and self.auth.supports_refresh and not refreshed:
                    refreshed = True
                    logger.debug("Credential rejected for %s %s; refreshing token", verb, path)
                    # Raises TokenRefreshError (a NetworkError) to the caller.
                    self.auth.refresh(auth_header.generation)
                    continue

                error = _error_from_response(response)
                failure = classify_status(response.status)
                if response.status not in self.retry_policy.retry_statuses:
                    state.fail()
                    raise error
                retry_after = parse_retry_after(response.headers)

            now = self._clock()
            state.record_failure(failure, now)
            if not retry:
                state.fail()
                raise error
            delay = self.retry_policy.should_retry(
                state.attempt, failure, state.elapsed_seconds, retry_after
            )
            if delay is None:
                state.exhaust()
                logger.debug(
                    "Giving up on %s %s after %d attempt(s): %s",
                    verb,
                    path,
                    state.attempt + 1,
                    failure.value,
                )
                raise error
            if not is_replayable(body):
                state.fail()
                raise BodyNotReplayableError(verb, path) from error
            if now + delay >= deadline:
                state.fail()
                raise RequestTimeoutError(deadline_seconds) from error

            state.enter_backoff(now, delay)
            self._emit_retry(verb, path, state.attempt + 1, delay, failure)
            logger.debug(
                "Retrying %s %s in %.2fs after %s (attempt %d)",
                verb,
                path,
                delay,
                failure.value,
                state.attempt + 1,
            )
            self._sleep(delay)
            state.next_attempt()

    def _invalidate(self, pairs: tuple[tuple[str, str], ...], namespace: str | None) -> None:
        for ns, key in pairs:
            self.cache.invalidate_secret(ns, key)
        if namespace is not None:
            self.cache.invalidate_namespace(namespace)

    def _from_entry(
        self,
        entry: CacheEntry,
        *,
        revalidated: bool = False,
        request_id: str | None = None,
    ) -> ApiResponse:
        return ApiResponse(
            status=200,
            body=entry.body,
            headers=dict(entry.headers),
            request_id=request_id,
            from_cache=True,
            revalidated=revalidated,
        )

    def _to_api_response(self, response: TransportResponse) -> ApiResponse:
        return ApiResponse(
            status=response.status,
            body=response.body,
            headers=response.headers,
            request_id=response.request_id,
        )

    def _emit_request(
        self,
        verb: str,
        path: str,
        status: int | None,
        started: float,
        attempt: int,
        error: str | None = None,
    ) -> None:
        if self.telemetry is None:
            return
        self._notify(
            self.telemetry.on_request,
            RequestEvent(
                method=verb,
                path=path,
                status=status,
                duration_seconds=max(0.0, self._clock() - started),
                attempt=attempt,
                error=error,
            ),
        )

    def _emit_retry(
        self, verb: str, path: str, attempt: int, delay: float, failure: FailureClass
    ) -> None:
        if self.telemetry is None:
            return
        self._notify(
            self.telemetry.on_retry,
            RetryEvent(
                method=verb,
                path=path,
                attempt=attempt,
                delay_seconds=delay,
                reason=failure.value,
            ),
        )

    def _emit_cache(
        self, fingerprint: RequestFingerprint, *, hit: bool, revalidated: bool = False
    ) -> None:
        if self.telemetry is None:
            return
        self._notify(
            self.telemetry.on_cache,
            CacheEvent(namespace=fingerprint.namespace, hit=hit, revalidated=revalidated),
        )

    def _notify[E](self, callback: Callable[[E], None], event: E) -> None:
        # A failing hook is logged and never fails the call it observes.
        try:
            callback(event)
        except Exception:
            logger.exception(
                "Telemetry hook %s raised on %s",
                type(self.telemetry).__name__,
                type(event).__name__,
            )
