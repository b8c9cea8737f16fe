"""Tests for the request execution pipeline."""

from __future__ import annotations

import logging
import random
from typing import override

import pytest

from secret_store_client.auth import ApiKeyAuth, DynamicTokenAuth
from secret_store_client.cache import CachePolicy, CacheStore, RequestFingerprint
from secret_store_client.exceptions import (
    AuthenticationError,
    BodyNotReplayableError,
    HttpError,
    NetworkError,
    NotModifiedError,
    RequestTimeoutError,
    SerializationError,
    TokenRefreshError,
)
from secret_store_client.executor import (
    IDEMPOTENCY_HEADER,
    CacheDirective,
    RequestExecutor,
)
from secret_store_client.protocols import AuthProvider
from secret_store_client.resilience import RetryPolicy
from secret_store_client.telemetry import RequestEvent
from secret_store_client.transport import TransportRequest
from tests.fakes import (
    FakeClock,
    FakeTokenSource,
    RecordingTelemetryHook,
    ScriptedTransport,
    json_response,
)
from tests.support.logs import capture_records

BASE_URL = "https://secrets.test"
SECRET_PATH = "/v2/ns/secrets/k"


def _executor(
    transport: ScriptedTransport,
    clock: FakeClock,
    *,
    auth: AuthProvider | None = None,
    cache: CacheStore | None = None,
    max_retries: int = 3,
    timeout_seconds: float = 1.0,
    deadline_buffer_seconds: float = 30.0,
    telemetry: RecordingTelemetryHook | None = None,
    store_on_bypass: bool = False,
) -> RequestExecutor:
    return RequestExecutor(
        base_url=BASE_URL + "/",
        transport=transport,
        auth=auth or ApiKeyAuth("svc-key"),
        cache=cache if cache is not None else CacheStore(clock=clock),
        retry_policy=RetryPolicy(
            max_retries=max_retries,
            backoff_base_seconds=0.1,
            max_backoff_seconds=10.0,
            deadline_buffer_seconds=deadline_buffer_seconds,
            rng=random.Random(3),
        ),
        timeout_seconds=timeout_seconds,
        user_agent="secret-store-client-python/test",
        telemetry=telemetry,
        store_on_bypass=store_on_bypass,
        sleep=clock.sleep,
        clock=clock,
    )


def _directive(policy: CachePolicy = CachePolicy.USE) -> CacheDirective:
    return CacheDirective(RequestFingerprint.for_secret("ns", "k"), policy)


def _secret_body(value: str = "v1") -> bytes:
    return f'{{"value": "{value}", "version": 1, "updated_at": "2026-01-01T00:00:00Z"}}'.encode()


class TestRequestShape:
    """Headers and URLs attached to every request."""

    def test_read_headers(self) -> None:
        transport = ScriptedTransport.of(json_response(200))
        _executor(transport, FakeClock()).execute("GET", SECRET_PATH)

        request = transport.requests[0]
        assert request.url == BASE_URL + SECRET_PATH
        assert request.headers["X-API-Key"] == "svc-key"
        assert request.headers["Accept"] == "application/json"
        assert request.headers["User-Agent"] == "secret-store-client-python/test"
        assert request.headers["X-Request-ID"].startswith("sdk-")
        assert IDEMPOTENCY_HEADER not in request.headers

    def test_query_params_drop_none_and_encode_bools(self) -> None:
        transport = ScriptedTransport.of(json_response(200))
        _executor(transport, FakeClock()).execute(
            "GET",
            "/v2/audit",
            params={"namespace": "prod ns", "limit": 5, "actor": None, "success": False},
        )
        assert transport.requests[0].url == (
            BASE_URL + "/v2/audit?namespace=prod+ns&limit=5&success=false"
        )

    def test_payload_is_json_encoded(self) -> None:
        transport = ScriptedTransport.of(json_response(201))
        _executor(transport, FakeClock()).execute("PUT", SECRET_PATH, payload={"value": "x"})

        request = transport.requests[0]
        assert request.headers["Content-Type"] == "application/json"
        assert transport.sent_bodies[0] == b'{"value":"x"}'

    def test_payload_and_body_are_exclusive(self) -> None:
        with pytest.raises(ValueError):
            _executor(ScriptedTransport(), FakeClock()).execute(
                "PUT", SECRET_PATH, payload={}, body=b"{}"
            )


class TestCaching:
    """Cache consultation, revalidation and invalidation."""

    def test_fresh_hit_makes_no_network_call(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)
        transport = ScriptedTransport.of(json_response(200, _secret_body(), ETag='"v1"'))
        executor = _executor(transport, clock, cache=cache)

        first = executor.execute("GET", SECRET_PATH, cache=_directive())
        second = executor.execute("GET", SECRET_PATH, cache=_directive())

        assert len(transport.requests) == 1
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.body == first.body
        assert second.etag == '"v1"'
        stats = cache.stats()
        assert (stats.hits, stats.misses) == (1, 1)

    def test_not_modified_serves_cached_body_and_counts_hit(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)
        transport = ScriptedTransport.of(
            json_response(200, _secret_body(), ETag='"v1"'),
            json_response(304, b"", ETag='"v1"', X_Request_ID="req-2"),
        )
        executor = _executor(transport, clock, cache=cache)
        executor.execute("GET", SECRET_PATH, cache=_directive())

        response = executor.execute("GET", SECRET_PATH, cache=_directive(CachePolicy.REVALIDATE))

        assert transport.requests[1].headers["If-None-Match"] == '"v1"'
        assert response.status == 200
        assert response.body == _secret_body()
        assert response.revalidated is True
        assert response.request_id == "req-2"
        stats = cache.stats()
        assert (stats.hits, stats.misses) == (1, 1)

    def test_revalidation_does_not_extend_ttl(self) -> None:
        clock = FakeClock()
        cache = CacheStore(default_ttl_seconds=10, clock=clock)
        transport = ScriptedTransport.of(
            json_response(200, _secret_body(), ETag='"v1"'),
            json_response(304, b""),
            json_response(200, _secret_body(), ETag='"v1"'),
        )
        executor = _executor(transport, clock, cache=cache)
        executor.execute("GET", SECRET_PATH, cache=_directive())
        clock.advance(6)
        executor.execute("GET", SECRET_PATH, cache=_directive(CachePolicy.REVALIDATE))
        clock.advance(5)

        response = executor.execute("GET", SECRET_PATH, cache=_directive())

        assert response.from_cache is False
        assert len(transport.requests) == 3

    def test_not_modified_without_entry_raises(self) -> None:
        transport = ScriptedTransport.of(json_response(304, b""))
        executor = _executor(transport, FakeClock())
        directive = CacheDirective(
            RequestFingerprint.for_secret("ns", "k"), CachePolicy.REVALIDATE, '"stale"'
        )

        with pytest.raises(NotModifiedError):
            executor.execute("GET", SECRET_PATH, cache=directive)

        assert transport.requests[0].headers["If-None-Match"] == '"stale"'

    def test_revalidate_with_new_body_replaces_entry_and_counts_miss(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)
        transport = ScriptedTransport.of(
            json_response(200, _secret_body("v1"), ETag='"v1"'),
            json_response(200, _secret_body("v2"), ETag='"v2"'),
        )
        executor = _executor(transport, clock, cache=cache)
        executor.execute("GET", SECRET_PATH, cache=_directive())

        executor.execute("GET", SECRET_PATH, cache=_directive(CachePolicy.REVALIDATE))

        entry = cache.peek(RequestFingerprint.for_secret("ns", "k"))
        assert entry is not None
        assert entry.body == _secret_body("v2")
        assert entry.revalidation_token == '"v2"'
        assert cache.stats().misses == 2

    def test_bypass_skips_cache_and_does_not_store_by_default(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)
        transport = ScriptedTransport.of(json_response(200, _secret_body()))
        executor = _executor(transport, clock, cache=cache)

        executor.execute("GET", SECRET_PATH, cache=_directive(CachePolicy.BYPASS))

        assert len(cache) == 0
        assert cache.stats().misses == 0

    def test_bypass_stores_when_configured(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)
        transport = ScriptedTransport.of(json_response(200, _secret_body()))
        executor = _executor(transport, clock, cache=cache, store_on_bypass=True)

        executor.execute("GET", SECRET_PATH, cache=_directive(CachePolicy.BYPASS))

        assert len(cache) == 1

    def test_write_invalidates_even_when_it_fails(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)
        cache.insert(RequestFingerprint.for_secret("ns", "k"), _secret_body(), '"v1"')
        transport = ScriptedTransport.of(json_response(409, b'{"error": "conflict"}'))
        executor = _executor(transport, clock, cache=cache)

        with pytest.raises(HttpError):
            executor.execute("PUT", SECRET_PATH, payload={"value": "x"}, invalidates=[("ns", "k")])

        assert len(cache) == 0

    def test_write_invalidates_before_sending(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)
        fingerprint = RequestFingerprint.for_secret("ns", "k")
        cache.insert(fingerprint, _secret_body(), '"v1"')
        observed: list[bool] = []

        def on_send(request: TransportRequest) -> None:
            observed.append(cache.peek(fingerprint) is None)

        transport = ScriptedTransport.of(json_response(200))
        transport.on_send = on_send
        _executor(transport, clock, cache=cache).execute(
            "DELETE", SECRET_PATH, invalidates=[("ns", "k")]
        )

        assert observed == [True]

    def test_namespace_invalidation(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)
        cache.insert(RequestFingerprint.for_secret("ns", "a"), b"{}", None)
        cache.insert(RequestFingerprint.for_secret("other", "a"), b"{}", None)
        transport = ScriptedTransport.of(json_response(200))

        _executor(transport, clock, cache=cache).execute(
            "POST", "/v2/namespaces/ns/init", payload={}, invalidate_namespace="ns"
        )

        assert len(cache) == 1

    def test_entry_expiring_during_revalidation_is_still_served(self) -> None:
        clock = FakeClock()
        cache = CacheStore(default_ttl_seconds=10, clock=clock)
        transport = ScriptedTransport.of(
            json_response(200, _secret_body(), ETag='"v1"'),
            json_response(304, b"", ETag='"v1"'),
        )
        executor = _executor(transport, clock, cache=cache)
        executor.execute("GET", SECRET_PATH, cache=_directive())
        clock.advance(9.5)

        def slow_round_trip(request: TransportRequest) -> None:
            clock.advance(1)

        transport.on_send = slow_round_trip
        response = executor.execute("GET", SECRET_PATH, cache=_directive(CachePolicy.REVALIDATE))

        assert response.body == _secret_body()
        assert response.revalidated is True
        assert cache.stats().hits == 1
        assert cache.peek(RequestFingerprint.for_secret("ns", "k")) is None

    def test_read_overtaken_by_invalidation_is_not_stored(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)

        def write_lands_mid_read(request: TransportRequest) -> None:
            cache.invalidate_secret("ns", "k")

        transport = ScriptedTransport.of(json_response(200, _secret_body("old"), ETag='"v1"'))
        transport.on_send = write_lands_mid_read

        response = _executor(transport, clock, cache=cache).execute(
            "GET", SECRET_PATH, cache=_directive()
        )

        assert response.body == _secret_body("old")
        assert len(cache) == 0

    def test_read_overtaken_by_namespace_invalidation_is_not_stored(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)

        def namespace_reset(request: TransportRequest) -> None:
            cache.invalidate_namespace("ns")

        transport = ScriptedTransport.of(json_response(200, _secret_body()))
        transport.on_send = namespace_reset

        _executor(transport, clock, cache=cache).execute("GET", SECRET_PATH, cache=_directive())

        assert len(cache) == 0

    def test_unrelated_invalidation_does_not_drop_read(self) -> None:
        clock = FakeClock()
        cache = CacheStore(clock=clock)

        def other_write(request: TransportRequest) -> None:
            cache.invalidate_secret("ns", "other")

        transport = ScriptedTransport.of(json_response(200, _secret_body()))
        transport.on_send = other_write

        _executor(transport, clock, cache=cache).execute("GET", SECRET_PATH, cache=_directive())

        assert len(cache) == 1


class TestIdempotency:
    """Writes carry one idempotency key for every attempt."""

    @pytest.mark.parametrize("verb", ["PUT", "POST", "DELETE", "PATCH"])
    def test_every_write_verb_carries_the_header(self, verb: str) -> None:
        transport = ScriptedTransport.of(json_response(200))
        _executor(transport, FakeClock()).execute(verb, SECRET_PATH)
        assert transport.requests[0].headers[IDEMPOTENCY_HEADER]

    def test_generated_key_is_reused_across_retries(self) -> None:
        clock = FakeClock()
        transport = ScriptedTransport.of(
            json_response(503),
            NetworkError("reset"),
            json_response(200),
        )
        _executor(transport, clock).execute("PUT", SECRET_PATH, payload={"value": "x"})

        keys = {request.headers[IDEMPOTENCY_HEADER] for request in transport.requests}
        assert len(transport.requests) == 3
        assert len(keys) == 1
        assert len(clock.sleeps) == 2

    def test_caller_key_is_used_verbatim(self) -> None:
        transport = ScriptedTransport.of(json_response(200))
        _executor(transport, FakeClock()).execute(
            "POST", "/v2/ns/batch", payload={}, idempotency_key="batch-42"
        )
        assert transport.requests[0].headers[IDEMPOTENCY_HEADER] == "batch-42"

    def test_replayable_body_is_resent_unchanged(self) -> None:
        transport = ScriptedTransport.of(json_response(502), json_response(200))
        _executor(transport, FakeClock()).execute("PUT", SECRET_PATH, body=b"raw-bytes")
        assert transport.sent_bodies == [b"raw-bytes", b"raw-bytes"]

    def test_one_shot_body_fails_closed_on_retry(self) -> None:
        transport = ScriptedTransport.of(json_response(503), json_response(200))

        with pytest.raises(BodyNotReplayableError) as exc_info:
            _executor(transport, FakeClock()).execute(
                "PUT", SECRET_PATH, body=iter([b"chunk-1", b"chunk-2"])
            )

        assert len(transport.requests) == 1
        assert transport.sent_bodies == [b"chunk-1chunk-2"]
        assert isinstance(exc_info.value.__cause__, HttpError)
        assert "PUT" in str(exc_info.value)

    def test_one_shot_body_succeeds_without_retry(self) -> None:
        transport = ScriptedTransport.of(json_response(200))
        response = _executor(transport, FakeClock()).execute(
            "PUT", SECRET_PATH, body=iter([b"chunk"])
        )
        assert response.status == 200


class TestRetries:
    """Retry budget, backoff and the call deadline."""

    def test_transient_failures_are_recovered(self) -> None:
        clock = FakeClock()
        transport = ScriptedTransport.of(
            RequestTimeoutError(),
            json_response(429),
            json_response(200, b'{"ok": true}'),
        )
        response = _executor(transport, clock).execute("GET", SECRET_PATH)

        assert response.json() == {"ok": True}
        assert len(transport.requests) == 3
        assert len(clock.sleeps) == 2

    def test_budget_exhaustion_surfaces_last_error(self) -> None:
        clock = FakeClock()
        transport = ScriptedTransport.of(
            json_response(503),
            json_response(503),
            json_response(503, b'{"error": "service", "message": "maintenance"}'),
        )

        with pytest.raises(HttpError) as exc_info:
            _executor(transport, clock, max_retries=2).execute("GET", SECRET_PATH)

        assert exc_info.value.status == 503
        assert exc_info.value.message == "maintenance"
        assert exc_info.value.retryable is True
        assert len(transport.requests) == 3
        assert len(clock.sleeps) == 2

    def test_network_errors_exhaust_to_network_error(self) -> None:
        transport = ScriptedTransport.of(NetworkError("dns"), NetworkError("dns"))
        with pytest.raises(NetworkError):
            _executor(transport, FakeClock(), max_retries=1).execute("GET", SECRET_PATH)
        assert len(transport.requests) == 2

    @pytest.mark.parametrize("status", [400, 404, 409, 422])
    def test_client_errors_are_not_retried(self, status: int) -> None:
        transport = ScriptedTransport.of(json_response(status))
        with pytest.raises(HttpError) as exc_info:
            _executor(transport, FakeClock()).execute("GET", SECRET_PATH)
        assert exc_info.value.status == status
        assert len(transport.requests) == 1

    def test_error_body_fields_are_surfaced(self) -> None:
        transport = ScriptedTransport.of(
            json_response(
                404,
                b'{"error": "not_found", "message": "secret not found"}',
                X_Request_ID="req-9",
            )
        )
        with pytest.raises(HttpError) as exc_info:
            _executor(transport, FakeClock()).execute("GET", SECRET_PATH)

        error = exc_info.value
        assert error.is_not_found is True
        assert error.server_category == "not_found"
        assert error.message == "secret not found"
        assert error.request_id == "req-9"
        assert "request_id=req-9" in str(error)

    def test_non_json_error_body_gets_generic_message(self) -> None:
        transport = ScriptedTransport.of(json_response(400, b"<html>bad</html>"))
        with pytest.raises(HttpError) as exc_info:
            _executor(transport, FakeClock()).execute("GET", SECRET_PATH)
        assert exc_info.value.message == "HTTP error 400"

    def test_retry_after_is_honoured(self) -> None:
        clock = FakeClock()
        transport = ScriptedTransport.of(json_response(429, Retry_After="2"), json_response(200))
        _executor(transport, clock).execute("GET", SECRET_PATH)
        assert clock.sleeps[0] >= 2.0

    def test_retry_after_beyond_deadline_times_out(self) -> None:
        clock = FakeClock()
        transport = ScriptedTransport.of(json_response(429, Retry_After="9"))
        executor = _executor(transport, clock, deadline_buffer_seconds=0.0)

        with pytest.raises(RequestTimeoutError) as exc_info:
            executor.execute("GET", SECRET_PATH)

        assert exc_info.value.deadline_seconds == pytest.approx(4.0)
        assert clock.sleeps == []
        assert len(transport.requests) == 1

    def test_attempt_timeout_shrinks_to_remaining_deadline(self) -> None:
        clock = FakeClock()

        def slow_send(request: TransportRequest) -> None:
            clock.advance(15)

        transport = ScriptedTransport.of(json_response(503), json_response(503), json_response(503))
        transport.on_send = slow_send
        executor = _executor(
            transport, clock, timeout_seconds=10.0, deadline_buffer_seconds=0.0
        )

        with pytest.raises(RequestTimeoutError):
            executor.execute("GET", SECRET_PATH)

        assert transport.timeouts[0] == pytest.approx(10.0)
        assert transport.timeouts[1] == pytest.approx(10.0)
        assert 9.0 < transport.timeouts[2] < 10.0

    def test_deadline_scales_with_configuration(self) -> None:
        executor = _executor(ScriptedTransport(), FakeClock(), max_retries=3, timeout_seconds=1.0)
        assert executor.call_deadline_seconds == pytest.approx(34.0)

    def test_single_attempt_mode_does_not_retry(self) -> None:
        clock = FakeClock()
        transport = ScriptedTransport.of(json_response(503))
        with pytest.raises(HttpError):
            _executor(transport, clock).execute("GET", "/readyz", retry=False)
        assert len(transport.requests) == 1
        assert clock.sleeps == []

    def test_malformed_json_is_serialization_error(self) -> None:
        transport = ScriptedTransport.of(json_response(200, b"not json"))
        response = _executor(transport, FakeClock()).execute("GET", SECRET_PATH)
        with pytest.raises(SerializationError):
            response.json()


class TestAuthRefresh:
    """Credential rejection triggers one refresh outside the retry budget."""

    def test_static_credential_rejection_is_terminal(self) -> None:
        transport = ScriptedTransport.of(json_response(401, b'{"error": "auth"}'))
        with pytest.raises(AuthenticationError) as exc_info:
            _executor(transport, FakeClock()).execute("GET", SECRET_PATH)
        assert exc_info.value.status == 401
        assert exc_info.value.retryable is False
        assert len(transport.requests) == 1

    def test_forbidden_is_terminal(self) -> None:
        source = FakeTokenSource()
        transport = ScriptedTransport.of(json_response(403))
        with pytest.raises(AuthenticationError):
            _executor(transport, FakeClock(), auth=DynamicTokenAuth(source)).execute(
                "GET", SECRET_PATH
            )
        assert source.refresh_calls == 0

    def test_dynamic_rejection_refreshes_and_retries_once(self) -> None:
        source = FakeTokenSource()
        transport = ScriptedTransport.of(json_response(401), json_response(200))

        _executor(transport, FakeClock(), auth=DynamicTokenAuth(source), max_retries=0).execute(
            "GET", SECRET_PATH
        )

        assert source.refresh_calls == 1
        assert transport.requests[0].headers["Authorization"] == "Bearer token-1"
        assert transport.requests[1].headers["Authorization"] == "Bearer token-2"

    def test_second_rejection_is_terminal(self) -> None:
        source = FakeTokenSource()
        transport = ScriptedTransport.of(json_response(401), json_response(401))

        with pytest.raises(AuthenticationError):
            _executor(transport, FakeClock(), auth=DynamicTokenAuth(source)).execute(
                "GET", SECRET_PATH
            )

        assert source.refresh_calls == 1
        assert len(transport.requests) == 2

    def test_refresh_failure_is_network_classified(self) -> None:
        source = FakeTokenSource(fail_refresh=True)
        transport = ScriptedTransport.of(json_response(401))

        with pytest.raises(TokenRefreshError) as exc_info:
            _executor(transport, FakeClock(), auth=DynamicTokenAuth(source)).execute(
                "GET", SECRET_PATH
            )

        assert isinstance(exc_info.value, NetworkError)

    def test_refresh_keeps_idempotency_key(self) -> None:
        source = FakeTokenSource()
        transport = ScriptedTransport.of(json_response(401), json_response(200))
        _executor(transport, FakeClock(), auth=DynamicTokenAuth(source)).execute(
            "PUT", SECRET_PATH, payload={"value": "x"}
        )
        first, second = transport.requests
        assert first.headers[IDEMPOTENCY_HEADER] == second.headers[IDEMPOTENCY_HEADER]


class TestTelemetry:
    """Lifecycle events reach the telemetry hook."""

    def test_events_are_emitted(self) -> None:
        clock = FakeClock()
        hook = RecordingTelemetryHook()
        transport = ScriptedTransport.of(
            NetworkError("reset"),
            json_response(200, _secret_body(), ETag='"v1"'),
        )
        executor = _executor(transport, clock, telemetry=hook)

        executor.execute("GET", SECRET_PATH, cache=_directive())
        executor.execute("GET", SECRET_PATH, cache=_directive())

        assert [event.status for event in hook.requests] == [None, 200]
        assert hook.requests[0].error == "NetworkError"
        assert [event.attempt for event in hook.requests] == [0, 1]
        assert len(hook.retries) == 1
        assert hook.retries[0].reason == "network"
        assert hook.retries[0].attempt == 1
        assert [event.hit for event in hook.cache] == [False, True]
        assert all(event.namespace == "ns" for event in hook.cache)

    def test_failing_hook_does_not_fail_the_call(self) -> None:
        class ExplodingHook(RecordingTelemetryHook):
            @override
            def on_request(self, event: RequestEvent) -> None:
                raise RuntimeError("metrics backend down")

        transport = ScriptedTransport.of(json_response(200, _secret_body()))
        executor = _executor(transport, FakeClock(), telemetry=ExplodingHook())

        with capture_records("secret_store_client.executor") as records:
            response = executor.execute("GET", SECRET_PATH, cache=_directive())

        assert response.status == 200
        failures = [record for record in records if record.levelno == logging.ERROR]
        assert len(failures) == 1
        assert "ExplodingHook" in failures[0].getMessage()
        assert failures[0].exc_info is not None
