"""Public client for the secret store service.

Usage example:
    from secret_store_client.client import SecretStoreClient
    from secret_store_client.config import ClientConfig

    with SecretStoreClient(ClientConfig(base_url="https://secrets.example.com", api_key=...)) as client:
        client.put_secret("prod", "db-password", "s3cr3t")
        secret = client.get_secret("prod", "db-password")
        password = secret.reveal()

Every operation runs through one shared :class:`RequestExecutor`; many threads
may use one client concurrently.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import replace
from types import TracebackType
from typing import Self

from pydantic import BaseModel

from . import __version__, endpoints
from .auth import AuthMode, select_auth
from .batch import BatchOrchestrator
from .cache import CachePolicy, CacheStats, CacheStore, NullCacheStore, RequestFingerprint
from .config import DEFAULT_ENV_PREFIX, ClientConfig
from .credentials import Credential
from .executor import ApiResponse, CacheDirective, RequestExecutor
from .models import (
    ALL_KEYS,
    ApiKeyInfo,
    AuditEntry,
    AuditQuery,
    AuditResult,
    BatchGetResult,
    BatchOperation,
    BatchResult,
    CreateApiKeyRequest,
    DeleteNamespaceResult,
    DeleteResult,
    Discovery,
    ExportFormat,
    HealthStatus,
    InitNamespaceResult,
    KeySelection,
    ListApiKeysResult,
    ListNamespacesResult,
    ListSecretsResult,
    NamespaceInfo,
    NamespaceTemplate,
    PutResult,
    RevokeApiKeyResult,
    RollbackResult,
    Secret,
    SecretPayload,
    VersionList,
)
from .observability import get_logger
from .protocols import ExportRenderer, ResponseCache, Transport
from .resilience import RetryPolicy
from .transport import RequestsTransport, build_user_agent
from .validation import validate_json_as

logger = get_logger("secret_store_client.client")

DEFAULT_AUDIT_PAGE_SIZE = 100


def _parse[ModelT: BaseModel](schema: type[ModelT], response: ApiResponse) -> ModelT:
    model = validate_json_as(schema, response.body)
    if (
        "request_id" in type(model).model_fields
        and getattr(model, "request_id", None) is None
        and response.request_id is not None
    ):
        model = model.model_copy(update={"request_id": response.request_id})
    return model


class SecretStoreClient:
    """Resilient client: cached reads, idempotent writes, retries and token refresh."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: Transport | None = None,
        cache: ResponseCache | None = None,
        renderer: ExportRenderer | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config.validate()
        self._auth = select_auth(
            bearer_token=config.bearer_token,
            api_key=config.api_key,
            legacy_key=config.legacy_key,
            token_source=config.token_source,
        )
        if cache is None:
            cache = (
                CacheStore(
                    max_entries=config.cache_max_entries,
                    default_ttl_seconds=config.cache_ttl_seconds,
                    clock=clock,
                )
                if config.cache_enabled
                else NullCacheStore()
            )
        self._cache = cache
        self._owns_transport = transport is None
        self._transport: Transport = transport or RequestsTransport()
        self._retry_policy = RetryPolicy(
            max_retries=config.max_retries,
            backoff_base_seconds=config.backoff_base_seconds,
            max_backoff_seconds=config.max_backoff_seconds,
            deadline_buffer_seconds=config.deadline_buffer_seconds,
            rng=rng or random.Random(),
        )
        self._executor = RequestExecutor(
            base_url=config.base_url,
            transport=self._transport,
            auth=self._auth,
            cache=self._cache,
            retry_policy=self._retry_policy,
            timeout_seconds=config.timeout_seconds,
            user_agent=build_user_agent(__version__, config.user_agent_suffix),
            telemetry=config.telemetry_hook,
            store_on_bypass=config.cache_store_on_bypass,
            sleep=sleep,
            clock=clock,
        )
        self._batch = BatchOrchestrator(
            self._executor,
            fetch=self.get_secret,
            list_keys=self._list_for_batch,
            max_workers=config.batch_concurrency,
            list_limit=config.list_limit,
            renderer=renderer,
        )
        self._closed = False

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_ENV_PREFIX,
        dotenv_path: str | None = None,
        *,
        transport: Transport | None = None,
    ) -> Self:
        """Build a client from ``{prefix}_*`` environment variables."""
        return cls(ClientConfig.from_env(prefix, dotenv_path), transport=transport)

    @property
    def auth_mode(self) -> AuthMode:
        return self._auth.mode

    @property
    def call_deadline_seconds(self) -> float:
        return self._executor.call_deadline_seconds

    # --- secrets -------------------------------------------------------------

    def get_secret(
        self,
        namespace: str,
        key: str,
        *,
        cache_policy: CachePolicy = CachePolicy.USE,
        if_none_match: str | None = None,
        if_modified_since: str | None = None,
    ) -> Secret:
        """Fetch one secret.

        Args:
            namespace: Secret namespace.
            key: Secret key.
            cache_policy: USE serves a fresh cached copy without network I/O,
                REVALIDATE confirms the cached copy with the server first,
                BYPASS always fetches.
            if_none_match: Explicit revalidation token.
            if_modified_since: HTTP date; the server answers 304 when the secret
                has not changed since.

        Raises:
            HttpError: ``is_not_found`` is True when the secret does not exist.
            NotModifiedError: The server answered 304 and nothing is cached.
        """
        fingerprint = RequestFingerprint.for_secret(namespace, key)
        response = self._executor.execute(
            "GET",
            endpoints.secret(namespace, key),
            cache=CacheDirective(fingerprint, cache_policy, if_none_match, if_modified_since),
        )
        payload = validate_json_as(SecretPayload, response.body)
        return Secret.from_payload(
            namespace,
            key,
            payload,
            etag=response.etag,
            last_modified=response.last_modified,
            request_id=response.request_id,
            from_cache=response.from_cache,
        )

    def put_secret(
        self,
        namespace: str,
        key: str,
        value: Credential | str,
        *,
        ttl_seconds: int | None = None,
        metadata: Mapping[str, object] | None = None,
        idempotency_key: str | None = None,
    ) -> PutResult:
        """Create or replace a secret; the server assigns the next version."""
        plaintext = value.reveal() if isinstance(value, Credential) else value
        payload: dict[str, object] = {"value": plaintext}
        if ttl_seconds is not None:
            payload["ttl_seconds"] = ttl_seconds
        if metadata is not None:
            payload["metadata"] = dict(metadata)
        response = self._executor.execute(
            "PUT",
            endpoints.secret(namespace, key),
            payload=payload,
            idempotency_key=idempotency_key,
            invalidates=[(namespace, key)],
        )
        return _parse(PutResult, response)

    def delete_secret(
        self, namespace: str, key: str, *, idempotency_key: str | None = None
    ) -> DeleteResult:
        """Soft-delete a secret. Its version history is kept by the server."""
        response = self._executor.execute(
            "DELETE",
            endpoints.secret(namespace, key),
            idempotency_key=idempotency_key,
            invalidates=[(namespace, key)],
        )
        if not response.body:
            return DeleteResult(deleted=True, request_id=response.request_id)
        return _parse(DeleteResult, response)

    def list_secrets(
        self, namespace: str, *, prefix: str | None = None, limit: int | None = None
    ) -> ListSecretsResult:
        response = self._executor.execute(
            "GET",
            endpoints.secrets(namespace),
            params={"prefix": prefix, "limit": limit},
        )
        return _parse(ListSecretsResult, response)

    def _list_for_batch(self, namespace: str, limit: int) -> ListSecretsResult:
        return self.list_secrets(namespace, limit=limit)

    # --- batch ---------------------------------------------------------------

    def batch_get(
        self, namespace: str, keys: Iterable[str] | KeySelection = ALL_KEYS
    ) -> BatchGetResult:
        return self._batch.batch_get(namespace, keys)

    def batch_operate(
        self,
        namespace: str,
        operations: Iterable[BatchOperation],
        *,
        transactional: bool = False,
        idempotency_key: str | None = None,
    ) -> BatchResult:
        """Apply puts and deletes as one request.

        Every submitted operation is reported in ``succeeded`` or ``failed``.
        """
        return self._batch.operate(
            namespace,
            operations,
            transactional=transactional,
            idempotency_key=idempotency_key,
        )

    def export_env(
        self,
        namespace: str,
        export_format: ExportFormat = ExportFormat.DOTENV,
        *,
        keys: Iterable[str] | KeySelection = ALL_KEYS,
    ) -> str:
        """Render a namespace (or a key subset) as dotenv, shell, JSON or docker-compose text."""
        return self._batch.export(namespace, keys, export_format)

    # --- versions ------------------------------------------------------------

    def list_versions(self, namespace: str, key: str) -> VersionList:
        response = self._executor.execute("GET", endpoints.versions(namespace, key))
        return _parse(VersionList, response)

    def get_version(self, namespace: str, key: str, version: int) -> Secret:
        response = self._executor.execute("GET", endpoints.version(namespace, key, version))
        payload = validate_json_as(SecretPayload, response.body)
        return Secret.from_payload(
            namespace,
            key,
            payload,
            etag=response.etag,
            last_modified=response.last_modified,
            request_id=response.request_id,
        )

    def rollback(
        self,
        namespace: str,
        key: str,
        version: int,
        *,
        idempotency_key: str | None = None,
    ) -> RollbackResult:
        """Restore ``version``'s value as a new version; version numbers are never reused."""
        response = self._executor.execute(
            "POST",
            endpoints.rollback(namespace, key, version),
            payload={},
            idempotency_key=idempotency_key,
            invalidates=[(namespace, key)],
        )
        return _parse(RollbackResult, response)

    # --- namespaces ----------------------------------------------------------

    def list_namespaces(self) -> ListNamespacesResult:
        response = self._executor.execute("GET", endpoints.namespaces())
        return _parse(ListNamespacesResult, response)

    def get_namespace(self, namespace: str) -> NamespaceInfo:
        response = self._executor.execute("GET", endpoints.namespace(namespace))
        return _parse(NamespaceInfo, response)

    def init_namespace(
        self,
        namespace: str,
        template: NamespaceTemplate | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> InitNamespaceResult:
        response = self._executor.execute(
            "POST",
            endpoints.init_namespace(namespace),
            payload=template.to_wire() if template is not None else {},
            idempotency_key=idempotency_key,
            invalidate_namespace=namespace,
        )
        return _parse(InitNamespaceResult, response)

    def create_namespace(
        self,
        namespace: str,
        *,
        description: str | None = None,
        metadata: Mapping[str, object] | None = None,
        idempotency_key: str | None = None,
    ) -> NamespaceInfo:
        payload: dict[str, object] = {"name": namespace}
        if description is not None:
            payload["description"] = description
        if metadata is not None:
            payload["metadata"] = dict(metadata)
        response = self._executor.execute(
            "POST",
            endpoints.namespaces(),
            payload=payload,
            idempotency_key=idempotency_key,
            invalidate_namespace=namespace,
        )
        return _parse(NamespaceInfo, response)

    def delete_namespace(
        self, namespace: str, *, idempotency_key: str | None = None
    ) -> DeleteNamespaceResult:
        """Delete a namespace and every secret in it. This cannot be undone.

        Pass ``idempotency_key`` to make a repeated call (for example after a
        lost response) a no-op on the server.
        """
        response = self._executor.execute(
            "DELETE",
            endpoints.namespace(namespace),
            idempotency_key=idempotency_key,
            invalidate_namespace=namespace,
        )
        logger.debug("Deleted namespace %s", namespace)
        return _parse(DeleteNamespaceResult, response)

    # --- audit and health ----------------------------------------------------

    def audit(self, query: AuditQuery | None = None) -> AuditResult:
        response = self._executor.execute(
            "GET",
            endpoints.audit(),
            params=(query or AuditQuery()).to_params(),
        )
        return _parse(AuditResult, response)

    def iter_audit(
        self, query: AuditQuery | None = None, *, page_size: int = DEFAULT_AUDIT_PAGE_SIZE
    ) -> Iterator[AuditEntry]:
        """Yield audit entries across pages until the server reports no more."""
        base = query or AuditQuery()
        offset = base.offset or 0
        limit = base.limit or page_size
        while True:
            page = self.audit(replace(base, limit=limit, offset=offset))
            yield from page.entries
            if not page.has_more or not page.entries:
                return
            offset += len(page.entries)

    def readyz(self) -> HealthStatus:
        """Single-attempt readiness check."""
        response = self._executor.execute("GET", endpoints.readyz(), retry=False)
        return validate_json_as(HealthStatus, response.body)

    def livez(self) -> None:
        """Single-attempt liveness check; raises unless the service answers 2xx."""
        self._executor.execute("GET", endpoints.livez(), retry=False)

    def discovery(self) -> Discovery:
        response = self._executor.execute("GET", endpoints.discovery())
        return validate_json_as(Discovery, response.body)

    # --- API keys ------------------------------------------------------------

    def list_api_keys(self) -> ListApiKeysResult:
        response = self._executor.execute("GET", endpoints.api_keys())
        return _parse(ListApiKeysResult, response)

    def create_api_key(
        self, request: CreateApiKeyRequest, *, idempotency_key: str | None = None
    ) -> ApiKeyInfo:
        """Create an API key. The key value is only returned by this call."""
        response = self._executor.execute(
            "POST",
            endpoints.api_keys(),
            payload=request.to_wire(),
            idempotency_key=idempotency_key,
        )
        return _parse(ApiKeyInfo, response)

    def get_api_key(self, key_id: str) -> ApiKeyInfo:
        response = self._executor.execute("GET", endpoints.api_key(key_id))
        return _parse(ApiKeyInfo, response)

    def revoke_api_key(
        self, key_id: str, *, idempotency_key: str | None = None
    ) -> RevokeApiKeyResult:
        response = self._executor.execute(
            "DELETE",
            endpoints.api_key(key_id),
            idempotency_key=idempotency_key,
        )
        if not response.body:
            return RevokeApiKeyResult(key_id=key_id, request_id=response.request_id)
        return _parse(RevokeApiKeyResult, response)

    # --- cache ---------------------------------------------------------------

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def clear_cache(self) -> None:
        self._cache.clear()

    def invalidate_cache(self, namespace: str, key: str | None = None) -> None:
        if key is None:
            self._cache.invalidate_namespace(namespace)
        else:
            self._cache.invalidate_secret(namespace, key)

    # --- lifecycle -----------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cache.clear()
        if self._owns_transport:
            self._transport.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SecretStoreClient(base_url={self.config.base_url!r}, auth={self._auth.mode.value})"
