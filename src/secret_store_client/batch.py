"""Batch writes and batch reads built on the request executor.

Usage example:
    from secret_store_client.batch import BatchOrchestrator
    from secret_store_client.models import BatchDelete, BatchPut

    orchestrator = BatchOrchestrator(executor, fetch=client.get_secret, list_keys=client.list_secrets)
    result = orchestrator.operate(
        "prod",
        [BatchPut("a", "1"), BatchDelete("b")],
        transactional=True,
    )
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from types import MappingProxyType

from . import endpoints
from .exceptions import HttpError
from .executor import RequestExecutor, generate_idempotency_key
from .export import render_export
from .models import (
    BatchGetResult,
    BatchItemPayload,
    BatchItemResult,
    BatchOperation,
    BatchResponsePayload,
    BatchResult,
    ExportFormat,
    KeySelection,
    ListSecretsResult,
    Secret,
)
from .observability import get_logger
from .protocols import ExportRenderer
from .validation import validate_json_as

logger = get_logger("secret_store_client.batch")

DEFAULT_BATCH_CONCURRENCY = 8
DEFAULT_LIST_LIMIT = 1000

NOT_REPORTED_ERROR = "no result reported by server"
ROLLED_BACK_ERROR = "not applied: transactional batch failed"

type SecretFetcher = Callable[[str, str], Secret]
type KeyLister = Callable[[str, int], ListSecretsResult]


def _take_match(
    pool: list[tuple[BatchItemPayload, bool]], operation: BatchOperation
) -> tuple[BatchItemPayload, bool] | None:
    for index, (item, _) in enumerate(pool):
        if item.key == operation.key and item.action in ("", operation.action):
            return pool.pop(index)
    return None


def reconcile_batch(
    namespace: str,
    operations: Sequence[BatchOperation],
    response: BatchResponsePayload,
    *,
    transactional: bool,
    request_id: str | None = None,
) -> BatchResult:
    """Report exactly one outcome per submitted operation, in submission order.

    Operations the server did not report are failed. In a transactional batch a
    single failure means no operation took effect, so every item is failed.
    """
    pool = [(item, True) for item in response.results.succeeded]
    pool.extend((item, False) for item in response.results.failed)

    outcomes: list[BatchItemResult] = []
    for operation in operations:
        match = _take_match(pool, operation)
        if match is None:
            outcomes.append(
                BatchItemResult(operation.key, operation.action, False, NOT_REPORTED_ERROR)
            )
            continue
        item, succeeded = match
        success = succeeded and item.success is not False
        error = None if success else (item.error or "operation failed")
        outcomes.append(BatchItemResult(operation.key, operation.action, success, error))

    if pool:
        logger.debug("Ignoring %d unmatched batch result(s) in %s", len(pool), namespace)

    if transactional and any(not outcome.success for outcome in outcomes):
        outcomes = [
            outcome
            if not outcome.success
            else BatchItemResult(outcome.key, outcome.action, False, ROLLED_BACK_ERROR)
            for outcome in outcomes
        ]

    return BatchResult(
        namespace=namespace,
        succeeded=tuple(outcome for outcome in outcomes if outcome.success),
        failed=tuple(outcome for outcome in outcomes if not outcome.success),
        transactional=transactional,
        request_id=request_id or response.request_id,
    )


class BatchOrchestrator:
    """Submits batch writes as one idempotent request and fans batch reads out."""

    def __init__(
        self,
        executor: RequestExecutor,
        *,
        fetch: SecretFetcher,
        list_keys: KeyLister,
        max_workers: int = DEFAULT_BATCH_CONCURRENCY,
        list_limit: int = DEFAULT_LIST_LIMIT,
        renderer: ExportRenderer | None = None,
    ) -> None:
        self.executor = executor
        self._fetch = fetch
        self._list_keys = list_keys
        self.max_workers = max(1, max_workers)
        self.list_limit = list_limit
        self.renderer: ExportRenderer = renderer or render_export

    def operate(
        self,
        namespace: str,
        operations: Iterable[BatchOperation],
        *,
        transactional: bool = False,
        idempotency_key: str | None = None,
    ) -> BatchResult:
        ops = tuple(operations)
        if not ops:
            raise ValueError("A batch needs at least one operation.")
        key = idempotency_key or generate_idempotency_key()
        payload = {
            "operations": [operation.to_wire() for operation in ops],
            "transactional": transactional,
        }
        response = self.executor.execute(
            "POST",
            endpoints.batch(namespace),
            payload=payload,
            idempotency_key=key,
            invalidates=[(namespace, operation.key) for operation in ops],
        )
        parsed = validate_json_as(BatchResponsePayload, response.body)
        result = reconcile_batch(
            namespace,
            ops,
            parsed,
            transactional=transactional,
            request_id=response.request_id,
        )
        logger.debug(
            "Batch of %d in %s: %d succeeded, %d failed",
            len(ops),
            namespace,
            len(result.succeeded),
            len(result.failed),
        )
        return result

    def batch_get(
        self, namespace: str, keys: Iterable[str] | KeySelection
    ) -> BatchGetResult:
        """Fetch an explicit key set, or every key in the namespace.

        Keys that do not exist are reported in ``missing``. Any other failure
        aborts the whole read.
        """
        selected, truncated = self._resolve_keys(namespace, keys)
        if not selected:
            return BatchGetResult(namespace=namespace, truncated=truncated)

        found: dict[str, Secret] = {}
        missing: list[str] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(selected))) as pool:
            futures = {key: pool.submit(self._fetch_or_none, namespace, key) for key in selected}
            for key, future in futures.items():
                secret = future.result()
                if secret is None:
                    missing.append(key)
                else:
                    found[key] = secret

        return BatchGetResult(
            namespace=namespace,
            secrets=MappingProxyType(found),
            missing=tuple(missing),
            truncated=truncated,
        )

    def export(
        self,
        namespace: str,
        keys: Iterable[str] | KeySelection,
        export_format: ExportFormat,
    ) -> str:
        result = self.batch_get(namespace, keys)
        return self.renderer(namespace, result.reveal_all(), export_format)

    def _fetch_or_none(self, namespace: str, key: str) -> Secret | None:
        try:
            return self._fetch(namespace, key)
        except HttpError as exc:
            if exc.is_not_found:
                return None
            raise

    def _resolve_keys(
        self, namespace: str, keys: Iterable[str] | KeySelection
    ) -> tuple[tuple[str, ...], bool]:
        if isinstance(keys, KeySelection):
            listing = self._list_keys(namespace, self.list_limit)
            if listing.has_more:
                logger.warning(
                    "Listing for %s returned more than %d keys; batch read is truncated",
                    namespace,
                    self.list_limit,
                )
            return tuple(dict.fromkeys(info.key for info in listing.secrets)), listing.has_more
        if isinstance(keys, str):
            keys = [keys]
        return tuple(dict.fromkeys(keys)), False
