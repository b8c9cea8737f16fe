"""Request and response types for the secret store API.

Server payloads are validated with frozen pydantic models at the IO boundary.
Client-side inputs and aggregated results are frozen dataclasses.

Usage example:
    from secret_store_client.models import BatchDelete, BatchPut

    operations = [BatchPut("db-password", "s3cr3t", ttl_seconds=3600), BatchDelete("old-key")]
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, StrEnum
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .credentials import Credential


class ExportFormat(StrEnum):
    JSON = "json"
    DOTENV = "dotenv"
    SHELL = "shell"
    DOCKER_COMPOSE = "docker-compose"


class KeySelection(Enum):
    """Selector for "every key in the namespace" in batch reads."""

    ALL = "all"


ALL_KEYS = KeySelection.ALL


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


# --- Secrets -----------------------------------------------------------------


class SecretPayload(_WireModel):
    """Body of ``GET /v2/{ns}/secrets/{key}`` and of a single version."""

    value: str = Field(repr=False)
    version: int
    updated_at: datetime
    metadata: dict[str, object] | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None

    @field_validator("version")
    @classmethod
    def _validate_version(cls, value: int) -> int:
        if value < 1:
            raise ValueError
        return value


def _empty_metadata() -> Mapping[str, object]:
    return MappingProxyType({})


@dataclass(frozen=True)
class Secret:
    """A retrieved secret. The value is only readable through :meth:`reveal`."""

    namespace: str
    key: str
    value: Credential
    version: int
    updated_at: datetime
    metadata: Mapping[str, object] = field(default_factory=_empty_metadata)
    expires_at: datetime | None = None
    created_at: datetime | None = None
    etag: str | None = None
    last_modified: str | None = None
    request_id: str | None = None
    from_cache: bool = False

    @classmethod
    def from_payload(
        cls,
        namespace: str,
        key: str,
        payload: SecretPayload,
        *,
        etag: str | None = None,
        last_modified: str | None = None,
        request_id: str | None = None,
        from_cache: bool = False,
    ) -> Secret:
        return cls(
            namespace=namespace,
            key=key,
            value=Credential(payload.value),
            version=payload.version,
            updated_at=payload.updated_at,
            metadata=MappingProxyType(dict(payload.metadata or {})),
            expires_at=payload.expires_at,
            created_at=payload.created_at,
            etag=etag,
            last_modified=last_modified,
            request_id=request_id,
            from_cache=from_cache,
        )

    def reveal(self) -> str:
        return self.value.reveal()


class PutResult(_WireModel):
    message: str = ""
    namespace: str
    key: str
    created_at: str | None = None
    version: int | None = None
    request_id: str | None = None


class DeleteResult(_WireModel):
    deleted: bool = True
    request_id: str | None = None


class SecretKeyInfo(_WireModel):
    key: str
    version: int = Field(alias="ver")
    updated_at: str
    kid: str | None = None


class ListSecretsResult(_WireModel):
    namespace: str
    secrets: tuple[SecretKeyInfo, ...] = ()
    total: int = 0
    limit: int = 0
    has_more: bool = False
    request_id: str | None = None


# --- Versions ----------------------------------------------------------------


class VersionInfo(_WireModel):
    version: int
    created_at: str
    created_by: str = ""
    comment: str | None = None
    is_current: bool = False


class VersionList(_WireModel):
    namespace: str
    key: str
    versions: tuple[VersionInfo, ...] = ()
    total: int = 0
    request_id: str | None = None

    @property
    def current(self) -> VersionInfo | None:
        for info in self.versions:
            if info.is_current:
                return info
        return None


class RollbackResult(_WireModel):
    message: str = ""
    namespace: str
    key: str
    from_version: int
    to_version: int
    request_id: str | None = None


# --- Namespaces --------------------------------------------------------------


class NamespaceListItem(_WireModel):
    name: str
    created_at: str
    updated_at: str
    secret_count: int = 0


class ListNamespacesResult(_WireModel):
    namespaces: tuple[NamespaceListItem, ...] = ()
    total: int = 0
    request_id: str | None = None


class NamespaceInfo(_WireModel):
    name: str
    created_at: str
    updated_at: str
    secret_count: int = 0
    total_size: int = 0
    metadata: dict[str, object] = Field(default_factory=dict)
    request_id: str | None = None


@dataclass(frozen=True)
class NamespaceTemplate:
    """Server-side template used to seed a new namespace."""

    template: str
    params: Mapping[str, object] = field(default_factory=_empty_metadata)

    def to_wire(self) -> dict[str, object]:
        return {"template": self.template, "params": dict(self.params)}


class InitNamespaceResult(_WireModel):
    message: str = ""
    namespace: str
    secrets_created: int = 0
    request_id: str | None = None


class DeleteNamespaceResult(_WireModel):
    message: str = ""
    namespace: str
    secrets_deleted: int = 0
    request_id: str | None = None


# --- Audit -------------------------------------------------------------------


@dataclass(frozen=True)
class AuditQuery:
    """Filters for the audit log. Unset filters are not sent."""

    namespace: str | None = None
    actor: str | None = None
    action: str | None = None
    from_time: str | None = None
    to_time: str | None = None
    success: bool | None = None
    limit: int | None = None
    offset: int | None = None

    def to_params(self) -> dict[str, object]:
        params: dict[str, object] = {
            "namespace": self.namespace,
            "actor": self.actor,
            "action": self.action,
            "from": self.from_time,
            "to": self.to_time,
            "success": self.success,
            "limit": self.limit,
            "offset": self.offset,
        }
        return {name: value for name, value in params.items() if value is not None}


class AuditEntry(_WireModel):
    id: int
    timestamp: str
    action: str
    success: bool
    actor: str | None = None
    namespace: str | None = None
    key_name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    error: str | None = None


class AuditResult(_WireModel):
    entries: tuple[AuditEntry, ...] = Field(default=(), alias="logs")
    total: int = 0
    limit: int = 0
    offset: int = 0
    has_more: bool = False
    request_id: str | None = None


# --- Health ------------------------------------------------------------------


class HealthStatus(_WireModel):
    status: str
    checks: dict[str, object] = Field(default_factory=dict)
    version: str | None = None
    timestamp: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status.lower() in {"ok", "ready", "healthy", "up"}


class DiscoveryEndpoints(_WireModel):
    base_url: str | None = None
    health_url: str | None = None
    metrics_url: str | None = None


class Discovery(_WireModel):
    """Service description served at the API root."""

    service: str
    version: str
    api_version: str
    features: tuple[str, ...] = ()
    build: dict[str, str] = Field(default_factory=dict)
    endpoints: DiscoveryEndpoints = Field(default_factory=DiscoveryEndpoints)


# --- API keys ----------------------------------------------------------------


@dataclass(frozen=True)
class CreateApiKeyRequest:
    name: str
    permissions: tuple[str, ...] = ()
    namespaces: tuple[str, ...] = ()
    expires_at: str | None = None
    metadata: Mapping[str, object] | None = None

    def to_wire(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "name": self.name,
            "permissions": list(self.permissions),
            "namespaces": list(self.namespaces),
        }
        if self.expires_at is not None:
            payload["expires_at"] = self.expires_at
        if self.metadata is not None:
            payload["metadata"] = dict(self.metadata)
        return payload


class ApiKeyInfo(_WireModel):
    """API key metadata.

    ``key`` is only present in the response that created the key; read it
    through :meth:`reveal_key`.
    """

    id: str
    name: str
    key: str | None = Field(default=None, repr=False)
    permissions: tuple[str, ...] = ()
    namespaces: tuple[str, ...] = ()
    active: bool = True
    created_at: str | None = None
    expires_at: str | None = None
    last_used_at: str | None = None
    metadata: dict[str, object] | None = None
    request_id: str | None = None

    def reveal_key(self) -> Credential | None:
        return Credential(self.key) if self.key is not None else None


class ListApiKeysResult(_WireModel):
    keys: tuple[ApiKeyInfo, ...] = ()
    total: int = 0
    request_id: str | None = None


class RevokeApiKeyResult(_WireModel):
    key_id: str
    message: str = ""
    revoked: bool = True
    request_id: str | None = None


# --- Batch -------------------------------------------------------------------


@dataclass(frozen=True)
class BatchPut:
    key: str
    value: Credential | str = field(repr=False)
    ttl_seconds: int | None = None
    metadata: Mapping[str, object] | None = None

    action = "put"

    def to_wire(self) -> dict[str, object]:
        value = self.value.reveal() if isinstance(self.value, Credential) else self.value
        payload: dict[str, object] = {"action": self.action, "key": self.key, "value": value}
        if self.ttl_seconds is not None:
            payload["ttl_seconds"] = self.ttl_seconds
        if self.metadata is not None:
            payload["metadata"] = dict(self.metadata)
        return payload


@dataclass(frozen=True)
class BatchDelete:
    key: str

    action = "delete"

    def to_wire(self) -> dict[str, object]:
        return {"action": self.action, "key": self.key}


type BatchOperation = BatchPut | BatchDelete


class BatchItemPayload(_WireModel):
    key: str
    action: str = ""
    success: bool = False
    error: str | None = None


class BatchSummaryPayload(_WireModel):
    succeeded: tuple[BatchItemPayload, ...] = ()
    failed: tuple[BatchItemPayload, ...] = ()
    total: int = 0


class BatchResponsePayload(_WireModel):
    namespace: str = ""
    results: BatchSummaryPayload = Field(default_factory=BatchSummaryPayload)
    success_rate: float | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class BatchItemResult:
    key: str
    action: str
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class BatchResult:
    """Per-item outcome of a batch write. Every submitted item appears exactly once."""

    namespace: str
    succeeded: tuple[BatchItemResult, ...]
    failed: tuple[BatchItemResult, ...]
    transactional: bool = False
    request_id: str | None = None

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return len(self.succeeded) / self.total

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


def _empty_secrets() -> Mapping[str, Secret]:
    return MappingProxyType({})


@dataclass(frozen=True)
class BatchGetResult:
    """Secrets fetched by a batch read, keyed by secret key."""

    namespace: str
    secrets: Mapping[str, Secret] = field(default_factory=_empty_secrets)
    missing: tuple[str, ...] = ()
    truncated: bool = False

    @property
    def total(self) -> int:
        return len(self.secrets) + len(self.missing)

    def reveal_all(self) -> dict[str, str]:
        return {key: secret.reveal() for key, secret in self.secrets.items()}
